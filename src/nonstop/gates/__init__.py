from nonstop.gates.checks import CheckContext, CheckOutcome, CheckRegistry
from nonstop.gates.pipeline import GateResult, PhaseReport, QualityGatePipeline

__all__ = [
    "CheckContext",
    "CheckOutcome",
    "CheckRegistry",
    "GateResult",
    "PhaseReport",
    "QualityGatePipeline",
]
