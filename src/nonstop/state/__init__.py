from nonstop.state.checkpoints import CheckpointDiff, CheckpointInfo, CheckpointManager
from nonstop.state.store import JsonFileStore, StateStore

__all__ = [
    "CheckpointDiff",
    "CheckpointInfo",
    "CheckpointManager",
    "JsonFileStore",
    "StateStore",
]
