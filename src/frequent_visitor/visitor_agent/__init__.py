"""Frequent visitor identification agent."""

from .checkpoints import CheckpointManager, CommitResult, CycleStatus, ShutdownReason
from .config import VisitorAgentConfigError, VisitorAgentProfile
from .contracts import TagEvent, VisitEvent, VisitEventParseError, VisitKind
from .dispatcher import RecordDispatcher, RecordState
from .emission import TagEventEmitter
from .profiles import ProfileStore
from .window import FrequencyWindowPolicy, IntervalUnit, UserProfile

__all__ = [
    "CheckpointManager",
    "CommitResult",
    "CycleStatus",
    "FrequencyWindowPolicy",
    "IntervalUnit",
    "ProfileStore",
    "RecordDispatcher",
    "RecordState",
    "ShutdownReason",
    "TagEvent",
    "TagEventEmitter",
    "UserProfile",
    "VisitEvent",
    "VisitEventParseError",
    "VisitKind",
    "VisitorAgentConfigError",
    "VisitorAgentProfile",
]
