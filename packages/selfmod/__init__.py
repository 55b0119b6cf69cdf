"""
selfmod - Transactional apply / snapshot / revert for agent-proposed edits

An agent stages proposed file contents per feature; selfmod moves them into
the live source tree as one all-or-nothing batch and keeps enough history
to undo it later.

Architecture:
    StagingStore (proposed content)
        ↓
    ApplyEngine → SnapshotStore.take_snapshot (undo log first)
        ↓        → write temp → back up → promote → cleanup
        ↓        → rollback on any failure
    HistoryLog (committed batches)
        ↓
    RevertCoordinator → restore snapshots + truncate history

Key Principle: the tree is either fully updated or fully restored; history
and staging only move on success.
"""

from .errors import (
    SelfModError,
    SnapshotFailure,
    MutationFailure,
    MissingStagedContent,
    RevertError,
    LockAcquisitionError,
    UnsafePathError
)

from .models import (
    ApplyState,
    FeatureStatus,
    HistoryEntry,
    BatchResult,
    SnapshotEntry,
    RevertResult,
    FeatureMeta,
    FeatureStatusReport,
    FileOperation,
    ApplyAttempt
)

from .config import SelfModConfig, load_config

from .staging import StagingStore, FileStagingStore

from .features import FeatureRegistry, FileFeatureRegistry

from .snapshots import SnapshotStore

from .history import HistoryLog

from .feature_lock import FeatureLock, LockManager

from .apply import ApplyEngine

from .revert import RevertCoordinator

from .service import SelfModService

__all__ = [
    # Errors
    "SelfModError",
    "SnapshotFailure",
    "MutationFailure",
    "MissingStagedContent",
    "RevertError",
    "LockAcquisitionError",
    "UnsafePathError",

    # Models
    "ApplyState",
    "FeatureStatus",
    "HistoryEntry",
    "BatchResult",
    "SnapshotEntry",
    "RevertResult",
    "FeatureMeta",
    "FeatureStatusReport",
    "FileOperation",
    "ApplyAttempt",

    # Config
    "SelfModConfig",
    "load_config",

    # Collaborators
    "StagingStore",
    "FileStagingStore",
    "FeatureRegistry",
    "FileFeatureRegistry",

    # Core
    "SnapshotStore",
    "HistoryLog",
    "FeatureLock",
    "LockManager",
    "ApplyEngine",
    "RevertCoordinator",
    "SelfModService"
]

__version__ = "1.0.0"
