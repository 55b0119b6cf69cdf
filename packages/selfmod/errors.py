"""
Self-mod error taxonomy.

- SnapshotFailure: undo log could not be written, source tree untouched
- MutationFailure: write/rename failed during apply, batch rolled back
- MissingStagedContent: a listed staged file had no content
- RevertError: revert request cannot be satisfied
- LockAcquisitionError: feature lock held by someone else
- UnsafePathError: relative path escapes the source root, or bad feature id

An empty staging area is not an error (see BatchResult.is_noop).
"""

from typing import List, Optional


class SelfModError(Exception):
    """Base class for all self-mod failures."""
    pass


class SnapshotFailure(SelfModError):
    """Raised when the pre-apply snapshot cannot be created."""

    def __init__(self, message: str, feature_id: str = "", batch_index: int = -1):
        super().__init__(message)
        self.feature_id = feature_id
        self.batch_index = batch_index


class MutationFailure(SelfModError):
    """
    Raised when a batch could not be applied.

    The source tree has been rolled back. If rollback itself hit problems
    they are listed in rollback_issues and already part of the message.
    """

    def __init__(self, message: str, rollback_issues: Optional[List[str]] = None):
        super().__init__(message)
        self.rollback_issues = list(rollback_issues or [])

    @property
    def rollback_clean(self) -> bool:
        return not self.rollback_issues


class MissingStagedContent(MutationFailure):
    """Raised when a staged file is listed but its content is gone."""
    pass


class RevertError(SelfModError):
    """Raised for invalid revert requests (empty history, bad index)."""
    pass


class LockAcquisitionError(SelfModError):
    """Raised when a feature lock cannot be acquired."""
    pass


class UnsafePathError(SelfModError, ValueError):
    """Raised for paths outside the source root and malformed feature ids."""
    pass
