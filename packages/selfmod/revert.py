"""
Revert Coordinator - "revert to batch N"

Reverting is restore + truncate:
    1. Write revert.json journal {targetIndex, historyLength}
    2. Restore snapshots newest-first down to batch N
    3. Drop history entries N..end
    4. Mark feature reverted, delete the journal

Both halves are idempotent, so an interrupted revert is finished by
replaying the journal (recover) before the next apply or revert.
"""

from pathlib import Path
from typing import Callable, List, Optional
import logging
import uuid

from pydantic import ValidationError

from .config import SelfModConfig
from .errors import RevertError
from .feature_lock import LockManager
from .features import FeatureRegistry
from .fs_utils import atomic_write_json, remove_if_exists
from .history import HistoryLog
from .models import FeatureStatus, RevertJournal, RevertResult
from .snapshots import SnapshotStore

logger = logging.getLogger(__name__)


class RevertCoordinator:
    """Composes SnapshotStore.restore_snapshot and HistoryLog truncation."""

    def __init__(
        self,
        config: SelfModConfig,
        snapshots: SnapshotStore,
        history: HistoryLog,
        features: Optional[FeatureRegistry] = None,
        lock_manager: Optional[LockManager] = None
    ):
        self.config = config
        self.snapshots = snapshots
        self.history = history
        self.features = features
        self.lock_manager = lock_manager or LockManager(config)

    def revert_to_batch(self, feature_id: str, batch_index: int, source_root: Path) -> RevertResult:
        """
        Return the source tree to its state before batch_index was applied.

        Args:
            feature_id: Feature ID
            batch_index: Oldest batch to undo (0 undoes everything)
            source_root: Live source tree

        Returns:
            RevertResult

        Raises:
            RevertError: If batch_index is not in the history
            LockAcquisitionError: If the feature is busy
        """
        return self._revert_locked(feature_id, Path(source_root), lambda length: batch_index)

    def revert_steps(self, feature_id: str, source_root: Path, steps: int = 1) -> RevertResult:
        """
        Undo the last `steps` batches (clamped to the history length).

        The target is computed after any interrupted revert has been
        replayed, against the history as it stands under the lock.

        Raises:
            RevertError: If there is nothing to revert or steps < 1
        """
        if steps < 1:
            raise RevertError(f"steps must be >= 1 (got {steps})")

        return self._revert_locked(
            feature_id,
            Path(source_root),
            lambda length: length - min(steps, length)
        )

    def _revert_locked(
        self,
        feature_id: str,
        source_root: Path,
        pick_target: Callable[[int], int]
    ) -> RevertResult:
        with self.lock_manager.lock_feature(feature_id, f"revert_{uuid.uuid4().hex[:12]}"):
            self.recover_locked(feature_id, source_root)

            history_length = self.history.history_length(feature_id)
            if history_length == 0:
                raise RevertError(f"No applied batches to revert for feature {feature_id}")

            batch_index = pick_target(history_length)
            if batch_index < 0 or batch_index >= history_length:
                raise RevertError(
                    f"Batch {batch_index} out of range for feature {feature_id} "
                    f"(history has {history_length} entries)"
                )

            journal = RevertJournal(target_index=batch_index, history_length=history_length)
            atomic_write_json(self.config.journal_path(feature_id), journal.to_json_dict())

            return self._run_journal(feature_id, journal, source_root)

    def recover(self, feature_id: str, source_root: Path) -> Optional[RevertResult]:
        """Finish an interrupted revert, if any."""
        with self.lock_manager.lock_feature(feature_id, f"recover_{uuid.uuid4().hex[:12]}"):
            return self.recover_locked(feature_id, source_root)

    def recover_locked(self, feature_id: str, source_root: Path) -> Optional[RevertResult]:
        """recover() for callers that already hold the feature lock."""
        journal = self._read_journal(feature_id)
        if journal is None:
            return None

        logger.warning(
            f"Found interrupted revert for feature {feature_id} "
            f"(target batch {journal.target_index}), replaying"
        )
        return self._run_journal(feature_id, journal, Path(source_root))

    def has_pending_revert(self, feature_id: str) -> bool:
        return self.config.journal_path(feature_id).exists()

    def _run_journal(self, feature_id: str, journal: RevertJournal, source_root: Path) -> RevertResult:
        restored: List[str] = []

        for index in range(journal.history_length - 1, journal.target_index - 1, -1):
            restored.extend(self.snapshots.restore_snapshot(feature_id, index, source_root))

        # Entries past the recorded length were never part of this revert
        current_length = self.history.history_length(feature_id)
        remove_count = max(0, min(current_length, journal.history_length) - journal.target_index)
        self.history.remove_last_history_entries(feature_id, remove_count)

        if self.features is not None:
            self.features.update_feature(feature_id, status=FeatureStatus.REVERTED)

        remove_if_exists(self.config.journal_path(feature_id))

        reverted = journal.history_length - journal.target_index
        logger.info(
            f"Reverted {reverted} batch(es) for feature {feature_id} "
            f"to before batch {journal.target_index}"
        )

        return RevertResult(
            target_index=journal.target_index,
            reverted_batches=reverted,
            files=sorted(set(restored))
        )

    def _read_journal(self, feature_id: str) -> Optional[RevertJournal]:
        journal_path = self.config.journal_path(feature_id)
        if not journal_path.exists():
            return None

        try:
            return RevertJournal.model_validate_json(journal_path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            # A torn journal means the revert never started restoring
            logger.error(f"Discarding unreadable revert journal {journal_path}: {e}")
            remove_if_exists(journal_path)
            return None
