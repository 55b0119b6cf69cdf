"""
Apply Engine - staged files -> live source tree, all or nothing

Flow:
    1. List staged files (nothing staged -> no-op result)
    2. Snapshot current source versions (undo log, must complete first)
    3. Write staged content to <source>.tmp.<applyId>
    4. Move existing sources aside to <source>.bak.<applyId>
    5. Promote temp files onto the source paths
    6. Remove backups (best effort)
    7. Clear staging, append history, mark feature applied

Any failure in steps 3-5 rolls every file back to its pre-attempt state.
Staging and history only change after a fully successful apply.
"""

from concurrent.futures import ThreadPoolExecutor, FIRST_EXCEPTION, wait
from pathlib import Path
from typing import Callable, Dict, List, Optional
import os
import threading
import uuid
import logging

from .config import SelfModConfig, TEMP_MARKER, BACKUP_MARKER
from .errors import MissingStagedContent, MutationFailure
from .feature_lock import LockManager
from .features import FeatureRegistry
from .fs_utils import remove_if_exists, to_bytes
from .history import HistoryLog
from .models import (
    ApplyAttempt,
    ApplyState,
    BatchResult,
    FeatureStatus,
    FileOperation,
    HistoryEntry
)
from .path_utils import resolve_under
from .snapshots import SnapshotStore
from .staging import StagingStore

logger = logging.getLogger(__name__)


def generate_apply_id() -> str:
    """Random token shared by all temp/backup files of one attempt."""
    return uuid.uuid4().hex[:12]


def _missing_parents(path: str) -> List[str]:
    """Ancestor directories of path that do not exist yet."""
    missing = []
    parent = os.path.dirname(path)
    while parent and not os.path.exists(parent):
        missing.append(parent)
        next_parent = os.path.dirname(parent)
        if next_parent == parent:
            break
        parent = next_parent
    return missing


class ApplyEngine:
    """
    Applies a feature's staged files as one transaction.

    Coordinates:
    - StagingStore: what to apply
    - SnapshotStore: undo log for later reverts
    - HistoryLog: record of committed batches
    - FeatureRegistry: status field
    """

    def __init__(
        self,
        config: SelfModConfig,
        staging: StagingStore,
        snapshots: SnapshotStore,
        history: HistoryLog,
        features: Optional[FeatureRegistry] = None,
        lock_manager: Optional[LockManager] = None,
        recover: Optional[Callable[[str, Path], object]] = None,
        hooks: Optional[Dict[str, Callable]] = None
    ):
        """
        Initialize apply engine.

        Args:
            config: Self-mod config (worker count, locking)
            staging: Staging store to read from and clear on success
            snapshots: Snapshot store for the undo log
            history: History log to append to
            features: Feature registry for status updates (optional)
            lock_manager: Per-feature lock provider (default: from config)
            recover: Called under the lock before applying, to finish an
                interrupted revert (RevertCoordinator.recover_locked)
            hooks: Optional test hooks (before_write, before_backup,
                before_promote, after_apply)
        """
        self.config = config
        self.staging = staging
        self.snapshots = snapshots
        self.history = history
        self.features = features
        self.lock_manager = lock_manager or LockManager(config)
        self.recover = recover
        self.hooks = hooks or {}

    def apply_batch(self, feature_id: str, source_root: Path, message: Optional[str] = None) -> BatchResult:
        """
        Apply all staged files of a feature to source_root.

        Args:
            feature_id: Feature whose staging area is applied
            source_root: Live source tree
            message: Optional description stored in history

        Returns:
            BatchResult (batch_index -1 if nothing was staged)

        Raises:
            SnapshotFailure: Undo log could not be written (tree untouched)
            MissingStagedContent: A staged file vanished (tree rolled back)
            MutationFailure: A write/rename failed (tree rolled back)
            LockAcquisitionError: Another apply/revert holds the feature
        """
        source_root = Path(source_root)

        if not self.staging.list_staged_files(feature_id):
            return BatchResult.noop()

        apply_id = generate_apply_id()
        with self.lock_manager.lock_feature(feature_id, f"apply_{apply_id}"):
            if self.recover is not None:
                self.recover(feature_id, source_root)

            # Re-list under the lock, a concurrent apply may have consumed it
            staged_files = self.staging.list_staged_files(feature_id)
            if not staged_files:
                return BatchResult.noop()

            return self._apply_locked(apply_id, feature_id, source_root, staged_files, message)

    def _apply_locked(
        self,
        apply_id: str,
        feature_id: str,
        source_root: Path,
        staged_files: List[str],
        message: Optional[str]
    ) -> BatchResult:
        batch_index = self.history.history_length(feature_id)
        attempt = ApplyAttempt(
            apply_id=apply_id,
            feature_id=feature_id,
            batch_index=batch_index,
            files=list(staged_files)
        )

        attempt.update_state(ApplyState.SNAPSHOTTING, f"Snapshotting {len(staged_files)} files")
        try:
            self.snapshots.take_snapshot(feature_id, batch_index, staged_files, source_root)
        except Exception as e:
            attempt.error_message = str(e)
            attempt.update_state(ApplyState.FAILED, f"Snapshot failed: {e}")
            logger.error(f"Apply {apply_id} for feature {feature_id} aborted before mutation: {e}")
            raise

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
            try:
                attempt.update_state(ApplyState.WRITING, "Writing temp files")
                self._write_phase(pool, attempt, source_root)

                attempt.update_state(ApplyState.BACKING_UP, "Moving originals aside")
                self._run_phase(pool, [op for op in attempt.operations if op.had_source], self._backup)

                attempt.update_state(ApplyState.PROMOTING, "Promoting temp files")
                self._run_phase(pool, attempt.operations, self._promote)

            except Exception as e:
                attempt.update_state(ApplyState.ROLLING_BACK, f"Rolling back: {e}")
                rollback_issues = self._rollback(pool, attempt)
                attempt.rollback_issues = rollback_issues
                attempt.error_message = str(e)
                attempt.update_state(ApplyState.FAILED, f"Apply failed: {e}")
                raise self._failure(e, rollback_issues) from e

            attempt.update_state(ApplyState.CLEANING, "Removing backups")
            self._cleanup_backups(pool, attempt)

        self.staging.clear_staging(feature_id)
        self.history.append_entry(feature_id, HistoryEntry(
            batch_index=batch_index,
            files=list(staged_files),
            message=message
        ))
        if self.features is not None:
            self.features.update_feature(feature_id, status=FeatureStatus.APPLIED)

        attempt.update_state(ApplyState.APPLIED, f"Applied {len(staged_files)} files")
        logger.info(f"Applied batch {batch_index} for feature {feature_id} ({len(staged_files)} files)")

        if "after_apply" in self.hooks:
            self.hooks["after_apply"](attempt)

        return BatchResult(batch_index=batch_index, files=list(staged_files), message=message)

    # ==================== Phases ====================

    def _write_phase(self, pool: ThreadPoolExecutor, attempt: ApplyAttempt, source_root: Path):
        """
        Phase 1: one temp file per staged file.

        Operations are recorded before their write is submitted so that
        rollback always knows about every temp path that may exist. After
        the first failed write no further writes start.
        """
        failed = threading.Event()

        def write(op: FileOperation):
            if failed.is_set():
                return
            try:
                self._write_temp(attempt.feature_id, op)
            except BaseException:
                failed.set()
                raise

        futures = []
        for relative_path in attempt.files:
            if failed.is_set():
                break
            source_path = resolve_under(source_root, relative_path)
            op = FileOperation(
                relative_path=relative_path,
                source_path=str(source_path),
                temp_path=f"{source_path}{TEMP_MARKER}{attempt.apply_id}",
                backup_path=f"{source_path}{BACKUP_MARKER}{attempt.apply_id}"
            )
            attempt.operations.append(op)
            futures.append(pool.submit(write, op))

        done, not_done = wait(futures, return_when=FIRST_EXCEPTION)
        for future in not_done:
            future.cancel()
        wait(futures)

        for future in futures:
            if not future.cancelled() and future.exception() is not None:
                raise future.exception()

    def _run_phase(self, pool: ThreadPoolExecutor, operations: List[FileOperation], action: Callable):
        """Run action for every operation, wait for all, raise the first error."""
        futures = [pool.submit(action, op) for op in operations]
        wait(futures)

        for future in futures:
            if future.exception() is not None:
                raise future.exception()

    def _write_temp(self, feature_id: str, op: FileOperation):
        content = self.staging.read_staged(feature_id, op.relative_path)
        if content is None:
            raise MissingStagedContent(f"Missing staged content for {op.relative_path}")

        if "before_write" in self.hooks:
            self.hooks["before_write"](op)

        op.had_source = os.path.exists(op.source_path)
        op.created_dirs = _missing_parents(op.source_path)
        os.makedirs(os.path.dirname(op.source_path), exist_ok=True)
        with open(op.temp_path, "wb") as f:
            f.write(to_bytes(content))

    def _backup(self, op: FileOperation):
        """Phase 2: move the original aside."""
        if "before_backup" in self.hooks:
            self.hooks["before_backup"](op)

        os.replace(op.source_path, op.backup_path)
        op.backup_created = True

    def _promote(self, op: FileOperation):
        """Phase 3: temp file becomes the source file."""
        if "before_promote" in self.hooks:
            self.hooks["before_promote"](op)

        os.makedirs(os.path.dirname(op.source_path), exist_ok=True)
        os.replace(op.temp_path, op.source_path)
        op.installed = True

    def _cleanup_backups(self, pool: ThreadPoolExecutor, attempt: ApplyAttempt):
        """Remove backups after success; failures are only logged."""
        backups = [op for op in attempt.operations if op.backup_created]
        futures = {pool.submit(remove_if_exists, op.backup_path): op for op in backups}
        wait(futures)

        for future, op in futures.items():
            if future.exception() is not None:
                logger.warning(
                    f"Apply {attempt.apply_id}: could not remove backup {op.backup_path}: "
                    f"{future.exception()}"
                )

    # ==================== Rollback ====================

    def _rollback(self, pool: ThreadPoolExecutor, attempt: ApplyAttempt) -> List[str]:
        """
        Undo a partially applied batch.

        Returns:
            Human-readable rollback problems (empty if fully restored)
        """
        issues = []
        operations = list(reversed(attempt.operations))

        # Remove partial installs first
        for op in operations:
            if not op.installed:
                continue
            try:
                remove_if_exists(op.source_path)
                op.installed = False
            except OSError as e:
                issues.append(f"Failed removing partial {op.relative_path}: {e}")

        # Then put the originals back
        for op in operations:
            if not op.backup_created:
                continue
            try:
                os.makedirs(os.path.dirname(op.source_path), exist_ok=True)
                os.replace(op.backup_path, op.source_path)
                op.backup_created = False
            except OSError as e:
                issues.append(
                    f"Failed restoring backup {op.relative_path}: {e} "
                    f"(original kept at {op.backup_path})"
                )

        # Best-effort artifact cleanup; an unrestored backup is the only
        # copy of the original and stays on disk
        artifacts = [op.temp_path for op in operations]
        artifacts += [op.backup_path for op in operations if not op.backup_created]
        futures = {pool.submit(remove_if_exists, path): path for path in artifacts}
        wait(futures)
        for future, path in futures.items():
            if future.exception() is not None:
                logger.warning(f"Apply {attempt.apply_id}: could not remove {path}: {future.exception()}")

        # Directories created for new files, deepest first
        created_dirs = sorted({d for op in operations for d in op.created_dirs}, key=len, reverse=True)
        for directory in created_dirs:
            try:
                os.rmdir(directory)
            except OSError:
                logger.debug(f"Apply {attempt.apply_id}: left directory {directory} in place")

        for issue in issues:
            logger.error(f"Apply {attempt.apply_id} rollback issue: {issue}")
        if not issues:
            logger.info(f"Apply {attempt.apply_id} for feature {attempt.feature_id} rolled back")

        return issues

    def _failure(self, error: Exception, rollback_issues: List[str]) -> MutationFailure:
        message = f"Atomic apply failed: {error}"
        if rollback_issues:
            message += "\nRollback issues:\n- " + "\n- ".join(rollback_issues)

        error_cls = MissingStagedContent if isinstance(error, MissingStagedContent) else MutationFailure
        return error_cls(message, rollback_issues)
