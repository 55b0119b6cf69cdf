"""
SelfModService - one object wiring the stores, engine and coordinator.

Usage:
    service = SelfModService(load_config(), source_root)
    service.start_feature("dark-mode", "Dark mode", conversation_id="c1")
    service.stage_file("dark-mode", "theme.css", "...")
    service.apply("dark-mode", "Add dark theme")
    service.revert("dark-mode", steps=1)
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Callable, Optional, Union

from .apply import ApplyEngine
from .config import SelfModConfig
from .feature_lock import LockManager
from .features import FileFeatureRegistry
from .history import HistoryLog
from .models import BatchResult, FeatureMeta, FeatureStatusReport, HistorySummary, RevertResult
from .revert import RevertCoordinator
from .snapshots import SnapshotStore
from .staging import FileStagingStore


class SelfModService:
    """Facade used by the orchestration layer."""

    def __init__(
        self,
        config: SelfModConfig,
        source_root: Path,
        hooks: Optional[Dict[str, Callable]] = None
    ):
        self.config = config
        self.source_root = Path(source_root).resolve()

        self.staging = FileStagingStore(config)
        self.features = FileFeatureRegistry(config)
        self.snapshots = SnapshotStore(config)
        self.history = HistoryLog(config)
        self.lock_manager = LockManager(config)

        self.reverter = RevertCoordinator(
            config,
            self.snapshots,
            self.history,
            features=self.features,
            lock_manager=self.lock_manager
        )
        self.engine = ApplyEngine(
            config,
            self.staging,
            self.snapshots,
            self.history,
            features=self.features,
            lock_manager=self.lock_manager,
            recover=self.reverter.recover_locked,
            hooks=hooks
        )

    def start_feature(
        self,
        feature_id: str,
        name: str,
        description: str = "",
        conversation_id: str = ""
    ) -> FeatureMeta:
        """Create a feature and make it the conversation's active one."""
        meta = self.features.create_feature(feature_id, name, description, conversation_id)
        if conversation_id:
            self.features.set_active_feature(conversation_id, feature_id)
        return meta

    def stage_file(self, feature_id: str, relative_path: str, content: Union[str, bytes]) -> str:
        return self.staging.stage_file(feature_id, relative_path, content)

    def apply(self, feature_id: str, message: Optional[str] = None) -> BatchResult:
        return self.engine.apply_batch(feature_id, self.source_root, message)

    def revert(self, feature_id: str, steps: int = 1) -> RevertResult:
        return self.reverter.revert_steps(feature_id, self.source_root, steps)

    def revert_to(self, feature_id: str, batch_index: int) -> RevertResult:
        return self.reverter.revert_to_batch(feature_id, batch_index, self.source_root)

    def status(self, feature_id: str) -> FeatureStatusReport:
        """Staging, history and revert point overview for a feature."""
        history = self.history.get_history(feature_id)

        return FeatureStatusReport(
            feature=self.features.get_feature(feature_id),
            staged_files=self.staging.list_staged_files(feature_id),
            applied_batches=len(history),
            history=[
                HistorySummary(
                    batch_index=entry.batch_index,
                    files=len(entry.files),
                    message=entry.message,
                    applied_at=datetime.fromtimestamp(entry.applied_at / 1000, tz=timezone.utc).isoformat()
                )
                for entry in history
            ],
            revert_points=len(self.snapshots.list_snapshots(feature_id))
        )
