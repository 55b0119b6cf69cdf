"""
Self-mod data models.

Persisted and returned records are pydantic models (camelCase aliases match
the on-disk JSON). Per-attempt apply state is kept in plain dataclasses.
"""

from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
import time

from pydantic import BaseModel, ConfigDict, Field


NO_STAGED_FILES_MESSAGE = "No staged files to apply"


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


class FeatureStatus(str, Enum):
    """Feature lifecycle status (single field, owned by FeatureRegistry)."""
    ACTIVE = "active"
    APPLIED = "applied"
    REVERTED = "reverted"


class ApplyState(Enum):
    """Apply attempt state."""
    STAGED = "staged"
    SNAPSHOTTING = "snapshotting"
    WRITING = "writing"
    BACKING_UP = "backing_up"
    PROMOTING = "promoting"
    CLEANING = "cleaning"
    APPLIED = "applied"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"


class _AliasedModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class HistoryEntry(_AliasedModel):
    """One committed batch, as stored in history.json."""
    batch_index: int = Field(alias="batchIndex")
    files: List[str]
    message: Optional[str] = None
    applied_at: int = Field(default_factory=now_ms, alias="appliedAt")


class BatchResult(_AliasedModel):
    """Return value of ApplyEngine.apply_batch."""
    batch_index: int = Field(alias="batchIndex")
    files: List[str] = Field(default_factory=list)
    message: Optional[str] = None

    @classmethod
    def noop(cls) -> "BatchResult":
        return cls(batch_index=-1, files=[], message=NO_STAGED_FILES_MESSAGE)

    @property
    def is_noop(self) -> bool:
        return self.batch_index == -1


class SnapshotEntry(_AliasedModel):
    """A revert point on disk."""
    batch_index: int = Field(alias="batchIndex")
    files: List[str] = Field(default_factory=list)
    new_files: List[str] = Field(default_factory=list, alias="newFiles")
    created_at: int = Field(alias="createdAt")


class RevertResult(_AliasedModel):
    """Return value of RevertCoordinator operations."""
    target_index: int = Field(alias="targetIndex")
    reverted_batches: int = Field(alias="revertedBatches")
    files: List[str] = Field(default_factory=list)


class RevertJournal(_AliasedModel):
    """In-flight revert record (revert.json)."""
    target_index: int = Field(alias="targetIndex")
    history_length: int = Field(alias="historyLength")
    started_at: int = Field(default_factory=now_ms, alias="startedAt")


class FeatureMeta(_AliasedModel):
    """Feature metadata (meta.json)."""
    id: str
    name: str
    description: str = ""
    conversation_id: str = Field(default="", alias="conversationId")
    status: FeatureStatus = FeatureStatus.ACTIVE
    created_at: int = Field(default_factory=now_ms, alias="createdAt")
    updated_at: int = Field(default_factory=now_ms, alias="updatedAt")


class HistorySummary(_AliasedModel):
    batch_index: int = Field(alias="batchIndex")
    files: int
    message: Optional[str] = None
    applied_at: str = Field(alias="appliedAt")


class FeatureStatusReport(_AliasedModel):
    """Staging/history overview for one feature."""
    feature: Optional[FeatureMeta] = None
    staged_files: List[str] = Field(default_factory=list, alias="stagedFiles")
    applied_batches: int = Field(default=0, alias="appliedBatches")
    history: List[HistorySummary] = Field(default_factory=list)
    revert_points: int = Field(default=0, alias="revertPoints")


@dataclass
class FileOperation:
    """Rollback ledger for one file within one apply attempt."""
    relative_path: str
    source_path: str
    temp_path: str
    backup_path: str
    had_source: bool = False
    backup_created: bool = False
    installed: bool = False
    created_dirs: List[str] = field(default_factory=list)


@dataclass
class ApplyAttempt:
    """Context for one apply_batch call."""
    apply_id: str
    feature_id: str
    batch_index: int
    state: ApplyState = ApplyState.STAGED
    files: List[str] = field(default_factory=list)
    operations: List[FileOperation] = field(default_factory=list)
    error_message: Optional[str] = None
    rollback_issues: List[str] = field(default_factory=list)
    status_history: List[Dict] = field(default_factory=list)

    def update_state(self, new_state: ApplyState, message: str = ""):
        """Update attempt state and record it in history."""
        self.status_history.append({
            "state": new_state.value,
            "message": message,
            "timestamp": datetime.utcnow().isoformat()
        })
        self.state = new_state
