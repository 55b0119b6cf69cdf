"""
History Log - committed batches per feature

history.json is a JSON array of HistoryEntry records. It is only ever
rewritten whole, through a temp file + rename.
"""

from typing import List
import json
import logging

from pydantic import TypeAdapter, ValidationError

from .config import SelfModConfig
from .fs_utils import atomic_write_json
from .models import HistoryEntry

logger = logging.getLogger(__name__)

_HISTORY_ADAPTER = TypeAdapter(List[HistoryEntry])


class HistoryLog:
    """Append-only (except for revert truncation) batch history."""

    def __init__(self, config: SelfModConfig):
        self.config = config

    def read_history(self, feature_id: str) -> List[HistoryEntry]:
        """
        Read the persisted history.

        Missing or corrupt storage reads as an empty history.
        """
        history_path = self.config.history_path(feature_id)
        if not history_path.exists():
            return []

        try:
            raw = json.loads(history_path.read_text(encoding="utf-8"))
            return _HISTORY_ADAPTER.validate_python(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Treating unreadable history {history_path} as empty: {e}")
            return []

    def write_history(self, feature_id: str, history: List[HistoryEntry]):
        atomic_write_json(
            self.config.history_path(feature_id),
            [entry.to_json_dict() for entry in history]
        )

    def append_entry(self, feature_id: str, entry: HistoryEntry) -> List[HistoryEntry]:
        history = self.read_history(feature_id)
        history.append(entry)
        self.write_history(feature_id, history)
        return history

    def remove_last_history_entries(self, feature_id: str, count: int) -> List[HistoryEntry]:
        """
        Drop the newest `count` entries (used after a revert).

        Returns:
            The remaining history
        """
        history = self.read_history(feature_id)
        next_length = max(0, len(history) - max(0, count))
        next_history = history[:next_length]
        self.write_history(feature_id, next_history)

        logger.info(
            f"Truncated history for feature {feature_id}: "
            f"{len(history)} -> {len(next_history)} entries"
        )
        return next_history

    def get_history(self, feature_id: str) -> List[HistoryEntry]:
        return self.read_history(feature_id)

    def history_length(self, feature_id: str) -> int:
        return len(self.read_history(feature_id))
