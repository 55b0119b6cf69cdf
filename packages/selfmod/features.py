"""
Feature Registry - feature metadata and active-feature tracking

Metadata lives at <mods_root>/features/<id>/meta.json.
Active feature per conversation lives at <mods_root>/active.json.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import json
import logging

from pydantic import ValidationError

from .config import SelfModConfig
from .fs_utils import atomic_write_json
from .models import FeatureMeta, FeatureStatus, now_ms

logger = logging.getLogger(__name__)


class FeatureRegistry(ABC):
    """Interface consumed by ApplyEngine and RevertCoordinator."""

    @abstractmethod
    def get_feature(self, feature_id: str) -> Optional[FeatureMeta]:
        ...

    @abstractmethod
    def update_feature(self, feature_id: str, **updates) -> Optional[FeatureMeta]:
        ...


class FileFeatureRegistry(FeatureRegistry):
    """Feature metadata stored as JSON files."""

    def __init__(self, config: SelfModConfig):
        self.config = config

    def create_feature(
        self,
        feature_id: str,
        name: str,
        description: str = "",
        conversation_id: str = ""
    ) -> FeatureMeta:
        """
        Create a feature with empty history.

        Args:
            feature_id: Feature identifier (directory name)
            name: Display name
            description: Free text
            conversation_id: Owning conversation

        Returns:
            FeatureMeta
        """
        meta = FeatureMeta(
            id=feature_id,
            name=name,
            description=description,
            conversation_id=conversation_id,
            status=FeatureStatus.ACTIVE
        )

        atomic_write_json(self.config.meta_path(feature_id), meta.to_json_dict())

        history_path = self.config.history_path(feature_id)
        if not history_path.exists():
            atomic_write_json(history_path, [])

        logger.info(f"Created feature {feature_id} ({name})")
        return meta

    def get_feature(self, feature_id: str) -> Optional[FeatureMeta]:
        meta_path = self.config.meta_path(feature_id)
        if not meta_path.exists():
            return None

        try:
            return FeatureMeta.model_validate_json(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning(f"Unreadable feature metadata {meta_path}: {e}")
            return None

    def update_feature(self, feature_id: str, **updates) -> Optional[FeatureMeta]:
        """
        Merge updates into feature metadata.

        Unknown features are left alone (returns None).
        """
        meta = self.get_feature(feature_id)
        if meta is None:
            logger.debug(f"update_feature: unknown feature {feature_id}, skipping")
            return None

        data = meta.model_dump()
        data.update(updates)
        data["updated_at"] = now_ms()
        updated = FeatureMeta.model_validate(data)

        atomic_write_json(self.config.meta_path(feature_id), updated.to_json_dict())
        return updated

    def list_features(self) -> List[FeatureMeta]:
        """All features, most recently updated first."""
        root = self.config.features_root
        if not root.is_dir():
            return []

        features = []
        for entry in root.iterdir():
            if not entry.is_dir():
                continue
            meta = self.get_feature(entry.name)
            if meta:
                features.append(meta)

        return sorted(features, key=lambda m: m.updated_at, reverse=True)

    def get_active_feature(self, conversation_id: str) -> Optional[str]:
        return self._read_active_map().get(conversation_id)

    def set_active_feature(self, conversation_id: str, feature_id: str):
        active_map = self._read_active_map()
        active_map[conversation_id] = feature_id
        atomic_write_json(self.config.active_file, active_map)

    def _read_active_map(self) -> Dict[str, str]:
        active_file = self.config.active_file
        if not active_file.exists():
            return {}

        try:
            data = json.loads(active_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable active feature map {active_file}: {e}")
            return {}

        return data if isinstance(data, dict) else {}
