"""
Self-mod configuration and persisted layout.

Layout under mods_root:
    staging/<feature>/...                     staged content
    incoming/                                 in-flight staging writes
    features/<feature>/meta.json              feature metadata
    features/<feature>/history.json           applied batches
    features/<feature>/revert.json            in-flight revert journal
    features/<feature>/feature.lock           per-feature lease
    features/<feature>/snapshots/<N>/...      undo log for batch N
    active.json                               conversation -> feature map

Config can be loaded from a YAML file; SELFMOD_HOME overrides mods_root.
"""

from pathlib import Path
from typing import Optional
import os
import logging

import yaml
from pydantic import BaseModel, Field

from .errors import UnsafePathError

logger = logging.getLogger(__name__)

SELFMOD_HOME_ENV = "SELFMOD_HOME"
DEFAULT_MODS_ROOT = Path.home() / ".selfmod" / "mods"

HISTORY_FILE = "history.json"
META_FILE = "meta.json"
REVERT_JOURNAL_FILE = "revert.json"
LOCK_FILE = "feature.lock"
ACTIVE_FILE = "active.json"
SNAPSHOTS_DIR = "snapshots"
NEW_FILE_SENTINEL = ".__new__"
TEMP_MARKER = ".tmp."
BACKUP_MARKER = ".bak."


class SelfModConfig(BaseModel):
    """Runtime settings for the self-mod stores and engine."""
    mods_root: Path = Field(default_factory=lambda: _default_mods_root())
    max_workers: int = Field(default=8, ge=1)
    lock_timeout_seconds: float = Field(default=30.0, ge=0)
    lock_poll_seconds: float = Field(default=0.1, gt=0)
    stale_lock_seconds: float = Field(default=3600.0, ge=0)
    use_locking: bool = True

    @property
    def staging_root(self) -> Path:
        return self.mods_root / "staging"

    @property
    def staging_temp_dir(self) -> Path:
        return self.mods_root / "incoming"

    @property
    def features_root(self) -> Path:
        return self.mods_root / "features"

    @property
    def active_file(self) -> Path:
        return self.mods_root / ACTIVE_FILE

    def feature_dir(self, feature_id: str) -> Path:
        return self.features_root / check_feature_id(feature_id)

    def history_path(self, feature_id: str) -> Path:
        return self.feature_dir(feature_id) / HISTORY_FILE

    def meta_path(self, feature_id: str) -> Path:
        return self.feature_dir(feature_id) / META_FILE

    def journal_path(self, feature_id: str) -> Path:
        return self.feature_dir(feature_id) / REVERT_JOURNAL_FILE

    def lock_path(self, feature_id: str) -> Path:
        return self.feature_dir(feature_id) / LOCK_FILE

    def snapshots_dir(self, feature_id: str) -> Path:
        return self.feature_dir(feature_id) / SNAPSHOTS_DIR

    def staging_dir(self, feature_id: str) -> Path:
        return self.staging_root / check_feature_id(feature_id)


def check_feature_id(feature_id: str) -> str:
    """
    Validate a feature id before it becomes a directory name.

    Raises:
        UnsafePathError: If the id is empty, "." or "..", or contains a separator
    """
    if not feature_id or feature_id in (".", ".."):
        raise UnsafePathError(f"Invalid feature id: {feature_id!r}")
    if "/" in feature_id or "\\" in feature_id or os.path.isabs(feature_id):
        raise UnsafePathError(f"Feature id must be a single path segment: {feature_id!r}")
    return feature_id


def _default_mods_root() -> Path:
    override = os.environ.get(SELFMOD_HOME_ENV)
    if override:
        return Path(override).expanduser()
    return DEFAULT_MODS_ROOT


def load_config(config_path: Optional[Path] = None, **overrides) -> SelfModConfig:
    """
    Load config from a YAML file.

    Args:
        config_path: YAML file with SelfModConfig keys (optional)
        **overrides: Values that win over the file

    Returns:
        SelfModConfig

    Raises:
        FileNotFoundError: If config_path is given but missing
        ValueError: If the YAML document is not a mapping
    """
    data = {}

    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config not found: {config_path}")

        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config must be a mapping: {config_path}")
        data.update(loaded)
        logger.debug(f"Loaded self-mod config from {config_path}")

    # Environment beats the file, explicit overrides beat both
    env_root = os.environ.get(SELFMOD_HOME_ENV)
    if env_root:
        data["mods_root"] = env_root

    data.update(overrides)

    if "mods_root" in data:
        data["mods_root"] = Path(data["mods_root"]).expanduser()

    return SelfModConfig(**data)
