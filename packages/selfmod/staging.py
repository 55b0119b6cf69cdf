"""
Staging Store - proposed file content waiting to be applied

The apply engine only needs three calls from a staging store:
list_staged_files, read_staged and clear_staging (on success).
FileStagingStore keeps staged files under
<mods_root>/staging/<feature>/<relativePath>. Writes go through a temp
file in <mods_root>/incoming, so nothing but staged content ever
appears under a feature's staging directory.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Union
import os
import shutil
import logging

from .config import SelfModConfig, NEW_FILE_SENTINEL
from .errors import UnsafePathError
from .fs_utils import atomic_write_bytes, to_bytes
from .path_utils import resolve_under, relative_posix

logger = logging.getLogger(__name__)


class StagingStore(ABC):
    """Interface consumed by ApplyEngine."""

    @abstractmethod
    def list_staged_files(self, feature_id: str) -> List[str]:
        """Relative paths staged for the feature, in apply order."""
        ...

    @abstractmethod
    def read_staged(self, feature_id: str, relative_path: str) -> Optional[bytes]:
        """Staged content, or None if nothing is staged at that path."""
        ...

    @abstractmethod
    def clear_staging(self, feature_id: str):
        """Drop everything staged for the feature."""
        ...


class FileStagingStore(StagingStore):
    """Staging area on the local filesystem."""

    def __init__(self, config: SelfModConfig):
        self.config = config

    def stage_file(self, feature_id: str, relative_path: str, content: Union[str, bytes]) -> str:
        """
        Stage content for a relative path.

        Returns:
            The normalized relative path that was staged

        Raises:
            UnsafePathError: If the path escapes the feature directory or
                ends with the snapshot sentinel suffix
        """
        feature_dir = self.config.staging_dir(feature_id)
        staged_path = resolve_under(feature_dir, relative_path)
        rel = relative_posix(staged_path, feature_dir)
        if rel.endswith(NEW_FILE_SENTINEL):
            raise UnsafePathError(f"Reserved suffix {NEW_FILE_SENTINEL}: {rel}")

        atomic_write_bytes(staged_path, to_bytes(content), temp_dir=self.config.staging_temp_dir)
        logger.debug(f"Staged {rel} for feature {feature_id}")
        return rel

    def list_staged_files(self, feature_id: str) -> List[str]:
        feature_dir = self.config.staging_dir(feature_id)
        if not feature_dir.is_dir():
            return []

        files = []
        for dirpath, dirnames, filenames in os.walk(feature_dir):
            for name in filenames:
                files.append(relative_posix(Path(dirpath) / name, feature_dir))

        return sorted(files)

    def read_staged(self, feature_id: str, relative_path: str) -> Optional[bytes]:
        staged_path = resolve_under(self.config.staging_dir(feature_id), relative_path)
        try:
            return staged_path.read_bytes()
        except FileNotFoundError:
            return None

    def clear_staging(self, feature_id: str):
        feature_dir = self.config.staging_dir(feature_id)
        if feature_dir.exists():
            shutil.rmtree(feature_dir)
            logger.info(f"Cleared staging for feature {feature_id}")
