"""
Small filesystem helpers shared by the stores.

Writes go through a temp file in the target directory followed by
os.replace, so readers see either the old or the new content.
"""

from pathlib import Path
from typing import Optional, Union
import json
import os
import tempfile
import logging

logger = logging.getLogger(__name__)


def atomic_write_bytes(target: Path, data: bytes, temp_dir: Optional[Path] = None):
    """
    Write bytes to target atomically (temp file + rename).

    Args:
        target: Destination path (parent directories are created)
        data: Content to write
        temp_dir: Where to create the temp file (defaults to the target's
            directory; must be on the same filesystem)

    Raises:
        OSError: If writing or renaming fails
    """
    target = Path(target)
    target.parent.mkdir(parents=True, exist_ok=True)

    if temp_dir is None:
        temp_dir = target.parent
    else:
        Path(temp_dir).mkdir(parents=True, exist_ok=True)

    temp_fd, temp_path = tempfile.mkstemp(dir=temp_dir, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with open(temp_fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

        os.replace(temp_path, target)

    except BaseException:
        # Clean up temp file on failure
        try:
            Path(temp_path).unlink(missing_ok=True)
        except OSError as cleanup_error:
            logger.warning(f"Failed to remove temp file {temp_path}: {cleanup_error}")
        raise


def atomic_write_text(target: Path, text: str):
    atomic_write_bytes(target, text.encode("utf-8"))


def atomic_write_json(target: Path, payload: Union[dict, list]):
    atomic_write_text(target, json.dumps(payload, indent=2, ensure_ascii=False))


def to_bytes(content: Union[str, bytes]) -> bytes:
    if isinstance(content, bytes):
        return content
    return content.encode("utf-8")


def remove_if_exists(path: Union[str, Path]) -> bool:
    """
    Remove a file if present.

    Returns:
        True if a file was removed, False if it was already gone

    Raises:
        OSError: For failures other than "not found"
    """
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
