"""
Path Utilities - Relative path handling for staged files

Staged files, snapshots and history entries all carry paths relative to a
root (source tree, staging dir, snapshot dir). Every such path is
canonicalized here before it is joined onto a root:
- Separators normalized to "/"
- Absolute paths and UNC paths denied
- ".." is resolved and the result must stay under the root
"""

from pathlib import Path, PurePosixPath
from dataclasses import dataclass
from enum import Enum
from typing import Optional
import os

from .errors import UnsafePathError


class PathViolation(Enum):
    """Path boundary violation reasons."""
    EMPTY_PATH = "empty_path"
    ABSOLUTE_PATH_DENIED = "absolute_path_denied"
    UNC_PATH_DENIED = "unc_path_denied"
    OUTSIDE_ROOT = "outside_root"


@dataclass
class CanonicalPathResult:
    """Result of path canonicalization."""
    rel_path: str  # Normalized posix-style relative path
    abs_path: Path  # Absolute path under root
    violation: Optional[PathViolation] = None


def normalize_relative(path: str) -> str:
    """Normalize separators and drop "." segments."""
    text = str(path).replace("\\", "/")
    parts = [p for p in text.split("/") if p not in ("", ".")]
    return "/".join(parts)


def canonicalize_relative(path: str, root: Path) -> CanonicalPathResult:
    """
    Canonicalize a relative path against root.

    Args:
        path: Relative path (any separator style)
        root: Directory the path is relative to

    Returns:
        CanonicalPathResult, violation set if the path is unusable
    """
    raw = str(path)
    root_abs = Path(os.path.abspath(root))

    if raw.startswith("\\\\") or raw.startswith("//"):
        return CanonicalPathResult(raw, root_abs, PathViolation.UNC_PATH_DENIED)

    if PurePosixPath(raw.replace("\\", "/")).is_absolute() or Path(raw).is_absolute():
        return CanonicalPathResult(raw, root_abs, PathViolation.ABSOLUTE_PATH_DENIED)

    rel = normalize_relative(raw)
    if not rel:
        return CanonicalPathResult(rel, root_abs, PathViolation.EMPTY_PATH)

    # Resolve ".." lexically; symlinks inside the tree are left alone
    abs_path = Path(os.path.normpath(root_abs / rel))
    try:
        resolved_rel = abs_path.relative_to(root_abs)
    except ValueError:
        return CanonicalPathResult(rel, abs_path, PathViolation.OUTSIDE_ROOT)

    if str(resolved_rel) in ("", "."):
        return CanonicalPathResult(rel, abs_path, PathViolation.EMPTY_PATH)

    return CanonicalPathResult(resolved_rel.as_posix(), abs_path)


def resolve_under(root: Path, path: str) -> Path:
    """
    Join a relative path onto root, refusing anything that escapes it.

    Raises:
        UnsafePathError: If the path is absolute, empty or outside root
    """
    result = canonicalize_relative(path, root)
    if result.violation:
        raise UnsafePathError(f"{result.violation.value}: {path}")
    return result.abs_path


def relative_posix(path: Path, root: Path) -> str:
    """Path of `path` relative to `root`, posix separators."""
    return Path(os.path.relpath(path, root)).as_posix()
