"""
Snapshot Store - per-batch undo log

Before batch N touches the source tree, the current version of every file
in the batch is copied to <feature>/snapshots/<N>/<relativePath>. Files
that do not exist yet get an empty "<relativePath>.__new__" sentinel so
that a restore deletes them instead.

The snapshot is assembled in a hidden partial directory and renamed into
place, so snapshots/<N> is either complete or absent.
"""

from pathlib import Path
from typing import List
import os
import shutil
import uuid
import logging

from .config import SelfModConfig, NEW_FILE_SENTINEL
from .errors import SnapshotFailure
from .fs_utils import atomic_write_bytes, remove_if_exists
from .models import SnapshotEntry
from .path_utils import resolve_under, relative_posix

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Creates, restores and lists batch snapshots."""

    def __init__(self, config: SelfModConfig):
        self.config = config

    def snapshot_dir(self, feature_id: str, batch_index: int) -> Path:
        return self.config.snapshots_dir(feature_id) / str(batch_index)

    def has_snapshot(self, feature_id: str, batch_index: int) -> bool:
        return self.snapshot_dir(feature_id, batch_index).is_dir()

    def take_snapshot(
        self,
        feature_id: str,
        batch_index: int,
        files: List[str],
        source_root: Path
    ) -> Path:
        """
        Copy the pre-apply state of files into the snapshot for batch_index.

        Args:
            feature_id: Feature ID
            batch_index: Batch the snapshot belongs to
            files: Relative paths about to be written
            source_root: Live source tree

        Returns:
            Path to the snapshot directory

        Raises:
            SnapshotFailure: If any file cannot be captured
        """
        source_root = Path(source_root)
        snapshots_dir = self.config.snapshots_dir(feature_id)
        final_dir = self.snapshot_dir(feature_id, batch_index)
        partial_dir = snapshots_dir / f".{batch_index}.partial-{uuid.uuid4().hex[:8]}"

        try:
            partial_dir.mkdir(parents=True, exist_ok=False)

            for relative_path in files:
                source_path = resolve_under(source_root, relative_path)
                snapshot_path = resolve_under(partial_dir, relative_path)
                snapshot_path.parent.mkdir(parents=True, exist_ok=True)

                if source_path.is_file():
                    shutil.copyfile(source_path, snapshot_path)
                elif source_path.exists():
                    raise SnapshotFailure(
                        f"Cannot snapshot {relative_path}: not a regular file",
                        feature_id, batch_index
                    )
                else:
                    # File doesn't exist yet (new file) - store a sentinel
                    Path(f"{snapshot_path}{NEW_FILE_SENTINEL}").write_bytes(b"")

            # Replace a stale snapshot left behind by an earlier revert
            if final_dir.exists():
                logger.info(f"Replacing stale snapshot {final_dir}")
                shutil.rmtree(final_dir)

            os.replace(partial_dir, final_dir)

        except SnapshotFailure:
            self._discard(partial_dir)
            raise
        except (OSError, ValueError) as e:
            self._discard(partial_dir)
            raise SnapshotFailure(
                f"Snapshot failed for feature {feature_id} batch {batch_index}: {e}",
                feature_id, batch_index
            ) from e

        logger.info(f"Snapshot taken for feature {feature_id} batch {batch_index} ({len(files)} files)")
        return final_dir

    def restore_snapshot(self, feature_id: str, batch_index: int, source_root: Path) -> List[str]:
        """
        Restore a snapshot into the source tree.

        Sentinel entries delete the source file, regular entries overwrite
        it. Running this twice gives the same result as running it once.

        Args:
            feature_id: Feature ID
            batch_index: Batch to restore
            source_root: Live source tree

        Returns:
            Relative paths that were restored or removed (empty if no snapshot)
        """
        source_root = Path(source_root)
        snap_dir = self.snapshot_dir(feature_id, batch_index)
        if not snap_dir.is_dir():
            logger.warning(f"No snapshot for feature {feature_id} batch {batch_index}")
            return []

        restored = []
        for entry in self._walk(snap_dir):
            rel = relative_posix(entry, snap_dir)

            if rel.endswith(NEW_FILE_SENTINEL):
                rel = rel[:-len(NEW_FILE_SENTINEL)]
                source_path = resolve_under(source_root, rel)
                if remove_if_exists(source_path):
                    logger.debug(f"Removed {rel} (did not exist before batch {batch_index})")
            else:
                source_path = resolve_under(source_root, rel)
                atomic_write_bytes(source_path, entry.read_bytes())

            restored.append(rel)

        logger.info(f"Restored snapshot {batch_index} for feature {feature_id}: {len(restored)} files")
        return sorted(restored)

    def list_snapshots(self, feature_id: str) -> List[SnapshotEntry]:
        """Revert points on disk, ascending by batch index."""
        snapshots_dir = self.config.snapshots_dir(feature_id)
        if not snapshots_dir.is_dir():
            return []

        snapshots = []
        for entry in snapshots_dir.iterdir():
            if not entry.is_dir() or not entry.name.isdigit():
                continue

            files = []
            new_files = []
            for path in self._walk(entry):
                rel = relative_posix(path, entry)
                if rel.endswith(NEW_FILE_SENTINEL):
                    new_files.append(rel[:-len(NEW_FILE_SENTINEL)])
                else:
                    files.append(rel)

            snapshots.append(SnapshotEntry(
                batch_index=int(entry.name),
                files=sorted(files),
                new_files=sorted(new_files),
                created_at=int(entry.stat().st_mtime * 1000)
            ))

        return sorted(snapshots, key=lambda s: s.batch_index)

    def _walk(self, root: Path) -> List[Path]:
        paths = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for name in sorted(filenames):
                paths.append(Path(dirpath) / name)
        return paths

    def _discard(self, partial_dir: Path):
        try:
            shutil.rmtree(partial_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to clean up partial snapshot {partial_dir}: {e}")
