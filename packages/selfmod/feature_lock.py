"""
Feature Lock - one apply/revert at a time per feature

Two layers:
- In-process: a threading.Lock per feature id (threads in one process)
- On disk: features/<id>/feature.lock created with O_CREAT | O_EXCL
  (separate processes on the same machine)

The lock file records who holds it. A lock older than the stale threshold
whose owning process is gone is force-released.
"""

from pathlib import Path
from typing import Dict, Optional
from datetime import datetime, timedelta
import json
import os
import platform
import socket
import subprocess
import threading
import time
import uuid
import logging

from .config import SelfModConfig
from .errors import LockAcquisitionError

logger = logging.getLogger(__name__)

_process_locks: Dict[str, threading.Lock] = {}
_process_locks_guard = threading.Lock()


def _process_lock_for(key: str) -> threading.Lock:
    with _process_locks_guard:
        lock = _process_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _process_locks[key] = lock
        return lock


class FeatureLock:
    """Exclusive lease on one feature's apply/revert pipeline."""

    def __init__(self, config: SelfModConfig, feature_id: str):
        self.config = config
        self.feature_id = feature_id
        self.lock_file = config.lock_path(feature_id)
        self.timeout_seconds = config.lock_timeout_seconds
        self.poll_seconds = config.lock_poll_seconds
        self.stale_threshold_seconds = config.stale_lock_seconds

        self._thread_lock = _process_lock_for(str(Path(os.path.abspath(self.lock_file))))
        self._thread_lock_held = False
        self.lock_metadata: Optional[dict] = None

    def acquire(self, owner_id: str):
        """
        Acquire the feature lock, waiting up to timeout_seconds.

        Raises:
            LockAcquisitionError: If the lock is still held at the deadline
        """
        deadline = time.monotonic() + self.timeout_seconds

        if not self._thread_lock.acquire(timeout=max(self.timeout_seconds, 0)):
            raise LockAcquisitionError(
                f"Could not acquire lock for feature {self.feature_id} after "
                f"{self.timeout_seconds}s (held by another thread)"
            )
        self._thread_lock_held = True

        try:
            while True:
                if self._try_acquire(owner_id):
                    logger.info(f"Lock acquired for feature {self.feature_id} by {owner_id}")
                    return

                if self._is_stale() and self._force_release():
                    continue

                if time.monotonic() >= deadline:
                    lock_info = self._read_lock() or {}
                    raise LockAcquisitionError(
                        f"Could not acquire lock for feature {self.feature_id} after "
                        f"{self.timeout_seconds}s. Lock held by: {lock_info.get('owner_id', 'unknown')}"
                    )

                time.sleep(self.poll_seconds)

        except BaseException:
            self._release_thread_lock()
            raise

    def release(self) -> bool:
        """
        Release the lock if we hold it.

        Returns:
            True if the lock file was removed
        """
        try:
            if self.lock_metadata is None:
                return False

            lock_data = self._read_lock()
            if lock_data and lock_data.get("owner_id") != self.lock_metadata.get("owner_id"):
                logger.error(
                    f"Lock ownership mismatch for feature {self.feature_id}: "
                    f"expected {self.lock_metadata.get('owner_id')}, got {lock_data.get('owner_id')}"
                )
                return False

            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                logger.warning(f"Lock file for feature {self.feature_id} already gone on release")
                return False
            except OSError as e:
                logger.error(f"Failed to release lock for feature {self.feature_id}: {e}")
                return False

            logger.info(f"Lock released for feature {self.feature_id}")
            return True

        finally:
            self.lock_metadata = None
            self._release_thread_lock()

    def is_locked(self) -> bool:
        return self.lock_file.exists()

    def get_lock_info(self) -> Optional[dict]:
        return self._read_lock()

    def _release_thread_lock(self):
        if self._thread_lock_held:
            self._thread_lock_held = False
            self._thread_lock.release()

    def _try_acquire(self, owner_id: str) -> bool:
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)

        try:
            fd = os.open(str(self.lock_file), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False

        metadata = {
            "feature_id": self.feature_id,
            "owner_id": owner_id,
            "acquired_at": datetime.utcnow().isoformat(),
            "pid": os.getpid(),
            "hostname": socket.gethostname()
        }

        try:
            os.write(fd, json.dumps(metadata, indent=2).encode("utf-8"))
        finally:
            os.close(fd)

        self.lock_metadata = metadata
        return True

    def _read_lock(self) -> Optional[dict]:
        try:
            with open(self.lock_file, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read lock file {self.lock_file}: {e}")
            return None

    def _is_stale(self) -> bool:
        """
        Old enough AND owning process not confirmed alive.

        Unreadable lock files are never considered stale.
        """
        lock_data = self._read_lock()
        if not lock_data:
            return False

        try:
            acquired_at = datetime.fromisoformat(lock_data["acquired_at"])
        except (KeyError, TypeError, ValueError):
            return False

        age = datetime.utcnow() - acquired_at
        if age <= timedelta(seconds=self.stale_threshold_seconds):
            return False

        pid = lock_data.get("pid")
        if pid and lock_data.get("hostname") == socket.gethostname() and _is_process_alive(pid):
            logger.warning(
                f"Lock for feature {self.feature_id} is old ({age.total_seconds():.0f}s) "
                f"but process {pid} is still alive"
            )
            return False

        logger.warning(
            f"Lock for feature {self.feature_id} is stale: acquired {age.total_seconds():.0f}s ago, "
            f"process {pid} not running"
        )
        return True

    def _force_release(self) -> bool:
        try:
            self.lock_file.unlink()
            logger.warning(f"Force released stale lock for feature {self.feature_id}")
            return True
        except FileNotFoundError:
            return True
        except OSError as e:
            logger.error(f"Failed to force release lock for feature {self.feature_id}: {e}")
            return False


def _is_process_alive(pid: int) -> bool:
    """Best-effort liveness check; unknown counts as alive."""
    try:
        if platform.system() == "Windows":
            result = subprocess.run(
                ["tasklist", "/FI", f"PID eq {pid}"],
                capture_output=True,
                text=True,
                timeout=5
            )
            return str(pid) in result.stdout

        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"Could not check if PID {pid} is alive: {e}")
        return True


class FeatureLockContext:
    """Context manager for a feature lock."""

    def __init__(self, config: SelfModConfig, feature_id: str, owner_id: str):
        self.lock = FeatureLock(config, feature_id)
        self.owner_id = owner_id

    def __enter__(self):
        self.lock.acquire(self.owner_id)
        return self.lock

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.lock.release()
        return False


class _NullLockContext:
    def __enter__(self):
        return None

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False


class LockManager:
    """
    Hands out feature lock contexts.

    Usage:
        with lock_mgr.lock_feature(feature_id, owner_id):
            apply_batch()
    """

    def __init__(self, config: SelfModConfig):
        self.config = config

    def lock_feature(self, feature_id: str, owner_id: Optional[str] = None):
        if not self.config.use_locking:
            return _NullLockContext()
        return FeatureLockContext(self.config, feature_id, owner_id or f"owner_{uuid.uuid4().hex[:12]}")

    def is_locked(self, feature_id: str) -> bool:
        return FeatureLock(self.config, feature_id).is_locked()

    def get_lock_info(self, feature_id: str) -> Optional[dict]:
        return FeatureLock(self.config, feature_id).get_lock_info()
