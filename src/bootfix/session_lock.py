"""Per-volume session locking: at most one repair session per target volume.

Two layers:
- an in-process registry guarded by a ``threading.Lock`` (covers several
  engine instances or front ends in one process), and
- an OS-level file lock in ``settings.lock_dir`` (fcntl on Unix, msvcrt on
  Windows) covering other processes.

Acquisition never waits. If either layer is held, the request fails with
SessionInProgressError and the holder is left untouched.
"""

import logging
import os
import platform
import socket
import threading
from pathlib import Path
from typing import Dict, Optional

from .exceptions import SessionInProgressError
from .models import TargetVolume

logger = logging.getLogger(__name__)

_registry_guard = threading.Lock()
_active_sessions: Dict[str, str] = {}  # volume lock key -> session id


def active_session_for(volume_key: str) -> Optional[str]:
    """Session id currently holding ``volume_key`` in this process, if any."""
    with _registry_guard:
        return _active_sessions.get(volume_key)


class SessionLock:
    """Lock held by one session for one target volume."""

    def __init__(self, target: TargetVolume, session_id: str, lock_dir: Optional[Path] = None):
        """
        Args:
            target: Volume to lock
            session_id: Holder identity, recorded in the lock file
            lock_dir: Directory for lock files. Defaults to ``settings.lock_dir``
        """
        from .config import settings

        self.volume = target.drive_identifier
        self.key = target.lock_key
        self.session_id = session_id
        self.lock_dir = Path(lock_dir) if lock_dir is not None else settings.lock_path
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file_path = self.lock_dir / f"volume-{self.key}.lock"
        self._lock_fd: Optional[int] = None
        self.holder_id = f"{session_id} pid={os.getpid()}@{socket.gethostname()}"

    @property
    def held(self) -> bool:
        return self._lock_fd is not None

    def acquire(self) -> None:
        """Take both lock layers or neither.

        Raises:
            SessionInProgressError: Another session holds this volume.
        """
        with _registry_guard:
            holder = _active_sessions.get(self.key)
            if holder is not None:
                logger.warning(
                    f"[Lock] Volume {self.volume} already held by session {holder} (in-process)"
                )
                raise SessionInProgressError(self.volume, holder)

            if not self._acquire_file_lock():
                holder = self._read_holder()
                logger.warning(f"[Lock] Volume {self.volume} already held by {holder} (lock file)")
                raise SessionInProgressError(self.volume, holder)

            _active_sessions[self.key] = self.session_id

        logger.info(f"[Lock] Acquired volume lock {self.key} for session {self.session_id}")

    def _acquire_file_lock(self) -> bool:
        # No O_TRUNC: the holder's identity must survive a failed attempt
        fd = os.open(self.lock_file_path, os.O_CREAT | os.O_RDWR)
        try:
            if platform.system() == "Windows":
                import msvcrt

                msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
            else:
                import fcntl

                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            os.close(fd)
            return False

        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, f"{self.holder_id}\n".encode())
        self._lock_fd = fd
        return True

    def _read_holder(self) -> str:
        try:
            with open(self.lock_file_path, "r", encoding="utf-8") as f:
                return f.readline().strip() or "unknown"
        except OSError as e:
            return f"unknown ({e})"

    def release(self) -> None:
        """Release both layers. Safe to call more than once."""
        with _registry_guard:
            if _active_sessions.get(self.key) == self.session_id:
                del _active_sessions[self.key]

            if self._lock_fd is None:
                return

            fd, self._lock_fd = self._lock_fd, None
            try:
                if platform.system() == "Windows":
                    import msvcrt

                    os.lseek(fd, 0, os.SEEK_SET)
                    msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
                else:
                    import fcntl

                    fcntl.flock(fd, fcntl.LOCK_UN)
            except OSError as e:
                logger.warning(f"[Lock] Error unlocking {self.lock_file_path}: {e}")
            finally:
                # The file itself stays: unlinking it would let a late opener lock a
                # dead inode while a new file is locked by someone else
                os.close(fd)

        logger.info(f"[Lock] Released volume lock {self.key} for session {self.session_id}")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
