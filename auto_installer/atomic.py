"""
Atomic file writes and the single-instance lock.

AtomicFileWriter writes to a sibling temp file and renames it over the
target, so readers see either the old or the new content, never a mix.

SingletonLock uses a directory as the mutex: mkdir either creates it
(lock acquired) or fails because it already exists.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional, Union

import psutil

from auto_installer.errors import LockHeldError
from auto_installer.logging_utils import fields

logger = logging.getLogger(__name__)

PID_FILE_NAME = "pid"


class AtomicFileWriter:
    """Write a file via temp file + fsync + rename."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def write_text(self, data: str, encoding: str = "utf-8") -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding=encoding) as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise


class SingletonLock:
    """
    Directory-based mutual exclusion between daemon instances.

    The lock directory holds a ``pid`` file naming the holder. A lock whose
    holder is no longer alive is considered stale and is taken over.
    """

    def __init__(self, lock_dir: Union[str, Path]):
        self.lock_dir = Path(lock_dir)
        self.pid_file = self.lock_dir / PID_FILE_NAME
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def read_holder(self) -> Optional[int]:
        """Return the recorded holder pid, or None if unreadable."""
        try:
            pid = int(self.pid_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None
        return pid if pid > 1 else None

    def holder_alive(self) -> bool:
        pid = self.read_holder()
        return pid is not None and psutil.pid_exists(pid)

    def _remove_if_stale(self) -> None:
        pid = self.read_holder()
        if pid is not None and psutil.pid_exists(pid):
            raise LockHeldError(str(self.lock_dir), pid)

        logger.warning("Removing stale lock", extra=fields(lockDir=str(self.lock_dir), pid=pid))
        shutil.rmtree(self.lock_dir, ignore_errors=True)

    def acquire(self) -> None:
        """
        Acquire the lock.

        Raises:
            LockHeldError: If another live process holds the lock
        """
        self.lock_dir.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.lock_dir.mkdir()
        except FileExistsError:
            self._remove_if_stale()
            try:
                self.lock_dir.mkdir()
            except FileExistsError:
                raise LockHeldError(str(self.lock_dir), self.read_holder()) from None

        self._held = True
        self.pid_file.write_text(str(os.getpid()), encoding="utf-8")
        logger.debug("Lock acquired", extra=fields(lockDir=str(self.lock_dir), pid=os.getpid()))

    def release(self) -> None:
        """Release the lock if this instance holds it."""
        if not self._held:
            return
        self._held = False
        shutil.rmtree(self.lock_dir, ignore_errors=True)
        logger.debug("Lock released", extra=fields(lockDir=str(self.lock_dir)))

    def __enter__(self) -> "SingletonLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
