"""
Per-application operation lock.

deploy, cutover, rollback and cleanup for the same application must not
interleave; an exclusive flock on the application's .lock file enforces
a single writer across processes.
"""

import fcntl
import logging
import os
from pathlib import Path
from typing import Optional

from bgd_manager.errors import BGDError, ErrorCode

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".lock"


class AppLock:
    """Non-blocking exclusive lock, used as a context manager."""

    def __init__(self, app_dir: Path, operation: str = "operation"):
        self.path = Path(app_dir) / LOCK_FILENAME
        self.operation = operation
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = os.read(fd, 256).decode(errors="replace").strip()
            os.close(fd)
            raise BGDError(
                ErrorCode.INVALID_PARAMETER,
                f"Another operation is in progress for this application ({holder or 'unknown'})",
                suggestion="Wait for it to finish, or remove the stale process.",
            )
        os.ftruncate(fd, 0)
        os.write(fd, f"{self.operation} pid={os.getpid()}".encode())
        self._fd = fd
        logger.debug(f"Acquired {self.path} for {self.operation}")

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            os.ftruncate(self._fd, 0)
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    def __enter__(self) -> "AppLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
