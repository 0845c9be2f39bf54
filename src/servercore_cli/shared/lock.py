"""Per-deployment run lock.

Two simultaneous runs against the same deployment identity would race on
secret generation and execution record writes. The lock is an exclusive,
non-blocking ``flock`` on a file in the identity's state directory, held for
the whole run. The kernel drops it if the process dies.
"""

from __future__ import annotations

import fcntl
import os
from pathlib import Path

from ..errors import LockHeldError
from .logging import get_logger

logger = get_logger(__name__)


class DeploymentLock:
    """Exclusive lock for one deployment identity.

    Usage:
        with DeploymentLock(path):
            ...
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._fd: int | None = None

    @property
    def locked(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Take the lock or raise LockHeldError immediately."""
        if self._fd is not None:
            raise RuntimeError(f"Lock already held by this process: {self.path}")

        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise LockHeldError(
                message=f"Another provisioning run holds {self.path}",
                lock_path=str(self.path),
            ) from None

        # Owner PID is informational only
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.debug("lock.acquired", path=str(self.path))

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug("lock.released", path=str(self.path))

    def __enter__(self) -> DeploymentLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
