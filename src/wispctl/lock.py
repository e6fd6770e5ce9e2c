"""Exclusive per-deployment-directory run lock."""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path

from .console import warn
from .errors import LockError

logger = logging.getLogger(__name__)

# A lock file whose PID is missing or unreadable is left alone this long
STALE_GRACE_SECONDS = 30


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


class RunLock:
    """
    Lock file holding the owner PID, created with O_CREAT | O_EXCL.

    A lock left behind by a dead process is reclaimed; a lock held by a
    live process raises LockError. A lock file without a readable PID is
    only reclaimed once it is older than grace_seconds, since its owner may
    still be writing the PID.
    """

    def __init__(self, path: Path, grace_seconds: float = STALE_GRACE_SECONDS) -> None:
        self.path = Path(path)
        self.grace_seconds = grace_seconds
        self.acquired = False

    def _read_owner(self) -> int:
        """Owner PID; 0 if the file is gone, -1 if it holds no valid PID."""
        try:
            text = self.path.read_text().strip()
        except FileNotFoundError:
            return 0
        try:
            return int(text)
        except ValueError:
            return -1

    def _age(self) -> float:
        try:
            return time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return float("inf")

    def acquire(self) -> None:
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                owner = self._read_owner()
                if owner > 0 and pid_alive(owner):
                    raise LockError(
                        f"Another wispctl run (PID {owner}) holds {self.path}; "
                        "wait for it to finish or remove the file if it is stale"
                    ) from None
                if owner < 0 and self._age() < self.grace_seconds:
                    raise LockError(
                        f"{self.path} exists without a readable PID; another wispctl run may be "
                        "starting. Retry, or remove the file if no run is active"
                    ) from None
                warn(f"Removing stale lock {self.path} (PID {owner if owner > 0 else 'unknown'})")
                try:
                    self.path.unlink()
                except FileNotFoundError:
                    pass
                continue
            try:
                os.write(fd, f"{os.getpid()}\n".encode())
            finally:
                os.close(fd)
            self.acquired = True
            logger.debug(f"Acquired run lock {self.path}")
            return
        raise LockError(f"Could not acquire run lock {self.path}")

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            logger.debug(f"Run lock {self.path} already removed")
        self.acquired = False

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
