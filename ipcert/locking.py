"""Host-wide mutual exclusion for mutating ipcert operations."""
from __future__ import annotations

import errno
import logging
import os
import time
from pathlib import Path
from typing import Callable

from .errors import LockContention

DEFAULT_TIMEOUT_SEC = 300.0
DEFAULT_POLL_SEC = 5.0


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user.
        return True
    return True


def read_holder(path: Path) -> int | None:
    try:
        text = path.read_text(encoding="utf-8").strip()
    except (FileNotFoundError, OSError):
        return None
    try:
        return int(text.split()[0]) if text else None
    except ValueError:
        return None


def lock_status(path: Path) -> tuple[int | None, bool]:
    """Return ``(holder_pid, holder_alive)`` without touching the lock."""

    holder = read_holder(path)
    if holder is None:
        return None, False
    return holder, _pid_alive(holder)


class HostLock:
    """Exclusive-create lock file holding the owner's PID.

    A lock whose recorded PID no longer exists is considered stale and is
    removed before retrying. Release only deletes the file while it still
    names this process.
    """

    def __init__(
        self,
        path: Path | str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        poll_interval: float = DEFAULT_POLL_SEC,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.path = Path(path)
        self.timeout = max(0.0, float(timeout))
        self.poll_interval = max(0.01, float(poll_interval))
        self._sleep = sleep
        self._log = logger or logging.getLogger("ipcert.lock")
        self._pid = os.getpid()
        self.acquired = False

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            return False
        except OSError as exc:
            if exc.errno == errno.EEXIST:
                return False
            raise
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(f"{self._pid}\n")
        return True

    def acquire(self) -> "HostLock":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        waited = 0.0
        warned = False
        while True:
            if self._try_create():
                self.acquired = True
                self._log.debug("Lock acquired (PID: %s)", self._pid)
                return self

            holder = read_holder(self.path)
            if holder is not None and holder != self._pid and not _pid_alive(holder):
                self._log.warning("Removing stale lock file (PID: %s)", holder)
                try:
                    self.path.unlink()
                except FileNotFoundError:
                    pass
                continue

            if waited >= self.timeout:
                self._log.error("Failed to acquire lock after %d seconds", int(waited))
                raise LockContention(str(self.path), holder, waited)

            if not warned:
                self._log.warning("Another instance is running (PID: %s). Waiting...", holder)
                warned = True
            self._sleep(self.poll_interval)
            waited += self.poll_interval

    def release(self) -> None:
        if not self.acquired:
            return
        self.acquired = False
        if read_holder(self.path) != self._pid:
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        self._log.debug("Lock released (PID: %s)", self._pid)

    def __enter__(self) -> "HostLock":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


__all__ = ["HostLock", "lock_status", "read_holder"]
