from __future__ import annotations

import getpass
import os
import threading
import time
from pathlib import Path
from typing import Optional

from .errors import LockTimeout
from .observability import log_debug, utcnow_iso


class AdvisoryLock:
    """Simple file-based advisory lock with TTL and timeout.

    Guards a container's state directory against a second process.

    Environment variables (optional):
    - MULTIBRANCH_LOCK_TTL: seconds to consider a lock stale
    - MULTIBRANCH_LOCK_POLL: polling interval in seconds while waiting
    """

    def __init__(self, path: Path, *, ttl: int | None = None, timeout: float | None = None, force_break: bool = False):
        self.path = Path(path)
        self.ttl = ttl if ttl is not None else int(os.getenv("MULTIBRANCH_LOCK_TTL", "300"))
        self.poll = float(os.getenv("MULTIBRANCH_LOCK_POLL", "0.1"))
        self.timeout = timeout
        self.force_break = force_break
        self.acquired = False

    def _is_stale(self) -> bool:
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return False
        return (time.time() - mtime) > self.ttl

    def _write_pid(self) -> None:
        """Write lock file with metadata for debugging."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            user = os.getenv("MULTIBRANCH_USER") or getpass.getuser()
        except Exception:
            user = "unknown"
        self.path.write_text(
            f"pid={os.getpid()} time={utcnow_iso()} user={user} thread={threading.get_ident()}\n",
            encoding="utf-8"
        )

    def get_lock_info(self) -> dict | None:
        """Get lock metadata (pid, time, user, thread), or None if unlocked."""
        try:
            content = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        if not content:
            return None
        info: dict = {}
        for part in content.split():
            if "=" in part:
                key, value = part.split("=", 1)
                info[key] = value
        if "pid" in info:
            try:
                info["pid"] = int(info["pid"])
            except ValueError:
                pass
        return info or None

    def acquire(self) -> bool:
        start = time.time()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        while True:
            try:
                # Create exclusively
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
                os.close(fd)
                self._write_pid()
                self.acquired = True
                return True
            except FileExistsError:
                # Allow immediate break if requested, even when timeout==0
                if self.force_break:
                    try:
                        self.path.unlink()
                    except FileNotFoundError:
                        pass
                    continue
                # When ttl<=0 treat as never stale
                if self.ttl > 0 and self._is_stale():
                    log_debug("breaking stale lock", path=str(self.path), holder=self.get_lock_info())
                    try:
                        self.path.unlink()
                    except FileNotFoundError:
                        pass
                    continue
                if self.timeout == 0:
                    return False
                if self.timeout is not None and (time.time() - start) >= self.timeout:
                    return False
                time.sleep(self.poll)

    def release(self) -> None:
        if self.acquired:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            self.acquired = False

    def __enter__(self):
        ok = self.acquire()
        if not ok:
            raise LockTimeout(f"Failed to acquire lock {self.path} within timeout")
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


class ContainerLock:
    """Exclusive access to one container's children and source list.

    A re-entrant thread lock serializes passes inside this process. When a
    lock file is given, the outermost acquisition also takes a file advisory
    lock so that two processes never reconcile the same container at once.
    """

    def __init__(self, lock_file: Optional[Path] = None, *, timeout: float | None = None, ttl: int | None = None):
        self._lock = threading.RLock()
        self._depth = 0
        self._file_lock = AdvisoryLock(lock_file, ttl=ttl, timeout=timeout) if lock_file else None
        self.timeout = timeout

    def acquire(self) -> None:
        wait = -1 if self.timeout is None else self.timeout
        if not self._lock.acquire(timeout=wait):
            raise LockTimeout(f"Container lock not acquired within {self.timeout}s")
        if self._depth == 0 and self._file_lock is not None:
            if not self._file_lock.acquire():
                self._lock.release()
                raise LockTimeout(f"Failed to acquire lock {self._file_lock.path} within timeout")
        self._depth += 1

    def release(self) -> None:
        self._depth -= 1
        if self._depth == 0 and self._file_lock is not None:
            self._file_lock.release()
        self._lock.release()

    @property
    def held(self) -> bool:
        return self._depth > 0

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
