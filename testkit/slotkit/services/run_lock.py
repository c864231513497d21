from __future__ import annotations

import logging
import os
import shutil
import time
from pathlib import Path

from slotkit.core.config import settings
from slotkit.services.process_control import is_alive, read_pid_file

logger = logging.getLogger(__name__)

DEFAULT_POLL_SECONDS = 1.0


class RunLock:
    """Host-wide lock held for a whole integration run.

    ``mkdir`` is the atomic primitive; the directory carries a ``pid`` marker
    naming the holder. A lock whose holder is dead, or which never got a
    marker and is older than the timeout, is reaped by the next contender.
    """

    def __init__(
        self,
        lock_dir: Path | None = None,
        *,
        timeout_seconds: int | None = None,
        poll_seconds: float = DEFAULT_POLL_SECONDS,
    ):
        self.lock_dir = Path(lock_dir or settings.integration_lock_dir)
        if timeout_seconds is None:
            timeout_seconds = settings.integration_lock_timeout_seconds
        self.timeout_seconds = max(int(timeout_seconds), 0)
        self.poll_seconds = poll_seconds
        self._held = False

    @property
    def pid_path(self) -> Path:
        return self.lock_dir / "pid"

    @property
    def held(self) -> bool:
        return self._held

    def _try_reap_stale(self) -> bool:
        if not self.lock_dir.exists():
            return False
        holder = read_pid_file(self.pid_path)
        if holder is not None:
            if is_alive(holder):
                return False
            logger.warning("Reaping run lock %s held by dead pid %s", self.lock_dir, holder)
            shutil.rmtree(self.lock_dir, ignore_errors=True)
            return True
        if self.pid_path.exists():
            # Marker present but unreadable; leave it to its owner.
            return False
        try:
            age = time.time() - self.lock_dir.stat().st_mtime
        except FileNotFoundError:
            return True
        if age >= self.timeout_seconds:
            logger.warning("Reaping run lock %s without pid marker (age %.0fs)", self.lock_dir, age)
            shutil.rmtree(self.lock_dir, ignore_errors=True)
            return True
        return False

    def try_acquire(self) -> bool:
        self.lock_dir.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.lock_dir.mkdir()
        except FileExistsError:
            return False
        self.pid_path.write_text(f"{os.getpid()}\n", encoding="utf-8")
        self._held = True
        return True

    def acquire(self) -> None:
        started = time.monotonic()
        while True:
            if self.try_acquire():
                return
            if self._try_reap_stale() and self.try_acquire():
                return
            if time.monotonic() - started >= self.timeout_seconds:
                raise TimeoutError(f"Timed out waiting for lock: {self.lock_dir}")
            time.sleep(self.poll_seconds)

    def release(self) -> None:
        if not self._held:
            return
        try:
            self.pid_path.unlink(missing_ok=True)
            shutil.rmtree(self.lock_dir, ignore_errors=True)
        finally:
            self._held = False

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
