from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import time
from pathlib import Path

logger = logging.getLogger(__name__)

GRACEFUL_TIMEOUT_MS = 5000
FORCEFUL_TIMEOUT_MS = 2000
POLL_INTERVAL_MS = 100

_PID_TEXT_RE = re.compile(r"[0-9]+")


def _reap_if_child(pid: int) -> None:
    # An exited child stays a zombie (and answers signal 0) until waited on.
    try:
        os.waitpid(pid, os.WNOHANG)
    except (ChildProcessError, OverflowError):
        return


def is_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    _reap_if_child(pid)
    try:
        os.kill(pid, 0)
    except (ProcessLookupError, OverflowError):
        # A pid beyond the platform range cannot name a running process.
        return False
    except OSError:
        # EPERM and friends: something owns that pid, so it is not free.
        return True
    return True


def wait_for_exit(pid: int, timeout_ms: int, *, poll_interval_ms: int = POLL_INTERVAL_MS) -> bool:
    deadline = time.monotonic() + timeout_ms / 1000
    while time.monotonic() < deadline:
        if not is_alive(pid):
            return True
        time.sleep(poll_interval_ms / 1000)
    return not is_alive(pid)


def _send_signal(pid: int, sig: signal.Signals) -> bool:
    """Deliver ``sig``; False when the process is already gone or cannot be signalled."""
    try:
        os.kill(pid, sig)
    except (ProcessLookupError, OverflowError):
        return False
    except PermissionError:
        logger.warning("Not permitted to send %s to process %s", sig.name, pid)
        return False
    return True


def stop_process(
    pid: int,
    *,
    graceful_timeout_ms: int = GRACEFUL_TIMEOUT_MS,
    forceful_timeout_ms: int = FORCEFUL_TIMEOUT_MS,
    poll_interval_ms: int = POLL_INTERVAL_MS,
) -> bool:
    """Stop ``pid`` with SIGTERM, escalating to SIGKILL after the grace period.

    Returns True once the process is gone. A process that survives both
    windows is reported as False; the caller decides what to do with it.
    """
    if not is_alive(pid):
        return True

    if not _send_signal(pid, signal.SIGTERM):
        return not is_alive(pid)
    if wait_for_exit(pid, graceful_timeout_ms, poll_interval_ms=poll_interval_ms):
        logger.info("Process %s exited after SIGTERM", pid)
        return True

    logger.warning("Process %s ignored SIGTERM for %sms, sending SIGKILL", pid, graceful_timeout_ms)
    if not _send_signal(pid, signal.SIGKILL):
        return not is_alive(pid)
    return wait_for_exit(pid, forceful_timeout_ms, poll_interval_ms=poll_interval_ms)


def read_pid_file(path: Path) -> int | None:
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    text = raw.strip()
    if not _PID_TEXT_RE.fullmatch(text):
        return None
    pid = int(text)
    return pid if pid > 0 else None


def write_pid_file(path: Path, pid: int) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{int(pid)}\n", encoding="utf-8")


def read_process_command(pid: int) -> str | None:
    """Command line of a live ``pid``, or None when it cannot be determined."""
    proc_cmdline = Path("/proc") / str(pid) / "cmdline"
    if proc_cmdline.parent.parent.is_dir():
        try:
            raw = proc_cmdline.read_bytes()
        except OSError:
            return None
        command = raw.replace(b"\0", b" ").decode("utf-8", errors="ignore").strip()
        return command or None
    try:
        completed = subprocess.run(
            ["ps", "-p", str(pid), "-o", "command="],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return None
    command = completed.stdout.strip()
    return command or None
