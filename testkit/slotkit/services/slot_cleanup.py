from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

from slotkit.core.config import resolve_max_workers, resolve_state_dir, settings
from slotkit.services.process_control import is_alive, read_pid_file, read_process_command, stop_process
from slotkit.services.schema_context import teardown_slot_schema
from slotkit.services.slot_claims import SlotClaimStore
from slotkit.services.slot_namespace import resolve_namespace

logger = logging.getLogger(__name__)

_PID_FILE_RE = re.compile(r"^api-slot-([0-9]+)\.pid$")

SchemaTeardown = Callable[[str, str], None]


@dataclass
class SlotCleanupResult:
    slot: int
    pid: int | None = None
    stopped: bool | None = None
    pid_file_removed: bool = False
    stop_skipped: str | None = None
    error: str | None = None
    schema_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.stopped is not False and self.error is None and self.schema_error is None


@dataclass
class CleanupReport:
    results: list[SlotCleanupResult] = field(default_factory=list)
    claims_cleared: bool = False

    @property
    def failures(self) -> list[SlotCleanupResult]:
        return [item for item in self.results if not item.ok]


def known_slots(max_workers: int, state_dir: Path, claim_store: SlotClaimStore) -> list[int]:
    slots = set(range(1, max_workers + 1))
    if state_dir.is_dir():
        for entry in state_dir.iterdir():
            match = _PID_FILE_RE.match(entry.name)
            if match and int(match.group(1)) > 0:
                slots.add(int(match.group(1)))
    slots.update(claim_store.claimed_slots())
    return sorted(slots)


def classify_process(
    pid: int,
    expected_command: Sequence[str],
    read_command: Callable[[int], str | None] = read_process_command,
) -> str:
    """``expected``, ``unexpected`` or ``unknown`` for the live ``pid``."""
    command = read_command(pid)
    if not command:
        return "unknown"
    normalized = command.lower()
    if all(part.lower() in normalized for part in expected_command):
        return "expected"
    return "unexpected"


class CleanupCoordinator:
    """Sweep every slot once per test run: stop backends, drop schemas, reset claims.

    With ``expected_command`` set, a live pid is only signalled when its command
    line carries every one of those parts. A pid file left behind across a
    reboot can name an unrelated process by then.
    """

    def __init__(
        self,
        *,
        max_workers: int | None = None,
        state_dir: Path | None = None,
        claim_store: SlotClaimStore | None = None,
        teardown_schema: SchemaTeardown | None = teardown_slot_schema,
        stop: Callable[[int], bool] = stop_process,
        expected_command: Sequence[str] | None = None,
        read_command: Callable[[int], str | None] = read_process_command,
    ) -> None:
        self.max_workers = resolve_max_workers() if max_workers is None else int(max_workers)
        self.state_dir = Path(state_dir) if state_dir is not None else resolve_state_dir()
        self.claim_store = claim_store or SlotClaimStore(self.state_dir / "slot-claims")
        self.teardown_schema = teardown_schema
        self.stop = stop
        if expected_command is None:
            expected_command = shlex.split(settings.worker_slot_backend_command)
        self.expected_command = [str(part) for part in expected_command if str(part)]
        self.read_command = read_command

    def _should_stop(self, result: SlotCleanupResult, pid: int) -> bool:
        if not self.expected_command or not is_alive(pid):
            return True
        verdict = classify_process(pid, self.expected_command, self.read_command)
        if verdict == "expected":
            return True
        result.stop_skipped = f"{verdict}_process"
        logger.warning(
            "Skipping stop for %s pid=%s slot=%s; it does not look like the slot backend",
            verdict,
            pid,
            result.slot,
        )
        return False

    def _stop_slot_process(self, result: SlotCleanupResult, pid_file: Path) -> None:
        if not pid_file.exists():
            return
        try:
            pid = read_pid_file(pid_file)
            if pid is not None:
                result.pid = pid
                if self._should_stop(result, pid):
                    result.stopped = self.stop(pid)
                    if not result.stopped:
                        logger.error("Failed to stop lingering backend pid=%s slot=%s", pid, result.slot)
        finally:
            # Removed even when the stop failed so the next run does not retry it forever.
            pid_file.unlink(missing_ok=True)
            result.pid_file_removed = True

    def _teardown_slot_schema(self, result: SlotCleanupResult) -> None:
        if self.teardown_schema is None:
            return
        namespace = resolve_namespace(result.slot, state_dir=self.state_dir)
        try:
            self.teardown_schema(namespace.test_run_id, namespace.schema_prefix)
        except Exception as exc:
            logger.exception("Failed to drop schema for slot %s", result.slot)
            result.schema_error = str(exc) or exc.__class__.__name__

    def sweep(self) -> CleanupReport:
        report = CleanupReport()
        try:
            for slot in known_slots(self.max_workers, self.state_dir, self.claim_store):
                result = SlotCleanupResult(slot=slot)
                report.results.append(result)
                pid_file = resolve_namespace(slot, state_dir=self.state_dir).pid_file_path
                try:
                    self._stop_slot_process(result, pid_file)
                except Exception as exc:
                    logger.exception("Failed to clean up backend for slot %s", slot)
                    result.error = str(exc) or exc.__class__.__name__
                self._teardown_slot_schema(result)
        finally:
            self.claim_store.clear()
            report.claims_cleared = True
        if report.failures:
            logger.warning("Worker slot cleanup finished with %s failing slot(s)", len(report.failures))
        return report
