from __future__ import annotations

import logging
import os
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path

from slotkit.core.config import resolve_claim_dir, settings
from slotkit.services.process_control import is_alive

logger = logging.getLogger(__name__)

_CLAIM_PID_RE = re.compile(r"^pid=([0-9]+)$")
_CLAIM_FILE_RE = re.compile(r"^slot-([0-9]+)\.lock$")


@dataclass(frozen=True)
class SlotClaim:
    slot: int
    path: Path
    pid: int | None
    worker: str


def parse_claim_pid(raw: str) -> int | None:
    first_line = raw.strip().split("\n", 1)[0].strip()
    match = _CLAIM_PID_RE.match(first_line)
    if not match:
        return None
    pid = int(match.group(1))
    return pid if pid >= 1 else None


def _parse_claim_worker(raw: str) -> str:
    for line in raw.splitlines():
        if line.startswith("worker="):
            return line.split("=", 1)[1].strip()
    return ""


class SlotClaimStore:
    """One ``slot-N.lock`` file per slot; exclusive create is the lock."""

    def __init__(self, claim_dir: Path | None = None, *, stale_after_ms: int | None = None):
        self.claim_dir = Path(claim_dir) if claim_dir is not None else resolve_claim_dir()
        if stale_after_ms is None:
            stale_after_ms = settings.worker_slot_claim_stale_ms
        self.stale_after_ms = int(stale_after_ms)

    def claim_path(self, slot: int) -> Path:
        return self.claim_dir / f"slot-{int(slot)}.lock"

    def _try_create(self, slot: int, identity: str) -> bool:
        self.claim_dir.mkdir(parents=True, exist_ok=True)
        try:
            handle = self.claim_path(slot).open("x", encoding="utf-8")
        except FileExistsError:
            return False
        with handle:
            handle.write(f"pid={os.getpid()}\nworker={identity}\n")
        return True

    def read_claim(self, slot: int) -> SlotClaim | None:
        path = self.claim_path(slot)
        try:
            raw = path.read_text(encoding="utf-8", errors="ignore")
        except FileNotFoundError:
            return None
        return SlotClaim(slot=int(slot), path=path, pid=parse_claim_pid(raw), worker=_parse_claim_worker(raw))

    def read_claim_pid(self, slot: int) -> int | None:
        claim = self.read_claim(slot)
        return claim.pid if claim else None

    def _stat(self, slot: int) -> os.stat_result | None:
        try:
            return self.claim_path(slot).stat()
        except FileNotFoundError:
            return None

    def is_stale(self, slot: int) -> bool:
        claim = self.read_claim(slot)
        if claim is None:
            return True
        if claim.pid is not None:
            return not is_alive(claim.pid)
        # Unparseable: possibly mid-write by another claimant, so only trust age.
        stat = self._stat(slot)
        if stat is None:
            return True
        age_ms = (time.time() - stat.st_mtime) * 1000
        return age_ms > self.stale_after_ms

    def claim(self, slot: int, identity: str) -> bool:
        if self._try_create(slot, identity):
            logger.info("Claimed worker slot %s (%s)", slot, identity)
            return True

        before = self._stat(slot)
        if not self.is_stale(slot):
            return False

        after = self._stat(slot)
        if before is not None and after is not None:
            if (before.st_ino, before.st_mtime_ns) != (after.st_ino, after.st_mtime_ns):
                # Another claimant replaced the stale file while we judged it.
                return False
        logger.warning("Reclaiming stale worker slot %s", slot)
        self.claim_path(slot).unlink(missing_ok=True)
        if self._try_create(slot, identity):
            logger.info("Claimed worker slot %s (%s) after reclaim", slot, identity)
            return True
        return False

    def release(self, slot: int, *, owner_pid: int | None = None) -> None:
        if owner_pid is not None and self.read_claim_pid(slot) != owner_pid:
            return
        self.claim_path(slot).unlink(missing_ok=True)

    def claimed_slots(self) -> list[int]:
        if not self.claim_dir.is_dir():
            return []
        slots: list[int] = []
        for entry in self.claim_dir.iterdir():
            match = _CLAIM_FILE_RE.match(entry.name)
            if match and int(match.group(1)) > 0:
                slots.append(int(match.group(1)))
        return sorted(slots)

    def clear(self) -> None:
        try:
            shutil.rmtree(self.claim_dir)
        except FileNotFoundError:
            return
