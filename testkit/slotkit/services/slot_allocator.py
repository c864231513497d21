from __future__ import annotations

import atexit
import logging
import os
import re
from collections.abc import Mapping

from slotkit.core.config import resolve_max_workers
from slotkit.services.slot_claims import SlotClaimStore

logger = logging.getLogger(__name__)

_XDIST_WORKER_RE = re.compile(r"^gw([0-9]+)$")
_DIGITS_RE = re.compile(r"[0-9]+")


def _parse_positive_index(value: str | None) -> int | None:
    text = (value or "").strip()
    if not _DIGITS_RE.fullmatch(text):
        return None
    parsed = int(text)
    return parsed if parsed >= 1 else None


def build_worker_identity(environ: Mapping[str, str] | None = None) -> str:
    env = os.environ if environ is None else environ
    parts = [env.get("TEST_WORKER_ID"), env.get("PYTEST_XDIST_WORKER"), str(os.getpid())]
    return ":".join(part for part in parts if part)


def resolve_worker_index(environ: Mapping[str, str] | None = None) -> int | None:
    """One-based worker index supplied by the test runner, if any."""
    env = os.environ if environ is None else environ
    explicit = _parse_positive_index(env.get("TEST_WORKER_ID"))
    if explicit is not None:
        return explicit
    match = _XDIST_WORKER_RE.match((env.get("PYTEST_XDIST_WORKER") or "").strip())
    if match:
        return int(match.group(1)) + 1
    return None


def fallback_slot(max_workers: int, worker_index: int | None = None, *, pid: int | None = None) -> int:
    if worker_index is not None:
        return (worker_index - 1) % max_workers + 1
    return (os.getpid() if pid is None else pid) % max_workers + 1


class SlotAllocator:
    def __init__(self, store: SlotClaimStore | None = None, *, environ: Mapping[str, str] | None = None):
        self.store = store or SlotClaimStore()
        self._environ = environ
        self._resolved: tuple[int, int] | None = None
        self._release_hooks: set[int] = set()

    @property
    def resolved_slot(self) -> int | None:
        if self._resolved is None or self._resolved[0] != os.getpid():
            return None
        return self._resolved[1]

    def reset(self) -> None:
        self._resolved = None

    def _register_release(self, slot: int) -> None:
        if slot in self._release_hooks:
            return
        atexit.register(self.store.release, slot, owner_pid=os.getpid())
        self._release_hooks.add(slot)

    def _try_slot(self, slot: int, identity: str) -> bool:
        if self.store.claim(slot, identity):
            self._register_release(slot)
            return True
        return self.store.read_claim_pid(slot) == os.getpid()

    def resolve_slot(self, max_workers: int | None = None, identity: str | None = None) -> int:
        cached = self.resolved_slot
        if cached is not None:
            return cached

        limit = resolve_max_workers() if max_workers is None else int(max_workers)
        if limit < 1:
            raise ValueError(f"invalid_max_workers: {max_workers}")
        worker = identity if identity is not None else build_worker_identity(self._environ)

        for slot in range(1, limit + 1):
            if self._try_slot(slot, worker):
                self._resolved = (os.getpid(), slot)
                return slot

        slot = fallback_slot(limit, resolve_worker_index(self._environ))
        logger.warning(
            "All %s worker slots are held by live processes; falling back to slot %s for %s",
            limit,
            slot,
            worker,
        )
        self._resolved = (os.getpid(), slot)
        return slot


_ALLOCATOR: SlotAllocator | None = None


def get_allocator() -> SlotAllocator:
    global _ALLOCATOR
    if _ALLOCATOR is None:
        _ALLOCATOR = SlotAllocator()
    return _ALLOCATOR


def resolve_worker_slot(max_workers: int | None = None) -> int:
    return get_allocator().resolve_slot(max_workers)


def reset_worker_slot() -> None:
    global _ALLOCATOR
    if _ALLOCATOR is not None:
        _ALLOCATOR.reset()
    _ALLOCATOR = None
