import multiprocessing
import os
from pathlib import Path

import pytest

from slotkit.core.config import settings
from slotkit.services import slot_allocator
from slotkit.services.slot_allocator import SlotAllocator, build_worker_identity, fallback_slot, resolve_worker_index
from slotkit.services.slot_claims import SlotClaimStore

DEAD_PID = 999999999
LIVE_FOREIGN_PID = 1


def _hold(store: SlotClaimStore, slot: int, pid: int) -> None:
    path = store.claim_path(slot)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"pid={pid}\nworker=other\n", encoding="utf-8")


def _allocator(tmp_path, environ=None) -> SlotAllocator:
    return SlotAllocator(SlotClaimStore(tmp_path / "claims"), environ=environ or {})


def test_first_free_slot_wins_and_is_memoized(tmp_path):
    allocator = _allocator(tmp_path)

    assert allocator.resolve_slot(3) == 1
    _hold(allocator.store, 1, LIVE_FOREIGN_PID)
    assert allocator.resolve_slot(3) == 1


def test_reset_allows_reallocation(tmp_path):
    allocator = _allocator(tmp_path)
    assert allocator.resolve_slot(3) == 1

    _hold(allocator.store, 1, LIVE_FOREIGN_PID)
    allocator.reset()
    assert allocator.resolved_slot is None
    assert allocator.resolve_slot(3) == 2


def test_live_claims_are_skipped(tmp_path):
    allocator = _allocator(tmp_path)
    _hold(allocator.store, 1, LIVE_FOREIGN_PID)
    _hold(allocator.store, 2, LIVE_FOREIGN_PID)

    assert allocator.resolve_slot(3) == 3


def test_stale_claim_is_reclaimed(tmp_path):
    allocator = _allocator(tmp_path)
    _hold(allocator.store, 1, DEAD_PID)

    assert allocator.resolve_slot(2) == 1
    assert allocator.store.read_claim_pid(1) == os.getpid()


def test_own_claim_counts_as_success(tmp_path):
    allocator = _allocator(tmp_path)
    _hold(allocator.store, 1, LIVE_FOREIGN_PID)
    _hold(allocator.store, 2, os.getpid())

    assert allocator.resolve_slot(3) == 2


def test_exhausted_pool_falls_back_to_worker_index(tmp_path):
    allocator = _allocator(tmp_path, environ={"TEST_WORKER_ID": "5"})
    for slot in (1, 2, 3):
        _hold(allocator.store, slot, LIVE_FOREIGN_PID)

    assert allocator.resolve_slot(3) == 2


def test_garbage_worker_id_falls_back_to_pid(tmp_path):
    allocator = _allocator(tmp_path, environ={"TEST_WORKER_ID": "²"})
    _hold(allocator.store, 1, LIVE_FOREIGN_PID)

    assert allocator.resolve_slot(1) == 1


def test_exhausted_pool_falls_back_to_pid(tmp_path):
    allocator = _allocator(tmp_path)
    for slot in (1, 2):
        _hold(allocator.store, slot, LIVE_FOREIGN_PID)

    assert allocator.resolve_slot(2) == os.getpid() % 2 + 1


def test_invalid_max_workers(tmp_path):
    with pytest.raises(ValueError):
        _allocator(tmp_path).resolve_slot(0)


def test_resolve_worker_index():
    assert resolve_worker_index({"TEST_WORKER_ID": "3"}) == 3
    assert resolve_worker_index({"TEST_WORKER_ID": "0", "PYTEST_XDIST_WORKER": "gw2"}) == 3
    assert resolve_worker_index({"PYTEST_XDIST_WORKER": "master"}) is None
    assert resolve_worker_index({}) is None
    assert resolve_worker_index({"TEST_WORKER_ID": "²"}) is None


def test_fallback_slot_is_bounded():
    assert [fallback_slot(3, index) for index in (1, 2, 3, 4, 7)] == [1, 2, 3, 1, 1]
    assert fallback_slot(4, pid=10) == 3


def test_worker_identity_joins_available_ids():
    identity = build_worker_identity({"TEST_WORKER_ID": "2", "PYTEST_XDIST_WORKER": "gw1"})
    assert identity == f"2:gw1:{os.getpid()}"
    assert build_worker_identity({}) == str(os.getpid())


def test_module_level_allocator_uses_configured_claim_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "worker_slot_state_dir", str(tmp_path))
    slot_allocator.reset_worker_slot()
    try:
        assert slot_allocator.resolve_worker_slot(2) == 1
        assert (tmp_path / "slot-claims" / "slot-1.lock").exists()
    finally:
        slot_allocator.reset_worker_slot()


def _resolve_and_hold(claim_dir, worker_id, start, results, hold):
    store = SlotClaimStore(Path(claim_dir))
    allocator = SlotAllocator(store, environ={"TEST_WORKER_ID": worker_id})
    start.wait(timeout=30)
    results.put((worker_id, allocator.resolve_slot(1), os.getpid()))
    hold.wait(timeout=30)


def test_two_processes_single_slot(tmp_path):
    ctx = multiprocessing.get_context("spawn")
    start = ctx.Barrier(2)
    results = ctx.Queue()
    hold = ctx.Event()
    workers = [
        ctx.Process(target=_resolve_and_hold, args=(str(tmp_path), worker_id, start, results, hold))
        for worker_id in ("1", "2")
    ]
    for worker in workers:
        worker.start()
    try:
        resolved = [results.get(timeout=60) for _ in workers]
        owner = SlotClaimStore(tmp_path).read_claim_pid(1)
    finally:
        hold.set()
        for worker in workers:
            worker.join(timeout=30)

    assert [slot for _, slot, _ in resolved] == [1, 1]
    assert [pid for _, _, pid in resolved].count(owner) == 1
    assert all(worker.exitcode == 0 for worker in workers)
