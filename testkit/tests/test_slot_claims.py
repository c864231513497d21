import multiprocessing
import os
import time
from pathlib import Path

from slotkit.services.slot_claims import SlotClaimStore, parse_claim_pid

DEAD_PID = 999999999
LIVE_FOREIGN_PID = 1


def _write_claim(store: SlotClaimStore, slot: int, body: str) -> Path:
    path = store.claim_path(slot)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body, encoding="utf-8")
    return path


def test_claim_creates_file_with_pid_and_worker(tmp_path):
    store = SlotClaimStore(tmp_path / "claims")

    assert store.claim(1, "gw0:123") is True
    content = store.claim_path(1).read_text(encoding="utf-8")
    assert content == f"pid={os.getpid()}\nworker=gw0:123\n"


def test_claim_fails_when_live_pid_holds_slot(tmp_path):
    store = SlotClaimStore(tmp_path)
    path = _write_claim(store, 1, f"pid={LIVE_FOREIGN_PID}\nworker=other\n")

    assert store.claim(1, "me") is False
    assert path.read_text(encoding="utf-8").startswith(f"pid={LIVE_FOREIGN_PID}")


def test_claim_reclaims_dead_pid(tmp_path):
    store = SlotClaimStore(tmp_path)
    _write_claim(store, 2, f"pid={DEAD_PID}\nworker=crashed\n")

    assert store.claim(2, "me") is True
    assert store.read_claim_pid(2) == os.getpid()


def test_unparseable_fresh_claim_is_treated_as_live(tmp_path):
    store = SlotClaimStore(tmp_path, stale_after_ms=5000)
    _write_claim(store, 1, "")

    assert store.claim(1, "me") is False


def test_unparseable_old_claim_is_reclaimed(tmp_path):
    store = SlotClaimStore(tmp_path, stale_after_ms=5000)
    path = _write_claim(store, 1, "garbage\n")
    old = time.time() - 60
    os.utime(path, (old, old))

    assert store.claim(1, "me") is True
    assert store.read_claim_pid(1) == os.getpid()


def test_parse_claim_pid():
    assert parse_claim_pid("pid=42\nworker=x\n") == 42
    assert parse_claim_pid("pid=0\n") is None
    assert parse_claim_pid("worker=x\npid=42\n") is None
    assert parse_claim_pid("pid=abc") is None


def test_read_claim_exposes_worker(tmp_path):
    store = SlotClaimStore(tmp_path)
    _write_claim(store, 4, "pid=77\nworker=gw3:77\n")

    claim = store.read_claim(4)
    assert claim.pid == 77
    assert claim.worker == "gw3:77"
    assert store.read_claim(5) is None


def test_release_is_idempotent(tmp_path):
    store = SlotClaimStore(tmp_path)
    store.claim(1, "me")

    store.release(1)
    store.release(1)
    assert not store.claim_path(1).exists()


def test_release_with_owner_keeps_foreign_claim(tmp_path):
    store = SlotClaimStore(tmp_path)
    path = _write_claim(store, 1, f"pid={LIVE_FOREIGN_PID}\nworker=other\n")

    store.release(1, owner_pid=os.getpid())
    assert path.exists()


def test_claimed_slots_and_clear(tmp_path):
    store = SlotClaimStore(tmp_path / "claims")
    store.claim(1, "me")
    _write_claim(store, 7, f"pid={DEAD_PID}\n")
    (store.claim_dir / "notes.txt").write_text("x", encoding="utf-8")

    assert store.claimed_slots() == [1, 7]
    store.clear()
    assert not store.claim_dir.exists()
    store.clear()


def _race_for_slot(claim_dir, barrier, results, done):
    store = SlotClaimStore(Path(claim_dir))
    barrier.wait(timeout=30)
    results.put(store.claim(1, f"racer-{os.getpid()}"))
    done.wait(timeout=30)


def test_concurrent_claimants_get_exclusive_slot(tmp_path):
    ctx = multiprocessing.get_context("spawn")
    racers = 4
    barrier = ctx.Barrier(racers)
    results = ctx.Queue()
    done = ctx.Event()
    procs = [
        ctx.Process(target=_race_for_slot, args=(str(tmp_path), barrier, results, done))
        for _ in range(racers)
    ]
    for proc in procs:
        proc.start()
    try:
        outcomes = [results.get(timeout=60) for _ in range(racers)]
    finally:
        done.set()
        for proc in procs:
            proc.join(timeout=30)

    assert outcomes.count(True) == 1


def test_out_of_range_pid_claim_is_reclaimed(tmp_path):
    store = SlotClaimStore(tmp_path)
    _write_claim(store, 1, "pid=99999999999\nworker=x\n")

    assert store.is_stale(1) is True
    assert store.claim(1, "me") is True
    assert store.read_claim_pid(1) == os.getpid()
