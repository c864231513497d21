#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "testkit"))

from slotkit.core.config import resolve_max_workers  # noqa: E402
from slotkit.services.process_control import is_alive, read_pid_file  # noqa: E402
from slotkit.services.slot_claims import SlotClaimStore  # noqa: E402
from slotkit.services.slot_namespace import resolve_namespace  # noqa: E402


def describe_slot(slot: int, store: SlotClaimStore) -> dict:
    namespace = resolve_namespace(slot)
    claim = store.read_claim(slot)
    backend_pid = read_pid_file(namespace.pid_file_path)
    return {
        "slot": slot,
        "port": namespace.port,
        "schema_prefix": namespace.schema_prefix,
        "test_run_id": namespace.test_run_id,
        "pid_file": str(namespace.pid_file_path),
        "claim_pid": claim.pid if claim else None,
        "claim_worker": claim.worker if claim else None,
        "claim_alive": bool(claim and claim.pid and is_alive(claim.pid)),
        "backend_pid": backend_pid,
        "backend_alive": bool(backend_pid and is_alive(backend_pid)),
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Print namespace and claim state for each worker slot.")
    parser.add_argument("--max-workers", type=int, default=None)
    args = parser.parse_args()
    max_workers = args.max_workers or resolve_max_workers()
    store = SlotClaimStore()
    for slot in range(1, max_workers + 1):
        print(json.dumps(describe_slot(slot, store), ensure_ascii=False))


if __name__ == "__main__":
    main()
