#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import shlex
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "testkit"))

from slotkit.services.run_lock import RunLock  # noqa: E402
from slotkit.services.slot_cleanup import CleanupCoordinator  # noqa: E402


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Stop lingering slot backends, drop slot schemas and reset slot claims."
    )
    parser.add_argument("--max-workers", type=int, default=None)
    parser.add_argument("--state-dir", type=Path, default=None)
    parser.add_argument("--skip-schemas", action="store_true", help="do not drop slot schemas")
    parser.add_argument("--no-lock", action="store_true", help="sweep without taking the run lock")
    parser.add_argument(
        "--expect-command",
        default=None,
        help="only stop live pids whose command line contains these shell-style parts",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = _parse_args(argv)
    kwargs = {"max_workers": args.max_workers, "state_dir": args.state_dir}
    if args.expect_command is not None:
        kwargs["expected_command"] = shlex.split(args.expect_command)
    if args.skip_schemas:
        kwargs["teardown_schema"] = None
    coordinator = CleanupCoordinator(**kwargs)

    if args.no_lock:
        report = coordinator.sweep()
    else:
        with RunLock():
            report = coordinator.sweep()

    for result in report.results:
        status = "ok" if result.ok else "failed"
        print(f"slot={result.slot} pid={result.pid} stopped={result.stopped} skipped={result.stop_skipped} status={status}")
    return 1 if report.failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
