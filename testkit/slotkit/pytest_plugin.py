from __future__ import annotations

import logging

import pytest

from slotkit.services.integration_run import IntegrationRun
from slotkit.services.slot_allocator import resolve_worker_slot
from slotkit.services.slot_namespace import SlotNamespace, resolve_namespace

logger = logging.getLogger(__name__)

_RUN_KEY = pytest.StashKey[IntegrationRun]()


def pytest_addoption(parser) -> None:
    group = parser.getgroup("worker-slots")
    group.addoption(
        "--worker-slots",
        action="store_true",
        default=False,
        help="hold the integration run lock and sweep worker slots before and after the session",
    )


def _is_controller(config) -> bool:
    # xdist workers carry workerinput; only the controller owns the global sweep.
    return not hasattr(config, "workerinput")


def pytest_sessionstart(session) -> None:
    config = session.config
    if not config.getoption("worker_slots") or not _is_controller(config):
        return
    run = IntegrationRun()
    run.global_setup()
    config.stash[_RUN_KEY] = run


def pytest_sessionfinish(session, exitstatus) -> None:
    config = session.config
    run = config.stash.get(_RUN_KEY, None)
    if run is None:
        return
    del config.stash[_RUN_KEY]
    report = run.global_teardown()
    for failure in report.failures:
        logger.warning(
            "Worker slot %s not cleaned up: pid=%s stopped=%s schema_error=%s",
            failure.slot,
            failure.pid,
            failure.stopped,
            failure.schema_error,
        )


@pytest.fixture(scope="session")
def worker_slot() -> int:
    return resolve_worker_slot()


@pytest.fixture(scope="session")
def slot_namespace(worker_slot: int) -> SlotNamespace:
    return resolve_namespace(worker_slot)
