from __future__ import annotations

import logging

from slotkit.services.run_lock import RunLock
from slotkit.services.slot_cleanup import CleanupCoordinator, CleanupReport

logger = logging.getLogger(__name__)


class IntegrationRun:
    """Hold the run lock for a whole test run and sweep slots on both ends."""

    def __init__(self, *, lock: RunLock | None = None, coordinator: CleanupCoordinator | None = None):
        self.lock = lock or RunLock()
        self.coordinator = coordinator or CleanupCoordinator()

    def global_setup(self) -> CleanupReport:
        self.lock.acquire()
        try:
            report = self.coordinator.sweep()
        except Exception:
            self.lock.release()
            raise
        logger.info("Integration run started; swept %s worker slot(s)", len(report.results))
        return report

    def global_teardown(self) -> CleanupReport:
        try:
            return self.coordinator.sweep()
        finally:
            self.lock.release()
