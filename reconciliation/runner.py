"""
Reconciliation Runner

One pass = projection sync, reservation cleanup, truck-change detection
and a validation scan. run_forever repeats the pass on a timer.
"""

import time
from typing import Callable, Optional

from Config.constants_allocation import SYNC_INTERVAL_SECONDS
from database_manager.database_session_manager import DatabaseSessionManager
from permit_manager.pre_allocation import PermitPreAllocationService
from Shared_Utils.dates_and_times import DatesAndTimes
from Shared_Utils.logger import get_component_logger, log_context, log_performance
from Shared_Utils.logging_manager import LoggerManager
from Shared_Utils.scheduler import periodic_runner
from .models import ReconciliationReport
from .permit_cleanup import PermitCleanupService
from .sync_service import AllocationSyncService


class ReconciliationRunner:
    """
    Drives the reconciliation services.

    Every step is idempotent, so a pass that dies half way is simply
    completed by the next one.
    """

    def __init__(
        self,
        database_session_manager: DatabaseSessionManager,
        logger_manager: LoggerManager,
        interval: int = SYNC_INTERVAL_SECONDS,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.db = database_session_manager
        self.logger = logger_manager.get_logger('reconcile_logger')
        self.interval = interval
        self._now_ms = clock or DatesAndTimes.now_ms
        self.runs = 0
        self.last_report: Optional[ReconciliationReport] = None

        self.sync_service = AllocationSyncService(database_session_manager, logger_manager, clock=clock)
        self.cleanup_service = PermitCleanupService(database_session_manager, logger_manager, clock=clock)
        self.permit_service = PermitPreAllocationService(database_session_manager, logger_manager, clock=clock)

    @log_performance('reconcile')
    async def run_once(self) -> ReconciliationReport:
        """
        Run one full reconciliation pass.

        Returns:
            ReconciliationReport (also kept as last_report)

        Raises:
            LedgerIOError: sync, orphan cleanup or truck-change detection hit a store failure
        """
        started_at = self._now_ms()
        start = time.perf_counter()
        self.runs += 1

        with log_context(reconcile_run=self.runs):
            sync = await self.sync_service.sync()
            cleanup = await self.cleanup_service.cleanup_duplicates()
            orphans = await self.cleanup_service.cleanup_orphaned()
            changes = await self.permit_service.detect_truck_number_changes()
            warnings = await self.cleanup_service.validate()

            report = ReconciliationReport(
                sync=sync,
                cleanup=cleanup,
                orphans_removed=orphans,
                truck_changes=sum(1 for c in changes if c.truck_changed),
                warnings=warnings + [f"Cleanup error: {e}" for e in cleanup.errors],
                started_at=started_at,
                duration_ms=(time.perf_counter() - start) * 1000,
            )

        self.last_report = report
        if report.is_clean:
            self.logger.info(f"✅ {report}")
        else:
            self.logger.reconcile(f"🔧 {report}")
        return report

    async def run_forever(self, max_runs: Optional[int] = None) -> None:
        """Repeat run_once every `interval` seconds; failures are logged and the loop continues."""
        structured = get_component_logger('reconcile')
        structured.info(f"🔁 Reconciliation loop every {self.interval}s")
        await periodic_runner(
            self.run_once,
            self.interval,
            name="ReconciliationRunner",
            logger=structured,
            max_runs=max_runs,
        )
