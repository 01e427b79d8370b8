"""
Permit Cleanup

Removes duplicate and orphaned reservations and reports the
inconsistencies that remain. Warnings are returned, never raised.
"""

from decimal import Decimal
from typing import Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from database_manager.database_session_manager import DatabaseSessionManager
from permit_manager.pre_allocation import adjust_pre_allocated, reserved_by_entry
from Shared_Utils.dates_and_times import DatesAndTimes
from Shared_Utils.ledger_exceptions import LedgerIOError
from Shared_Utils.logging_manager import LoggerManager
from Shared_Utils.precision import PrecisionUtils
from TableModels import MotherEntry, AllocationProjection, PermitPreAllocation, WorkDetail
from .models import CleanupResult


ZERO = Decimal('0')


class PermitCleanupService:
    """Repairs the reservation table and audits it against the entry store."""

    def __init__(
        self,
        database_session_manager: DatabaseSessionManager,
        logger_manager: LoggerManager,
        precision_utils: PrecisionUtils = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.db = database_session_manager
        self.logger = logger_manager.get_logger('reconcile_logger')
        self.precision = precision_utils or PrecisionUtils.get_instance(logger_manager)
        self._now_ms = clock or DatesAndTimes.now_ms

    # =========================================================================
    # DUPLICATES
    # =========================================================================

    async def cleanup_duplicates(self) -> CleanupResult:
        """
        Keep one active reservation per (truck number, product).

        Truck numbers and products are compared case-insensitively. Rows that
        share a reservation_id are the legs of one multi-entry reservation and
        count as one. The most recent reservation of each group survives with
        all its legs; the others are deleted and their quantity is taken off
        the projection.
        """
        result = CleanupResult()
        try:
            async with self.db.async_session() as session:
                async with session.begin():
                    active = (await session.execute(
                        select(PermitPreAllocation)
                        .where(PermitPreAllocation.used.is_(False))
                        .order_by(PermitPreAllocation.timestamp.desc(), PermitPreAllocation.id.desc())
                    )).scalars().all()

                    groups: Dict[tuple, List[PermitPreAllocation]] = {}
                    for pre in active:
                        key = (pre.truck_number.strip().upper(), pre.product.strip().lower())
                        groups.setdefault(key, []).append(pre)

                    now_ms = self._now_ms()
                    for (truck_number, product), records in groups.items():
                        keep = records[0].reservation_id or records[0].id
                        duplicates = [r for r in records if (r.reservation_id or r.id) != keep]
                        if not duplicates:
                            continue
                        for duplicate in duplicates:
                            await adjust_pre_allocated(
                                session, duplicate.permit_entry_id,
                                -self.precision.safe_decimal(duplicate.quantity), now_ms,
                            )
                            await session.delete(duplicate)
                            result.duplicates_removed += 1
                        result.consolidated += 1
                        self.logger.debug(
                            f"🧹 {truck_number}/{product}: kept {keep}, removed {len(duplicates)} duplicates"
                        )
        except (SQLAlchemyError, OSError) as e:
            self.logger.error(f"❌ Duplicate cleanup failed: {e}", exc_info=True)
            result.errors.append(str(e))
            result.duplicates_removed = 0
            result.consolidated = 0
            return result

        if result.duplicates_removed:
            self.logger.reconcile(
                f"🧹 Removed {result.duplicates_removed} duplicate reservations across {result.consolidated} trucks"
            )
        return result

    # =========================================================================
    # ORPHANS
    # =========================================================================

    async def cleanup_orphaned(self) -> int:
        """
        Delete active reservations of trucks with no work order at all.

        A truck still counts as known when it appears in any work order's
        previous_trucks history.

        Raises:
            LedgerIOError: the store failed; nothing was written
        """
        try:
            async with self.db.async_session() as session:
                async with session.begin():
                    known = set()
                    for truck_number, previous in (await session.execute(
                        select(WorkDetail.truck_number, WorkDetail.previous_trucks)
                    )).all():
                        known.add(truck_number)
                        known.update(previous or [])

                    active = (await session.execute(
                        select(PermitPreAllocation).where(PermitPreAllocation.used.is_(False))
                    )).scalars().all()

                    now_ms = self._now_ms()
                    removed = 0
                    for pre in active:
                        if pre.truck_number in known:
                            continue
                        await adjust_pre_allocated(
                            session, pre.permit_entry_id, -self.precision.safe_decimal(pre.quantity), now_ms
                        )
                        await session.delete(pre)
                        removed += 1
        except (SQLAlchemyError, OSError) as e:
            self.logger.error(f"❌ Orphan cleanup failed: {e}", exc_info=True)
            raise LedgerIOError(f"Orphan cleanup failed: {e}") from e

        if removed:
            self.logger.reconcile(f"🧹 Removed {removed} orphaned reservations")
        return removed

    # =========================================================================
    # VALIDATION
    # =========================================================================

    async def validate(self) -> List[str]:
        """
        Re-scan reservations for problems an operator should look at.

        Returns:
            Human-readable warnings; empty when everything checks out
        """
        warnings: List[str] = []
        try:
            async with self.db.async_session() as session:
                active = (await session.execute(
                    select(PermitPreAllocation)
                    .where(PermitPreAllocation.used.is_(False))
                    .order_by(PermitPreAllocation.timestamp)
                )).scalars().all()
                entries = {e.id: e for e in (await session.execute(select(MotherEntry))).scalars().all()}
                projections = (await session.execute(select(AllocationProjection))).scalars().all()
                reserved = await reserved_by_entry(session)
        except (SQLAlchemyError, OSError) as e:
            self.logger.error(f"❌ Permit validation failed: {e}", exc_info=True)
            return [f"Validation error: {e}"]

        for pre in active:
            entry = entries.get(pre.permit_entry_id)
            if entry is None:
                warnings.append(f"Invalid permit number {pre.permit_number} for truck {pre.truck_number}")
                continue
            quantity = self.precision.safe_decimal(pre.quantity)
            remaining = self.precision.safe_decimal(entry.remaining_quantity)
            if quantity > remaining:
                warnings.append(
                    f"Over-allocation detected for permit {pre.permit_number}. "
                    f"Allocated: {quantity}, Available: {remaining}"
                )

        for entry_id, total in reserved.items():
            entry = entries.get(entry_id)
            if entry is not None and total > self.precision.safe_decimal(entry.remaining_quantity):
                warnings.append(
                    f"Permit {entry.number} is reserved for {total} but only {entry.remaining_quantity} remains"
                )

        for projection in projections:
            recorded = self.precision.quantize_quantity(projection.pre_allocated_quantity)
            expected = self.precision.quantize_quantity(reserved.get(projection.id, ZERO))
            if recorded != expected:
                warnings.append(
                    f"Projection {projection.number} shows {recorded} pre-allocated "
                    f"but active reservations total {expected}"
                )

        for warning in warnings:
            self.logger.warning(f"⚠️ {warning}")
        return warnings
