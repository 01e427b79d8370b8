"""
Entry Allocation Engine

Debits mother entries for truck loads and reverses those debits.
Every allocation and every undo is one database transaction: entries,
truck records, the audit report, the projection mirror and the
pre-allocation flags move together or not at all.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional

import pandas as pd
from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from Config.constants_allocation import (
    DESTINATION_VOLUME_RULES, PERMIT_TOUCH_MAX, PERMIT_TOUCH_QUANTITY, UNDO_WINDOW_SECONDS,
)
from Config.validators import require_in_range
from Config.constants_core import DEFAULT_REPORT_LIMIT, MILLIS_PER_SECOND, REPORT_QUERY_HARD_LIMIT
from database_manager.database_session_manager import DatabaseSessionManager
from payment_engine.allocator import truck_balance, derive_status
from permit_manager.pre_allocation import adjust_pre_allocated
from Shared_Utils.dates_and_times import DatesAndTimes
from Shared_Utils.ledger_exceptions import (
    LedgerError, InsufficientQuantity, ConcurrentModificationError, LedgerIOError,
    AllocationNotFound, StaleUndo,
)
from Shared_Utils.logging_manager import LoggerManager
from Shared_Utils.precision import PrecisionUtils
from TableModels import (
    MotherEntry, AllocationProjection, TruckAllocationRecord, AllocationReport,
    PermitPreAllocation, WorkDetail, TruckPayment, make_truck_key,
)
from .locks import LedgerLockRegistry
from .models import (
    AllocationRequest, AllocationPlan, AllocationResult, EntryChange, EntryView,
    UndoResult, LedgerSummary,
)
from .planner import validate_request, plan_allocation


class EntryAllocationEngine:
    """
    Allocates mother-entry quantity to trucks.

    Core Principles:
    - Entries are consumed oldest first, except for the permit-entry touch
    - A plan is computed and committed under the ledger's lock
    - Every commit leaves a report whose id is the undo handle
    - Undo restores the exact pre-allocation state or refuses

    Usage:
        engine = EntryAllocationEngine(database_session_manager, logger_manager)
        result = await engine.allocate(AllocationRequest('T-12', 'ago', 'ssd', 5000, permit_entry_id='e2'))
        await engine.undo(result.transaction_id)
    """

    def __init__(
        self,
        database_session_manager: DatabaseSessionManager,
        logger_manager: LoggerManager,
        precision_utils: PrecisionUtils = None,
        lock_registry: LedgerLockRegistry = None,
        volume_rules: Optional[dict] = None,
        permit_touch: Optional[Decimal] = None,
        undo_window_seconds: Optional[int] = UNDO_WINDOW_SECONDS,
        clock: Optional[Callable[[], int]] = None,
    ):
        """
        Initialize the allocation engine.

        Args:
            database_session_manager: Database session manager
            logger_manager: Logging manager
            precision_utils: Decimal helpers (shared instance when omitted)
            lock_registry: Per-ledger locks (process-wide registry when omitted)
            volume_rules: Destination load windows; pass {} to disable them
            permit_touch: Draw from the selected permit entry before FIFO resumes
                          (ConfigRangeError outside 0..PERMIT_TOUCH_MAX)
            undo_window_seconds: Age after which undo is refused; None or 0 disables
            clock: Epoch-ms clock (tests inject a fixed one)
        """
        self.db = database_session_manager
        self.logger = logger_manager.get_logger('ledger_logger')
        self.precision = precision_utils or PrecisionUtils.get_instance(logger_manager)
        self.locks = lock_registry or LedgerLockRegistry.get_instance()
        self.volume_rules = DESTINATION_VOLUME_RULES if volume_rules is None else volume_rules
        self.permit_touch = require_in_range(
            "PERMIT_TOUCH_QUANTITY",
            PERMIT_TOUCH_QUANTITY if permit_touch is None else Decimal(str(permit_touch)),
            0, PERMIT_TOUCH_MAX,
        )
        self.undo_window_seconds = undo_window_seconds
        self._now_ms = clock or DatesAndTimes.now_ms

        self.logger.info("✅ EntryAllocationEngine initialized")

    # =========================================================================
    # ALLOCATE
    # =========================================================================

    async def allocate(self, request: AllocationRequest) -> AllocationResult:
        """
        Plan and commit one truck allocation.

        Args:
            request: Truck, product, destination, required quantity, optional permit entry

        Returns:
            AllocationResult carrying the transaction id for undo

        Raises:
            ValidationError / PermitEntryRequired: before anything is read
            InsufficientQuantity: the ledger cannot cover the request
            ConcurrentModificationError: an entry changed under the commit
            LedgerIOError: the store failed; nothing was written
        """
        validate_request(request, self.volume_rules)

        async with self.locks.lock_for(*request.ledger_key):
            try:
                async with self.db.async_session() as session:
                    async with session.begin():
                        entries = await self._load_ledger(session, request)
                        views = [self._view(e) for e in entries.values()]
                        plan = plan_allocation(request, views, self.permit_touch)
                        result = await self._commit_plan(session, plan, entries)

            except InsufficientQuantity as e:
                self.logger.insufficient_quantity(
                    f"⚠️ {request.truck_number} {request.product}/{request.destination}: "
                    f"requested {request.required_quantity}, short by {e.shortfall}"
                )
                raise
            except LedgerError:
                raise
            except StaleDataError as e:
                self.logger.warning(f"⚠️ Concurrent entry update while allocating {request.truck_number}: {e}")
                raise ConcurrentModificationError() from e
            except (SQLAlchemyError, OSError) as e:
                self.logger.error(f"❌ Allocation for {request.truck_number} failed: {e}", exc_info=True)
                raise LedgerIOError(f"Allocation failed: {e}") from e

        self.logger.allocation(
            f"✅ {result.truck_number} {result.product}/{result.destination}: "
            f"{result.total_allocated} from {[str(l) for l in result.lines]} (tx {result.transaction_id})"
        )
        return result

    async def _load_ledger(self, session, request: AllocationRequest) -> Dict[str, MotherEntry]:
        rows = (await session.execute(
            select(MotherEntry).where(
                MotherEntry.product == request.product,
                MotherEntry.destination == request.destination,
            )
        )).scalars().all()
        entries = {e.id: e for e in rows}

        # The selected permit entry may belong to another ledger; the planner rejects it
        if request.permit_entry_id and request.permit_entry_id not in entries:
            selected = await session.get(MotherEntry, request.permit_entry_id)
            if selected is not None:
                entries[selected.id] = selected
        return entries

    def _view(self, entry: MotherEntry) -> EntryView:
        return EntryView(
            id=entry.id,
            number=entry.number,
            product=entry.product,
            destination=entry.destination,
            remaining_quantity=self.precision.safe_decimal(entry.remaining_quantity),
            timestamp=entry.timestamp,
        )

    async def _commit_plan(self, session, plan: AllocationPlan, entries: Dict[str, MotherEntry]) -> AllocationResult:
        """Apply a plan inside the caller's transaction."""
        request = plan.request
        now_ms = self._now_ms()
        now_iso = datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc).isoformat()
        transaction_id = uuid.uuid4().hex
        truck_key = make_truck_key(request.truck_number, request.destination, request.product)

        changes: List[EntryChange] = []
        for index, line in enumerate(plan.lines):
            entry = entries[line.entry_id]
            before = self.precision.safe_decimal(entry.remaining_quantity)
            after = before - line.amount
            if after < 0:
                raise ConcurrentModificationError(f"Entry {entry.number} cannot cover {line.amount}")
            entry.remaining_quantity = after
            changes.append(EntryChange(entry.id, entry.number, before, after))

            session.add(TruckAllocationRecord(
                truck_key=truck_key,
                allocation_id=f"{transaction_id}-{index}",
                truck_number=request.truck_number,
                product=request.product,
                destination=request.destination,
                entry_id=entry.id,
                entry_number=entry.number,
                subtracted_quantity=line.amount,
                timestamp=now_ms,
                transaction_id=transaction_id,
            ))
            await self._mirror_projection(session, entry.id, after, now_ms)

        pre_allocations_used = await self._consume_pre_allocations(session, request, now_ms, now_iso)
        work_detail_before, marked_paid = await self._refresh_paid_flag(session, request)

        session.add(AllocationReport(
            id=transaction_id,
            truck_number=request.truck_number,
            owner=request.owner,
            product=request.product,
            destination=request.destination,
            entries=[{'entryUsed': l.entry_number, 'volume': str(l.amount)} for l in plan.lines],
            total_volume=plan.total,
            at20=request.at20,
            loaded_date=request.loaded_date or DatesAndTimes.iso_date(now_ms),
            allocation_date=now_iso,
            allocation_ts=now_ms,
            snapshot={
                'changes': [c.to_dict() for c in changes],
                'pre_allocations': pre_allocations_used,
                'work_detail': work_detail_before,
                'permit_exception': plan.used_permit_exception,
            },
        ))

        return AllocationResult(
            transaction_id=transaction_id,
            truck_number=request.truck_number,
            product=request.product,
            destination=request.destination,
            lines=list(plan.lines),
            changes=changes,
            total_allocated=plan.total,
            allocation_ts=now_ms,
            pre_allocations_used=pre_allocations_used,
            truck_marked_paid=marked_paid,
        )

    async def _mirror_projection(self, session, entry_id: str, remaining: Decimal, now_ms: int):
        projection = await session.get(AllocationProjection, entry_id)
        if projection is not None:
            projection.remaining_quantity = remaining
            projection.last_updated = now_ms

    async def _consume_pre_allocations(self, session, request: AllocationRequest, now_ms: int, now_iso: str) -> List[str]:
        """Flip the truck's active reservations for this product to used."""
        rows = (await session.execute(
            select(PermitPreAllocation).where(
                PermitPreAllocation.truck_number == request.truck_number,
                PermitPreAllocation.product == request.product,
                PermitPreAllocation.destination == request.destination,
                PermitPreAllocation.used.is_(False),
            )
        )).scalars().all()
        for pre in rows:
            pre.used = True
            pre.used_at = now_iso
            pre.loaded_at = now_iso
            await adjust_pre_allocated(session, pre.permit_entry_id, -self.precision.safe_decimal(pre.quantity), now_ms)
        return [pre.id for pre in rows]

    async def _refresh_paid_flag(self, session, request: AllocationRequest):
        """Mark the work order paid if its payments already cover price * at20."""
        if not request.work_detail_id:
            return None, False
        work_detail = await session.get(WorkDetail, request.work_detail_id)
        if work_detail is None:
            return None, False

        before = {
            'id': work_detail.id,
            'paid': work_detail.paid,
            'payment_pending': work_detail.payment_pending,
            'payment_status': work_detail.payment_status,
        }
        if request.at20 is not None and work_detail.at20 is None:
            work_detail.at20 = request.at20
            before['at20'] = None

        amounts = (await session.execute(
            select(TruckPayment.amount).where(TruckPayment.truck_id == work_detail.id)
        )).scalars().all()
        status = derive_status(truck_balance(work_detail, amounts))
        if status.paid and not work_detail.paid:
            work_detail.paid = True
            work_detail.payment_pending = False
            work_detail.payment_status = 'paid'
            return before, True
        return before, False

    # =========================================================================
    # UNDO
    # =========================================================================

    async def undo(self, transaction_id: str) -> UndoResult:
        """
        Reverse one committed allocation.

        Refused when the report is gone, when it is older than the undo window,
        or when any entry it debited has moved since (a later allocation drew
        from it). A refused undo writes nothing.

        Raises:
            AllocationNotFound: no report with this transaction id
            StaleUndo: window expired or entries changed since
            LedgerIOError: the store failed; nothing was written
        """
        async with self.db.async_session() as session:
            report = await session.get(AllocationReport, transaction_id)
        if report is None:
            raise AllocationNotFound(transaction_id)

        async with self.locks.lock_for(report.product, report.destination):
            try:
                async with self.db.async_session() as session:
                    async with session.begin():
                        result = await self._undo_in_session(session, transaction_id)
            except LedgerError as e:
                self.logger.warning(f"⚠️ Undo of {transaction_id} refused: {e}")
                raise
            except StaleDataError as e:
                raise ConcurrentModificationError() from e
            except (SQLAlchemyError, OSError) as e:
                self.logger.error(f"❌ Undo of {transaction_id} failed: {e}", exc_info=True)
                raise LedgerIOError(f"Undo failed: {e}") from e

        self.logger.undo(f"↩️ {result.truck_number}: restored {len(result.restored)} entries (tx {transaction_id})")
        return result

    async def _undo_in_session(self, session, transaction_id: str) -> UndoResult:
        report = await session.get(AllocationReport, transaction_id)
        if report is None:
            raise AllocationNotFound(transaction_id)

        now_ms = self._now_ms()
        if self.undo_window_seconds and now_ms - report.allocation_ts > self.undo_window_seconds * MILLIS_PER_SECOND:
            raise StaleUndo(
                f"Allocation {transaction_id} is older than {self.undo_window_seconds}s and can no longer be undone"
            )

        snapshot = report.snapshot or {}
        changes = [EntryChange.from_dict(c) for c in snapshot.get('changes', [])]

        entries = {}
        for change in changes:
            entry = await session.get(MotherEntry, change.entry_id)
            if entry is None:
                raise StaleUndo(f"Entry {change.entry_number} no longer exists")
            current = self.precision.safe_decimal(entry.remaining_quantity)
            if current != change.remaining_after:
                raise StaleUndo(
                    f"Entry {change.entry_number} changed since allocation "
                    f"(expected {change.remaining_after}, found {current})"
                )
            entries[change.entry_id] = entry

        for change in changes:
            entries[change.entry_id].remaining_quantity = change.remaining_before
            await self._mirror_projection(session, change.entry_id, change.remaining_before, now_ms)

        records = (await session.execute(
            select(TruckAllocationRecord).where(TruckAllocationRecord.transaction_id == transaction_id)
        )).scalars().all()
        for record in records:
            await session.delete(record)

        reverted = []
        for pre_id in snapshot.get('pre_allocations', []):
            pre = await session.get(PermitPreAllocation, pre_id)
            if pre is not None and pre.used:
                pre.used = False
                pre.used_at = None
                pre.loaded_at = None
                await adjust_pre_allocated(session, pre.permit_entry_id, self.precision.safe_decimal(pre.quantity), now_ms)
                reverted.append(pre_id)

        work_before = snapshot.get('work_detail')
        if work_before:
            work_detail = await session.get(WorkDetail, work_before['id'])
            if work_detail is not None:
                work_detail.paid = work_before['paid']
                work_detail.payment_pending = work_before['payment_pending']
                work_detail.payment_status = work_before['payment_status']
                if 'at20' in work_before:
                    work_detail.at20 = None

        await session.delete(report)

        return UndoResult(
            transaction_id=transaction_id,
            truck_number=report.truck_number,
            restored=changes,
            records_removed=len(records),
            pre_allocations_reverted=reverted,
        )

    async def undo_latest(self, truck_number: str) -> UndoResult:
        """Undo the most recent allocation of a truck, if still inside the undo window."""
        async with self.db.async_session() as session:
            report = (await session.execute(
                select(AllocationReport)
                .where(AllocationReport.truck_number == truck_number)
                .order_by(AllocationReport.allocation_ts.desc())
                .limit(1)
            )).scalars().first()
        if report is None:
            raise AllocationNotFound(truck_number, message=f"No allocation found for truck {truck_number}")
        return await self.undo(report.id)

    # =========================================================================
    # READS
    # =========================================================================

    @DatabaseSessionManager.db_retry_once
    async def get_truck_allocations(self, truck_number: str, product: str, destination: str) -> List[TruckAllocationRecord]:
        truck_key = make_truck_key(truck_number, destination.lower(), product.lower())
        async with self.db.async_session() as session:
            return list((await session.execute(
                select(TruckAllocationRecord)
                .where(TruckAllocationRecord.truck_key == truck_key)
                .order_by(TruckAllocationRecord.timestamp, TruckAllocationRecord.allocation_id)
            )).scalars().all())

    @DatabaseSessionManager.db_retry_once
    async def get_entry_usage(self, entry_id: str) -> List[TruckAllocationRecord]:
        async with self.db.async_session() as session:
            return list((await session.execute(
                select(TruckAllocationRecord)
                .where(TruckAllocationRecord.entry_id == entry_id)
                .order_by(TruckAllocationRecord.timestamp)
            )).scalars().all())

    @DatabaseSessionManager.db_retry_once
    async def list_reports(self, truck_number: Optional[str] = None, limit: int = DEFAULT_REPORT_LIMIT,
                           since=None) -> List[AllocationReport]:
        """Newest reports first. `since` takes epoch s/ms, an ISO-8601 string or a datetime."""
        stmt = select(AllocationReport).order_by(AllocationReport.allocation_ts.desc())
        if truck_number:
            stmt = stmt.where(AllocationReport.truck_number == truck_number)
        since_ms = DatesAndTimes.to_epoch_ms(since)
        if since_ms is not None:
            stmt = stmt.where(AllocationReport.allocation_ts >= since_ms)
        stmt = stmt.limit(min(limit, REPORT_QUERY_HARD_LIMIT))
        async with self.db.async_session() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def count_reports(self) -> int:
        async with self.db.async_session() as session:
            return int((await session.execute(select(func.count()).select_from(AllocationReport))).scalar_one())

    @DatabaseSessionManager.db_retry_once
    async def summarize_ledgers(self) -> List[LedgerSummary]:
        """Remaining quantity per (product, destination), only entries with quantity left."""
        async with self.db.async_session() as session:
            rows = (await session.execute(
                select(MotherEntry.product, MotherEntry.destination, MotherEntry.number,
                       MotherEntry.remaining_quantity, MotherEntry.timestamp)
                .where(MotherEntry.remaining_quantity > 0)
            )).all()

        if not rows:
            return []

        df = pd.DataFrame(rows, columns=['product', 'destination', 'number', 'remaining', 'timestamp'])
        df['remaining'] = df['remaining'].map(self.precision.safe_decimal)
        df = df.sort_values(['product', 'destination', 'timestamp'])

        summaries = []
        for (product, destination), group in df.groupby(['product', 'destination'], sort=True):
            summaries.append(LedgerSummary(
                product=product,
                destination=destination,
                remaining_quantity=sum(group['remaining'], Decimal('0')),
                entry_count=len(group),
                entry_numbers=list(group['number']),
            ))
        return summaries
