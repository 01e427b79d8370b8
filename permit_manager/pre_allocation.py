"""
Permit Pre-Allocation

Reserves permit-entry quantity for trucks before they load. A reservation
never debits the entry; the debit happens when the allocation engine
commits the load and flips the reservation to used.
"""

import secrets
import string
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError

from Config.constants_allocation import PERMIT_DESTINATION, PRE_ALLOCATION_ID_SUFFIX_LEN
from database_manager.database_session_manager import DatabaseSessionManager
from Shared_Utils.dates_and_times import DatesAndTimes
from Shared_Utils.ledger_exceptions import (
    LedgerError, ValidationError, InsufficientQuantity, DuplicatePreAllocation, NotFound, LedgerIOError,
)
from Shared_Utils.logging_manager import LoggerManager
from Shared_Utils.precision import PrecisionUtils
from TableModels import MotherEntry, AllocationProjection, PermitPreAllocation, WorkDetail
from .models import EntryOption, PreAllocationResult, AutoAllocateResult, TruckChangeResult


ZERO = Decimal('0')
_ID_ALPHABET = string.ascii_lowercase + string.digits


# =========================================================================
# SHARED HELPERS
# =========================================================================

async def adjust_pre_allocated(session, entry_id: str, delta: Decimal, now_ms: int) -> None:
    """Move the projection's reserved quantity by delta, never below zero."""
    projection = await session.get(AllocationProjection, entry_id)
    if projection is None:
        return
    current = PrecisionUtils.safe_decimal(projection.pre_allocated_quantity)
    projection.pre_allocated_quantity = max(ZERO, current + delta)
    projection.last_updated = now_ms


async def reserved_by_entry(session, entry_ids: Optional[Iterable[str]] = None) -> Dict[str, Decimal]:
    """Sum of active (unused) reservations per permit entry."""
    stmt = (
        select(PermitPreAllocation.permit_entry_id, func.sum(PermitPreAllocation.quantity))
        .where(PermitPreAllocation.used.is_(False))
        .group_by(PermitPreAllocation.permit_entry_id)
    )
    if entry_ids is not None:
        stmt = stmt.where(PermitPreAllocation.permit_entry_id.in_(list(entry_ids)))
    rows = (await session.execute(stmt)).all()
    return {entry_id: PrecisionUtils.safe_decimal(total) for entry_id, total in rows}


def new_pre_allocation_id(now_ms: int) -> str:
    suffix = ''.join(secrets.choice(_ID_ALPHABET) for _ in range(PRE_ALLOCATION_ID_SUFFIX_LEN))
    return f"{now_ms}-{suffix}"


def _iso(now_ms: int) -> str:
    return datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc).isoformat()


class PermitPreAllocationService:
    """
    Soft reservations of permit entries.

    - available = entry remaining - active reservations on that entry
    - One active reservation per (truck, product, destination)
    - Every reservation also moves the projection's pre_allocated_quantity
    """

    def __init__(
        self,
        database_session_manager: DatabaseSessionManager,
        logger_manager: LoggerManager,
        precision_utils: PrecisionUtils = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.db = database_session_manager
        self.logger = logger_manager.get_logger('ledger_logger')
        self.precision = precision_utils or PrecisionUtils.get_instance(logger_manager)
        self._now_ms = clock or DatesAndTimes.now_ms

        self.logger.info("✅ PermitPreAllocationService initialized")

    # =========================================================================
    # PRE-ALLOCATE
    # =========================================================================

    async def pre_allocate(
        self,
        truck_number: str,
        product: str,
        owner: Optional[str],
        entry_id: str,
        entry_number: Optional[str] = None,
        quantity=None,
        destination: str = PERMIT_DESTINATION,
        work_detail_id: Optional[str] = None,
    ) -> PreAllocationResult:
        """
        Reserve quantity of one permit entry for a truck.

        Args:
            truck_number: Truck the reservation is for
            product: Product the truck will load
            owner: Truck owner
            entry_id: Permit entry to reserve from
            entry_number: Expected entry number; checked when given
            quantity: Litres to reserve; defaults to the truck's work-order quantity
            destination: Permit destination
            work_detail_id: Work order to flag as permitted

        Returns:
            PreAllocationResult

        Raises:
            ValidationError: bad input, unknown quantity, entry of another product/destination
            NotFound: entry does not exist
            InsufficientQuantity: entry cannot cover the quantity after other reservations
            DuplicatePreAllocation: the truck already holds an active reservation
            LedgerIOError: the store failed; nothing was written
        """
        truck_number = (truck_number or '').strip()
        product = (product or '').strip().lower()
        destination = (destination or '').strip().lower()
        if not truck_number or not product or not destination:
            raise ValidationError("Truck number, product and destination are required")

        try:
            async with self.db.async_session() as session:
                async with session.begin():
                    await self._check_duplicate(session, truck_number, product, destination)
                    if quantity is None:
                        quantity = await self._work_order_quantity(
                            session, truck_number, product, destination, work_detail_id
                        )
                    result = await self._pre_allocate_in_session(
                        session, truck_number, product, owner, entry_id, entry_number,
                        self.precision.quantize_quantity(quantity), destination, work_detail_id,
                    )
        except LedgerError as e:
            self.logger.warning(f"⚠️ Pre-allocation for {truck_number} rejected: {e}")
            raise
        except (SQLAlchemyError, OSError) as e:
            self.logger.error(f"❌ Pre-allocation for {truck_number} failed: {e}", exc_info=True)
            raise LedgerIOError(f"Pre-allocation failed: {e}") from e

        self.logger.allocation(f"📌 {result}")
        return result

    async def _check_duplicate(self, session, truck_number: str, product: str, destination: str):
        existing = (await session.execute(
            select(PermitPreAllocation.id).where(
                PermitPreAllocation.truck_number == truck_number,
                PermitPreAllocation.product == product,
                PermitPreAllocation.destination == destination,
                PermitPreAllocation.used.is_(False),
            ).order_by(PermitPreAllocation.timestamp)
        )).scalars().first()
        if existing is not None:
            raise DuplicatePreAllocation(
                existing,
                message=f"Truck {truck_number} already has an active allocation for {product} to {destination}",
            )

    async def _work_order_quantity(self, session, truck_number, product, destination, work_detail_id) -> Decimal:
        if work_detail_id:
            work_detail = await session.get(WorkDetail, work_detail_id)
        else:
            work_detail = (await session.execute(
                select(WorkDetail).where(
                    WorkDetail.truck_number == truck_number,
                    WorkDetail.product == product,
                    WorkDetail.destination == destination,
                    WorkDetail.loaded.is_(False),
                ).order_by(WorkDetail.created_at.desc())
            )).scalars().first()
        if work_detail is None:
            raise ValidationError(f"No quantity given and no work order found for {truck_number}")
        return self.precision.safe_decimal(work_detail.quantity)

    async def _pre_allocate_in_session(
        self, session, truck_number, product, owner, entry_id, entry_number,
        quantity: Decimal, destination, work_detail_id, reservation_id: Optional[str] = None,
    ) -> PreAllocationResult:
        if quantity <= 0:
            raise ValidationError(f"Pre-allocation quantity must be positive (got {quantity})")

        entry = await session.get(MotherEntry, entry_id)
        if entry is None:
            raise NotFound(f"Permit entry {entry_id} not found")
        if entry.product != product:
            raise ValidationError(f"Entry {entry.number} is for {entry.product.upper()}, not {product.upper()}")
        if entry.destination != destination:
            raise ValidationError(f"Entry {entry.number} is for {entry.destination.upper()}, not {destination.upper()}")
        if entry_number and entry_number != entry.number:
            raise ValidationError(f"Entry {entry_id} is number {entry.number}, not {entry_number}")

        reserved = (await reserved_by_entry(session, [entry.id])).get(entry.id, ZERO)
        available = self.precision.safe_decimal(entry.remaining_quantity) - reserved
        if available < quantity:
            raise InsufficientQuantity(
                quantity - available,
                message=f"Insufficient volume. Available: {available}, Requested: {quantity}",
            )

        now_ms = self._now_ms()
        pre_id = new_pre_allocation_id(now_ms)
        reservation_id = reservation_id or pre_id
        session.add(PermitPreAllocation(
            id=pre_id,
            truck_number=truck_number,
            product=product,
            owner=owner,
            destination=destination,
            permit_entry_id=entry.id,
            reservation_id=reservation_id,
            permit_number=entry.number,
            quantity=quantity,
            allocated_at=_iso(now_ms),
            timestamp=now_ms,
            used=False,
            work_detail_id=work_detail_id,
        ))
        await adjust_pre_allocated(session, entry.id, quantity, now_ms)

        if work_detail_id:
            work_detail = await session.get(WorkDetail, work_detail_id)
            if work_detail is not None:
                work_detail.permit_allocated = True
                if not work_detail.permit_entry_id:
                    work_detail.permit_entry_id = entry.id
                    work_detail.permit_number = entry.number

        return PreAllocationResult(
            pre_allocation_id=pre_id,
            truck_number=truck_number,
            product=product,
            destination=destination,
            permit_entry_id=entry.id,
            permit_number=entry.number,
            quantity=quantity,
            available_before=available,
            work_detail_id=work_detail_id,
            reservation_id=reservation_id,
        )

    # =========================================================================
    # ENTRY SEARCH
    # =========================================================================

    async def find_available_entries(self, product: str, required_quantity,
                                     destination: str = PERMIT_DESTINATION) -> List[EntryOption]:
        """
        Entries that can cover a reservation.

        Returns the oldest single entry that covers the whole quantity; when no
        entry does, the FIFO combination that does; an empty list when the
        ledger cannot cover it at all.
        """
        async with self.db.async_session() as session:
            return await self._find_available_in_session(session, product, required_quantity, destination)

    async def _find_available_in_session(self, session, product, required_quantity, destination) -> List[EntryOption]:
        product = (product or '').strip().lower()
        destination = (destination or '').strip().lower()
        required = self.precision.quantize_quantity(required_quantity)
        if required <= 0:
            return []

        entries = (await session.execute(
            select(MotherEntry)
            .where(
                MotherEntry.product == product,
                MotherEntry.destination == destination,
                MotherEntry.remaining_quantity > 0,
            )
            .order_by(MotherEntry.timestamp, MotherEntry.id)
        )).scalars().all()
        reserved = await reserved_by_entry(session, [e.id for e in entries])

        candidates = []
        for entry in entries:
            available = self.precision.safe_decimal(entry.remaining_quantity) - reserved.get(entry.id, ZERO)
            if available > 0:
                candidates.append((entry, available))

        for entry, available in candidates:
            if available >= required:
                return [EntryOption(entry.id, entry.number, available, required, entry.timestamp)]

        options = []
        still_needed = required
        for entry, available in candidates:
            take = min(available, still_needed)
            options.append(EntryOption(entry.id, entry.number, available, take, entry.timestamp))
            still_needed -= take
            if still_needed <= 0:
                return options
        return []

    # =========================================================================
    # AUTO-ALLOCATE
    # =========================================================================

    async def _pending_trucks(self) -> List[WorkDetail]:
        async with self.db.async_session() as session:
            return list((await session.execute(
                select(WorkDetail)
                .where(
                    WorkDetail.destination == PERMIT_DESTINATION,
                    WorkDetail.loaded.is_(False),
                    WorkDetail.permit_allocated.is_(False),
                    WorkDetail.status == 'queued',
                )
                .order_by(WorkDetail.created_at, WorkDetail.id)
            )).scalars().all())

    async def auto_allocate(self, pending_trucks: Optional[Iterable[WorkDetail]] = None) -> AutoAllocateResult:
        """
        Reserve permit entries for every truck waiting on a permit.

        Trucks that already hold an active reservation are skipped. Each truck's
        reservation, even across several entries, is one transaction; a failed
        truck is counted and the run moves on.
        """
        trucks = list(pending_trucks) if pending_trucks is not None else await self._pending_trucks()
        result = AutoAllocateResult()

        async with self.db.async_session() as session:
            reserved_trucks = set((await session.execute(
                select(PermitPreAllocation.truck_number).where(PermitPreAllocation.used.is_(False))
            )).scalars().all())

        self.logger.info(f"🚚 Auto-allocating permits for {len(trucks)} pending trucks")

        for truck in trucks:
            if truck.truck_number in reserved_trucks:
                result.skipped.append(truck.truck_number)
                continue
            try:
                written = await self._auto_allocate_truck(truck)
            except LedgerError as e:
                result.failure_count += 1
                result.failures[truck.truck_number] = str(e)
                self.logger.warning(f"⚠️ Auto-allocation for {truck.truck_number} failed: {e}")
                continue

            result.success_count += 1
            result.allocated[truck.truck_number] = written
            reserved_trucks.add(truck.truck_number)

        self.logger.allocation(f"📌 {result}")
        return result

    async def _auto_allocate_truck(self, truck: WorkDetail) -> List[PreAllocationResult]:
        product = (truck.product or '').strip().lower()
        destination = (truck.destination or PERMIT_DESTINATION).strip().lower()
        try:
            async with self.db.async_session() as session:
                async with session.begin():
                    await self._check_duplicate(session, truck.truck_number, product, destination)
                    options = await self._find_available_in_session(session, product, truck.quantity, destination)
                    if not options:
                        raise InsufficientQuantity(
                            truck.quantity,
                            message=f"No permit entries can cover {truck.quantity} {product.upper()}",
                        )
                    # legs of one reservation share its id
                    reservation_id = new_pre_allocation_id(self._now_ms())
                    written = []
                    for option in options:
                        written.append(await self._pre_allocate_in_session(
                            session, truck.truck_number, product, truck.owner, option.entry_id,
                            option.entry_number, option.quantity, destination, truck.id, reservation_id,
                        ))
        except (SQLAlchemyError, OSError) as e:
            raise LedgerIOError(f"Auto-allocation failed for {truck.truck_number}: {e}") from e
        return written

    # =========================================================================
    # TRUCK NUMBER CHANGES
    # =========================================================================

    async def detect_truck_number_changes(self) -> List[TruckChangeResult]:
        """
        Match active reservations to loaded work orders and mark them used.

        A reservation matches a loaded work order of the same product by the
        current truck number or, failing that, by any number in the order's
        previous_trucks history. The latter records previous_truck_number so
        the swap stays auditable.
        """
        try:
            async with self.db.async_session() as session:
                async with session.begin():
                    results = await self._detect_in_session(session)
        except (SQLAlchemyError, OSError) as e:
            self.logger.error(f"❌ Truck change detection failed: {e}", exc_info=True)
            raise LedgerIOError(f"Truck change detection failed: {e}") from e

        changed = [r for r in results if r.truck_changed]
        for r in changed:
            self.logger.allocation(
                f"🔁 {r.previous_truck_number} loaded as {r.truck_number} on permit {r.permit_number}"
            )
        self.logger.info(f"🔍 Matched {len(results)} reservations to loaded trucks ({len(changed)} truck changes)")
        return results

    async def _detect_in_session(self, session) -> List[TruckChangeResult]:
        active = (await session.execute(
            select(PermitPreAllocation)
            .where(PermitPreAllocation.used.is_(False))
            .order_by(PermitPreAllocation.timestamp)
        )).scalars().all()
        if not active:
            return []

        by_truck: Dict[tuple, List[PermitPreAllocation]] = {}
        for pre in active:
            by_truck.setdefault((pre.truck_number, pre.product), []).append(pre)

        loaded = (await session.execute(
            select(WorkDetail).where(WorkDetail.loaded.is_(True)).order_by(WorkDetail.created_at)
        )).scalars().all()

        now_ms = self._now_ms()
        results = []
        for work in loaded:
            product = (work.product or '').lower()
            previous = None
            matches = by_truck.pop((work.truck_number, product), None)
            if not matches:
                for prev_truck in work.previous_trucks or []:
                    matches = by_truck.pop((prev_truck, product), None)
                    if matches:
                        previous = prev_truck
                        break
            if not matches:
                continue

            loaded_at = work.loaded_at or _iso(now_ms)
            for pre in matches:
                pre.used = True
                pre.used_at = _iso(now_ms)
                pre.loaded_at = loaded_at
                pre.actual_truck_number = work.truck_number
                pre.work_detail_id = pre.work_detail_id or work.id
                if previous:
                    pre.previous_truck_number = previous
                await adjust_pre_allocated(session, pre.permit_entry_id, -self.precision.safe_decimal(pre.quantity), now_ms)
                results.append(TruckChangeResult(
                    pre_allocation_id=pre.id,
                    work_detail_id=work.id,
                    truck_number=work.truck_number,
                    product=product,
                    permit_number=pre.permit_number,
                    loaded_at=loaded_at,
                    previous_truck_number=previous,
                ))
        return results

    # =========================================================================
    # RELEASE / MARK USED
    # =========================================================================

    async def release(self, pre_allocation_id: str) -> Decimal:
        """
        Delete a reservation and clear the work order's permit flags.

        Returns:
            The quantity given back to the entry's available pool

        Raises:
            NotFound: unknown reservation
        """
        try:
            async with self.db.async_session() as session:
                async with session.begin():
                    pre = await session.get(PermitPreAllocation, pre_allocation_id)
                    if pre is None:
                        raise NotFound(f"Pre-allocation {pre_allocation_id} not found")
                    quantity = self.precision.safe_decimal(pre.quantity)
                    if not pre.used:
                        await adjust_pre_allocated(session, pre.permit_entry_id, -quantity, self._now_ms())
                    await self._clear_work_order_flags(session, pre)
                    await session.delete(pre)
        except LedgerError:
            raise
        except (SQLAlchemyError, OSError) as e:
            self.logger.error(f"❌ Release of {pre_allocation_id} failed: {e}", exc_info=True)
            raise LedgerIOError(f"Release failed: {e}") from e

        self.logger.allocation(f"🔓 Released pre-allocation {pre_allocation_id} ({quantity})")
        return quantity

    @staticmethod
    async def _clear_work_order_flags(session, pre: PermitPreAllocation) -> None:
        if pre.work_detail_id:
            work_detail = await session.get(WorkDetail, pre.work_detail_id)
        else:
            work_detail = (await session.execute(
                select(WorkDetail).where(
                    WorkDetail.truck_number == pre.truck_number,
                    WorkDetail.product == pre.product,
                    WorkDetail.destination == pre.destination,
                    WorkDetail.permit_allocated.is_(True),
                )
            )).scalars().first()
        if work_detail is not None:
            work_detail.permit_allocated = False
            work_detail.permit_entry_id = None
            work_detail.permit_number = None

    async def mark_used(self, pre_allocation_id: str, actual_truck_number: Optional[str] = None) -> None:
        """Flag a reservation as consumed outside the allocation engine."""
        try:
            async with self.db.async_session() as session:
                async with session.begin():
                    pre = await session.get(PermitPreAllocation, pre_allocation_id)
                    if pre is None:
                        raise NotFound(f"Pre-allocation {pre_allocation_id} not found")
                    if pre.used:
                        return
                    now_ms = self._now_ms()
                    pre.used = True
                    pre.used_at = _iso(now_ms)
                    if actual_truck_number and actual_truck_number != pre.truck_number:
                        pre.actual_truck_number = actual_truck_number
                        pre.previous_truck_number = pre.truck_number
                    await adjust_pre_allocated(session, pre.permit_entry_id, -self.precision.safe_decimal(pre.quantity), now_ms)
        except LedgerError:
            raise
        except (SQLAlchemyError, OSError) as e:
            raise LedgerIOError(f"Mark used failed: {e}") from e

        self.logger.debug(f"✔️ Pre-allocation {pre_allocation_id} marked used")

    # =========================================================================
    # READS
    # =========================================================================

    @DatabaseSessionManager.db_retry_once
    async def get_active_pre_allocations(self, truck_number: Optional[str] = None,
                                         product: Optional[str] = None) -> List[PermitPreAllocation]:
        stmt = (
            select(PermitPreAllocation)
            .where(PermitPreAllocation.used.is_(False))
            .order_by(PermitPreAllocation.timestamp)
        )
        if truck_number:
            stmt = stmt.where(PermitPreAllocation.truck_number == truck_number.strip())
        if product:
            stmt = stmt.where(PermitPreAllocation.product == product.strip().lower())
        async with self.db.async_session() as session:
            return list((await session.execute(stmt)).scalars().all())
