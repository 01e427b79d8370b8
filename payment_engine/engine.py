"""
Payment Allocation Engine

Splits an owner's payment (plus optional existing credit) across that
owner's outstanding trucks and commits the split atomically.
"""

import uuid
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from database_manager.database_session_manager import DatabaseSessionManager
from Shared_Utils.dates_and_times import DatesAndTimes
from Shared_Utils.ledger_exceptions import LedgerError, ValidationError, NotFound, LedgerIOError
from Shared_Utils.logging_manager import LoggerManager
from Shared_Utils.precision import PrecisionUtils
from TableModels import WorkDetail, Payment, TruckPayment, OwnerBalance, BalanceUsage
from .allocator import (
    to_fixed2, truck_balance, calculate_optimal_allocation, validate_manual_allocation,
    derive_status, group_amounts,
)
from .models import TruckBalance, PaymentAllocation, PaymentResult, TruckStatus


ZERO = Decimal('0')


class PaymentAllocationEngine:
    """
    Allocates owner payments to trucks.

    - Automatic split: greedy fill, oldest truck first
    - Manual split: validated against the pool and each truck's balance, never clamped
    - Owner credit is drawn before new cash; unallocated cash becomes credit
    - Payment, truck credits, balance movements and truck flags commit together
    """

    def __init__(
        self,
        database_session_manager: DatabaseSessionManager,
        logger_manager: LoggerManager,
        precision_utils: PrecisionUtils = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.db = database_session_manager
        self.logger = logger_manager.get_logger('payment_logger')
        self.precision = precision_utils or PrecisionUtils.get_instance(logger_manager)
        self._now_ms = clock or DatesAndTimes.now_ms

        self.logger.info("✅ PaymentAllocationEngine initialized")

    # =========================================================================
    # READS
    # =========================================================================

    async def _load_balances(self, session, owner: str) -> Tuple[Dict[str, WorkDetail], Dict[str, List[Decimal]]]:
        trucks = (await session.execute(
            select(WorkDetail).where(WorkDetail.owner == owner).order_by(WorkDetail.created_at, WorkDetail.id)
        )).scalars().all()
        ids = [t.id for t in trucks]
        amounts: Dict[str, List[Decimal]] = {}
        if ids:
            rows = (await session.execute(
                select(TruckPayment.truck_id, TruckPayment.amount).where(TruckPayment.truck_id.in_(ids))
            )).all()
            amounts = group_amounts(rows)
        return {t.id: t for t in trucks}, amounts

    async def get_truck_balances(self, owner: str) -> List[TruckBalance]:
        """Balances of every truck of an owner, oldest first."""
        async with self.db.async_session() as session:
            trucks, amounts = await self._load_balances(session, owner)
        return [truck_balance(t, amounts.get(t.id, [])) for t in trucks.values()]

    async def get_outstanding_trucks(self, owner: str) -> List[TruckBalance]:
        return [b for b in await self.get_truck_balances(owner) if b.balance > 0]

    async def get_owner_balance(self, owner: str) -> Decimal:
        async with self.db.async_session() as session:
            row = await session.get(OwnerBalance, owner)
        return to_fixed2(row.amount) if row else ZERO

    async def preview_allocation(self, owner: str, amount, use_existing_balance: bool = False,
                                 balance_to_use=0) -> List[PaymentAllocation]:
        """The automatic split allocate_payment would commit right now."""
        async with self.db.async_session() as session:
            trucks, amounts = await self._load_balances(session, owner)
            credit_row = await session.get(OwnerBalance, owner)
        credit = self._usable_credit(credit_row, use_existing_balance, balance_to_use)
        balances = [truck_balance(t, amounts.get(t.id, [])) for t in trucks.values()]
        return calculate_optimal_allocation(balances, to_fixed2(amount) + credit)

    # =========================================================================
    # ALLOCATE
    # =========================================================================

    @staticmethod
    def _usable_credit(credit_row: Optional[OwnerBalance], use_existing_balance: bool, balance_to_use) -> Decimal:
        if not use_existing_balance or credit_row is None:
            return ZERO
        return max(ZERO, min(to_fixed2(balance_to_use or 0), to_fixed2(credit_row.amount)))

    @staticmethod
    def _normalize_manual(manual_allocations) -> List[Tuple[str, object]]:
        """Accept {truck_id: amount}, [(truck_id, amount)] or [{'truckId': ..., 'amount': ...}]."""
        if isinstance(manual_allocations, dict):
            return list(manual_allocations.items())
        pairs = []
        for item in manual_allocations:
            if isinstance(item, PaymentAllocation):
                pairs.append((item.truck_id, item.amount))
            elif isinstance(item, dict):
                pairs.append((item.get('truckId') or item.get('truck_id'), item.get('amount')))
            else:
                truck_id, amount = item
                pairs.append((truck_id, amount))
        return pairs

    async def allocate_payment(
        self,
        owner: str,
        amount,
        note: Optional[str] = None,
        use_existing_balance: bool = False,
        balance_to_use=0,
        manual_allocations: Optional[Iterable] = None,
    ) -> PaymentResult:
        """
        Record a payment and credit it to trucks.

        Args:
            owner: Truck owner receiving the credit
            amount: New cash received
            note: Free text stored on every record
            use_existing_balance: Draw on the owner's credit as well
            balance_to_use: Upper bound on the credit drawn
            manual_allocations: Operator split; automatic greedy fill when None

        Returns:
            PaymentResult with the split and the new truck statuses

        Raises:
            ValidationError: bad amounts or a manual split outside the pool/balances
            LedgerIOError: the store failed; nothing was written
        """
        if not owner:
            raise ValidationError("Owner is required")
        cash = to_fixed2(amount)
        if cash < 0:
            raise ValidationError(f"Payment amount cannot be negative (got {cash})")
        if to_fixed2(balance_to_use or 0) < 0:
            raise ValidationError("Balance to use cannot be negative")

        try:
            async with self.db.async_session() as session:
                async with session.begin():
                    result = await self._allocate_in_session(
                        session, owner, cash, note, use_existing_balance, balance_to_use, manual_allocations
                    )
        except LedgerError as e:
            self.logger.warning(f"⚠️ Payment for {owner} rejected: {e}")
            raise
        except (SQLAlchemyError, OSError) as e:
            self.logger.error(f"❌ Payment for {owner} failed: {e}", exc_info=True)
            raise LedgerIOError(f"Payment failed: {e}") from e

        self.logger.payment(f"💰 {result}")
        return result

    async def _allocate_in_session(self, session, owner, cash, note, use_existing_balance,
                                   balance_to_use, manual_allocations) -> PaymentResult:
        trucks, amounts = await self._load_balances(session, owner)
        balances = {
            truck_id: truck_balance(truck, amounts.get(truck_id, []))
            for truck_id, truck in trucks.items()
        }
        outstanding = {truck_id: b for truck_id, b in balances.items() if b.balance > 0}

        credit_row = await session.get(OwnerBalance, owner)
        credit_available = to_fixed2(credit_row.amount) if credit_row else ZERO
        credit = self._usable_credit(credit_row, use_existing_balance, balance_to_use)
        pool = to_fixed2(cash + credit)
        if pool <= 0:
            raise ValidationError("Nothing to allocate: payment amount and usable balance are both zero")

        if manual_allocations is not None:
            allocations = validate_manual_allocation(self._normalize_manual(manual_allocations), outstanding, pool)
        else:
            allocations = calculate_optimal_allocation(outstanding.values(), pool)

        total = to_fixed2(sum((a.amount for a in allocations), ZERO))
        balance_used = min(credit, total)
        cash_used = to_fixed2(total - balance_used)
        surplus = to_fixed2(cash - cash_used)

        now_ms = self._now_ms()
        payment_id = uuid.uuid4().hex

        session.add(Payment(
            id=payment_id,
            owner=owner,
            amount=cash,
            balance_used=balance_used,
            note=note,
            allocated_trucks=[a.to_dict() for a in allocations],
            timestamp=now_ms,
        ))

        statuses = []
        for allocation in allocations:
            session.add(TruckPayment(
                id=uuid.uuid4().hex,
                truck_id=allocation.truck_id,
                payment_id=payment_id,
                amount=allocation.amount,
                note=note,
                timestamp=now_ms,
            ))
            truck = trucks[allocation.truck_id]
            updated = truck_balance(truck, amounts.get(truck.id, []) + [allocation.amount])
            statuses.append(self._apply_status(truck, derive_status(updated)))

        if balance_used > 0:
            session.add(BalanceUsage(
                id=uuid.uuid4().hex,
                owner=owner,
                amount=balance_used,
                type='usage',
                used_for=[a.truck_id for a in allocations],
                payment_id=payment_id,
                note=f"Used for payment {payment_id}",
                timestamp=now_ms,
            ))
        if surplus > 0:
            session.add(BalanceUsage(
                id=uuid.uuid4().hex,
                owner=owner,
                amount=surplus,
                type='deposit',
                used_for=[],
                payment_id=payment_id,
                note=f"Unallocated remainder of payment {payment_id}",
                timestamp=now_ms,
            ))

        balance_after = to_fixed2(credit_available - balance_used + surplus)
        if balance_used > 0 or surplus > 0:
            if credit_row is None:
                session.add(OwnerBalance(owner=owner, amount=balance_after, last_updated=now_ms))
            else:
                credit_row.amount = balance_after
                credit_row.last_updated = now_ms

        return PaymentResult(
            payment_id=payment_id,
            owner=owner,
            cash_amount=cash,
            balance_used=balance_used,
            balance_credited=surplus,
            total_allocated=total,
            allocations=allocations,
            statuses=statuses,
            owner_balance_after=balance_after,
        )

    @staticmethod
    def _apply_status(truck: WorkDetail, status: TruckStatus) -> TruckStatus:
        truck.paid = status.paid
        truck.payment_pending = status.payment_pending
        truck.payment_status = status.payment_status
        return status

    # =========================================================================
    # STATUS SYNC
    # =========================================================================

    async def sync_status(self, truck_id: str) -> TruckStatus:
        """
        Recompute a truck's payment flags from its TruckPayments alone.

        Raises:
            NotFound: unknown truck
        """
        try:
            async with self.db.async_session() as session:
                async with session.begin():
                    truck = await session.get(WorkDetail, truck_id)
                    if truck is None:
                        raise NotFound(f"Work order {truck_id} not found")
                    amounts = (await session.execute(
                        select(TruckPayment.amount).where(TruckPayment.truck_id == truck_id)
                    )).scalars().all()
                    status = self._apply_status(truck, derive_status(truck_balance(truck, amounts)))
        except LedgerError:
            raise
        except (SQLAlchemyError, OSError) as e:
            self.logger.error(f"❌ Status sync for {truck_id} failed: {e}", exc_info=True)
            raise LedgerIOError(f"Status sync failed: {e}") from e

        self.logger.debug(f"🔄 {status}")
        return status
