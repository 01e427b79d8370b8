"""
Payment allocation rules.

Pure functions over work orders and their payment amounts; the engine reads
and writes the store around them.
"""

from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Tuple

from Shared_Utils.ledger_exceptions import ValidationError
from Shared_Utils.precision import PrecisionUtils
from .models import TruckBalance, PaymentAllocation, TruckStatus


ZERO = Decimal('0')
_precision = PrecisionUtils()


def to_fixed2(value) -> Decimal:
    return _precision.to_fixed2(value)


def total_due(price, at20) -> Decimal:
    """price * at20 rounded to cents; nothing is due before the AT20 volume is known."""
    if at20 is None or at20 == '':
        return ZERO
    return to_fixed2(_precision.safe_decimal(price) * _precision.safe_decimal(at20))


def truck_balance(work_detail, payment_amounts: Iterable) -> TruckBalance:
    """
    Balance of one work order.

    Args:
        work_detail: WorkDetail row (or any object with the same attributes)
        payment_amounts: TruckPayment amounts credited to it

    Returns:
        TruckBalance with due, allocated, balance and pending amount
    """
    allocated = to_fixed2(_precision.sum_decimals(payment_amounts))
    due = total_due(work_detail.price, work_detail.at20)
    balance = to_fixed2(due - allocated)
    pending = balance if (balance > 0 and work_detail.payment_pending) else ZERO
    return TruckBalance(
        truck_id=work_detail.id,
        truck_number=work_detail.truck_number,
        owner=work_detail.owner,
        created_at=work_detail.created_at,
        total_due=due,
        total_allocated=allocated,
        balance=balance,
        pending_amount=pending,
        payment_pending=bool(work_detail.payment_pending),
    )


def calculate_optimal_allocation(balances: Iterable[TruckBalance], pool) -> List[PaymentAllocation]:
    """
    Greedy fill, oldest truck first.

    Trucks with nothing outstanding are skipped; ties on creation time fall
    back to truck id so the result is deterministic. The returned amounts
    never sum to more than the pool.
    """
    remaining = to_fixed2(pool)
    allocations = []
    for balance in sorted((b for b in balances if b.balance > 0), key=lambda b: (b.created_at, b.truck_id)):
        if remaining <= 0:
            break
        amount = to_fixed2(min(balance.balance, remaining))
        if amount > 0:
            allocations.append(PaymentAllocation(balance.truck_id, amount))
            remaining = to_fixed2(remaining - amount)
    return allocations


def validate_manual_allocation(
    manual: Iterable[Tuple[str, object]],
    balances: Mapping[str, TruckBalance],
    pool,
) -> List[PaymentAllocation]:
    """
    Check an operator-supplied split. Out-of-bounds amounts are rejected, never clamped.

    Args:
        manual: (truck_id, amount) pairs
        balances: TruckBalance by truck id for the owner's trucks
        pool: Money available to this payment

    Returns:
        The split as PaymentAllocation objects

    Raises:
        ValidationError: unknown truck, repeated truck, non-positive amount,
            amount above the truck's balance, or total above the pool
    """
    pool = to_fixed2(pool)
    allocations = []
    seen = set()
    for truck_id, raw_amount in manual:
        amount = to_fixed2(raw_amount)
        if truck_id not in balances:
            raise ValidationError(f"Truck {truck_id} is not an outstanding truck of this owner")
        if truck_id in seen:
            raise ValidationError(f"Truck {truck_id} appears more than once in the allocation")
        seen.add(truck_id)
        if amount <= 0:
            raise ValidationError(f"Allocation for truck {truck_id} must be positive (got {amount})")
        if amount > balances[truck_id].balance:
            raise ValidationError(
                f"Allocation {amount} for truck {balances[truck_id].truck_number} "
                f"exceeds its balance {balances[truck_id].balance}"
            )
        allocations.append(PaymentAllocation(truck_id, amount))

    total = to_fixed2(sum((a.amount for a in allocations), ZERO))
    if total > pool:
        raise ValidationError(f"Total allocation {total} exceeds available amount {pool}")
    return allocations


def derive_status(balance: TruckBalance) -> TruckStatus:
    """Flags implied by the payments alone: paid iff allocated >= due."""
    if balance.total_due > 0 and balance.total_allocated >= balance.total_due:
        return TruckStatus(balance.truck_id, True, False, 'paid', balance.balance)
    if balance.total_allocated > 0:
        return TruckStatus(balance.truck_id, False, True, 'partial', balance.balance)
    return TruckStatus(balance.truck_id, False, False, None, balance.balance)


def group_amounts(rows: Iterable[Tuple[str, object]]) -> Dict[str, List[Decimal]]:
    """(truck_id, amount) rows -> amounts per truck."""
    grouped: Dict[str, List[Decimal]] = {}
    for truck_id, amount in rows:
        grouped.setdefault(truck_id, []).append(_precision.safe_decimal(amount))
    return grouped
