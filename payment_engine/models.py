"""
Data models for the Payment Allocation Engine.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, List


@dataclass
class TruckBalance:
    """What a truck owes and what has been credited to it."""

    truck_id: str
    truck_number: str
    owner: str
    created_at: int
    total_due: Decimal
    total_allocated: Decimal
    balance: Decimal
    pending_amount: Decimal
    payment_pending: bool = False


@dataclass(frozen=True)
class PaymentAllocation:
    """Amount of a payment credited to one truck."""

    truck_id: str
    amount: Decimal

    def to_dict(self):
        return {'truckId': self.truck_id, 'amount': str(self.amount)}


@dataclass
class TruckStatus:
    """Payment flags of a work order after a payment or a status sync."""

    truck_id: str
    paid: bool
    payment_pending: bool
    payment_status: Optional[str]
    balance: Decimal

    def __str__(self) -> str:
        return f"TruckStatus({self.truck_id}: {self.payment_status or 'unpaid'}, balance {self.balance})"


@dataclass
class PaymentResult:
    """
    Outcome of a committed payment.

    cash_amount is the new money received; balance_used is drawn from the
    owner's credit; balance_credited is unallocated cash put back on it.
    """

    payment_id: str
    owner: str
    cash_amount: Decimal
    balance_used: Decimal
    balance_credited: Decimal
    total_allocated: Decimal
    allocations: List[PaymentAllocation] = field(default_factory=list)
    statuses: List[TruckStatus] = field(default_factory=list)
    owner_balance_after: Decimal = Decimal('0')

    def __str__(self) -> str:
        return (
            f"PaymentResult(✅ {self.owner}: {self.total_allocated} over "
            f"{len(self.allocations)} trucks, balance used {self.balance_used}, "
            f"credited {self.balance_credited})"
        )


@dataclass
class TruckAudit:
    """Payment consistency of one truck."""

    truck_id: str
    truck_number: str
    total_due: Decimal
    total_allocated: Decimal
    balance: Decimal
    expected_balance: Decimal = Decimal('0')
    unlinked_payments: List[dict] = field(default_factory=list)
    duplicate_entries: List[str] = field(default_factory=list)
    status_mismatch: bool = False
    issues: List[str] = field(default_factory=list)
    fixes: List[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.issues
