"""
Data models for the Entry Allocation Engine.

Defines the request, plan and result structures passed between the planner,
the engine and its callers.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, List, Dict


@dataclass
class AllocationRequest:
    """
    One truck load asking to be covered from the mother entries.

    product and destination are normalized to lower case on construction.
    """

    truck_number: str
    product: str
    destination: str
    required_quantity: Decimal
    permit_entry_id: Optional[str] = None
    owner: Optional[str] = None
    at20: Optional[Decimal] = None
    loaded_date: Optional[str] = None
    work_detail_id: Optional[str] = None

    def __post_init__(self):
        self.truck_number = (self.truck_number or '').strip()
        self.product = (self.product or '').strip().lower()
        self.destination = (self.destination or '').strip().lower()
        if not isinstance(self.required_quantity, Decimal):
            self.required_quantity = Decimal(str(self.required_quantity))
        if self.at20 is not None and not isinstance(self.at20, Decimal):
            self.at20 = Decimal(str(self.at20))

    @property
    def ledger_key(self):
        return self.product, self.destination


@dataclass(frozen=True)
class EntryView:
    """Read-only view of a mother entry as the planner sees it."""

    id: str
    number: str
    product: str
    destination: str
    remaining_quantity: Decimal
    timestamp: int

    @property
    def sort_key(self):
        return self.timestamp, self.id


@dataclass(frozen=True)
class PlanLine:
    """Draw `amount` from one entry."""

    entry_id: str
    entry_number: str
    amount: Decimal

    def __str__(self) -> str:
        return f"{self.entry_number}: {self.amount}"


@dataclass
class AllocationPlan:
    """Ordered draws that together cover the request exactly."""

    request: AllocationRequest
    lines: List[PlanLine] = field(default_factory=list)
    used_permit_exception: bool = False

    @property
    def total(self) -> Decimal:
        return sum((line.amount for line in self.lines), Decimal('0'))

    def amount_for(self, entry_id: str) -> Decimal:
        return sum((l.amount for l in self.lines if l.entry_id == entry_id), Decimal('0'))


@dataclass
class EntryChange:
    """Remaining quantity of one entry before and after a commit."""

    entry_id: str
    entry_number: str
    remaining_before: Decimal
    remaining_after: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {
            'entry_id': self.entry_id,
            'entry_number': self.entry_number,
            'remaining_before': str(self.remaining_before),
            'remaining_after': str(self.remaining_after),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'EntryChange':
        return cls(
            entry_id=data['entry_id'],
            entry_number=data['entry_number'],
            remaining_before=Decimal(data['remaining_before']),
            remaining_after=Decimal(data['remaining_after']),
        )


@dataclass
class AllocationResult:
    """
    Outcome of a committed allocation.

    transaction_id is the id of the audit report and the handle for undo().
    """

    transaction_id: str
    truck_number: str
    product: str
    destination: str
    lines: List[PlanLine]
    changes: List[EntryChange]
    total_allocated: Decimal
    allocation_ts: int
    pre_allocations_used: List[str] = field(default_factory=list)
    truck_marked_paid: bool = False

    def __str__(self) -> str:
        used = ", ".join(str(line) for line in self.lines)
        return (
            f"AllocationResult(✅ {self.truck_number} {self.product}/{self.destination}: "
            f"{self.total_allocated} from [{used}] tx={self.transaction_id})"
        )


@dataclass
class UndoResult:
    """Outcome of reversing one allocation."""

    transaction_id: str
    truck_number: str
    restored: List[EntryChange]
    records_removed: int
    pre_allocations_reverted: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        restored = ", ".join(f"{c.entry_number}→{c.remaining_before}" for c in self.restored)
        return f"UndoResult(↩️ {self.truck_number} tx={self.transaction_id}: {restored})"


@dataclass
class LedgerSummary:
    """Remaining quantity of one (product, destination) ledger."""

    product: str
    destination: str
    remaining_quantity: Decimal
    entry_count: int
    entry_numbers: List[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        return f"{self.product.upper()} - {self.destination.upper()}"


@dataclass
class ValidationResult:
    """
    Result of a ledger conservation audit.

    Contains counts, per-entry discrepancies, errors and warnings.
    """

    is_valid: bool

    # Scope
    entries_checked: int = 0
    records_checked: int = 0
    reports_checked: int = 0

    # Discrepancies
    conservation_violations: int = 0
    bounds_violations: int = 0
    orphan_records: int = 0
    report_mismatches: int = 0

    error_messages: List[str] = None
    warnings: List[str] = None

    def __post_init__(self):
        """Initialize default values."""
        if self.error_messages is None:
            self.error_messages = []
        if self.warnings is None:
            self.warnings = []

    @property
    def has_errors(self) -> bool:
        return not self.is_valid or len(self.error_messages) > 0

    @property
    def has_warnings(self) -> bool:
        return len(self.warnings) > 0

    @property
    def has_discrepancies(self) -> bool:
        return (
            self.conservation_violations > 0 or
            self.bounds_violations > 0 or
            self.orphan_records > 0 or
            self.report_mismatches > 0
        )

    def add_error(self, message: str):
        """Add an error message."""
        self.error_messages.append(message)
        self.is_valid = False

    def add_warning(self, message: str):
        """Add a warning message."""
        self.warnings.append(message)

    def __str__(self) -> str:
        status = "✅ VALID" if self.is_valid else "❌ INVALID"
        parts = [
            f"ValidationResult({status})",
            f"  Entries: {self.entries_checked}",
            f"  Truck records: {self.records_checked}",
            f"  Reports: {self.reports_checked}",
        ]

        if self.has_discrepancies:
            parts.append("  ⚠️  Discrepancies found:")
            if self.conservation_violations > 0:
                parts.append(f"    - Conservation violations: {self.conservation_violations}")
            if self.bounds_violations > 0:
                parts.append(f"    - Remaining outside [0, initial]: {self.bounds_violations}")
            if self.orphan_records > 0:
                parts.append(f"    - Records pointing at missing entries: {self.orphan_records}")
            if self.report_mismatches > 0:
                parts.append(f"    - Reports disagreeing with truck records: {self.report_mismatches}")

        if self.error_messages:
            parts.append(f"  ❌ Errors: {len(self.error_messages)}")
            for err in self.error_messages[:3]:
                parts.append(f"    - {err}")

        if self.has_warnings:
            parts.append(f"  ⚠️  Warnings: {len(self.warnings)}")
            for warn in self.warnings[:3]:
                parts.append(f"    - {warn}")

        return "\n".join(parts)
