"""
Data models for the Permit Pre-Allocation Subsystem.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional


@dataclass(frozen=True)
class EntryOption:
    """Quantity that can be reserved from one permit entry."""

    entry_id: str
    entry_number: str
    available: Decimal
    quantity: Decimal
    timestamp: int

    def __str__(self) -> str:
        return f"{self.entry_number}: {self.quantity} of {self.available}"


@dataclass
class PreAllocationResult:
    """A reservation written for a truck."""

    pre_allocation_id: str
    truck_number: str
    product: str
    destination: str
    permit_entry_id: str
    permit_number: str
    quantity: Decimal
    available_before: Decimal
    work_detail_id: Optional[str] = None
    reservation_id: Optional[str] = None

    def __str__(self) -> str:
        return (
            f"PreAllocationResult({self.truck_number} {self.product}/{self.destination}: "
            f"{self.quantity} on {self.permit_number}, available was {self.available_before})"
        )


@dataclass
class AutoAllocateResult:
    """
    Outcome of one auto-allocation run.

    A truck counts once in success_count no matter how many entries its
    reservation spans. Skipped trucks already held an active reservation.
    """

    success_count: int = 0
    failure_count: int = 0
    skipped: List[str] = field(default_factory=list)
    allocated: Dict[str, List[PreAllocationResult]] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        return (
            f"AutoAllocateResult(✅ {self.success_count} allocated, ❌ {self.failure_count} failed, "
            f"⏭️ {len(self.skipped)} skipped)"
        )


@dataclass
class TruckChangeResult:
    """A reservation matched to a loaded work order, possibly under a new truck number."""

    pre_allocation_id: str
    work_detail_id: str
    truck_number: str
    product: str
    permit_number: str
    loaded_at: str
    previous_truck_number: Optional[str] = None

    @property
    def truck_changed(self) -> bool:
        return self.previous_truck_number is not None
