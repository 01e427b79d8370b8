"""
Entry Allocation Engine

Allocates finite-quantity mother entries (import/customs permits) to truck
loads and keeps the debit reversible.

Key Components:
- EntryAllocationEngine: plans, commits and undoes allocations
- plan_allocation / validate_request: pure planning rules (FIFO + permit touch)
- AllocationValidator: audits conservation of quantity
- LedgerLockRegistry: serializes work on one (product, destination) ledger

Architecture:
- Entries are the source of truth; the allocations projection mirrors them
- One allocation = one transaction (entries, truck records, report, projection)
- The report id is the transaction id and the undo handle

Usage:
    from allocation_engine import EntryAllocationEngine, AllocationRequest

    engine = EntryAllocationEngine(db_manager, logger_manager)
    result = await engine.allocate(AllocationRequest('T-12', 'pms', 'local', 40000))
"""

from .engine import EntryAllocationEngine
from .validator import AllocationValidator
from .locks import LedgerLockRegistry
from .planner import plan_allocation, validate_request, validate_load_volume
from .models import (
    AllocationRequest, AllocationPlan, AllocationResult, EntryView, PlanLine,
    UndoResult, LedgerSummary, ValidationResult,
)

__all__ = [
    'EntryAllocationEngine',
    'AllocationValidator',
    'LedgerLockRegistry',
    'plan_allocation',
    'validate_request',
    'validate_load_volume',
    'AllocationRequest',
    'AllocationPlan',
    'AllocationResult',
    'EntryView',
    'PlanLine',
    'UndoResult',
    'LedgerSummary',
    'ValidationResult',
]

__version__ = '1.0.0'
