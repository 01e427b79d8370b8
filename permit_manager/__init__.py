"""
Permit Pre-Allocation

Soft reservations of permit entries for trucks headed to permit
destinations. Reservations never debit an entry; they only lower
what other trucks can reserve from it.

Usage:
    from permit_manager import PermitPreAllocationService

    permits = PermitPreAllocationService(db_manager, logger_manager)
    await permits.pre_allocate('T-12', 'ago', 'Acme Haulage', entry_id, 'E-2024-001')
    await permits.auto_allocate()
"""

from .pre_allocation import PermitPreAllocationService, adjust_pre_allocated, reserved_by_entry
from .models import EntryOption, PreAllocationResult, AutoAllocateResult, TruckChangeResult

__all__ = [
    'PermitPreAllocationService',
    'adjust_pre_allocated',
    'reserved_by_entry',
    'EntryOption',
    'PreAllocationResult',
    'AutoAllocateResult',
    'TruckChangeResult',
]
