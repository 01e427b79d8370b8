"""
Reconciliation Service

Repairs drift between the entry store, the allocations projection and
the permit reservations. Safe to run repeatedly or on a timer.

Key Components:
- AllocationSyncService: projection rows follow the mother entries
- PermitCleanupService: duplicate/orphan reservations and validation warnings
- ReconciliationRunner: one pass on demand, or a periodic loop
"""

from .sync_service import AllocationSyncService
from .permit_cleanup import PermitCleanupService
from .runner import ReconciliationRunner
from .models import SyncResult, CleanupResult, ReconciliationReport

__all__ = [
    'AllocationSyncService',
    'PermitCleanupService',
    'ReconciliationRunner',
    'SyncResult',
    'CleanupResult',
    'ReconciliationReport',
]
