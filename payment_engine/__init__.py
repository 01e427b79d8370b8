"""
Payment Allocation Engine

Credits owner payments to trucks, oldest outstanding balance first,
and keeps each truck's paid flags derived from its credits.

Key Components:
- PaymentAllocationEngine: commits payments and re-syncs truck status
- calculate_optimal_allocation / validate_manual_allocation: pure split rules
- PaymentAuditor: finds and repairs payments missing their truck credits

Usage:
    from payment_engine import PaymentAllocationEngine

    engine = PaymentAllocationEngine(db_manager, logger_manager)
    result = await engine.allocate_payment('Acme Haulage', 350)
"""

from .engine import PaymentAllocationEngine
from .audit import PaymentAuditor
from .allocator import (
    calculate_optimal_allocation, validate_manual_allocation, truck_balance, derive_status, total_due,
)
from .models import TruckBalance, PaymentAllocation, TruckStatus, PaymentResult, TruckAudit

__all__ = [
    'PaymentAllocationEngine',
    'PaymentAuditor',
    'calculate_optimal_allocation',
    'validate_manual_allocation',
    'truck_balance',
    'derive_status',
    'total_due',
    'TruckBalance',
    'PaymentAllocation',
    'TruckStatus',
    'PaymentResult',
    'TruckAudit',
]

__version__ = '1.0.0'
