"""
Core system constants shared across all modules.

These define fundamental ledger behavior and rarely change.
Changes to these values affect every engine.
"""
from decimal import Decimal

# ============================================================================
# Precision
# ============================================================================

QUANTITY_QUANT = Decimal('0.01')
"""Quantities (litres) are stored and compared at two decimal places"""

MONEY_QUANT = Decimal('0.01')
"""Money is rounded half-up to cents before any comparison"""

ZERO = Decimal('0')

# ============================================================================
# Time Definitions
# ============================================================================

SECONDS_PER_DAY = 86400
MILLIS_PER_SECOND = 1000

# ============================================================================
# System Limits (Hard Limits)
# ============================================================================

REPORT_QUERY_HARD_LIMIT = 1000
"""Hard limit: never fetch more than 1000 allocation reports in one listing"""

# ============================================================================
# Display Defaults
# ============================================================================

DEFAULT_REPORT_LIMIT = 50
"""Default number of allocation reports returned by listings"""
