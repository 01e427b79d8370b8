"""
Allocation, permit and reconciliation constants.

Values marked "env override" can be tuned per deployment through the
environment (or the .env file loaded by Config.environment).
"""
import os
from decimal import Decimal

# ============================================================================
# Destinations & Products
# ============================================================================

PERMIT_DESTINATION = 'ssd'
"""Destination that requires a permit entry on every allocation"""

DEFAULT_SYNC_DESTINATION = 'ssd'
"""Destination written to projection rows whose entry has none recorded"""

# ============================================================================
# Volume Rules (litres, inclusive)
# ============================================================================

DESTINATION_VOLUME_RULES = {
    'ssd': {
        'pms': (Decimal('37000'), Decimal('45000')),
        'ago': (Decimal('33000'), Decimal('36000')),
    },
    'local': {
        'pms': (Decimal('5000'), Decimal('45000')),
        'ago': (Decimal('5000'), Decimal('36000')),
    },
}
"""(min, max) load volume per destination and product"""

# ============================================================================
# Permit Exception
# ============================================================================

PERMIT_TOUCH_QUANTITY = Decimal(os.getenv('PERMIT_TOUCH_QUANTITY', '1000'))
"""Volume drawn from the operator-selected permit entry before FIFO resumes (env override)"""

PERMIT_TOUCH_MAX = Decimal('45000')
"""Largest accepted permit touch; one full ssd PMS load"""

# ============================================================================
# Undo
# ============================================================================

UNDO_WINDOW_SECONDS = int(os.getenv('UNDO_WINDOW_SECONDS', '300'))
"""Allocations older than this can no longer be undone (env override)"""

# ============================================================================
# Reconciliation
# ============================================================================

SYNC_INTERVAL_SECONDS = int(os.getenv('SYNC_INTERVAL_SECONDS', '300'))
"""Period of the background reconciliation loop (env override)"""

PRE_ALLOCATION_ID_SUFFIX_LEN = 9
"""Random suffix length of generated pre-allocation ids"""
