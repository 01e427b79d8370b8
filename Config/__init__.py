"""
Configuration package for the fuel ledger.

Provides centralized access to all constants and environment configuration.

Usage:
    from Config import constants_allocation as allocation
    print(allocation.PERMIT_TOUCH_QUANTITY)

    from Config.environment import env
    print(f"Running in {env.env_name} mode")
"""

# Auto-load environment on package import (before any env-driven constants)
from Config.environment import env, is_docker, env_name

from Config import constants_core
from Config import constants_allocation

__all__ = [
    'env',
    'is_docker',
    'env_name',
    'constants_core',
    'constants_allocation',
]
