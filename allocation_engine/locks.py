import asyncio
from typing import Dict, Tuple


class LedgerLockRegistry:
    """One asyncio.Lock per (product, destination) ledger.

    Plan and commit for the same ledger run under its lock, so two requests in
    this process cannot both read the same remaining quantity. Other processes
    are caught by the MotherEntry version check instead.
    """
    _instance = None

    @classmethod
    def get_instance(cls):
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def __init__(self):
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    def lock_for(self, product: str, destination: str) -> asyncio.Lock:
        key = (product.lower(), destination.lower())
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock
