import asyncio
import logging
import time
from typing import Callable, Optional


async def periodic_runner(task_fn: Callable, interval: float, name: str = "PeriodicTask",
                          logger: Optional[logging.Logger] = None, max_runs: Optional[int] = None):
    """Await task_fn every `interval` seconds; a failing run is logged and the loop keeps going."""
    logger = logger or logging.getLogger(name)
    runs = 0
    try:
        while max_runs is None or runs < max_runs:
            start = time.monotonic()
            try:
                await task_fn()
            except Exception as e:
                logger.error(f"❌ {name} error: {e}", exc_info=True)
            runs += 1
            if max_runs is not None and runs >= max_runs:
                break
            elapsed = time.monotonic() - start
            await asyncio.sleep(max(0, interval - elapsed))
    except asyncio.CancelledError:
        logger.warning(f"⚠️ {name} task was cancelled.")
        raise
