"""
Allocation Sync

Rewrites the allocations projection from the mother entries. The entry
store is authoritative; running sync twice in a row changes nothing the
second time.
"""

from typing import Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from Config.constants_allocation import DEFAULT_SYNC_DESTINATION
from database_manager.database_session_manager import DatabaseSessionManager
from permit_manager.pre_allocation import reserved_by_entry
from Shared_Utils.dates_and_times import DatesAndTimes
from Shared_Utils.ledger_exceptions import LedgerError, NotFound, LedgerIOError
from Shared_Utils.logging_manager import LoggerManager
from Shared_Utils.precision import PrecisionUtils
from TableModels import MotherEntry, AllocationProjection
from .models import SyncResult


class AllocationSyncService:
    """
    Keeps the allocations projection aligned with the entry store.

    - Projection rows without an entry are deleted
    - Rows whose remaining quantity (or missing destination) disagrees are overwritten
    - Entries without a row get one
    """

    def __init__(
        self,
        database_session_manager: DatabaseSessionManager,
        logger_manager: LoggerManager,
        precision_utils: PrecisionUtils = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.db = database_session_manager
        self.logger = logger_manager.get_logger('reconcile_logger')
        self.precision = precision_utils or PrecisionUtils.get_instance(logger_manager)
        self._now_ms = clock or DatesAndTimes.now_ms

    async def sync(self) -> SyncResult:
        """
        Run one full sync pass in a single transaction.

        Returns:
            SyncResult with added/updated/removed counts

        Raises:
            LedgerIOError: the store failed; nothing was written
        """
        try:
            async with self.db.async_session() as session:
                async with session.begin():
                    result = await self._sync_in_session(session)
        except (SQLAlchemyError, OSError) as e:
            self.logger.error(f"❌ Allocation sync failed: {e}", exc_info=True)
            raise LedgerIOError(f"Allocation sync failed: {e}") from e

        if result.in_sync:
            self.logger.debug(f"🔄 {result.message} ({result.entries_checked} entries)")
        else:
            self.logger.reconcile(f"🔄 {result.message}")
        return result

    async def _sync_in_session(self, session) -> SyncResult:
        entries: Dict[str, MotherEntry] = {
            e.id: e for e in (await session.execute(select(MotherEntry))).scalars().all()
        }
        projections: Dict[str, AllocationProjection] = {
            p.id: p for p in (await session.execute(select(AllocationProjection))).scalars().all()
        }
        result = SyncResult(entries_checked=len(entries))
        now_ms = self._now_ms()

        for projection_id, projection in projections.items():
            if projection_id not in entries:
                await session.delete(projection)
                result.removed += 1

        missing = [entry_id for entry_id in entries if entry_id not in projections]
        reserved = await reserved_by_entry(session, missing) if missing else {}

        for entry_id, entry in entries.items():
            projection = projections.get(entry_id)
            if projection is None:
                session.add(self._new_projection(entry, reserved.get(entry_id), now_ms))
                result.added += 1
            elif self._refresh(projection, entry, now_ms):
                result.updated += 1

        return result

    def _new_projection(self, entry: MotherEntry, reserved, now_ms: int) -> AllocationProjection:
        return AllocationProjection(
            id=entry.id,
            number=entry.number,
            product=entry.product,
            destination=entry.destination or DEFAULT_SYNC_DESTINATION,
            initial_quantity=entry.initial_quantity,
            remaining_quantity=entry.remaining_quantity,
            pre_allocated_quantity=reserved or 0,
            timestamp=entry.timestamp,
            last_updated=now_ms,
        )

    def _refresh(self, projection: AllocationProjection, entry: MotherEntry, now_ms: int) -> bool:
        """Overwrite a stale row from its entry; True when anything changed."""
        changed = False
        remaining = self.precision.quantize_quantity(entry.remaining_quantity)
        if self.precision.quantize_quantity(projection.remaining_quantity) != remaining:
            projection.remaining_quantity = remaining
            changed = True
        if not projection.destination:
            projection.destination = entry.destination or DEFAULT_SYNC_DESTINATION
            changed = True
        if changed:
            projection.last_updated = now_ms
        return changed

    async def ensure_entry(self, entry_id: str) -> str:
        """
        Sync a single entry's projection row.

        Returns:
            'added', 'updated' or 'unchanged'

        Raises:
            NotFound: the entry does not exist in the entry store
        """
        try:
            async with self.db.async_session() as session:
                async with session.begin():
                    entry = await session.get(MotherEntry, entry_id)
                    if entry is None:
                        raise NotFound(f"Entry {entry_id} not found in the entry store")
                    now_ms = self._now_ms()
                    projection = await session.get(AllocationProjection, entry_id)
                    if projection is None:
                        reserved = (await reserved_by_entry(session, [entry_id])).get(entry_id)
                        session.add(self._new_projection(entry, reserved, now_ms))
                        action = 'added'
                    else:
                        changed = self._refresh(projection, entry, now_ms)
                        if projection.destination != (entry.destination or DEFAULT_SYNC_DESTINATION):
                            projection.destination = entry.destination or DEFAULT_SYNC_DESTINATION
                            projection.last_updated = now_ms
                            changed = True
                        action = 'updated' if changed else 'unchanged'
        except LedgerError:
            raise
        except (SQLAlchemyError, OSError) as e:
            self.logger.error(f"❌ Sync of entry {entry_id} failed: {e}", exc_info=True)
            raise LedgerIOError(f"Entry sync failed: {e}") from e

        self.logger.reconcile(f"🔄 Entry {entry_id}: {action}")
        return action
