"""
Ledger Test Fixtures

Every test gets its own SQLite file database (aiosqlite), a fresh
LoggerManager writing under tmp_path, and a fixed clock so undo windows
and ordering are deterministic.
"""

import pytest
from decimal import Decimal

from allocation_engine import EntryAllocationEngine, LedgerLockRegistry
from database_manager.database_session_manager import DatabaseSessionManager
from payment_engine import PaymentAllocationEngine, PaymentAuditor
from permit_manager import PermitPreAllocationService
from reconciliation import AllocationSyncService, PermitCleanupService
from Shared_Utils.logger import setup_structured_logging
from Shared_Utils.logging_manager import LoggerManager
from TableModels import MotherEntry, AllocationProjection, WorkDetail


BASE_TS = 1_700_000_000_000  # 2023-11-14T22:13:20Z


class FixedClock:
    """Epoch-ms clock that only moves when told to."""

    def __init__(self, now_ms: int = BASE_TS + 3_600_000):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)


@pytest.fixture(autouse=True)
def structured_logging(tmp_path):
    """Keep structured log files out of the working tree."""
    return setup_structured_logging(log_dir=str(tmp_path / "structured"), console_level="WARNING", use_json=False)


@pytest.fixture
def logger_manager(tmp_path):
    LoggerManager.reset()
    manager = LoggerManager({"log_level": "WARNING"}, log_dir=str(tmp_path / "logs"))
    yield manager
    LoggerManager.reset()


@pytest.fixture
async def db(tmp_path):
    manager = DatabaseSessionManager(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    yield manager
    await manager.disconnect()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def allocation_engine(db, logger_manager, clock):
    return EntryAllocationEngine(
        db, logger_manager,
        lock_registry=LedgerLockRegistry(),
        volume_rules={},
        clock=clock,
    )


@pytest.fixture
def payment_engine(db, logger_manager, clock):
    return PaymentAllocationEngine(db, logger_manager, clock=clock)


@pytest.fixture
def payment_auditor(db, logger_manager):
    return PaymentAuditor(db, logger_manager)


@pytest.fixture
def permit_service(db, logger_manager, clock):
    return PermitPreAllocationService(db, logger_manager, clock=clock)


@pytest.fixture
def sync_service(db, logger_manager, clock):
    return AllocationSyncService(db, logger_manager, clock=clock)


@pytest.fixture
def cleanup_service(db, logger_manager, clock):
    return PermitCleanupService(db, logger_manager, clock=clock)


# ============================================================================
# Seeding helpers
# ============================================================================

async def _seed_entries(db, product, destination, quantities, prefix="e", with_projection=True):
    """Entries t1 < t2 < ... with the given remaining (= initial) quantities. Returns their ids."""
    ids = []
    async with db.async_session() as session:
        async with session.begin():
            for i, quantity in enumerate(quantities, start=1):
                entry_id = f"{prefix}{i}"
                entry = MotherEntry.create(
                    id=entry_id,
                    number=f"{prefix.upper()}-{i:03d}",
                    product=product,
                    destination=destination,
                    initial_quantity=quantity,
                    timestamp=BASE_TS + i * 60_000,
                )
                session.add(entry)
                if with_projection:
                    session.add(AllocationProjection(
                        id=entry_id,
                        number=entry.number,
                        product=entry.product,
                        destination=entry.destination,
                        initial_quantity=entry.initial_quantity,
                        remaining_quantity=entry.remaining_quantity,
                        pre_allocated_quantity=0,
                        timestamp=entry.timestamp,
                    ))
                ids.append(entry_id)
    return ids


async def _seed_work_detail(db, work_id, owner="Acme Haulage", truck_number=None, product="ago",
                           destination="ssd", quantity=36000, price=0, at20=None, created_offset=0,
                           loaded=False, status="queued", previous_trucks=None, paid=False):
    async with db.async_session() as session:
        async with session.begin():
            session.add(WorkDetail(
                id=work_id,
                owner=owner,
                product=product,
                truck_number=truck_number or f"KDA {work_id.upper()}",
                quantity=Decimal(str(quantity)),
                destination=destination,
                status=status,
                loaded=loaded,
                paid=paid,
                payment_pending=False,
                at20=None if at20 is None else Decimal(str(at20)),
                price=Decimal(str(price)),
                previous_trucks=previous_trucks or [],
                permit_allocated=False,
                gate_pass_generated=False,
                created_at=BASE_TS + created_offset,
            ))
    return work_id


async def _fetch(db, model, key):
    async with db.async_session() as session:
        return await session.get(model, key)


@pytest.fixture
def seed_entries(db):
    async def _seed(product, destination, quantities, **kwargs):
        return await _seed_entries(db, product, destination, quantities, **kwargs)
    return _seed


@pytest.fixture
def seed_work_detail(db):
    async def _seed(work_id, **kwargs):
        return await _seed_work_detail(db, work_id, **kwargs)
    return _seed


@pytest.fixture
def fetch(db):
    async def _get(model, key):
        return await _fetch(db, model, key)
    return _get
