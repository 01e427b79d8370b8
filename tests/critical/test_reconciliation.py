"""
Critical Path Tests: Reconciliation

Projection sync, reservation cleanup, validation warnings and the runner.

Priority: 🟡 HIGH (a stale projection misleads the permit desk)
"""

import pytest
from decimal import Decimal

from sqlalchemy import select, delete

from allocation_engine import AllocationRequest
from permit_manager import adjust_pre_allocated
from reconciliation import ReconciliationRunner
from Shared_Utils.ledger_exceptions import NotFound
from TableModels import AllocationProjection, PermitPreAllocation, MotherEntry


@pytest.fixture
def add_reservation(db, clock):
    """Write a reservation row directly, keeping the projection's reserved total in step."""
    async def _add(pre_id, truck_number, entry_id, quantity, product="ago", offset=0, used=False,
                   reservation_id=None):
        async with db.async_session() as session:
            async with session.begin():
                session.add(PermitPreAllocation(
                    id=pre_id,
                    truck_number=truck_number,
                    product=product,
                    owner="Acme Haulage",
                    destination="ssd",
                    permit_entry_id=entry_id,
                    reservation_id=reservation_id,
                    permit_number=f"#{entry_id}",
                    quantity=Decimal(str(quantity)),
                    allocated_at="2023-11-14T23:13:20+00:00",
                    timestamp=clock() + offset,
                    used=used,
                ))
                if not used:
                    await adjust_pre_allocated(session, entry_id, Decimal(str(quantity)), clock())
        return pre_id
    return _add


@pytest.fixture
def edit_projection(db):
    async def _edit(entry_id, **values):
        async with db.async_session() as session:
            async with session.begin():
                projection = await session.get(AllocationProjection, entry_id)
                for name, value in values.items():
                    setattr(projection, name, value)
    return _edit


async def drop_projection(db, entry_id):
    async with db.async_session() as session:
        async with session.begin():
            await session.execute(delete(AllocationProjection).where(AllocationProjection.id == entry_id))


async def projection_ids(db):
    async with db.async_session() as session:
        return sorted((await session.execute(select(AllocationProjection.id))).scalars().all())


class TestAllocationSync:

    @pytest.mark.critical
    async def test_sync_repairs_and_second_pass_is_noop(self, sync_service, seed_entries, edit_projection, db,
                                                        fetch, clock):
        """
        Given: A projection with one orphan row, one stale row and one missing row
        When: sync runs twice
        Then: The first pass adds 1, updates 1, removes 1; the second changes nothing
        """
        await seed_entries("pms", "local", [100, 200, 300])
        await drop_projection(db, "e3")
        await edit_projection("e2", remaining_quantity=Decimal("999"))
        async with db.async_session() as session:
            async with session.begin():
                session.add(AllocationProjection(
                    id="ghost", number="G-001", product="pms", destination="local",
                    initial_quantity=Decimal("50"), remaining_quantity=Decimal("50"),
                    pre_allocated_quantity=0, timestamp=clock(),
                ))

        first = await sync_service.sync()

        assert (first.added, first.updated, first.removed) == (1, 1, 1)
        assert first.message == "Sync completed: Added 1, Updated 1, Removed 1 entries"
        assert await projection_ids(db) == ["e1", "e2", "e3"]
        assert (await fetch(AllocationProjection, "e2")).remaining_quantity == Decimal("200")
        assert (await fetch(AllocationProjection, "e3")).remaining_quantity == Decimal("300")

        second = await sync_service.sync()

        assert second.in_sync
        assert second.message == "All entries already in sync"
        assert second.entries_checked == 3

    @pytest.mark.critical
    async def test_new_row_carries_active_reservations(self, sync_service, permit_service, seed_entries, fetch):
        await seed_entries("ago", "ssd", [5000], with_projection=False)
        await permit_service.pre_allocate("KDA 1", "ago", "Acme Haulage", "e1", quantity=2000)

        result = await sync_service.sync()

        assert result.added == 1
        projection = await fetch(AllocationProjection, "e1")
        assert projection.pre_allocated_quantity == Decimal("2000")
        assert projection.destination == "ssd"

    async def test_missing_destination_filled(self, sync_service, seed_entries, edit_projection, fetch):
        await seed_entries("ago", "ssd", [5000])
        await edit_projection("e1", destination=None)

        result = await sync_service.sync()

        assert result.updated == 1
        assert (await fetch(AllocationProjection, "e1")).destination == "ssd"

    @pytest.mark.critical
    async def test_sync_follows_allocations(self, sync_service, allocation_engine, seed_entries, fetch):
        await seed_entries("pms", "local", [100, 100], with_projection=False)
        await allocation_engine.allocate(AllocationRequest("T-1", "pms", "local", 150))

        await sync_service.sync()

        assert (await fetch(AllocationProjection, "e1")).remaining_quantity == Decimal("0")
        assert (await fetch(AllocationProjection, "e2")).remaining_quantity == Decimal("50")
        assert (await sync_service.sync()).in_sync


class TestEnsureEntry:

    async def test_added_then_unchanged(self, sync_service, seed_entries):
        await seed_entries("ago", "ssd", [5000], with_projection=False)

        assert await sync_service.ensure_entry("e1") == "added"
        assert await sync_service.ensure_entry("e1") == "unchanged"

    async def test_updated_when_stale(self, sync_service, seed_entries, edit_projection, fetch):
        await seed_entries("ago", "ssd", [5000])
        await edit_projection("e1", remaining_quantity=Decimal("10"), destination="local")

        assert await sync_service.ensure_entry("e1") == "updated"
        projection = await fetch(AllocationProjection, "e1")
        assert (projection.remaining_quantity, projection.destination) == (Decimal("5000"), "ssd")

    async def test_unknown_entry(self, sync_service):
        with pytest.raises(NotFound):
            await sync_service.ensure_entry("missing")


class TestPermitCleanup:

    @pytest.mark.critical
    async def test_duplicates_collapse_to_newest(self, cleanup_service, seed_entries, add_reservation, fetch):
        """
        Given: KDA 1 holds two active ago reservations (truck number case differs)
        Then: The newer survives and the projection drops the removed quantity
        """
        await seed_entries("ago", "ssd", [5000])
        await add_reservation("old", "KDA 1", "e1", 1000, offset=0)
        await add_reservation("new", "kda 1", "e1", 1500, offset=1_000)

        result = await cleanup_service.cleanup_duplicates()

        assert (result.duplicates_removed, result.consolidated, result.errors) == (1, 1, [])
        assert await fetch(PermitPreAllocation, "old") is None
        assert await fetch(PermitPreAllocation, "new") is not None
        assert (await fetch(AllocationProjection, "e1")).pre_allocated_quantity == Decimal("1500")
        assert await cleanup_service.validate() == []

    @pytest.mark.critical
    async def test_legs_of_one_reservation_are_kept_together(self, cleanup_service, seed_entries,
                                                             add_reservation, fetch):
        """
        Given: KDA 1 holds an older single reservation and a newer one split across e1 and e2
        Then: The older one goes; both legs of the newer one survive
        """
        await seed_entries("ago", "ssd", [20000, 20000])
        await add_reservation("single", "KDA 1", "e1", 5000, offset=0)
        await add_reservation("leg-1", "KDA 1", "e1", 15000, offset=1_000, reservation_id="r-2")
        await add_reservation("leg-2", "KDA 1", "e2", 16000, offset=1_000, reservation_id="r-2")

        result = await cleanup_service.cleanup_duplicates()

        assert (result.duplicates_removed, result.consolidated) == (1, 1)
        assert await fetch(PermitPreAllocation, "single") is None
        assert (await fetch(AllocationProjection, "e1")).pre_allocated_quantity == Decimal("15000")
        assert (await fetch(AllocationProjection, "e2")).pre_allocated_quantity == Decimal("16000")

    async def test_used_reservations_are_not_duplicates(self, cleanup_service, seed_entries, add_reservation):
        await seed_entries("ago", "ssd", [5000])
        await add_reservation("used", "KDA 1", "e1", 1000, used=True)
        await add_reservation("active", "KDA 1", "e1", 1000)

        result = await cleanup_service.cleanup_duplicates()

        assert result.duplicates_removed == 0

    @pytest.mark.critical
    async def test_orphans_removed_known_trucks_kept(self, cleanup_service, seed_entries, seed_work_detail,
                                                     add_reservation, fetch):
        await seed_entries("ago", "ssd", [50000])
        await seed_work_detail("w1")
        await seed_work_detail("w2", truck_number="KDA NEW", previous_trucks=["KDA OLD"])
        await add_reservation("kept", "KDA W1", "e1", 1000)
        await add_reservation("history", "KDA OLD", "e1", 2000)
        await add_reservation("orphan", "KDA GHOST", "e1", 4000)

        removed = await cleanup_service.cleanup_orphaned()

        assert removed == 1
        assert await fetch(PermitPreAllocation, "orphan") is None
        assert await fetch(PermitPreAllocation, "history") is not None
        assert (await fetch(AllocationProjection, "e1")).pre_allocated_quantity == Decimal("3000")

    @pytest.mark.critical
    async def test_validate_reports_problems(self, cleanup_service, seed_entries, add_reservation,
                                             edit_projection):
        await seed_entries("ago", "ssd", [5000, 5000])
        await add_reservation("missing-entry", "KDA 1", "gone", 100)
        await add_reservation("too-big", "KDA 2", "e1", 6000)
        await edit_projection("e2", pre_allocated_quantity=Decimal("10"))

        warnings = await cleanup_service.validate()

        assert any(w.startswith("Invalid permit number #gone") for w in warnings)
        assert any(w.startswith("Over-allocation detected for permit #e1") for w in warnings)
        assert any("E-001 is reserved for" in w for w in warnings)
        assert any(w.startswith("Projection E-002 shows 10.00 pre-allocated") for w in warnings)

    async def test_validate_clean_ledger(self, cleanup_service, permit_service, seed_entries):
        await seed_entries("ago", "ssd", [5000])
        await permit_service.pre_allocate("KDA 1", "ago", "Acme Haulage", "e1", quantity=3000)

        assert await cleanup_service.validate() == []


class TestReconciliationRunner:

    @pytest.fixture
    def runner(self, db, logger_manager, clock):
        return ReconciliationRunner(db, logger_manager, interval=0, clock=clock)

    @pytest.mark.critical
    async def test_run_once_repairs_then_reports_clean(self, runner, seed_entries, seed_work_detail,
                                                       add_reservation, db, fetch):
        await seed_entries("ago", "ssd", [5000, 5000])
        await drop_projection(db, "e2")
        await seed_work_detail("w1")
        await add_reservation("a", "KDA W1", "e1", 1000, offset=0)
        await add_reservation("b", "KDA W1", "e1", 1000, offset=1_000)
        await add_reservation("ghost", "KDA GHOST", "e1", 500)

        report = await runner.run_once()

        assert report.sync.added == 1
        assert report.cleanup.duplicates_removed == 1
        assert report.orphans_removed == 1
        assert report.warnings == []
        assert not report.is_clean
        assert (await fetch(AllocationProjection, "e1")).pre_allocated_quantity == Decimal("1000")

        again = await runner.run_once()

        assert again.is_clean, str(again)
        assert runner.last_report is again
        assert runner.runs == 2

    @pytest.mark.critical
    async def test_multi_entry_reservation_survives_reconciliation(self, runner, permit_service, seed_entries,
                                                                    seed_work_detail, db, fetch):
        """
        Given: auto_allocate reserved 36000 for KDA W1 across two 20000 entries
        When: a reconciliation pass runs
        Then: Both legs and the reserved total are unchanged
        """
        await seed_entries("ago", "ssd", [20000, 20000])
        await seed_work_detail("w1", quantity=36000)
        auto = await permit_service.auto_allocate()
        assert len({r.reservation_id for r in auto.allocated["KDA W1"]}) == 1

        report = await runner.run_once()

        assert report.cleanup.duplicates_removed == 0
        assert report.warnings == []
        active = await permit_service.get_active_pre_allocations(truck_number="KDA W1")
        assert sorted(p.permit_entry_id for p in active) == ["e1", "e2"]
        assert sum(p.quantity for p in active) == Decimal("36000")
        assert (await fetch(AllocationProjection, "e1")).pre_allocated_quantity == Decimal("20000")
        assert (await fetch(AllocationProjection, "e2")).pre_allocated_quantity == Decimal("16000")

    async def test_run_once_consumes_loaded_trucks(self, runner, seed_entries, seed_work_detail, add_reservation):
        await seed_entries("ago", "ssd", [5000])
        await seed_work_detail("w1", truck_number="KDA NEW", loaded=True, previous_trucks=["KDA OLD"])
        await add_reservation("swap", "KDA OLD", "e1", 1000)

        report = await runner.run_once()

        assert report.truck_changes == 1
        assert report.orphans_removed == 0

    async def test_run_forever_stops_after_max_runs(self, runner, seed_entries):
        await seed_entries("ago", "ssd", [5000])

        await runner.run_forever(max_runs=2)

        assert runner.runs == 2
        assert runner.last_report.is_clean

    async def test_entry_store_untouched_by_reconciliation(self, runner, seed_entries, fetch):
        await seed_entries("ago", "ssd", [5000], with_projection=False)

        await runner.run_once()

        entry = await fetch(MotherEntry, "e1")
        assert entry.remaining_quantity == Decimal("5000")
        assert entry.version == 1
