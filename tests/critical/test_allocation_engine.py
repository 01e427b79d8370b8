"""
Critical Path Tests: Entry Allocation Engine

Commit, conservation and undo against a real (SQLite) store.

Priority: 🔴 CRITICAL (a wrong debit misstates customs quantity)
"""

import asyncio
from decimal import Decimal

import pytest

from sqlalchemy import select, func

from Config.exceptions import ConfigRangeError
from allocation_engine import AllocationRequest, AllocationValidator, EntryAllocationEngine, LedgerLockRegistry
from Shared_Utils.ledger_exceptions import (
    InsufficientQuantity, PermitEntryRequired, AllocationNotFound, StaleUndo, ValidationError,
    ConcurrentModificationError,
)
from TableModels import (
    MotherEntry, AllocationProjection, AllocationReport, TruckAllocationRecord, PermitPreAllocation,
    TruckPayment, WorkDetail,
)


async def count(db, model):
    async with db.async_session() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def remaining(fetch, entry_id):
    return (await fetch(MotherEntry, entry_id)).remaining_quantity


class TestAllocateCommit:
    """One allocation = one transaction across entries, records, report and projection"""

    @pytest.mark.critical
    async def test_fifo_commit_debits_entries_and_writes_records(self, allocation_engine, seed_entries, fetch, db):
        """
        Test: FIFO commit

        Given: pms/local entries [100, 100, 100]
        When: Truck T-1 allocates 150
        Then: e1 -> 0, e2 -> 50, e3 untouched
        And: Two truck records, one report and a mirrored projection
        """
        await seed_entries("pms", "local", [100, 100, 100])

        result = await allocation_engine.allocate(AllocationRequest("T-1", "pms", "local", 150))

        assert result.total_allocated == Decimal("150")
        assert [(l.entry_id, l.amount) for l in result.lines] == [("e1", Decimal("100")), ("e2", Decimal("50"))]
        assert await remaining(fetch, "e1") == Decimal("0")
        assert await remaining(fetch, "e2") == Decimal("50")
        assert await remaining(fetch, "e3") == Decimal("100")

        records = await allocation_engine.get_truck_allocations("T-1", "pms", "local")
        assert sorted((r.entry_id, r.subtracted_quantity) for r in records) == [
            ("e1", Decimal("100")), ("e2", Decimal("50")),
        ]
        assert all(r.transaction_id == result.transaction_id for r in records)

        report = await fetch(AllocationReport, result.transaction_id)
        assert report.total_volume == Decimal("150")
        assert report.allocation_ts == result.allocation_ts

        assert (await fetch(AllocationProjection, "e2")).remaining_quantity == Decimal("50")

    @pytest.mark.critical
    async def test_permit_touch_commit(self, allocation_engine, seed_entries, fetch):
        """
        Given: ago/ssd entries e1, e2 with 5000 each
        When: 5000 is allocated with e2 selected
        Then: e2 gives 1000, e1 gives 4000
        """
        await seed_entries("ago", "ssd", [5000, 5000])

        result = await allocation_engine.allocate(
            AllocationRequest("T-1", "ago", "ssd", 5000, permit_entry_id="e2")
        )

        assert [(l.entry_id, l.amount) for l in result.lines] == [("e2", Decimal("1000")), ("e1", Decimal("4000"))]
        assert await remaining(fetch, "e1") == Decimal("1000")
        assert await remaining(fetch, "e2") == Decimal("4000")

        report = await fetch(AllocationReport, result.transaction_id)
        assert report.snapshot["permit_exception"] is True

    @pytest.mark.critical
    async def test_conservation_holds_after_allocations(self, allocation_engine, seed_entries, db, logger_manager):
        await seed_entries("pms", "local", [100, 100, 100])
        await allocation_engine.allocate(AllocationRequest("T-1", "pms", "local", 150))
        await allocation_engine.allocate(AllocationRequest("T-2", "pms", "local", 120))

        result = await AllocationValidator(db, logger_manager).validate_ledger(strict=True)

        assert result.is_valid, str(result)
        assert result.conservation_violations == 0
        assert result.records_checked == 4

    @pytest.mark.critical
    async def test_insufficient_quantity_writes_nothing(self, allocation_engine, seed_entries, fetch, db):
        await seed_entries("pms", "local", [100, 100])

        with pytest.raises(InsufficientQuantity) as exc:
            await allocation_engine.allocate(AllocationRequest("T-1", "pms", "local", 250))

        assert exc.value.shortfall == Decimal("50")
        assert await remaining(fetch, "e1") == Decimal("100")
        assert await count(db, TruckAllocationRecord) == 0
        assert await count(db, AllocationReport) == 0

    @pytest.mark.critical
    async def test_permit_destination_without_entry_rejected(self, allocation_engine, seed_entries, db):
        await seed_entries("ago", "ssd", [5000])

        with pytest.raises(PermitEntryRequired):
            await allocation_engine.allocate(AllocationRequest("T-1", "ago", "ssd", 1000))
        assert await count(db, AllocationReport) == 0

    async def test_selected_entry_from_other_ledger_rejected(self, allocation_engine, seed_entries):
        await seed_entries("ago", "ssd", [5000])
        await seed_entries("pms", "ssd", [5000], prefix="p")

        with pytest.raises(ValidationError):
            await allocation_engine.allocate(AllocationRequest("T-1", "ago", "ssd", 2000, permit_entry_id="p1"))


class TestUndo:
    """Undo restores the exact pre-allocation state or refuses"""

    @pytest.mark.critical
    async def test_undo_restores_entries_and_removes_records(self, allocation_engine, seed_entries, fetch, db,
                                                             logger_manager):
        """
        Given: A committed 150 allocation over e1, e2
        When: It is undone inside the window
        Then: Entries, projection and records return to their prior state
        """
        await seed_entries("pms", "local", [100, 100, 100])
        result = await allocation_engine.allocate(AllocationRequest("T-1", "pms", "local", 150))

        undo = await allocation_engine.undo(result.transaction_id)

        assert undo.records_removed == 2
        assert await remaining(fetch, "e1") == Decimal("100")
        assert await remaining(fetch, "e2") == Decimal("100")
        assert (await fetch(AllocationProjection, "e1")).remaining_quantity == Decimal("100")
        assert await count(db, TruckAllocationRecord) == 0
        assert await fetch(AllocationReport, result.transaction_id) is None

        validation = await AllocationValidator(db, logger_manager).validate_ledger()
        assert validation.is_valid

    @pytest.mark.critical
    async def test_undo_twice_raises_not_found(self, allocation_engine, seed_entries):
        await seed_entries("pms", "local", [100])
        result = await allocation_engine.allocate(AllocationRequest("T-1", "pms", "local", 40))
        await allocation_engine.undo(result.transaction_id)

        with pytest.raises(AllocationNotFound):
            await allocation_engine.undo(result.transaction_id)

    @pytest.mark.critical
    async def test_unknown_transaction_raises_not_found(self, allocation_engine):
        with pytest.raises(AllocationNotFound) as exc:
            await allocation_engine.undo("does-not-exist")
        assert exc.value.transaction_id == "does-not-exist"

    @pytest.mark.critical
    async def test_undo_refused_after_window(self, allocation_engine, seed_entries, fetch, clock):
        """
        Given: An allocation committed 301 seconds ago
        Then: Undo raises StaleUndo and nothing changes
        """
        await seed_entries("pms", "local", [100])
        result = await allocation_engine.allocate(AllocationRequest("T-1", "pms", "local", 40))

        clock.advance(301)
        with pytest.raises(StaleUndo):
            await allocation_engine.undo(result.transaction_id)

        assert await remaining(fetch, "e1") == Decimal("60")
        assert await fetch(AllocationReport, result.transaction_id) is not None

    @pytest.mark.critical
    async def test_undo_refused_when_entry_moved_since(self, allocation_engine, seed_entries, fetch):
        """
        Given: A draws 50 from e1, then B draws 30 from e1
        Then: Undoing A is refused; undoing B then A succeeds
        """
        await seed_entries("pms", "local", [100, 100])
        first = await allocation_engine.allocate(AllocationRequest("T-A", "pms", "local", 50))
        second = await allocation_engine.allocate(AllocationRequest("T-B", "pms", "local", 30))

        with pytest.raises(StaleUndo):
            await allocation_engine.undo(first.transaction_id)
        assert await remaining(fetch, "e1") == Decimal("20")

        await allocation_engine.undo(second.transaction_id)
        await allocation_engine.undo(first.transaction_id)
        assert await remaining(fetch, "e1") == Decimal("100")

    async def test_undo_latest_picks_newest_of_truck(self, allocation_engine, seed_entries, fetch, clock):
        await seed_entries("pms", "local", [1000])
        await allocation_engine.allocate(AllocationRequest("T-1", "pms", "local", 100))
        clock.advance(10)
        latest = await allocation_engine.allocate(AllocationRequest("T-1", "pms", "local", 200))

        undo = await allocation_engine.undo_latest("T-1")

        assert undo.transaction_id == latest.transaction_id
        assert await remaining(fetch, "e1") == Decimal("900")

    async def test_undo_latest_without_allocations(self, allocation_engine):
        with pytest.raises(AllocationNotFound):
            await allocation_engine.undo_latest("NOBODY")


class TestPreAllocationConsumption:
    """A committed load flips the truck's reservations to used"""

    @pytest.mark.critical
    async def test_allocation_consumes_and_undo_reverts_reservation(self, allocation_engine, permit_service,
                                                                    seed_entries, fetch):
        await seed_entries("ago", "ssd", [5000, 5000])
        pre = await permit_service.pre_allocate("KDA 1", "ago", "Acme", "e2", quantity=2000)
        assert (await fetch(AllocationProjection, "e2")).pre_allocated_quantity == Decimal("2000")

        result = await allocation_engine.allocate(
            AllocationRequest("KDA 1", "ago", "ssd", 2000, permit_entry_id="e2")
        )

        assert result.pre_allocations_used == [pre.pre_allocation_id]
        stored = await fetch(PermitPreAllocation, pre.pre_allocation_id)
        assert stored.used is True
        assert stored.used_at is not None
        assert (await fetch(AllocationProjection, "e2")).pre_allocated_quantity == Decimal("0")

        undo = await allocation_engine.undo(result.transaction_id)

        assert undo.pre_allocations_reverted == [pre.pre_allocation_id]
        stored = await fetch(PermitPreAllocation, pre.pre_allocation_id)
        assert stored.used is False
        assert stored.used_at is None
        assert (await fetch(AllocationProjection, "e2")).pre_allocated_quantity == Decimal("2000")


class TestPaidFlag:

    async def test_allocation_marks_covered_truck_paid(self, allocation_engine, seed_entries, seed_work_detail,
                                                       fetch, db, clock):
        """
        Given: A work order priced at 1 with 200 already paid and no AT20 yet
        When: The load is allocated with at20 = 200
        Then: The work order is marked paid; undo puts the flags and AT20 back
        """
        await seed_entries("pms", "local", [1000])
        await seed_work_detail("w1", product="pms", destination="local", price=1)
        async with db.async_session() as session:
            async with session.begin():
                session.add(TruckPayment(id="tp1", truck_id="w1", payment_id="p1",
                                         amount=Decimal("200"), timestamp=clock()))

        result = await allocation_engine.allocate(AllocationRequest(
            "KDA W1", "pms", "local", 500, at20=200, work_detail_id="w1",
        ))

        assert result.truck_marked_paid is True
        work = await fetch(WorkDetail, "w1")
        assert (work.paid, work.payment_status, work.at20) == (True, "paid", Decimal("200"))

        await allocation_engine.undo(result.transaction_id)
        work = await fetch(WorkDetail, "w1")
        assert (work.paid, work.payment_status, work.at20) == (False, None, None)


class TestReads:

    async def test_summarize_ledgers_groups_by_product_and_destination(self, allocation_engine, seed_entries):
        await seed_entries("pms", "local", [100, 200])
        await seed_entries("ago", "ssd", [5000], prefix="s")

        summaries = {(s.product, s.destination): s for s in await allocation_engine.summarize_ledgers()}

        assert summaries[("pms", "local")].remaining_quantity == Decimal("300")
        assert summaries[("pms", "local")].entry_numbers == ["E-001", "E-002"]
        assert summaries[("ago", "ssd")].entry_count == 1
        assert summaries[("ago", "ssd")].label == "AGO - SSD"

    async def test_list_reports_newest_first(self, allocation_engine, seed_entries, clock):
        await seed_entries("pms", "local", [1000])
        first = await allocation_engine.allocate(AllocationRequest("T-1", "pms", "local", 10))
        clock.advance(5)
        second = await allocation_engine.allocate(AllocationRequest("T-2", "pms", "local", 20))

        reports = await allocation_engine.list_reports()

        assert [r.id for r in reports] == [second.transaction_id, first.transaction_id]
        assert await allocation_engine.count_reports() == 2
        assert [r.id for r in await allocation_engine.list_reports(truck_number="T-1")] == [first.transaction_id]

    async def test_list_reports_since(self, allocation_engine, seed_entries, clock):
        await seed_entries("pms", "local", [1000])
        await allocation_engine.allocate(AllocationRequest("T-1", "pms", "local", 10))
        clock.advance(60)
        cutoff = clock()
        second = await allocation_engine.allocate(AllocationRequest("T-2", "pms", "local", 20))

        assert [r.id for r in await allocation_engine.list_reports(since=cutoff)] == [second.transaction_id]
        assert [r.id for r in await allocation_engine.list_reports(since=str(cutoff // 1000))] == [second.transaction_id]
        assert len(await allocation_engine.list_reports(since=None)) == 2

    async def test_entry_usage_lists_truck_records(self, allocation_engine, seed_entries, clock):
        await seed_entries("pms", "local", [100, 100])
        await allocation_engine.allocate(AllocationRequest("T-1", "pms", "local", 150))
        clock.advance(1)
        await allocation_engine.allocate(AllocationRequest("T-2", "pms", "local", 30))

        usage = await allocation_engine.get_entry_usage("e2")

        assert [(r.truck_number, r.subtracted_quantity) for r in usage] == [
            ("T-1", Decimal("50")), ("T-2", Decimal("30")),
        ]
        assert await allocation_engine.get_entry_usage("missing") == []


class TestEngineConfiguration:

    @pytest.mark.parametrize("touch", [-5, "45000.01"])
    def test_out_of_range_permit_touch_refused(self, db, logger_manager, touch):
        with pytest.raises(ConfigRangeError):
            EntryAllocationEngine(db, logger_manager, volume_rules={}, permit_touch=touch)

    def test_zero_permit_touch_is_plain_fifo(self, db, logger_manager):
        engine = EntryAllocationEngine(db, logger_manager, volume_rules={}, permit_touch=0)
        assert engine.permit_touch == Decimal("0")


class TestConcurrentAllocation:

    @pytest.fixture
    def make_engine(self, db, logger_manager, clock):
        def _make(lock_registry):
            return EntryAllocationEngine(
                db, logger_manager, lock_registry=lock_registry, volume_rules={}, clock=clock,
            )
        return _make

    @pytest.mark.critical
    async def test_same_process_requests_are_serialized(self, make_engine, seed_entries, fetch, db,
                                                        logger_manager):
        """
        Given: One 100 L entry and two engines sharing the ledger locks
        When: Both ask for 80 at once
        Then: One commits; the other sees 20 left and is refused
        """
        await seed_entries("pms", "local", [100])
        registry = LedgerLockRegistry()
        first, second = make_engine(registry), make_engine(registry)

        outcomes = await asyncio.gather(
            first.allocate(AllocationRequest("T-1", "pms", "local", 80)),
            second.allocate(AllocationRequest("T-2", "pms", "local", 80)),
            return_exceptions=True,
        )

        failures = [o for o in outcomes if isinstance(o, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], InsufficientQuantity)
        assert failures[0].shortfall == Decimal("60")
        assert await remaining(fetch, "e1") == Decimal("20")
        assert (await AllocationValidator(db, logger_manager).validate_ledger(strict=True)).is_valid

    @pytest.mark.critical
    async def test_stale_entry_version_rejects_commit(self, make_engine, seed_entries, fetch, db,
                                                      logger_manager, monkeypatch):
        """
        Given: Two engines with separate locks (as two processes would have)
        And: Engine B has read the 100 L entry before engine A commits 80 from it
        When: Engine B commits its own 80
        Then: The version check rejects B and nothing of B is written
        """
        await seed_entries("pms", "local", [100])
        engine_a, engine_b = make_engine(LedgerLockRegistry()), make_engine(LedgerLockRegistry())
        committed = []

        load_ledger = engine_b._load_ledger

        async def load_then_race(session, request):
            entries = await load_ledger(session, request)
            committed.append(await engine_a.allocate(AllocationRequest("T-A", "pms", "local", 80)))
            return entries

        monkeypatch.setattr(engine_b, "_load_ledger", load_then_race)

        with pytest.raises(ConcurrentModificationError):
            await engine_b.allocate(AllocationRequest("T-B", "pms", "local", 80))

        assert len(committed) == 1
        entry = await fetch(MotherEntry, "e1")
        assert (entry.remaining_quantity, entry.version) == (Decimal("20"), 2)
        assert await count(db, AllocationReport) == 1
        assert await count(db, TruckAllocationRecord) == 1
        assert (await AllocationValidator(db, logger_manager).validate_ledger(strict=True)).is_valid
