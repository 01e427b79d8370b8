"""
Critical Path Tests: Allocation Planning

Pure planning rules: FIFO order, the permit-entry touch, volume windows
and request validation. No database involved.

Priority: 🔴 CRITICAL (customs quantity accuracy)
"""

import pytest
from decimal import Decimal

from allocation_engine import AllocationRequest, EntryView, plan_allocation, validate_request, validate_load_volume
from Config.constants_allocation import DESTINATION_VOLUME_RULES
from Shared_Utils.ledger_exceptions import ValidationError, PermitEntryRequired, InsufficientQuantity


def entries(product, destination, quantities):
    return [
        EntryView(f"t{i}", f"E-{i:03d}", product, destination, Decimal(str(q)), 1000 + i)
        for i, q in enumerate(quantities, start=1)
    ]


def lines_of(plan):
    return [(line.entry_id, line.amount) for line in plan.lines]


class TestFifoPlanning:
    """Plain oldest-first consumption"""

    @pytest.mark.critical
    def test_fifo_spans_two_entries(self):
        """
        Test: FIFO over [100, 100, 100], request 150

        Given: Entries t1 < t2 < t3 with 100 each
        Then: 100 from t1, 50 from t2, t3 untouched
        """
        request = AllocationRequest("T-1", "pms", "local", 150)
        plan = plan_allocation(request, entries("pms", "local", [100, 100, 100]))

        assert lines_of(plan) == [("t1", Decimal("100")), ("t2", Decimal("50"))]
        assert plan.total == Decimal("150")
        assert plan.amount_for("t3") == Decimal("0")
        assert not plan.used_permit_exception

    @pytest.mark.critical
    def test_exhausted_and_foreign_entries_are_skipped(self):
        """
        Given: An empty oldest entry and an entry of another ledger
        Then: Planning starts from the first entry of the ledger with quantity left
        """
        pool = entries("pms", "local", [0, 80, 100]) + [
            EntryView("x1", "X-001", "ago", "local", Decimal("500"), 1),
        ]
        plan = plan_allocation(AllocationRequest("T-1", "pms", "local", 120), pool)

        assert lines_of(plan) == [("t2", Decimal("80")), ("t3", Decimal("40"))]

    @pytest.mark.critical
    def test_insufficient_quantity_reports_shortfall(self):
        """
        Given: 250 left across the ledger
        Then: A request for 300 raises InsufficientQuantity short by 50
        """
        with pytest.raises(InsufficientQuantity) as exc:
            plan_allocation(AllocationRequest("T-1", "pms", "local", 300), entries("pms", "local", [100, 150]))
        assert exc.value.shortfall == Decimal("50")

    @pytest.mark.critical
    def test_plan_sums_exactly_to_request(self):
        plan = plan_allocation(
            AllocationRequest("T-1", "ago", "local", Decimal("123.45")),
            entries("ago", "local", ["100.00", "50.00"]),
        )
        assert plan.total == Decimal("123.45")


class TestPermitException:
    """Selected permit entry touched before FIFO resumes"""

    @pytest.mark.critical
    def test_permit_touch_then_fifo_head(self):
        """
        Test: Permit exception with FIFO head covering the remainder

        Given: FIFO head t1 (5000) and selected permit entry t2 (5000)
        And: Request 5000 to ssd
        Then: 1000 from t2, then 4000 from t1
        """
        request = AllocationRequest("T-1", "ago", "ssd", 5000, permit_entry_id="t2")
        plan = plan_allocation(request, entries("ago", "ssd", [5000, 5000]), Decimal("1000"))

        assert lines_of(plan) == [("t2", Decimal("1000")), ("t1", Decimal("4000"))]
        assert plan.used_permit_exception

    @pytest.mark.critical
    def test_selected_entry_is_fifo_head_runs_plain_fifo(self):
        """
        Given: The selected permit entry is already the oldest
        Then: Plain FIFO applies, no 1000 split
        """
        request = AllocationRequest("T-1", "ago", "ssd", 5000, permit_entry_id="t1")
        plan = plan_allocation(request, entries("ago", "ssd", [6000, 6000]), Decimal("1000"))

        assert lines_of(plan) == [("t1", Decimal("5000"))]
        assert not plan.used_permit_exception

    @pytest.mark.critical
    def test_head_too_small_walks_fifo_pool(self):
        """
        Given: Head t1 holds 1500, t3 holds 5000, selected t2
        And: Request 5000
        Then: 1000 from t2, 1500 from t1, 2500 from t3
        """
        pool = entries("ago", "ssd", [1500, 5000, 5000])
        request = AllocationRequest("T-1", "ago", "ssd", 5000, permit_entry_id="t2")
        plan = plan_allocation(request, pool, Decimal("1000"))

        assert lines_of(plan) == [("t2", Decimal("1000")), ("t1", Decimal("1500")), ("t3", Decimal("2500"))]

    @pytest.mark.critical
    def test_selected_entry_tops_up_when_pool_short(self):
        """
        Given: Head t1 holds 1000, selected t2 holds 5000
        And: Request 4000
        Then: t1 gives 1000 and t2 covers the other 3000
        """
        request = AllocationRequest("T-1", "ago", "ssd", 4000, permit_entry_id="t2")
        plan = plan_allocation(request, entries("ago", "ssd", [1000, 5000]), Decimal("1000"))

        assert plan.amount_for("t2") == Decimal("3000")
        assert plan.amount_for("t1") == Decimal("1000")
        assert plan.total == Decimal("4000")

    @pytest.mark.critical
    def test_small_request_drawn_entirely_from_selected_entry(self):
        request = AllocationRequest("T-1", "ago", "ssd", 600, permit_entry_id="t2")
        plan = plan_allocation(request, entries("ago", "ssd", [5000, 5000]), Decimal("1000"))

        assert lines_of(plan) == [("t2", Decimal("600"))]

    @pytest.mark.critical
    def test_unknown_selected_entry_rejected(self):
        request = AllocationRequest("T-1", "ago", "ssd", 5000, permit_entry_id="nope")
        with pytest.raises(ValidationError):
            plan_allocation(request, entries("ago", "ssd", [5000, 5000]))

    @pytest.mark.critical
    def test_selected_entry_of_other_ledger_rejected(self):
        pool = entries("ago", "ssd", [5000]) + [EntryView("p1", "P-001", "pms", "ssd", Decimal("5000"), 5)]
        request = AllocationRequest("T-1", "ago", "ssd", 2000, permit_entry_id="p1")
        with pytest.raises(ValidationError):
            plan_allocation(request, pool)

    @pytest.mark.critical
    def test_whole_ledger_short_raises(self):
        request = AllocationRequest("T-1", "ago", "ssd", 9000, permit_entry_id="t2")
        with pytest.raises(InsufficientQuantity) as exc:
            plan_allocation(request, entries("ago", "ssd", [3000, 5000]), Decimal("1000"))
        assert exc.value.shortfall == Decimal("1000")


class TestRequestValidation:
    """Checks run before any entry is read"""

    @pytest.mark.critical
    def test_permit_destination_requires_entry(self):
        with pytest.raises(PermitEntryRequired):
            validate_request(AllocationRequest("T-1", "AGO", "SSD", 34000), DESTINATION_VOLUME_RULES)

    @pytest.mark.critical
    def test_permit_entry_required_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            validate_request(AllocationRequest("T-1", "ago", "ssd", 100), {})

    @pytest.mark.critical
    @pytest.mark.parametrize("product,destination,quantity", [
        ("pms", "ssd", 36999),
        ("pms", "ssd", 45001),
        ("ago", "ssd", 32999),
        ("ago", "local", 4999),
    ])
    def test_volume_window_breaches_rejected(self, product, destination, quantity):
        with pytest.raises(ValidationError):
            validate_load_volume(product, destination, Decimal(quantity), DESTINATION_VOLUME_RULES)

    @pytest.mark.critical
    def test_volume_window_bounds_are_inclusive(self):
        validate_load_volume("ago", "ssd", Decimal("33000"), DESTINATION_VOLUME_RULES)
        validate_load_volume("ago", "ssd", Decimal("36000"), DESTINATION_VOLUME_RULES)

    @pytest.mark.critical
    @pytest.mark.parametrize("truck,quantity", [("", 100), ("T-1", 0), ("T-1", -5)])
    def test_malformed_requests_rejected(self, truck, quantity):
        with pytest.raises(ValidationError):
            validate_request(AllocationRequest(truck, "pms", "local", quantity), {})

    def test_request_normalizes_case(self):
        request = AllocationRequest(" T-1 ", "PMS", "Local", "40000")
        assert request.ledger_key == ("pms", "local")
        assert request.truck_number == "T-1"
        assert request.required_quantity == Decimal("40000")
