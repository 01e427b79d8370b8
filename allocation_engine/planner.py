"""
Allocation planning.

Pure functions: no I/O, no clock. Given a request and the entries of its
ledger, decide which entries to draw from and how much.
"""

from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from Config.constants_allocation import PERMIT_DESTINATION, PERMIT_TOUCH_QUANTITY
from Shared_Utils.ledger_exceptions import ValidationError, PermitEntryRequired, InsufficientQuantity
from .models import AllocationRequest, AllocationPlan, EntryView, PlanLine


ZERO = Decimal('0')


# =========================================================================
# REQUEST VALIDATION
# =========================================================================

def validate_load_volume(product: str, destination: str, quantity: Decimal, volume_rules: dict) -> None:
    """Reject loads outside the destination's (min, max) window for the product."""
    window = (volume_rules or {}).get(destination, {}).get(product)
    if window is None:
        return
    low, high = window
    if quantity < low or quantity > high:
        raise ValidationError(
            f"{product.upper()} loads to {destination.upper()} must be between "
            f"{low:,} and {high:,} litres (got {quantity:,})"
        )


def validate_request(request: AllocationRequest, volume_rules: Optional[dict] = None) -> None:
    """
    Check the request shape before any entry is read.

    Raises:
        ValidationError: blank fields, non-positive quantity, volume window breached
        PermitEntryRequired: permit destination without a selected entry
    """
    if not request.truck_number:
        raise ValidationError("Truck number is required")
    if not request.product:
        raise ValidationError("Product is required")
    if not request.destination:
        raise ValidationError("Destination is required")
    if request.required_quantity <= 0:
        raise ValidationError(f"Required quantity must be positive (got {request.required_quantity})")

    validate_load_volume(request.product, request.destination, request.required_quantity, volume_rules)

    if request.destination == PERMIT_DESTINATION and not request.permit_entry_id:
        raise PermitEntryRequired()


# =========================================================================
# FIFO PLANNING
# =========================================================================

def fifo_candidates(entries: Iterable[EntryView], product: str, destination: str) -> List[EntryView]:
    """Entries of the ledger with quantity left, oldest first (ties broken by id)."""
    return sorted(
        (e for e in entries
         if e.product == product and e.destination == destination and e.remaining_quantity > 0),
        key=lambda e: e.sort_key,
    )


def _walk_fifo(pool: List[EntryView], needed: Decimal) -> Tuple[List[PlanLine], Decimal]:
    """Draw min(remaining, needed) from each entry in order. Returns lines and what is still needed."""
    lines = []
    for entry in pool:
        if needed <= 0:
            break
        take = min(entry.remaining_quantity, needed)
        if take > 0:
            lines.append(PlanLine(entry.id, entry.number, take))
            needed -= take
    return lines, needed


def _resolve_preferred(request: AllocationRequest, entries: Iterable[EntryView]) -> EntryView:
    preferred = next((e for e in entries if e.id == request.permit_entry_id), None)
    if preferred is None:
        raise ValidationError(f"Permit entry {request.permit_entry_id} not found")
    if preferred.product != request.product or preferred.destination != request.destination:
        raise ValidationError(
            f"Permit entry {preferred.number} is {preferred.product}/{preferred.destination}, "
            f"not {request.product}/{request.destination}"
        )
    if preferred.remaining_quantity <= 0:
        raise ValidationError(f"Permit entry {preferred.number} has no remaining quantity")
    return preferred


def plan_allocation(
    request: AllocationRequest,
    entries: Iterable[EntryView],
    permit_touch: Decimal = PERMIT_TOUCH_QUANTITY,
) -> AllocationPlan:
    """
    Compute the draws that cover request.required_quantity.

    Without a permit entry the ledger is consumed strictly oldest first. With
    one, the selected entry is touched for up to `permit_touch` before the
    remainder goes to the FIFO head (if the head alone covers it) or to the
    rest of the pool in FIFO order. When the pool still falls short, the
    selected entry's leftover is used before giving up.

    Args:
        request: The validated allocation request
        entries: Current entries (any ledger; filtered here)
        permit_touch: Fixed draw from the selected permit entry

    Returns:
        AllocationPlan whose lines sum exactly to the required quantity

    Raises:
        ValidationError: selected permit entry missing, exhausted or of another ledger
        InsufficientQuantity: the ledger cannot cover the request
    """
    entries = list(entries)
    required = request.required_quantity
    candidates = fifo_candidates(entries, request.product, request.destination)

    plan = AllocationPlan(request=request)

    if not request.permit_entry_id:
        lines, short = _walk_fifo(candidates, required)
        if short > 0:
            raise InsufficientQuantity(short)
        plan.lines = lines
        return plan

    preferred = _resolve_preferred(request, entries)
    if candidates[0].id == preferred.id:
        lines, short = _walk_fifo(candidates, required)
        if short > 0:
            raise InsufficientQuantity(short)
        plan.lines = lines
        return plan

    plan.used_permit_exception = True
    touch = min(permit_touch, preferred.remaining_quantity, required)
    preferred_take = touch
    rest = required - touch
    lines: List[PlanLine] = []

    if rest > 0:
        pool = [e for e in candidates if e.id != preferred.id]
        head = pool[0] if pool else None
        if head is not None and head.remaining_quantity >= rest:
            lines = [PlanLine(head.id, head.number, rest)]
            rest = ZERO
        else:
            lines, rest = _walk_fifo(pool, rest)

        if rest > 0:
            top_up = min(preferred.remaining_quantity - preferred_take, rest)
            preferred_take += top_up
            rest -= top_up

        if rest > 0:
            raise InsufficientQuantity(rest)

    head_line = [PlanLine(preferred.id, preferred.number, preferred_take)] if preferred_take > 0 else []
    plan.lines = head_line + lines
    return plan
