"""
Payment audit.

Finds payments that name a truck in their split but never produced the
matching TruckPayment, duplicated work orders for the same trip, and
truck flags that disagree with the payments. Repairs the unlinked payments.
"""

import uuid
from decimal import Decimal
from typing import List

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from Shared_Utils.ledger_exceptions import LedgerError, NotFound, LedgerIOError
from TableModels import WorkDetail, Payment, TruckPayment
from .allocator import to_fixed2, truck_balance, derive_status
from .models import TruckAudit


ZERO = Decimal('0')


class PaymentAuditor:
    """Read-mostly consistency checks over payments and truck credits."""

    def __init__(self, database_session_manager, logger_manager):
        self.db = database_session_manager
        self.logger = logger_manager.get_logger('payment_logger')

    async def _audit_in_session(self, session, truck: WorkDetail) -> TruckAudit:
        credits = (await session.execute(
            select(TruckPayment).where(TruckPayment.truck_id == truck.id)
        )).scalars().all()
        balance = truck_balance(truck, [c.amount for c in credits])

        audit = TruckAudit(
            truck_id=truck.id,
            truck_number=truck.truck_number,
            total_due=balance.total_due,
            total_allocated=balance.total_allocated,
            balance=balance.balance,
        )

        linked = {c.payment_id for c in credits}
        payments = (await session.execute(
            select(Payment).where(Payment.owner == truck.owner).order_by(Payment.timestamp)
        )).scalars().all()
        for payment in payments:
            for split in payment.allocated_trucks or []:
                if split.get('truckId') != truck.id or payment.id in linked:
                    continue
                amount = to_fixed2(split.get('amount'))
                audit.unlinked_payments.append({
                    'payment_id': payment.id,
                    'amount': amount,
                    'timestamp': payment.timestamp,
                    'note': payment.note,
                })
                audit.issues.append(
                    f"Payment {payment.id} ({amount}) is allocated to this truck but has no truck credit"
                )
                audit.fixes.append(f"Add payment {payment.id} to the credits of truck {truck.id}")

        twins = (await session.execute(
            select(WorkDetail.id).where(
                WorkDetail.owner == truck.owner,
                WorkDetail.truck_number == truck.truck_number,
                WorkDetail.id != truck.id,
                WorkDetail.created_at == truck.created_at,
                WorkDetail.product == truck.product,
                WorkDetail.quantity == truck.quantity,
                WorkDetail.destination == truck.destination,
            )
        )).scalars().all()
        if twins:
            audit.duplicate_entries = list(twins)
            audit.issues.append(
                f"Truck {truck.truck_number} appears {len(twins) + 1} times with identical trip details"
            )
            audit.fixes.append("Consolidate the duplicate work orders; keep one and move its payments")

        unlinked_total = to_fixed2(sum((p['amount'] for p in audit.unlinked_payments), ZERO))
        audit.expected_balance = to_fixed2(audit.balance - unlinked_total)
        if audit.unlinked_payments:
            audit.issues.append(
                f"Found {len(audit.unlinked_payments)} unlinked payment(s) totaling {unlinked_total}"
            )

        status = derive_status(balance)
        if status.paid != bool(truck.paid):
            audit.status_mismatch = True
            audit.issues.append(
                f"Truck marked paid={bool(truck.paid)} but payments say paid={status.paid}"
            )
            audit.fixes.append("Run a status sync for this truck")

        return audit

    async def audit_truck(self, truck_id: str) -> TruckAudit:
        async with self.db.async_session() as session:
            truck = await session.get(WorkDetail, truck_id)
            if truck is None:
                raise NotFound(f"Work order {truck_id} not found")
            return await self._audit_in_session(session, truck)

    async def audit_owner(self, owner: str) -> List[TruckAudit]:
        """Audit every loaded truck of an owner."""
        async with self.db.async_session() as session:
            trucks = (await session.execute(
                select(WorkDetail)
                .where(WorkDetail.owner == owner, WorkDetail.loaded.is_(True))
                .order_by(WorkDetail.created_at)
            )).scalars().all()
            audits = [await self._audit_in_session(session, t) for t in trucks]

        flagged = sum(1 for a in audits if not a.is_clean)
        self.logger.info(f"🔍 Audited {len(audits)} trucks of {owner}: {flagged} with issues")
        return audits

    async def fix_unlinked_payments(self, truck_id: str) -> int:
        """
        Create the missing truck credits for one truck and re-derive its flags.

        Returns:
            Number of credits restored
        """
        try:
            async with self.db.async_session() as session:
                async with session.begin():
                    truck = await session.get(WorkDetail, truck_id)
                    if truck is None:
                        raise NotFound(f"Work order {truck_id} not found")
                    audit = await self._audit_in_session(session, truck)

                    for unlinked in audit.unlinked_payments:
                        session.add(TruckPayment(
                            id=uuid.uuid4().hex,
                            truck_id=truck.id,
                            payment_id=unlinked['payment_id'],
                            amount=unlinked['amount'],
                            note=f"Reconciliation fix: linked payment {unlinked['payment_id']}",
                            timestamp=unlinked['timestamp'],
                        ))

                    if audit.unlinked_payments or audit.status_mismatch:
                        restored = [p['amount'] for p in audit.unlinked_payments]
                        status = derive_status(truck_balance(truck, [audit.total_allocated] + restored))
                        truck.paid = status.paid
                        truck.payment_pending = status.payment_pending
                        truck.payment_status = status.payment_status
        except LedgerError:
            raise
        except (SQLAlchemyError, OSError) as e:
            self.logger.error(f"❌ Payment fix for {truck_id} failed: {e}", exc_info=True)
            raise LedgerIOError(f"Payment fix failed: {e}") from e

        if audit.unlinked_payments:
            self.logger.payment(
                f"🔧 Linked {len(audit.unlinked_payments)} payment(s) to truck {audit.truck_number}"
            )
        return len(audit.unlinked_payments)
