from decimal import Decimal

from sqlalchemy import Column, String, Integer, BigInteger, DateTime, Numeric, Index, CheckConstraint, func
from TableModels.base import Base


class MotherEntry(Base):
    """A customs/import permit entry: a finite quantity of one product for one destination.

    The entry store is authoritative for remaining_quantity. `version` is bumped by
    SQLAlchemy on every UPDATE and checked in the WHERE clause, so a debit planned
    against a stale read fails instead of overdrawing the entry.
    """
    __tablename__ = 'mother_entries'

    id = Column(String(64), primary_key=True)
    number = Column(String(64), nullable=False, index=True)
    product = Column(String(16), nullable=False)
    destination = Column(String(32), nullable=False)
    initial_quantity = Column(Numeric(18, 2), nullable=False)
    remaining_quantity = Column(Numeric(18, 2), nullable=False)
    timestamp = Column(BigInteger, nullable=False)  # epoch ms, FIFO key
    status = Column(String(32), nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint('remaining_quantity >= 0', name='valid_remaining_non_negative'),
        CheckConstraint('remaining_quantity <= initial_quantity', name='valid_remaining_le_initial'),
        Index('idx_mother_entries_ledger', 'product', 'destination', 'timestamp'),
    )

    @classmethod
    def create(cls, id, number, product, destination, initial_quantity, timestamp,
               remaining_quantity=None, status=None):
        """Build a new entry, rejecting quantities that break 0 <= remaining <= initial."""
        initial = Decimal(str(initial_quantity))
        remaining = initial if remaining_quantity is None else Decimal(str(remaining_quantity))
        if initial <= 0:
            raise ValueError(f"initial_quantity must be positive, got {initial}")
        if remaining < 0 or remaining > initial:
            raise ValueError(f"remaining_quantity {remaining} outside [0, {initial}]")
        return cls(
            id=id,
            number=number,
            product=product.strip().lower(),
            destination=destination.strip().lower(),
            initial_quantity=initial,
            remaining_quantity=remaining,
            timestamp=int(timestamp),
            status=status,
        )

    @property
    def ledger_key(self):
        return self.product, self.destination

    def __repr__(self):
        return (f"<MotherEntry {self.number} {self.product}/{self.destination} "
                f"{self.remaining_quantity}/{self.initial_quantity}>")
