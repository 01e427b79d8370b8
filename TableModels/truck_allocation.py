from sqlalchemy import Column, String, BigInteger, Numeric, Index, CheckConstraint
from TableModels.base import Base


class TruckAllocationRecord(Base):
    """One debit of one entry on behalf of one truck load."""
    __tablename__ = 'truck_entries'

    truck_key = Column(String(128), primary_key=True)   # "T-12-SSDAGO"
    allocation_id = Column(String(64), primary_key=True)
    truck_number = Column(String(64), nullable=False)
    product = Column(String(16), nullable=False)
    destination = Column(String(32), nullable=False)
    entry_id = Column(String(64), nullable=False)
    entry_number = Column(String(64), nullable=False)
    subtracted_quantity = Column(Numeric(18, 2), nullable=False)
    timestamp = Column(BigInteger, nullable=False)
    transaction_id = Column(String(64), nullable=False)

    __table_args__ = (
        CheckConstraint('subtracted_quantity > 0', name='valid_subtracted_positive'),
        Index('idx_truck_entries_transaction', 'transaction_id'),
        Index('idx_truck_entries_entry', 'entry_id'),
    )


def make_truck_key(truck_number: str, destination: str, product: str) -> str:
    """Sanitized ledger key: '/' is not allowed in keys, the rest is upper-cased."""
    return f"{truck_number.strip().replace('/', '-')}-{destination}{product}".upper()
