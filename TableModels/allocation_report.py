from sqlalchemy import Column, String, BigInteger, Numeric, JSON, Index
from TableModels.base import Base


class AllocationReport(Base):
    """Audit record of one committed allocation; its id is the transaction id.

    `entries` is the operator-facing [{entryUsed, volume}] list. `snapshot` keeps
    what undo needs: remaining_before/remaining_after per entry and the
    pre-allocations flipped to used.
    """
    __tablename__ = 'allocation_reports'

    id = Column(String(64), primary_key=True)
    truck_number = Column(String(64), nullable=False, index=True)
    owner = Column(String(128), nullable=True)
    product = Column(String(16), nullable=False)
    destination = Column(String(32), nullable=False)
    entries = Column(JSON, nullable=False)
    total_volume = Column(Numeric(18, 2), nullable=False)
    at20 = Column(Numeric(18, 2), nullable=True)
    loaded_date = Column(String(10), nullable=False)
    allocation_date = Column(String(40), nullable=False)
    allocation_ts = Column(BigInteger, nullable=False)
    snapshot = Column(JSON, nullable=False)

    __table_args__ = (
        Index('idx_allocation_reports_truck_ts', 'truck_number', 'allocation_ts'),
    )
