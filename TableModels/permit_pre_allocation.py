from sqlalchemy import Column, String, Boolean, BigInteger, Numeric, Index
from TableModels.base import Base


class PermitPreAllocation(Base):
    """A reservation of permit quantity for a truck. Never debits the entry itself."""
    __tablename__ = 'permit_pre_allocations'

    id = Column(String(64), primary_key=True)
    truck_number = Column(String(64), nullable=False)
    product = Column(String(16), nullable=False)
    owner = Column(String(128), nullable=True)
    destination = Column(String(32), nullable=False, default='ssd')
    permit_entry_id = Column(String(64), nullable=False, index=True)
    reservation_id = Column(String(64), nullable=True, index=True)   # shared by the legs of a multi-entry reservation
    permit_number = Column(String(64), nullable=False)
    quantity = Column(Numeric(18, 2), nullable=False)
    allocated_at = Column(String(40), nullable=False)
    timestamp = Column(BigInteger, nullable=False)
    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(String(40), nullable=True)
    loaded_at = Column(String(40), nullable=True)
    actual_truck_number = Column(String(64), nullable=True)
    previous_truck_number = Column(String(64), nullable=True)
    work_detail_id = Column(String(64), nullable=True)

    __table_args__ = (
        Index('idx_pre_allocations_truck_product', 'truck_number', 'product', 'used'),
    )
