from sqlalchemy import Column, String, BigInteger, Numeric, Index
from TableModels.base import Base


class AllocationProjection(Base):
    """Denormalized copy of mother_entries read by the permit workflow.

    Eventually consistent with the entry store; reconciliation rewrites it.
    pre_allocated_quantity only exists here.
    """
    __tablename__ = 'allocations'

    id = Column(String(64), primary_key=True)  # same id as the mother entry
    number = Column(String(64), nullable=False)
    product = Column(String(16), nullable=False)
    destination = Column(String(32), nullable=True)
    initial_quantity = Column(Numeric(18, 2), nullable=False)
    remaining_quantity = Column(Numeric(18, 2), nullable=False)
    pre_allocated_quantity = Column(Numeric(18, 2), nullable=False, default=0)
    timestamp = Column(BigInteger, nullable=False)
    last_updated = Column(BigInteger, nullable=True)

    __table_args__ = (
        Index('idx_allocations_product_destination', 'product', 'destination'),
    )
