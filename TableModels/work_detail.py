from sqlalchemy import Column, String, Boolean, BigInteger, Numeric, JSON, Index
from TableModels.base import Base


class WorkDetail(Base):
    """Work order for one truck load. Owned by the dispatch workflow.

    The ledger reads price * at20 as the amount due and writes only the
    payment flags and the permit flags. gate_pass_generated is never touched here.
    """
    __tablename__ = 'work_details'

    id = Column(String(64), primary_key=True)
    owner = Column(String(128), nullable=False, index=True)
    product = Column(String(16), nullable=False)
    truck_number = Column(String(64), nullable=False, index=True)
    quantity = Column(Numeric(18, 2), nullable=False)
    destination = Column(String(32), nullable=False)
    status = Column(String(32), nullable=False, default='queued')
    loaded = Column(Boolean, nullable=False, default=False)
    loaded_at = Column(String(40), nullable=True)
    paid = Column(Boolean, nullable=False, default=False)
    payment_pending = Column(Boolean, nullable=False, default=False)
    payment_status = Column(String(16), nullable=True)
    at20 = Column(Numeric(18, 2), nullable=True)
    price = Column(Numeric(18, 2), nullable=False, default=0)
    previous_trucks = Column(JSON, nullable=False, default=list)
    permit_allocated = Column(Boolean, nullable=False, default=False)
    permit_entry_id = Column(String(64), nullable=True)
    permit_number = Column(String(64), nullable=True)
    gate_pass_generated = Column(Boolean, nullable=False, default=False)
    created_at = Column(BigInteger, nullable=False)  # epoch ms

    __table_args__ = (
        Index('idx_work_details_owner_created', 'owner', 'created_at'),
    )
