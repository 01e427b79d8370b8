from sqlalchemy import Column, String, BigInteger, Numeric, JSON, Text, Index, CheckConstraint
from TableModels.base import Base


class Payment(Base):
    """One owner payment and the per-truck split it was committed with."""
    __tablename__ = 'payments'

    id = Column(String(64), primary_key=True)
    owner = Column(String(128), nullable=False, index=True)
    amount = Column(Numeric(18, 2), nullable=False)
    balance_used = Column(Numeric(18, 2), nullable=False, default=0)
    note = Column(Text, nullable=True)
    allocated_trucks = Column(JSON, nullable=False)  # [{"truckId": ..., "amount": "..."}]
    timestamp = Column(BigInteger, nullable=False)

    __table_args__ = (
        CheckConstraint('amount >= 0', name='valid_payment_amount'),
    )


class TruckPayment(Base):
    """The part of a payment credited to one truck."""
    __tablename__ = 'truck_payments'

    id = Column(String(64), primary_key=True)
    truck_id = Column(String(64), nullable=False)
    payment_id = Column(String(64), nullable=False)
    amount = Column(Numeric(18, 2), nullable=False)
    note = Column(Text, nullable=True)
    timestamp = Column(BigInteger, nullable=False)

    __table_args__ = (
        CheckConstraint('amount > 0', name='valid_truck_payment_amount'),
        Index('idx_truck_payments_truck', 'truck_id'),
        Index('idx_truck_payments_payment', 'payment_id'),
    )


class OwnerBalance(Base):
    """Unallocated credit an owner can draw on for later payments."""
    __tablename__ = 'owner_balances'

    owner = Column(String(128), primary_key=True)
    amount = Column(Numeric(18, 2), nullable=False, default=0)
    last_updated = Column(BigInteger, nullable=False)


class BalanceUsage(Base):
    """Movement on an owner balance: deposit, usage or an adjustment."""
    __tablename__ = 'balance_usage'

    id = Column(String(64), primary_key=True)
    owner = Column(String(128), nullable=False, index=True)
    amount = Column(Numeric(18, 2), nullable=False)
    type = Column(String(32), nullable=False)
    used_for = Column(JSON, nullable=False, default=list)
    payment_id = Column(String(64), nullable=True)
    note = Column(Text, nullable=True)
    timestamp = Column(BigInteger, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "type IN ('deposit', 'usage', 'manual_adjustment', 'reconciliation_adjustment')",
            name='valid_balance_usage_type',
        ),
    )
