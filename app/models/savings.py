from sqlalchemy import Column, String, ForeignKey, DateTime, Date, Numeric, Enum as SQLEnum, Uuid, text, func
from sqlalchemy.orm import relationship
import uuid
from app.db.base import Base
import enum
from decimal import Decimal


class SavingsSource(str, enum.Enum):
    """Where a savings entry came from."""
    MANUAL = "MANUAL"
    COLLECTION = "COLLECTION"
    CATCH_UP = "CATCH_UP"


class Savings(Base):
    """Per-member running balance. total_amount is a cache of its transactions."""
    __tablename__ = "savings"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    member_id = Column(Uuid(as_uuid=True), ForeignKey("member.id"), nullable=False, unique=True, index=True)
    total_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    created_at = Column(DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP"))
    updated_at = Column(DateTime, nullable=True, onupdate=func.now())

    # Relationships
    member = relationship("Member", back_populates="savings")
    transactions = relationship(
        "SavingsTransaction",
        back_populates="savings",
        order_by="SavingsTransaction.date",
        cascade="all, delete-orphan",
    )


class SavingsTransaction(Base):
    """Append-only savings ledger entry."""
    __tablename__ = "savings_transaction"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    savings_id = Column(Uuid(as_uuid=True), ForeignKey("savings.id", ondelete="CASCADE"), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)  # Legacy rows may be negative
    running_total = Column(Numeric(12, 2), nullable=False)
    source = Column(SQLEnum(SavingsSource, native_enum=False, values_callable=lambda obj: [e.value for e in obj]), default=SavingsSource.MANUAL, nullable=False)
    collection_payment_id = Column(Uuid(as_uuid=True), ForeignKey("collection_payment.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP"))

    # Relationships
    savings = relationship("Savings", back_populates="transactions")
    collection_payment = relationship("CollectionPayment", back_populates="savings_transaction")
