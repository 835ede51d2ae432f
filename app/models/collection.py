from sqlalchemy import Column, String, ForeignKey, DateTime, Date, Enum as SQLEnum, Boolean, UniqueConstraint, Integer, Numeric, Uuid, text
from sqlalchemy.orm import relationship
import uuid
from app.db.base import Base
import enum
from decimal import Decimal


class PaymentStatus(str, enum.Enum):
    """Collection payment status."""
    PENDING = "PENDING"
    PAID = "PAID"


class PaymentMethod(str, enum.Enum):
    """How money changed hands."""
    CASH = "CASH"
    UPI = "UPI"
    BANK_TRANSFER = "BANK_TRANSFER"


class MonthlyCollection(Base):
    """One month's contribution drive for a cycle."""
    __tablename__ = "monthly_collection"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    cycle_id = Column(Uuid(as_uuid=True), ForeignKey("loan_cycle.id"), nullable=False, index=True)
    month = Column(Integer, nullable=False)  # 1-based
    collection_date = Column(Date, nullable=False)
    expected_amount = Column(Numeric(12, 2), nullable=False)
    total_collected = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    is_completed = Column(Boolean, default=False, nullable=False)
    loan_disbursed = Column(Boolean, default=False, nullable=False)
    loan_member_id = Column(Uuid(as_uuid=True), ForeignKey("member.id"), nullable=True)
    loan_amount = Column(Numeric(12, 2), nullable=True)
    designated_member_id = Column(Uuid(as_uuid=True), ForeignKey("member.id"), nullable=True)  # Admin "give loan" choice
    created_at = Column(DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP"))

    # Relationships
    cycle = relationship("LoanCycle", back_populates="collections")
    payments = relationship("CollectionPayment", back_populates="collection")
    loan_member = relationship("Member", foreign_keys=[loan_member_id])
    designated_member = relationship("Member", foreign_keys=[designated_member_id])

    __table_args__ = (
        UniqueConstraint("cycle_id", "month", name="uq_monthly_collection_cycle_month"),
    )


class CollectionPayment(Base):
    """One member's payment toward a monthly collection."""
    __tablename__ = "collection_payment"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    collection_id = Column(Uuid(as_uuid=True), ForeignKey("monthly_collection.id"), nullable=False, index=True)
    member_id = Column(Uuid(as_uuid=True), ForeignKey("member.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    payment_date = Column(Date, nullable=False)
    payment_method = Column(SQLEnum(PaymentMethod, native_enum=False, values_callable=lambda obj: [e.value for e in obj]), nullable=True)
    status = Column(SQLEnum(PaymentStatus, native_enum=False, values_callable=lambda obj: [e.value for e in obj]), default=PaymentStatus.PAID, nullable=False)
    is_catch_up = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP"))

    # Relationships
    collection = relationship("MonthlyCollection", back_populates="payments")
    member = relationship("Member")
    savings_transaction = relationship("SavingsTransaction", back_populates="collection_payment", uselist=False)

    # One row per member per month; the PAID uniqueness guard
    __table_args__ = (
        UniqueConstraint("collection_id", "member_id", name="uq_collection_payment_collection_member"),
    )
