from sqlalchemy import Column, String, ForeignKey, DateTime, Date, Numeric, Integer, Enum as SQLEnum, Text, UniqueConstraint, Uuid, text
from sqlalchemy.orm import relationship
import uuid
from app.db.base import Base
import enum
from decimal import Decimal

from app.models.collection import PaymentMethod


class LoanStatus(str, enum.Enum):
    """Loan status. COMPLETED and DEFAULTED are terminal."""
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    DEFAULTED = "DEFAULTED"


class Loan(Base):
    """A disbursed, interest-free credit."""
    __tablename__ = "loan"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    member_id = Column(Uuid(as_uuid=True), ForeignKey("member.id"), nullable=False, index=True)
    cycle_id = Column(Uuid(as_uuid=True), ForeignKey("loan_cycle.id"), nullable=True, index=True)  # None for individual loans
    sequence_id = Column(Uuid(as_uuid=True), ForeignKey("loan_sequence.id"), nullable=True, unique=True, index=True)
    collection_id = Column(Uuid(as_uuid=True), ForeignKey("monthly_collection.id"), nullable=True, unique=True, index=True)
    principal = Column(Numeric(12, 2), nullable=False)
    remaining = Column(Numeric(12, 2), nullable=False)
    months = Column(Integer, nullable=False)
    loan_month = Column(Integer, nullable=True)  # Rotation month the payout happened in
    current_month = Column(Integer, nullable=False, default=0)
    status = Column(SQLEnum(LoanStatus, native_enum=False, values_callable=lambda obj: [e.value for e in obj]), default=LoanStatus.ACTIVE, nullable=False)
    disbursed_at = Column(Date, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    disbursement_method = Column(SQLEnum(PaymentMethod, native_enum=False, values_callable=lambda obj: [e.value for e in obj]), nullable=True)
    guarantor1_id = Column(Uuid(as_uuid=True), ForeignKey("member.id"), nullable=True)
    guarantor2_id = Column(Uuid(as_uuid=True), ForeignKey("member.id"), nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP"))

    # Relationships
    member = relationship("Member", back_populates="loans", foreign_keys=[member_id])
    guarantor1 = relationship("Member", foreign_keys=[guarantor1_id])
    guarantor2 = relationship("Member", foreign_keys=[guarantor2_id])
    cycle = relationship("LoanCycle", back_populates="loans")
    sequence = relationship("LoanSequence", back_populates="loan")
    collection = relationship("MonthlyCollection")
    transactions = relationship("LoanTransaction", back_populates="loan", order_by="LoanTransaction.month")


class LoanTransaction(Base):
    """One repayment installment."""
    __tablename__ = "loan_transaction"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_id = Column(Uuid(as_uuid=True), ForeignKey("loan.id"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    remaining = Column(Numeric(12, 2), nullable=False)  # Balance after this installment
    month = Column(Integer, nullable=False)  # 1-based
    payment_method = Column(SQLEnum(PaymentMethod, native_enum=False, values_callable=lambda obj: [e.value for e in obj]), nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP"))

    # Relationships
    loan = relationship("Loan", back_populates="transactions")

    __table_args__ = (
        UniqueConstraint("loan_id", "month", name="uq_loan_transaction_loan_month"),
    )
