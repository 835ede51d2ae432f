from sqlalchemy import Column, String, ForeignKey, DateTime, Date, Enum as SQLEnum, Boolean, UniqueConstraint, Integer, Numeric, Uuid, text, func
from sqlalchemy.orm import relationship
import uuid
from app.db.base import Base
import enum
from decimal import Decimal


class SequenceStatus(str, enum.Enum):
    """Rotation slot status."""
    PENDING = "PENDING"
    DISBURSED = "DISBURSED"
    COMPLETED = "COMPLETED"


class LoanCycle(Base):
    """One rotation among a fixed set of members."""
    __tablename__ = "loan_cycle"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    cycle_number = Column(Integer, nullable=False, unique=True, index=True)
    name = Column(String(100), nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    monthly_amount = Column(Numeric(12, 2), nullable=False)
    total_members = Column(Integer, nullable=False)
    current_month = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP"))

    # Relationships
    members = relationship("GroupMember", back_populates="cycle", order_by="GroupMember.join_month")
    sequences = relationship("LoanSequence", back_populates="cycle", order_by="LoanSequence.month")
    collections = relationship("MonthlyCollection", back_populates="cycle", order_by="MonthlyCollection.month")
    loans = relationship("Loan", back_populates="cycle")
    group_fund = relationship("GroupFund", back_populates="cycle", uselist=False)


class GroupMember(Base):
    """Membership link between a member and a cycle."""
    __tablename__ = "group_member"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    cycle_id = Column(Uuid(as_uuid=True), ForeignKey("loan_cycle.id"), nullable=False, index=True)
    member_id = Column(Uuid(as_uuid=True), ForeignKey("member.id"), nullable=False, index=True)
    join_month = Column(Integer, nullable=False, default=1)
    monthly_amount = Column(Numeric(12, 2), nullable=True)  # None: cycle's amount
    is_active = Column(Boolean, default=True, nullable=False)
    total_contributed = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_received = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    joined_at = Column(DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP"))

    # Relationships
    cycle = relationship("LoanCycle", back_populates="members")
    member = relationship("Member", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("cycle_id", "member_id", name="uq_group_member_cycle_member"),
    )


class LoanSequence(Base):
    """A member's scheduled payout slot within a cycle."""
    __tablename__ = "loan_sequence"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    cycle_id = Column(Uuid(as_uuid=True), ForeignKey("loan_cycle.id"), nullable=False, index=True)
    member_id = Column(Uuid(as_uuid=True), ForeignKey("member.id"), nullable=False, index=True)
    month = Column(Integer, nullable=False)
    loan_amount = Column(Numeric(12, 2), nullable=False)
    status = Column(SQLEnum(SequenceStatus, native_enum=False, values_callable=lambda obj: [e.value for e in obj]), default=SequenceStatus.PENDING, nullable=False)
    disbursed_at = Column(Date, nullable=True)

    # Relationships
    cycle = relationship("LoanCycle", back_populates="sequences")
    member = relationship("Member")
    loan = relationship("Loan", back_populates="sequence", uselist=False)

    __table_args__ = (
        UniqueConstraint("cycle_id", "month", name="uq_loan_sequence_cycle_month"),
        UniqueConstraint("cycle_id", "member_id", name="uq_loan_sequence_cycle_member"),
    )


class GroupFund(Base):
    """Optional per-cycle pool tracker. Derived from collections and loans, never authoritative."""
    __tablename__ = "group_fund"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    cycle_id = Column(Uuid(as_uuid=True), ForeignKey("loan_cycle.id"), nullable=False, unique=True, index=True)
    external_investment = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    investment_pool = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))  # May go negative
    total_funds = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    created_at = Column(DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP"))
    updated_at = Column(DateTime, nullable=True, onupdate=func.now())

    # Relationships
    cycle = relationship("LoanCycle", back_populates="group_fund")
