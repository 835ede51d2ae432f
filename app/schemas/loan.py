from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from app.models.collection import PaymentMethod
from app.models.transaction import LoanStatus


class SequenceDisburseRequest(BaseModel):
    sequence_id: UUID
    guarantor1_id: Optional[UUID] = None
    guarantor2_id: Optional[UUID] = None
    disbursement_method: Optional[PaymentMethod] = None
    disbursed_at: Optional[date] = None


class CollectionDisburseRequest(BaseModel):
    collection_id: UUID
    member_id: UUID
    disbursement_method: Optional[PaymentMethod] = None


class IndividualLoanCreate(BaseModel):
    """Loan outside any rotation, backed by the savings pool."""
    member_id: UUID
    principal: Decimal = Field(..., description="Amount lent")
    months: Optional[int] = Field(None, ge=1, description="Repayment months (defaults to DEFAULT_REPAYMENT_MONTHS)")
    reason: Optional[str] = None
    guarantor1_id: Optional[UUID] = None
    guarantor2_id: Optional[UUID] = None
    disbursement_method: Optional[PaymentMethod] = None


class ReverseRequest(BaseModel):
    """Exactly one of the two ids."""
    loan_id: Optional[UUID] = None
    collection_id: Optional[UUID] = None


class RepayRequest(BaseModel):
    payment_date: Optional[date] = None
    payment_method: Optional[PaymentMethod] = None


class DefaultRequest(BaseModel):
    reason: Optional[str] = None


class LoanTransactionResponse(BaseModel):
    id: UUID
    loan_id: UUID
    date: date
    amount: Decimal
    remaining: Decimal
    month: int
    payment_method: Optional[PaymentMethod] = None

    class Config:
        from_attributes = True


class LoanResponse(BaseModel):
    id: UUID
    member_id: UUID
    cycle_id: Optional[UUID] = None
    sequence_id: Optional[UUID] = None
    collection_id: Optional[UUID] = None
    principal: Decimal
    remaining: Decimal
    months: int
    loan_month: Optional[int] = None
    current_month: int
    status: LoanStatus
    disbursed_at: date
    completed_at: Optional[datetime] = None
    disbursement_method: Optional[PaymentMethod] = None
    guarantor1_id: Optional[UUID] = None
    guarantor2_id: Optional[UUID] = None
    reason: Optional[str] = None

    class Config:
        from_attributes = True


class ScheduleRow(BaseModel):
    month: int
    principal_remaining: Decimal
    principal_payment: Decimal
    interest: Decimal = Decimal("0.00")
    total_payment: Decimal
    new_balance: Decimal


class LoanDetailResponse(LoanResponse):
    transactions: List[LoanTransactionResponse] = []
    schedule: List[ScheduleRow] = []


class RepayResponse(BaseModel):
    transaction: LoanTransactionResponse
    loan: LoanResponse
