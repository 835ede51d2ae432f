from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from app.models.collection import PaymentMethod, PaymentStatus
from app.schemas.loan import LoanResponse


class CollectionCreate(BaseModel):
    cycle_id: UUID
    collection_date: date
    month: Optional[int] = Field(None, description="Defaults to the month after the last collection")


class CollectionDateUpdate(BaseModel):
    collection_date: date


class PaymentCreate(BaseModel):
    member_id: UUID
    amount: Decimal = Field(..., description="Amount paid")
    payment_method: Optional[PaymentMethod] = None
    payment_date: Optional[date] = None


class GiveLoanRequest(BaseModel):
    """Admin choice of who receives the pool."""
    cycle_id: UUID
    member_id: UUID
    disbursement_method: Optional[PaymentMethod] = None


class DesignateRequest(BaseModel):
    member_id: UUID


class PaymentResponse(BaseModel):
    id: UUID
    collection_id: UUID
    member_id: UUID
    amount: Decimal
    payment_date: date
    payment_method: Optional[PaymentMethod] = None
    status: PaymentStatus
    is_catch_up: bool

    class Config:
        from_attributes = True


class CollectionResponse(BaseModel):
    id: UUID
    cycle_id: UUID
    month: int
    collection_date: date
    expected_amount: Decimal
    total_collected: Decimal
    is_completed: bool
    loan_disbursed: bool
    loan_member_id: Optional[UUID] = None
    loan_amount: Optional[Decimal] = None
    designated_member_id: Optional[UUID] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CollectionDetailResponse(CollectionResponse):
    payments: List[PaymentResponse] = []


class PaymentResultResponse(BaseModel):
    payment: PaymentResponse
    collection: CollectionResponse
    loan: Optional[LoanResponse] = None


class GiveLoanResponse(BaseModel):
    collection: CollectionResponse
    loan: Optional[LoanResponse] = None
