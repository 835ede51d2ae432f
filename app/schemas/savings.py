from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from app.models.savings import SavingsSource


class ContributionCreate(BaseModel):
    member_id: UUID
    amount: Decimal = Field(..., description="Must be greater than zero")
    entry_date: Optional[date] = None


class SavingsTransactionResponse(BaseModel):
    id: UUID
    savings_id: UUID
    date: date
    amount: Decimal
    running_total: Decimal
    source: SavingsSource
    collection_payment_id: Optional[UUID] = None

    class Config:
        from_attributes = True


class SavingsResponse(BaseModel):
    id: UUID
    member_id: UUID
    total_amount: Decimal
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SavingsDetailResponse(SavingsResponse):
    transactions: List[SavingsTransactionResponse] = []


class ContributionResponse(BaseModel):
    transaction: SavingsTransactionResponse
    savings: SavingsResponse


class SavingsPoolResponse(BaseModel):
    available: Decimal
