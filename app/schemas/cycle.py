from pydantic import BaseModel, Field, RootModel
from typing import Annotated, Optional, List, Literal, Union
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from app.models.cycle import SequenceStatus


class CycleCreateBase(BaseModel):
    """Fields shared by every kind of cycle."""
    member_ids: List[UUID] = Field(..., description="Members in rotation order (first receives month 1)")
    monthly_amount: Decimal = Field(..., description="Contribution each member pays per month")
    start_date: date = Field(..., description="Cycle start date")
    name: Optional[str] = Field(None, max_length=100, description="Optional display name")


class FixedMemberCycle(CycleCreateBase):
    """Plain rotation: members and slots only."""
    kind: Literal["fixed"] = "fixed"


class RotatingPoolCycle(CycleCreateBase):
    """Rotation that opens its first monthly collection immediately."""
    kind: Literal["rotating_pool"]
    first_collection_date: Optional[date] = Field(None, description="Date of the month-1 collection (defaults to start_date)")


class GroupFundedCycle(CycleCreateBase):
    """Rotation with a tracked group fund seeded by outside capital."""
    kind: Literal["group_funded"]
    initial_investment: Decimal = Field(Decimal("0.00"), ge=0, description="External capital added to the fund")


CycleCreationRequest = Annotated[
    Union[FixedMemberCycle, RotatingPoolCycle, GroupFundedCycle],
    Field(discriminator="kind"),
]


class CycleUpdate(BaseModel):
    """Partial update; omitted fields are left unchanged."""
    name: Optional[str] = Field(None, max_length=100)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_active: Optional[bool] = None
    monthly_amount: Optional[Decimal] = Field(None, gt=0)


class AddMemberRequest(BaseModel):
    member_id: UUID
    monthly_amount: Optional[Decimal] = Field(None, gt=0, description="Member's monthly rate, also used for the catch-up (defaults to the cycle's monthly amount)")
    joining_date: Optional[date] = None


class MemberAmountUpdate(BaseModel):
    monthly_amount: Decimal = Field(..., gt=0, description="Member's own monthly contribution")


class BenefitResponse(BaseModel):
    """Proportional share of a month's pool."""
    member_id: UUID
    join_month: int
    months_contributed: int
    total_contributed: Decimal
    pool_amount: Decimal
    active_members: int
    total_contributions: Decimal
    benefit_amount: Decimal


class InvestmentRequest(BaseModel):
    amount: Decimal = Field(..., description="External capital to add")


class LoanSequenceResponse(BaseModel):
    id: UUID
    member_id: UUID
    month: int
    loan_amount: Decimal
    status: SequenceStatus
    disbursed_at: Optional[date] = None

    class Config:
        from_attributes = True


class GroupMemberResponse(BaseModel):
    id: UUID
    member_id: UUID
    join_month: int
    monthly_amount: Optional[Decimal] = None
    is_active: bool
    total_contributed: Decimal
    total_received: Decimal

    class Config:
        from_attributes = True


class GroupFundResponse(BaseModel):
    external_investment: Decimal
    investment_pool: Decimal
    total_funds: Decimal

    class Config:
        from_attributes = True


class CycleResponse(BaseModel):
    """Schema for cycle response."""
    id: UUID
    cycle_number: int
    name: Optional[str] = None
    start_date: date
    end_date: Optional[date] = None
    monthly_amount: Decimal
    total_members: int
    current_month: int
    is_active: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CycleDetailResponse(CycleResponse):
    members: List[GroupMemberResponse] = []
    sequences: List[LoanSequenceResponse] = []
    group_fund: Optional[GroupFundResponse] = None


class AddMemberResponse(BaseModel):
    sequence: LoanSequenceResponse
    catch_up_amount: Decimal
    loans_already_given: int


class CycleCreateRequest(RootModel[CycleCreationRequest]):
    """POST body; `kind` selects the variant."""
    pass
