from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List
from uuid import UUID

from app.db.base import get_db
from app.schemas.collection import CollectionResponse
from app.schemas.cycle import (
    AddMemberRequest,
    AddMemberResponse,
    BenefitResponse,
    CycleCreateRequest,
    CycleDetailResponse,
    CycleResponse,
    CycleUpdate,
    GroupFundResponse,
    GroupMemberResponse,
    InvestmentRequest,
    MemberAmountUpdate,
)
from app.services import accounting, collection as collection_service, cycle as cycle_service

router = APIRouter(prefix="/api/cycles", tags=["cycles"])


@router.post("", response_model=CycleDetailResponse, status_code=201)
def create_cycle(
    request: CycleCreateRequest,
    db: Session = Depends(get_db)
):
    """Create a cycle. The body's `kind` picks fixed, rotating_pool or group_funded."""
    return cycle_service.create_cycle_from_request(db, request.root)


@router.get("", response_model=List[CycleResponse])
def list_cycles(active_only: bool = False, db: Session = Depends(get_db)):
    return cycle_service.list_cycles(db, active_only=active_only)


@router.get("/{cycle_id}", response_model=CycleDetailResponse)
def get_cycle(cycle_id: UUID, db: Session = Depends(get_db)):
    return cycle_service.get_cycle(db, cycle_id)


@router.patch("/{cycle_id}", response_model=CycleResponse)
def update_cycle(cycle_id: UUID, patch: CycleUpdate, db: Session = Depends(get_db)):
    return cycle_service.update_cycle(db, cycle_id, patch.model_dump(exclude_unset=True))


@router.delete("/{cycle_id}")
def delete_cycle(cycle_id: UUID, db: Session = Depends(get_db)):
    cycle_service.delete_cycle(db, cycle_id)
    return {"message": "Cycle deleted"}


@router.post("/{cycle_id}/members", response_model=AddMemberResponse, status_code=201)
def add_member(cycle_id: UUID, request: AddMemberRequest, db: Session = Depends(get_db)):
    """Add a member mid-cycle. Returns the catch-up owed for payouts already made."""
    sequence, catch_up_amount, loans_already_given = cycle_service.add_member_to_cycle(
        db,
        cycle_id,
        request.member_id,
        monthly_amount=request.monthly_amount,
        joining_date=request.joining_date,
    )
    return {
        "sequence": sequence,
        "catch_up_amount": catch_up_amount,
        "loans_already_given": loans_already_given,
    }


@router.delete("/{cycle_id}/members/{member_id}", response_model=GroupMemberResponse)
def deactivate_member(cycle_id: UUID, member_id: UUID, db: Session = Depends(get_db)):
    return cycle_service.deactivate_group_member(db, cycle_id, member_id)


@router.put("/{cycle_id}/members/{member_id}/amount", response_model=GroupMemberResponse)
def update_member_amount(
    cycle_id: UUID,
    member_id: UUID,
    request: MemberAmountUpdate,
    db: Session = Depends(get_db)
):
    return cycle_service.update_member_amount(db, cycle_id, member_id, request.monthly_amount)


@router.get("/{cycle_id}/members/{member_id}/benefit", response_model=BenefitResponse)
def calculate_benefit(
    cycle_id: UUID,
    member_id: UUID,
    month: int = Query(..., ge=1),
    db: Session = Depends(get_db)
):
    """Share of the month's pool, weighted by how long the member has contributed."""
    return cycle_service.calculate_benefit(db, cycle_id, member_id, month)


@router.get("/{cycle_id}/collections",response_model=List[CollectionResponse])
def list_collections(cycle_id: UUID, db: Session = Depends(get_db)):
    cycle_service.get_cycle(db, cycle_id)
    return collection_service.list_collections(db, cycle_id)


@router.post("/{cycle_id}/investments", response_model=GroupFundResponse)
def add_investment(cycle_id: UUID, request: InvestmentRequest, db: Session = Depends(get_db)):
    return accounting.add_investment(db, cycle_id, request.amount)
