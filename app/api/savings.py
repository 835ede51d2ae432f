from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List
from uuid import UUID

from app.core.errors import NotFoundError
from app.db.base import get_db
from app.schemas.savings import (
    ContributionCreate,
    ContributionResponse,
    SavingsDetailResponse,
    SavingsPoolResponse,
    SavingsResponse,
)
from app.services import savings as savings_service
from app.services.accounting import get_savings_pool

router = APIRouter(prefix="/api/savings", tags=["savings"])


@router.get("", response_model=List[SavingsResponse])
def list_savings(db: Session = Depends(get_db)):
    """Every account, recomputed from its transactions before returning."""
    return savings_service.list_savings(db)


@router.get("/pool", response_model=SavingsPoolResponse)
def savings_pool(db: Session = Depends(get_db)):
    return {"available": get_savings_pool(db)}


@router.get("/members/{member_id}", response_model=SavingsDetailResponse)
def get_member_savings(member_id: UUID, db: Session = Depends(get_db)):
    savings = savings_service.get_member_savings(db, member_id)
    if not savings:
        raise NotFoundError("Member has no savings yet")
    return savings


@router.post("/contributions", response_model=ContributionResponse, status_code=201)
def append_contribution(request: ContributionCreate, db: Session = Depends(get_db)):
    transaction, savings = savings_service.append_contribution(
        db, request.member_id, request.amount, request.entry_date
    )
    return {"transaction": transaction, "savings": savings}


@router.delete("/transactions/{transaction_id}", response_model=SavingsResponse)
def delete_transaction(transaction_id: UUID, db: Session = Depends(get_db)):
    return savings_service.delete_transaction(db, transaction_id)
