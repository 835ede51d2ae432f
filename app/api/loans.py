from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from decimal import Decimal
from uuid import UUID

from app.db.base import get_db
from app.models.transaction import LoanStatus
from app.schemas.loan import (
    CollectionDisburseRequest,
    DefaultRequest,
    IndividualLoanCreate,
    LoanDetailResponse,
    LoanResponse,
    RepayRequest,
    RepayResponse,
    ReverseRequest,
    ScheduleRow,
    SequenceDisburseRequest,
)
from app.services import disbursement, repayment

router = APIRouter(prefix="/api/loans", tags=["loans"])


@router.get("", response_model=List[LoanResponse])
def list_loans(
    member_id: Optional[UUID] = None,
    cycle_id: Optional[UUID] = None,
    status: Optional[LoanStatus] = None,
    db: Session = Depends(get_db)
):
    return repayment.list_loans(db, member_id=member_id, cycle_id=cycle_id, status=status)


@router.get("/schedule", response_model=List[ScheduleRow])
def preview_schedule(
    remaining: Decimal = Query(..., ge=0),
    installment: Decimal = Query(..., ge=0),
    periods: int = Query(..., ge=0)
):
    """Installment plan for arbitrary figures; no interest is ever added."""
    return list(repayment.generate_payment_schedule(remaining, installment, periods))


@router.post("/disburse/sequence", response_model=LoanResponse, status_code=201)
def disburse_from_sequence(request: SequenceDisburseRequest, db: Session = Depends(get_db)):
    return disbursement.disburse_from_sequence(
        db,
        request.sequence_id,
        guarantor1_id=request.guarantor1_id,
        guarantor2_id=request.guarantor2_id,
        method=request.disbursement_method,
        disbursed_at=request.disbursed_at,
    )


@router.post("/disburse/collection", response_model=LoanResponse, status_code=201)
def disburse_from_collection(request: CollectionDisburseRequest, db: Session = Depends(get_db)):
    return disbursement.disburse_from_collection(db, request.collection_id, request.member_id, request.disbursement_method)


@router.post("/individual", response_model=LoanResponse, status_code=201)
def give_individual_loan(request: IndividualLoanCreate, db: Session = Depends(get_db)):
    return disbursement.give_individual_loan(
        db,
        request.member_id,
        request.principal,
        months=request.months,
        reason=request.reason,
        guarantor1_id=request.guarantor1_id,
        guarantor2_id=request.guarantor2_id,
        method=request.disbursement_method,
    )


@router.post("/reverse")
def reverse_disbursement(request: ReverseRequest, db: Session = Depends(get_db)):
    disbursement.reverse_loan_disbursement(db, loan_id=request.loan_id, collection_id=request.collection_id)
    return {"message": "Loan disbursement reversed"}


@router.delete("/transactions/{transaction_id}", response_model=LoanResponse)
def delete_loan_transaction(transaction_id: UUID, db: Session = Depends(get_db)):
    return repayment.delete_loan_transaction(db, transaction_id)


@router.get("/{loan_id}", response_model=LoanDetailResponse)
def get_loan(loan_id: UUID, db: Session = Depends(get_db)):
    loan = repayment.get_loan(db, loan_id)
    detail = LoanDetailResponse.model_validate(loan)
    detail.schedule = [ScheduleRow(**row) for row in repayment.loan_schedule(loan)]
    return detail


@router.post("/{loan_id}/repay", response_model=RepayResponse, status_code=201)
def repay(loan_id: UUID, request: RepayRequest, db: Session = Depends(get_db)):
    transaction, loan = repayment.repay(db, loan_id, payment_date=request.payment_date, method=request.payment_method)
    return {"transaction": transaction, "loan": loan}


@router.post("/{loan_id}/default", response_model=LoanResponse)
def mark_defaulted(loan_id: UUID, request: DefaultRequest, db: Session = Depends(get_db)):
    return repayment.mark_defaulted(db, loan_id, reason=request.reason)


@router.delete("/{loan_id}")
def delete_loan(loan_id: UUID, db: Session = Depends(get_db)):
    disbursement.delete_loan(db, loan_id)
    return {"message": "Loan deleted"}
