from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from uuid import UUID

from app.db.base import get_db
from app.schemas.collection import (
    CollectionCreate,
    CollectionDateUpdate,
    CollectionDetailResponse,
    CollectionResponse,
    DesignateRequest,
    GiveLoanRequest,
    GiveLoanResponse,
    PaymentCreate,
    PaymentResultResponse,
)
from app.services import collection as collection_service, disbursement

router = APIRouter(prefix="/api/collections", tags=["collections"])


@router.post("", response_model=CollectionResponse, status_code=201)
def create_collection(request: CollectionCreate, db: Session = Depends(get_db)):
    return collection_service.create_collection(db, request.cycle_id, request.collection_date, request.month)


@router.post("/give-loan", response_model=GiveLoanResponse)
def give_loan(request: GiveLoanRequest, db: Session = Depends(get_db)):
    """Pay the member from a completed collection now, or designate them on the open one."""
    collection, loan = collection_service.give_loan(db, request.cycle_id, request.member_id, request.disbursement_method)
    return {"collection": collection, "loan": loan}


@router.get("/{collection_id}", response_model=CollectionDetailResponse)
def get_collection(collection_id: UUID, db: Session = Depends(get_db)):
    return collection_service.get_collection(db, collection_id)


@router.patch("/{collection_id}", response_model=CollectionResponse)
def update_collection_date(collection_id: UUID, request: CollectionDateUpdate, db: Session = Depends(get_db)):
    return collection_service.update_collection_date(db, collection_id, request.collection_date)


@router.delete("/{collection_id}")
def delete_collection(collection_id: UUID, db: Session = Depends(get_db)):
    collection_service.delete_collection(db, collection_id)
    return {"message": "Collection deleted"}


@router.post("/{collection_id}/payments", response_model=PaymentResultResponse, status_code=201)
def record_payment(collection_id: UUID, request: PaymentCreate, db: Session = Depends(get_db)):
    payment, collection, loan = collection_service.record_payment(
        db,
        collection_id,
        request.member_id,
        request.amount,
        method=request.payment_method,
        payment_date=request.payment_date,
    )
    return {"payment": payment, "collection": collection, "loan": loan}


@router.post("/{collection_id}/designate", response_model=CollectionResponse)
def designate_recipient(collection_id: UUID, request: DesignateRequest, db: Session = Depends(get_db)):
    return collection_service.designate_recipient(db, collection_id, request.member_id)


@router.post("/{collection_id}/reverse-loan")
def reverse_loan(collection_id: UUID, db: Session = Depends(get_db)):
    disbursement.reverse_loan_disbursement(db, collection_id=collection_id)
    return {"message": "Loan disbursement reversed"}
