from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List
from uuid import UUID

from app.db.base import get_db
from app.schemas.member import MemberCreate, MemberResponse
from app.services import member as member_service

router = APIRouter(prefix="/api/members", tags=["members"])


@router.post("", response_model=MemberResponse, status_code=201)
def create_member(request: MemberCreate, db: Session = Depends(get_db)):
    return member_service.create_member(
        db,
        request.name,
        phone=request.phone,
        email=request.email,
        display_user_id=request.display_user_id,
    )


@router.get("", response_model=List[MemberResponse])
def list_members(db: Session = Depends(get_db)):
    return member_service.list_members(db)


@router.get("/{member_id}", response_model=MemberResponse)
def get_member(member_id: UUID, db: Session = Depends(get_db)):
    return member_service.get_member(db, member_id)
