import logging
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.db.base import atomic
from app.models.member import Member
from uuid import UUID
from typing import List, Optional

logger = logging.getLogger(__name__)


def _next_display_user_id(db: Session) -> str:
    count = db.query(func.count(Member.id)).scalar() or 0
    return f"M-{count + 1:04d}"


def create_member(
    db: Session,
    name: str,
    phone: Optional[str] = None,
    email: Optional[str] = None,
    display_user_id: Optional[str] = None
) -> Member:
    """Register a member. The display id defaults to the next M-NNNN."""
    if not name or not name.strip():
        raise ValidationError("Member name is required")

    with atomic(db):
        if display_user_id:
            taken = db.query(Member.id).filter(Member.display_user_id == display_user_id).first()
            if taken:
                raise ConflictError(f"Display id {display_user_id} is already in use")
        member = Member(
            display_user_id=display_user_id or _next_display_user_id(db),
            name=name.strip(),
            phone=phone,
            email=email,
        )
        try:
            with db.begin_nested():
                db.add(member)
                db.flush()
        except IntegrityError:
            raise ConflictError("Display id is already in use. Try again.")

    db.refresh(member)
    logger.info(f"Member {member.display_user_id} created")
    return member


def get_member(db: Session, member_id: UUID) -> Member:
    member = db.query(Member).filter(Member.id == member_id).first()
    if not member:
        raise NotFoundError("Member not found")
    return member


def list_members(db: Session) -> List[Member]:
    return db.query(Member).order_by(Member.display_user_id.asc()).all()
