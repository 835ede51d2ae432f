from sqlalchemy import Column, String, DateTime, Uuid, text
from sqlalchemy.orm import relationship
import uuid
from app.db.base import Base


class Member(Base):
    """Member identity record. Referenced, never owned, by the financial tables."""
    __tablename__ = "member"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    display_user_id = Column(String(20), nullable=False, unique=True, index=True)  # e.g., "M-0001"
    name = Column(String(120), nullable=False)
    phone = Column(String(30), nullable=True)
    email = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP"))

    # Relationships
    savings = relationship("Savings", back_populates="member", uselist=False)
    memberships = relationship("GroupMember", back_populates="member")
    loans = relationship("Loan", back_populates="member", foreign_keys="Loan.member_id")
