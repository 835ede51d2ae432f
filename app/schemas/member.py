from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from uuid import UUID


class MemberCreate(BaseModel):
    name: str = Field(..., max_length=120)
    phone: Optional[str] = Field(None, max_length=30)
    email: Optional[str] = Field(None, max_length=255)
    display_user_id: Optional[str] = Field(None, max_length=20, description="Defaults to the next M-NNNN")


class MemberResponse(BaseModel):
    id: UUID
    display_user_id: str
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
