from pydantic import BaseModel, field_validator
from typing import Optional
from datetime import datetime
from models import UserRole


class ProfileResponse(BaseModel):
    id: int
    email: str
    full_name: str
    role: UserRole
    avatar_url: Optional[str] = None

    class Config:
        from_attributes = True


class MessageCreate(BaseModel):
    content: str

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("Message content must not be empty")
        return stripped


class MessageResponse(BaseModel):
    id: int
    sender_id: int
    receiver_id: int
    content: str
    read: bool
    created_at: datetime

    class Config:
        from_attributes = True


class ConversationSummary(BaseModel):
    counterpart: ProfileResponse
    last_message: Optional[MessageResponse] = None
    unread_count: int = 0


class ReadReceipt(BaseModel):
    reader_id: int
    sender_id: int
    count: int


class UnreadCountResponse(BaseModel):
    unread_count: int


class ProfileEvent(BaseModel):
    """Payload of profile.created / profile.updated events from the auth side."""

    id: int
    email: str
    full_name: str
    role: UserRole
    avatar_url: Optional[str] = None
