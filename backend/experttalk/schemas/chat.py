from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, validator

from experttalk.models.chat_session import SessionStatus


# Requests
class StartChatRequest(BaseModel):
    expert_id: UUID
    duration_minutes: Optional[int] = Field(None, gt=0, le=24 * 60)
    payment_id: Optional[UUID] = None


class SendMessageRequest(BaseModel):
    content: str = Field(..., max_length=4000)

    @validator('content')
    def content_not_blank(cls, v):
        if not v.strip():
            raise ValueError('Message content cannot be empty')
        return v


# Responses
class StartChatResponse(BaseModel):
    session_id: UUID


class SessionStatusResponse(BaseModel):
    session_id: UUID
    status: SessionStatus
    start_time: datetime
    end_time: Optional[datetime] = None
    paid_duration_minutes: int
    elapsed_minutes: int
    remaining_minutes: int
    remaining_seconds: int
    is_expired: bool
    poll_interval_seconds: int


class SettlementResponse(BaseModel):
    session_id: UUID
    status: SessionStatus
    total_amount: float
    duration_minutes: int


class MessageResponse(BaseModel):
    id: int
    session_id: UUID
    sender_id: UUID
    sender_name: str
    content: str
    sent_at: datetime
    is_read: bool = False

    class Config:
        from_attributes = True


class SessionSummaryResponse(BaseModel):
    id: UUID
    status: SessionStatus
    start_time: datetime
    end_time: Optional[datetime] = None
    total_amount: float
    client_id: UUID
    expert_id: UUID
    user_name: str
    expert_name: str
    last_message: str = ""
    unread_count: int = 0

    @validator("total_amount", pre=True)
    def amount_as_float(cls, v):
        return float(v or 0)

    class Config:
        from_attributes = True


class EarningsResponse(BaseModel):
    total_earnings: float
