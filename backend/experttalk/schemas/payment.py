from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, validator

from experttalk.models.payment import PaymentStatus


class DemoPaymentRequest(BaseModel):
    amount: float = Field(..., gt=0)


class PaymentResponse(BaseModel):
    id: UUID
    session_id: Optional[UUID] = None
    amount: float
    status: PaymentStatus
    reference: str
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @validator("amount", pre=True)
    def amount_as_float(cls, v):
        return float(v)

    class Config:
        from_attributes = True
