from typing import Optional
from uuid import UUID

from pydantic import BaseModel, validator

from experttalk.models.user import UserRole


class ExpertResponse(BaseModel):
    id: UUID
    name: str
    role: UserRole
    hourly_rate: Optional[float] = None
    is_available: bool = False

    @validator("hourly_rate", pre=True)
    def rate_as_float(cls, v):
        return float(v) if v is not None else None

    class Config:
        from_attributes = True


class AvailabilityUpdate(BaseModel):
    is_available: bool
