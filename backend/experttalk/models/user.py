from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum
import uuid
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, Enum, Numeric, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from experttalk.core.database import Base

class UserRole(str, PyEnum):
    USER = "user"
    EXPERT = "expert"
    ADMIN = "admin"

    @property
    def can_counsel(self) -> bool:
        """Whether users of this role may be booked as the paid counterparty."""
        if self is UserRole.EXPERT:
            return True
        elif self is UserRole.USER:
            return False
        elif self is UserRole.ADMIN:
            return False
        raise ValueError(f"Unhandled user role: {self!r}")

class User(Base):
    """Directory entry for anyone taking part in a consultation."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(
        String,
        unique=True,
        index=True,
        nullable=False
    )
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role"),
        default=UserRole.USER,
        nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Expert specific
    hourly_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    is_available: Mapped[bool] = mapped_column(Boolean, default=False)
    total_earnings: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0"),
        nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )

    @property
    def is_expert(self) -> bool:
        return self.role == UserRole.EXPERT

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"
