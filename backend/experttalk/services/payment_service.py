"""
Stand-in for the external payment gateway.

The consultation core only needs "payment completed with amount X"; this
records exactly that, the way the demo checkout of the web client does.
"""
import logging
import secrets
from decimal import Decimal
from typing import List
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from experttalk.core.exceptions import PaymentInvalid
from experttalk.models.payment import Payment, PaymentStatus
from experttalk.services.billing_service import utcnow

logger = logging.getLogger(__name__)


async def record_completed_payment(db: AsyncSession, user_id: UUID, amount: Decimal) -> Payment:
    amount = Decimal(str(amount))
    if amount <= 0:
        raise PaymentInvalid("Amount must be positive")

    now = utcnow()
    payment = Payment(
        user_id=user_id,
        amount=amount,
        status=PaymentStatus.COMPLETED,
        reference=f"demo_{secrets.token_hex(8)}",
        created_at=now,
        completed_at=now,
    )
    db.add(payment)
    await db.flush()
    logger.info(f"Recorded payment {payment.reference} of {amount} for user {user_id}")
    return payment


async def get_payment_history(db: AsyncSession, user_id: UUID) -> List[Payment]:
    result = await db.execute(
        select(Payment)
        .where(Payment.user_id == user_id)
        .order_by(Payment.created_at.desc(), Payment.completed_at.desc())
    )
    return list(result.scalars().all())
