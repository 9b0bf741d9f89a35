from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from experttalk.core.database import get_db
from experttalk.core.security import get_current_user
from experttalk.models.user import User
from experttalk.schemas.payment import DemoPaymentRequest, PaymentResponse
from experttalk.services.payment_service import get_payment_history, record_completed_payment

router = APIRouter()


@router.post("/demo", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def create_demo_payment(
    request: DemoPaymentRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Record a completed payment without a real gateway. Its id can be passed
    to ``POST /chat/start``.
    """
    payment = await record_completed_payment(db, current_user.id, request.amount)
    await db.commit()
    return PaymentResponse.model_validate(payment)


@router.get("/history", response_model=List[PaymentResponse])
async def payment_history(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    payments = await get_payment_history(db, current_user.id)
    return [PaymentResponse.model_validate(p) for p in payments]
