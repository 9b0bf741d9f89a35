from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from experttalk.api.dependencies import get_gateway, get_session_service
from experttalk.core.config import settings
from experttalk.core.database import get_db
from experttalk.core.exceptions import InvalidState
from experttalk.core.security import get_current_user
from experttalk.core.websocket import ChatGateway
from experttalk.models.user import User
from experttalk.schemas.chat import (
    EarningsResponse,
    MessageResponse,
    SendMessageRequest,
    SessionStatusResponse,
    SessionSummaryResponse,
    SettlementResponse,
    StartChatRequest,
    StartChatResponse,
)
from experttalk.services.message_service import message_service
from experttalk.services.session_service import ChatSessionService, get_participant_session

router = APIRouter()


@router.post("/start", response_model=StartChatResponse, status_code=status.HTTP_201_CREATED)
async def start_chat(
    request: StartChatRequest,
    current_user: User = Depends(get_current_user),
    sessions: ChatSessionService = Depends(get_session_service),
):
    """
    Start a paid consultation with an available expert.
    """
    session = await sessions.start_session(
        current_user.id,
        request.expert_id,
        paid_duration_minutes=request.duration_minutes,
        payment_id=request.payment_id,
    )
    return StartChatResponse(session_id=session.id)


@router.get("/sessions", response_model=List[SessionSummaryResponse])
async def list_sessions(
    current_user: User = Depends(get_current_user),
    sessions: ChatSessionService = Depends(get_session_service),
):
    summaries = await sessions.list_sessions(current_user.id)
    return [SessionSummaryResponse.model_validate(s) for s in summaries]


@router.get("/sessions/{session_id}/info", response_model=SessionStatusResponse)
async def get_session_info(
    session_id: UUID,
    current_user: User = Depends(get_current_user),
    sessions: ChatSessionService = Depends(get_session_service),
):
    """
    Authoritative remaining time. Clients reconcile their countdown with this.
    """
    view = await sessions.get_session_status(session_id, current_user.id)
    return SessionStatusResponse(
        session_id=view.session_id,
        status=view.status,
        start_time=view.start_time,
        end_time=view.end_time,
        paid_duration_minutes=view.paid_duration_minutes,
        elapsed_minutes=view.budget.elapsed_minutes,
        remaining_minutes=view.budget.remaining_minutes,
        remaining_seconds=view.budget.remaining_seconds,
        is_expired=view.budget.is_expired,
        poll_interval_seconds=settings.STATUS_POLL_INTERVAL_SECONDS,
    )


@router.get("/sessions/{session_id}/messages", response_model=List[MessageResponse])
async def get_messages(
    session_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Full history; marks the counterpart's messages as read.
    """
    messages = await message_service.get_messages(db, session_id, current_user.id)
    return [MessageResponse.model_validate(m) for m in messages]


@router.post(
    "/sessions/{session_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    session_id: UUID,
    request: SendMessageRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: ChatGateway = Depends(get_gateway),
):
    """
    Send without a websocket. Same persistence and fan-out as the realtime path.
    """
    await get_participant_session(db, session_id, current_user.id)
    message = await gateway.send(session_id, current_user.id, request.content)
    if message is None:
        raise InvalidState()
    return MessageResponse.model_validate(message)


@router.post("/sessions/{session_id}/end", response_model=SettlementResponse)
async def end_session(
    session_id: UUID,
    current_user: User = Depends(get_current_user),
    sessions: ChatSessionService = Depends(get_session_service),
):
    """
    End the consultation. Repeated calls return the original settlement.
    """
    result = await sessions.end_session(session_id, current_user.id)
    return SettlementResponse(
        session_id=result.session_id,
        status=result.status,
        total_amount=float(result.total_amount),
        duration_minutes=result.duration_minutes,
    )


@router.get("/expert-earnings", response_model=EarningsResponse)
async def get_expert_earnings(
    current_user: User = Depends(get_current_user),
    sessions: ChatSessionService = Depends(get_session_service),
):
    total = await sessions.get_expert_earnings(current_user.id)
    return EarningsResponse(total_earnings=float(total))
