import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, List, Optional
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from experttalk.core.config import settings
from experttalk.core.exceptions import (
    CounterpartyUnavailable,
    PaymentInvalid,
    SessionNotFound,
    SettlementConflict,
)
from experttalk.models.chat_session import ChatMessage, ChatSession, SessionStatus
from experttalk.models.payment import Payment, PaymentStatus
from experttalk.models.user import User
from experttalk.services.billing_service import (
    Clock,
    TimeBudget,
    as_utc,
    compute_time_budget,
    is_past_grace,
    paid_minutes_for_amount,
    settled_duration_minutes,
    utcnow,
)

if TYPE_CHECKING:
    from experttalk.core.websocket import ChatGateway
    from experttalk.services.presence_service import PresenceService

logger = logging.getLogger(__name__)


async def get_participant_session(
    db: AsyncSession,
    session_id: UUID,
    user_id: UUID,
) -> ChatSession:
    """Load a session the user takes part in; missing and foreign look the same."""
    result = await db.execute(
        select(ChatSession).where(
            and_(
                ChatSession.id == session_id,
                or_(ChatSession.client_id == user_id, ChatSession.expert_id == user_id),
            )
        )
    )
    session = result.scalars().first()
    if session is None:
        raise SessionNotFound()
    return session


@dataclass(frozen=True)
class SessionStatusView:
    session_id: UUID
    status: SessionStatus
    start_time: datetime
    end_time: Optional[datetime]
    paid_duration_minutes: int
    budget: TimeBudget


@dataclass(frozen=True)
class SettlementResult:
    session_id: UUID
    status: SessionStatus
    total_amount: Decimal
    duration_minutes: int
    settled_now: bool = False


@dataclass(frozen=True)
class SessionSummary:
    id: UUID
    status: SessionStatus
    start_time: datetime
    end_time: Optional[datetime]
    total_amount: Decimal
    client_id: UUID
    expert_id: UUID
    user_name: str
    expert_name: str
    last_message: str
    unread_count: int


class ChatSessionService:
    """
    Owns the consultation state machine.

    Active -> Completed happens through one conditional UPDATE on the
    session row; whoever wins that update applies the earnings credit in the
    same transaction and announces the ending. Everyone else reads the
    winner's result.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        gateway: "ChatGateway",
        presence: "PresenceService",
        clock: Clock = utcnow,
        default_paid_minutes: int = settings.DEFAULT_PAID_DURATION_MINUTES,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.presence = presence
        self.clock = clock
        self.default_paid_minutes = default_paid_minutes

    async def start_session(
        self,
        client_id: UUID,
        expert_id: UUID,
        paid_duration_minutes: Optional[int] = None,
        payment_id: Optional[UUID] = None,
    ) -> ChatSession:
        """
        Open an Active consultation against an available expert.

        Payment is settled upstream; a referenced payment is only attached
        to the new session so settlement can read its amount.

        Raises:
            CounterpartyUnavailable: expert missing, not an expert, or offline
            PaymentInvalid: referenced payment is not a completed, unused
                payment of the client
        """
        async with self.session_factory() as db:
            expert = await db.get(User, expert_id)
            if (
                expert is None
                or not expert.is_active
                or not expert.role.can_counsel
                or expert.id == client_id
                or not await self.presence.is_available(expert_id)
            ):
                raise CounterpartyUnavailable()

            payment = None
            if payment_id is not None:
                payment = await db.get(Payment, payment_id)
                if (
                    payment is None
                    or payment.user_id != client_id
                    or payment.status != PaymentStatus.COMPLETED
                    or payment.session_id is not None
                ):
                    raise PaymentInvalid()

            if paid_duration_minutes is None and payment is not None:
                paid_duration_minutes = paid_minutes_for_amount(payment.amount, expert.hourly_rate)
                if paid_duration_minutes is not None and paid_duration_minutes < 1:
                    raise PaymentInvalid("Payment does not cover a single minute with this expert")
            if paid_duration_minutes is None:
                paid_duration_minutes = self.default_paid_minutes

            now = self.clock()
            session = ChatSession(
                client_id=client_id,
                expert_id=expert_id,
                status=SessionStatus.ACTIVE,
                start_time=now,
                paid_duration_minutes=paid_duration_minutes,
                duration_minutes=0,
                total_amount=Decimal("0"),
                created_at=now,
                updated_at=now,
            )
            db.add(session)
            await db.flush()

            if payment is not None:
                # Claim the payment in the same transaction; a concurrent start loses here.
                attach = await db.execute(
                    update(Payment)
                    .where(
                        and_(
                            Payment.id == payment.id,
                            Payment.user_id == client_id,
                            Payment.status == PaymentStatus.COMPLETED,
                            Payment.session_id.is_(None),
                        )
                    )
                    .values(session_id=session.id)
                    .execution_options(synchronize_session=False)
                )
                if attach.rowcount != 1:
                    await db.rollback()
                    raise PaymentInvalid()

            await db.commit()

        logger.info(
            f"Session {session.id} started: client {client_id} with expert {expert_id}, "
            f"{paid_duration_minutes} paid minute(s)"
        )
        return session

    async def get_session_status(self, session_id: UUID, caller_id: UUID) -> SessionStatusView:
        """
        Server-side view of the remaining budget.

        Settled sessions are measured up to their end time instead of now.
        """
        async with self.session_factory() as db:
            session = await get_participant_session(db, session_id, caller_id)

        reference = session.end_time if session.end_time is not None else self.clock()
        return SessionStatusView(
            session_id=session.id,
            status=session.status,
            start_time=as_utc(session.start_time),
            end_time=as_utc(session.end_time) if session.end_time else None,
            paid_duration_minutes=session.paid_duration_minutes,
            budget=compute_time_budget(session.start_time, session.paid_duration_minutes, reference),
        )

    async def end_session(self, session_id: UUID, caller_id: UUID) -> SettlementResult:
        """
        End a consultation. Safe to repeat and to race.

        The first caller settles and broadcasts; later or losing callers get
        the same amount and duration back with no further side effects.
        """
        async with self.session_factory() as db:
            session = await get_participant_session(db, session_id, caller_id)
            if session.status.is_terminal:
                return self._result_of(session)
            try:
                result = await self._settle(db, session, ended_by=caller_id)
            except SettlementConflict:
                return await self._read_settlement(db, session_id)

        await self._announce_end(session_id, ended_by=caller_id)
        return result

    async def expire_overdue_sessions(self, grace_seconds: int) -> int:
        """Settle every Active session past its budget plus grace."""
        now = self.clock()
        async with self.session_factory() as db:
            result = await db.execute(
                select(ChatSession.id, ChatSession.start_time, ChatSession.paid_duration_minutes)
                .where(ChatSession.status == SessionStatus.ACTIVE)
            )
            overdue = [
                row.id
                for row in result.all()
                if is_past_grace(row.start_time, row.paid_duration_minutes, now, grace_seconds)
            ]

        settled = 0
        for session_id in overdue:
            async with self.session_factory() as db:
                session = await db.get(ChatSession, session_id)
                if session is None or session.status.is_terminal:
                    continue
                try:
                    await self._settle(db, session, ended_by=None)
                except SettlementConflict:
                    continue
            await self._announce_end(session_id, ended_by=None)
            settled += 1
        return settled

    async def list_sessions(self, caller_id: UUID) -> List[SessionSummary]:
        """The caller's consultations, newest first."""
        client = aliased(User)
        expert = aliased(User)
        async with self.session_factory() as db:
            result = await db.execute(
                select(ChatSession, client.name, expert.name)
                .join(client, client.id == ChatSession.client_id)
                .join(expert, expert.id == ChatSession.expert_id)
                .where(or_(ChatSession.client_id == caller_id, ChatSession.expert_id == caller_id))
                .order_by(ChatSession.start_time.desc())
            )
            rows = result.all()

            summaries = []
            for session, user_name, expert_name in rows:
                last_message = await db.scalar(
                    select(ChatMessage.content)
                    .where(ChatMessage.session_id == session.id)
                    .order_by(ChatMessage.id.desc())
                    .limit(1)
                )
                unread = await db.scalar(
                    select(func.count(ChatMessage.id)).where(
                        and_(
                            ChatMessage.session_id == session.id,
                            ChatMessage.sender_id != caller_id,
                            ChatMessage.is_read.is_(False),
                        )
                    )
                )
                summaries.append(
                    SessionSummary(
                        id=session.id,
                        status=session.status,
                        start_time=as_utc(session.start_time),
                        end_time=as_utc(session.end_time) if session.end_time else None,
                        total_amount=session.total_amount,
                        client_id=session.client_id,
                        expert_id=session.expert_id,
                        user_name=user_name,
                        expert_name=expert_name,
                        last_message=last_message or "",
                        unread_count=unread or 0,
                    )
                )
        return summaries

    async def get_expert_earnings(self, expert_id: UUID) -> Decimal:
        async with self.session_factory() as db:
            expert = await db.get(User, expert_id)
        if expert is None or not expert.is_expert:
            raise CounterpartyUnavailable("Not an expert")
        return expert.total_earnings

    async def _settle(
        self,
        db: AsyncSession,
        session: ChatSession,
        ended_by: Optional[UUID],
    ) -> SettlementResult:
        """
        Apply the Active -> Completed transition and the earnings credit as
        one unit of work.

        Raises:
            SettlementConflict: another settlement already won the row
        """
        session_id = session.id
        expert_id = session.expert_id
        end_time = self.clock()
        duration = settled_duration_minutes(session.start_time, end_time)

        amount = await db.scalar(
            select(Payment.amount).where(
                and_(
                    Payment.session_id == session_id,
                    Payment.status == PaymentStatus.COMPLETED,
                )
            )
        )
        total_amount = Decimal(amount) if amount is not None else Decimal("0")

        try:
            transition = await db.execute(
                update(ChatSession)
                .where(
                    and_(
                        ChatSession.id == session_id,
                        ChatSession.status == SessionStatus.ACTIVE,
                    )
                )
                .values(
                    status=SessionStatus.COMPLETED,
                    end_time=end_time,
                    duration_minutes=duration,
                    total_amount=total_amount,
                    updated_at=end_time,
                )
                .execution_options(synchronize_session=False)
            )
            if transition.rowcount != 1:
                raise SettlementConflict(session_id)

            if total_amount:
                await db.execute(
                    update(User)
                    .where(User.id == expert_id)
                    .values(total_earnings=User.total_earnings + total_amount)
                    .execution_options(synchronize_session=False)
                )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            f"Session {session_id} settled by {ended_by or 'expiry'}: "
            f"{duration} minute(s), amount {total_amount}"
        )
        return SettlementResult(
            session_id=session_id,
            status=SessionStatus.COMPLETED,
            total_amount=total_amount,
            duration_minutes=duration,
            settled_now=True,
        )

    async def _read_settlement(self, db: AsyncSession, session_id: UUID) -> SettlementResult:
        row = (
            await db.execute(
                select(ChatSession.status, ChatSession.total_amount, ChatSession.duration_minutes)
                .where(ChatSession.id == session_id)
            )
        ).one()
        return SettlementResult(
            session_id=session_id,
            status=row.status,
            total_amount=row.total_amount,
            duration_minutes=row.duration_minutes,
        )

    def _result_of(self, session: ChatSession) -> SettlementResult:
        return SettlementResult(
            session_id=session.id,
            status=session.status,
            total_amount=session.total_amount,
            duration_minutes=session.duration_minutes,
        )

    async def _announce_end(self, session_id: UUID, ended_by: Optional[UUID]) -> None:
        try:
            await self.gateway.broadcast_session_ended(session_id, ended_by)
        except Exception as e:
            # Settlement is committed; clients also learn the ending by polling.
            logger.warning(f"Failed to broadcast end of session {session_id}: {e}")
