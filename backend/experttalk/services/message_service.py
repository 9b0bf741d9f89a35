import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from experttalk.models.chat_session import ChatMessage, ChatSession, SessionStatus
from experttalk.models.user import User
from experttalk.services.billing_service import as_utc
from experttalk.services.session_service import get_participant_session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MessageView:
    id: int
    session_id: UUID
    sender_id: UUID
    sender_name: str
    content: str
    sent_at: datetime
    is_read: bool = False

    def to_event_data(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sender_id": str(self.sender_id),
            "sender_name": self.sender_name,
            "content": self.content,
            "sent_at": as_utc(self.sent_at).isoformat(),
        }


class MessageService:
    """Append-only message log scoped to a session."""

    async def append_message(
        self,
        db: AsyncSession,
        session_id: UUID,
        sender_id: UUID,
        content: str,
        now: datetime,
    ) -> Optional[MessageView]:
        """
        Persist a message if the sender is a participant of an Active session.

        Returns None when the session is missing, foreign, or no longer
        Active. The guard touches the session row inside the insert's
        transaction, so a concurrent settlement either waits for this insert
        or makes the guard match nothing.
        """
        guard = await db.execute(
            update(ChatSession)
            .where(
                and_(
                    ChatSession.id == session_id,
                    ChatSession.status == SessionStatus.ACTIVE,
                    or_(ChatSession.client_id == sender_id, ChatSession.expert_id == sender_id),
                )
            )
            .values(updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if guard.rowcount != 1:
            await db.rollback()
            return None

        message = ChatMessage(
            session_id=session_id,
            sender_id=sender_id,
            content=content,
            sent_at=now,
            is_read=False,
        )
        db.add(message)
        await db.flush()

        sender_name = await db.scalar(select(User.name).where(User.id == sender_id))
        await db.commit()

        return MessageView(
            id=message.id,
            session_id=session_id,
            sender_id=sender_id,
            sender_name=sender_name or "Unknown",
            content=content,
            sent_at=now,
        )

    async def get_messages(
        self,
        db: AsyncSession,
        session_id: UUID,
        caller_id: UUID,
    ) -> List[MessageView]:
        """
        Full history in persistence order, then mark the counterpart's
        messages read. The returned read flags are the ones before marking.
        """
        await get_participant_session(db, session_id, caller_id)

        result = await db.execute(
            select(ChatMessage, User.name)
            .join(User, User.id == ChatMessage.sender_id)
            .where(ChatMessage.session_id == session_id)
            .order_by(ChatMessage.id.asc())
        )
        messages = [
            MessageView(
                id=message.id,
                session_id=message.session_id,
                sender_id=message.sender_id,
                sender_name=sender_name,
                content=message.content,
                sent_at=as_utc(message.sent_at),
                is_read=message.is_read,
            )
            for message, sender_name in result.all()
        ]

        marked = await db.execute(
            update(ChatMessage)
            .where(
                and_(
                    ChatMessage.session_id == session_id,
                    ChatMessage.sender_id != caller_id,
                    ChatMessage.is_read.is_(False),
                )
            )
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if marked.rowcount:
            logger.debug(f"Marked {marked.rowcount} message(s) read in session {session_id} for {caller_id}")

        return messages


message_service = MessageService()
