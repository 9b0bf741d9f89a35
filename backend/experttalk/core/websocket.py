"""
Realtime gateway for consultation chat.

Sits between the websocket endpoint and the services: checks participation,
persists through the message log and fans out through the connection
registry. All fan-out for one session happens under that session's lock,
so every observer sees messages in persistence order.
"""
import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import async_sessionmaker

from experttalk.core.exceptions import SessionNotFound
from experttalk.schemas.websocket import new_message_event, session_ended_event
from experttalk.services.billing_service import Clock, utcnow
from experttalk.services.message_service import MessageService, MessageView, message_service
from experttalk.services.session_service import get_participant_session
from experttalk.websockets.connection_manager import ClientConnection, ConnectionManager

logger = logging.getLogger(__name__)


class ChatGateway:
    def __init__(
        self,
        manager: ConnectionManager,
        session_factory: async_sessionmaker,
        clock: Clock = utcnow,
        messages: MessageService = message_service,
    ):
        self.manager = manager
        self.session_factory = session_factory
        self.clock = clock
        self.messages = messages

    async def join(self, session_id: UUID, connection: ClientConnection) -> bool:
        """
        Add the connection to the session's group.

        Ended sessions can still be joined. Non-participants are refused
        without telling them whether the session exists.
        """
        async with self.session_factory() as db:
            try:
                await get_participant_session(db, session_id, connection.user_id)
            except SessionNotFound:
                logger.info(f"Refused join of user {connection.user_id} to session {session_id}")
                return False
        self.manager.join(session_id, connection)
        return True

    def leave(self, session_id: UUID, connection: ClientConnection) -> None:
        self.manager.leave(session_id, connection)

    async def send(self, session_id: UUID, sender_id: UUID, content: str) -> Optional[MessageView]:
        """
        Persist and fan out one message.

        Returns None when the message was dropped because the sender is not
        a participant or the session is no longer Active.
        """
        async with self.manager.session_lock(session_id):
            async with self.session_factory() as db:
                message = await self.messages.append_message(
                    db, session_id, sender_id, content, self.clock()
                )
            if message is None:
                logger.debug(f"Dropped message from {sender_id} to inactive or foreign session {session_id}")
                return None
            recipients = self.manager.broadcast_to_session(session_id, new_message_event(message))

        logger.debug(f"Message {message.id} in session {session_id} queued for {recipients} connection(s)")
        return message

    async def broadcast_session_ended(self, session_id: UUID, ended_by: Optional[UUID]) -> int:
        """Notify every member once, after any message already being sent, then tear the group down."""
        async with self.manager.session_lock(session_id):
            recipients = self.manager.broadcast_to_session(
                session_id, session_ended_event(session_id, ended_by)
            )
            self.manager.close_session(session_id)
        logger.info(f"Session {session_id} end announced to {recipients} connection(s)")
        return recipients
