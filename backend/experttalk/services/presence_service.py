import logging
from typing import List
from uuid import UUID

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from experttalk.core.exceptions import CounterpartyUnavailable
from experttalk.models.user import User, UserRole

logger = logging.getLogger(__name__)


class PresenceService:
    """
    Who can be booked right now.

    Availability is an explicit flag on the expert's directory entry, toggled
    by the expert. The session core only ever asks ``is_available``.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def set_available(self, user_id: UUID) -> None:
        await self._set(user_id, True)

    async def set_unavailable(self, user_id: UUID) -> None:
        await self._set(user_id, False)

    async def is_available(self, user_id: UUID) -> bool:
        async with self.session_factory() as db:
            available = await db.scalar(
                select(User.is_available).where(
                    and_(User.id == user_id, User.role == UserRole.EXPERT, User.is_active.is_(True))
                )
            )
        return bool(available)

    async def list_available_experts(self) -> List[User]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(User)
                .where(
                    and_(
                        User.role == UserRole.EXPERT,
                        User.is_available.is_(True),
                        User.is_active.is_(True),
                    )
                )
                .order_by(User.name)
            )
            return list(result.scalars().all())

    async def _set(self, user_id: UUID, available: bool) -> None:
        async with self.session_factory() as db:
            result = await db.execute(
                update(User)
                .where(and_(User.id == user_id, User.role == UserRole.EXPERT))
                .values(is_available=available)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise CounterpartyUnavailable("Only experts can change availability")
            await db.commit()
        logger.info(f"Expert {user_id} is now {'available' if available else 'unavailable'}")
