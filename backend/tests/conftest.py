"""
Shared fixtures: a file-backed SQLite database per test, a controllable
clock, seeded participants and a fake websocket.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from experttalk.core.database import create_engine_for_url, create_session_factory, init_db
from experttalk.core.websocket import ChatGateway
from experttalk.models.payment import Payment, PaymentStatus
from experttalk.models.user import User, UserRole
from experttalk.services.presence_service import PresenceService
from experttalk.services.session_service import ChatSessionService
from experttalk.websockets.connection_manager import ConnectionManager

START = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeWebSocket:
    """Records frames; ``block`` makes sends hang to simulate a stalled peer."""

    def __init__(self, fail: bool = False, block: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.accepted = False
        self.close_code: Optional[int] = None
        self.fail = fail
        self.block = block
        self._never = asyncio.Event()

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, data: Dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("connection reset")
        if self.block:
            await self._never.wait()
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.close_code = code

    def of_type(self, frame_type: str) -> List[Dict[str, Any]]:
        return [f for f in self.sent if f.get("type") == frame_type]


async def drain(times: int = 5) -> None:
    """Let sender tasks flush their queues."""
    for _ in range(times):
        await asyncio.sleep(0)


def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'experttalk_test.db'}"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine_for_url(database_url(tmp_path))
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return create_session_factory(engine)


async def seed_users(session_factory: async_sessionmaker) -> Dict[str, User]:
    users = {
        "client": User(name="Asha Client", email="client@example.com", role=UserRole.USER),
        "expert": User(
            name="Ravi Expert",
            email="expert@example.com",
            role=UserRole.EXPERT,
            hourly_rate=Decimal("2500.00"),
            is_available=True,
            total_earnings=Decimal("0"),
        ),
        "outsider": User(name="Mallory", email="outsider@example.com", role=UserRole.USER),
        "offline_expert": User(
            name="Offline Expert",
            email="offline@example.com",
            role=UserRole.EXPERT,
            hourly_rate=Decimal("1000.00"),
            is_available=False,
        ),
    }
    async with session_factory() as db:
        db.add_all(users.values())
        await db.commit()
    return users


async def seed_payment(
    session_factory: async_sessionmaker,
    user_id,
    amount: str,
    status: PaymentStatus = PaymentStatus.COMPLETED,
) -> Payment:
    async with session_factory() as db:
        payment = Payment(
            user_id=user_id,
            amount=Decimal(amount),
            status=status,
            reference=f"test_{amount}",
            created_at=START,
            completed_at=START,
        )
        db.add(payment)
        await db.commit()
    return payment


async def get_user(session_factory: async_sessionmaker, user_id) -> User:
    async with session_factory() as db:
        return await db.get(User, user_id)


@pytest.fixture
async def users(session_factory) -> Dict[str, User]:
    return await seed_users(session_factory)


@pytest.fixture
def manager() -> ConnectionManager:
    return ConnectionManager(queue_size=8)


@pytest.fixture
def gateway(manager, session_factory, clock) -> ChatGateway:
    return ChatGateway(manager, session_factory, clock=clock)


@pytest.fixture
def presence(session_factory) -> PresenceService:
    return PresenceService(session_factory)


@pytest.fixture
def sessions(session_factory, gateway, presence, clock) -> ChatSessionService:
    return ChatSessionService(session_factory, gateway, presence, clock=clock, default_paid_minutes=15)
