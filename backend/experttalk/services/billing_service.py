"""
Time budget reconciliation for paid consultations.

The server clock is the only authority on how much of a paid budget is left;
client-side countdowns are advisory and resync against ``compute_time_budget``
through the status endpoint.
"""
import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_FLOOR
from typing import TYPE_CHECKING, Callable, Optional

if TYPE_CHECKING:
    from experttalk.services.session_service import ChatSessionService

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive timestamps (SQLite drops the offset on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class TimeBudget:
    elapsed_minutes: int
    remaining_minutes: int
    remaining_seconds: int
    is_expired: bool


def compute_time_budget(
    start_time: datetime,
    paid_duration_minutes: int,
    now: datetime,
) -> TimeBudget:
    """
    Derive elapsed/remaining time for a session.

    Elapsed and remaining minutes are floored. Expiry is decided on the
    unrounded remainder, so a session with 30 seconds left is not expired yet.
    """
    elapsed = max(0.0, (as_utc(now) - as_utc(start_time)).total_seconds() / 60)
    remaining = max(0.0, paid_duration_minutes - elapsed)
    return TimeBudget(
        elapsed_minutes=math.floor(elapsed),
        remaining_minutes=math.floor(remaining),
        remaining_seconds=math.floor(remaining * 60),
        is_expired=remaining <= 0,
    )


def settled_duration_minutes(start_time: datetime, end_time: datetime) -> int:
    """Billed-duration record: elapsed minutes rounded up."""
    elapsed = (as_utc(end_time) - as_utc(start_time)).total_seconds() / 60
    return max(0, math.ceil(elapsed))


def paid_minutes_for_amount(amount: Decimal, hourly_rate: Optional[Decimal]) -> Optional[int]:
    """Minutes a payment buys at an expert's hourly rate, or None without a rate."""
    if not hourly_rate or hourly_rate <= 0:
        return None
    minutes = (Decimal(amount) * 60 / Decimal(hourly_rate)).to_integral_value(rounding=ROUND_FLOOR)
    return int(minutes)


def is_past_grace(
    start_time: datetime,
    paid_duration_minutes: int,
    now: datetime,
    grace_seconds: int,
) -> bool:
    deadline = as_utc(start_time) + timedelta(minutes=paid_duration_minutes, seconds=grace_seconds)
    return as_utc(now) >= deadline


class BillingService:
    """
    Background sweeper that ends consultations whose paid budget lapsed.

    Billing is fixed at payment time, so this only keeps abandoned sessions
    from lingering. Every expiry goes through the regular settlement path.
    """

    def __init__(
        self,
        session_service: "ChatSessionService",
        interval_seconds: int = 60,
        grace_seconds: int = 60,
    ):
        self.session_service = session_service
        self.interval_seconds = interval_seconds
        self.grace_seconds = grace_seconds

    async def start_monitoring(self):
        """Run the expiry sweep until cancelled."""
        logger.info("Starting session expiry monitor...")
        while True:
            try:
                await self.sweep()
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                logger.info("Session expiry monitor stopped")
                raise
            except Exception as e:
                logger.error(f"Error in session expiry monitor: {str(e)}", exc_info=True)
                await asyncio.sleep(5)  # Wait before retrying

    async def sweep(self) -> int:
        """End every overdue Active session once; returns how many this sweep settled."""
        settled = await self.session_service.expire_overdue_sessions(self.grace_seconds)
        if settled:
            logger.info(f"Expired {settled} overdue consultation(s)")
        return settled
