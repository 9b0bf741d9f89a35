"""
Tests for the consultation lifecycle: start, status, settlement and expiry.
"""

import asyncio
import uuid
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import FakeWebSocket, drain, get_user, seed_payment
from experttalk.core.exceptions import CounterpartyUnavailable, PaymentInvalid, SessionNotFound
from experttalk.models.chat_session import SessionStatus
from experttalk.models.payment import Payment, PaymentStatus


class TestStartSession:
    """Opening a consultation."""

    @pytest.mark.asyncio
    async def test_starts_active_session_with_default_budget(self, sessions, users, clock):
        session = await sessions.start_session(users["client"].id, users["expert"].id)

        assert session.status == SessionStatus.ACTIVE
        assert session.paid_duration_minutes == 15
        assert session.start_time == clock.now
        assert session.end_time is None
        assert session.total_amount == 0
        assert session.duration_minutes == 0

    @pytest.mark.asyncio
    async def test_explicit_budget_wins(self, sessions, users):
        session = await sessions.start_session(users["client"].id, users["expert"].id, paid_duration_minutes=30)

        assert session.paid_duration_minutes == 30

    @pytest.mark.asyncio
    @pytest.mark.parametrize("counterparty", ["offline_expert", "outsider", "missing"])
    async def test_unavailable_counterparty(self, sessions, users, counterparty):
        expert_id = users[counterparty].id if counterparty in users else uuid.uuid4()

        with pytest.raises(CounterpartyUnavailable):
            await sessions.start_session(users["client"].id, expert_id)

    @pytest.mark.asyncio
    async def test_expert_turning_unavailable_blocks_new_sessions(self, sessions, users, presence):
        await presence.set_unavailable(users["expert"].id)

        with pytest.raises(CounterpartyUnavailable):
            await sessions.start_session(users["client"].id, users["expert"].id)

    @pytest.mark.asyncio
    async def test_payment_sets_budget_and_is_attached(self, sessions, users, session_factory):
        payment = await seed_payment(session_factory, users["client"].id, "625")

        session = await sessions.start_session(users["client"].id, users["expert"].id, payment_id=payment.id)

        # 625 at 2500/hour buys 15 minutes
        assert session.paid_duration_minutes == 15
        async with session_factory() as db:
            stored = await db.get(Payment, payment.id)
        assert stored.session_id == session.id

    @pytest.mark.asyncio
    async def test_payment_cannot_be_reused(self, sessions, users, session_factory):
        payment = await seed_payment(session_factory, users["client"].id, "625")
        await sessions.start_session(users["client"].id, users["expert"].id, payment_id=payment.id)

        with pytest.raises(PaymentInvalid):
            await sessions.start_session(users["client"].id, users["expert"].id, payment_id=payment.id)

    @pytest.mark.asyncio
    async def test_rejects_foreign_or_incomplete_payment(self, sessions, users, session_factory):
        foreign = await seed_payment(session_factory, users["outsider"].id, "625")
        pending = await seed_payment(session_factory, users["client"].id, "300", status=PaymentStatus.PENDING)

        with pytest.raises(PaymentInvalid):
            await sessions.start_session(users["client"].id, users["expert"].id, payment_id=foreign.id)
        with pytest.raises(PaymentInvalid):
            await sessions.start_session(users["client"].id, users["expert"].id, payment_id=pending.id)

    @pytest.mark.asyncio
    async def test_payment_below_one_minute_is_rejected(self, sessions, users, session_factory):
        # 10 at 2500/hour buys 0.24 of a minute
        payment = await seed_payment(session_factory, users["client"].id, "10")

        with pytest.raises(PaymentInvalid):
            await sessions.start_session(users["client"].id, users["expert"].id, payment_id=payment.id)

        async with session_factory() as db:
            stored = await db.get(Payment, payment.id)
        assert stored.session_id is None
        assert await sessions.list_sessions(users["client"].id) == []

    @pytest.mark.asyncio
    async def test_concurrent_starts_claim_payment_once(self, sessions, users, session_factory):
        payment = await seed_payment(session_factory, users["client"].id, "625")

        outcomes = await asyncio.gather(
            sessions.start_session(users["client"].id, users["expert"].id, payment_id=payment.id),
            sessions.start_session(users["client"].id, users["expert"].id, payment_id=payment.id),
            return_exceptions=True,
        )

        started = [o for o in outcomes if not isinstance(o, BaseException)]
        refused = [o for o in outcomes if isinstance(o, BaseException)]
        assert len(started) == 1
        assert len(refused) == 1 and isinstance(refused[0], PaymentInvalid)

        async with session_factory() as db:
            stored = await db.get(Payment, payment.id)
        assert stored.session_id == started[0].id
        assert [s.id for s in await sessions.list_sessions(users["client"].id)] == [started[0].id]


class TestSessionStatus:
    """Server-side remaining time."""

    @pytest.mark.asyncio
    async def test_status_ten_minutes_in(self, sessions, users, clock):
        session = await sessions.start_session(users["client"].id, users["expert"].id, paid_duration_minutes=30)
        clock.advance(minutes=10)

        view = await sessions.get_session_status(session.id, users["expert"].id)

        assert view.status == SessionStatus.ACTIVE
        assert view.budget.elapsed_minutes == 10
        assert view.budget.remaining_minutes == 20
        assert view.budget.is_expired is False

    @pytest.mark.asyncio
    async def test_status_after_budget(self, sessions, users, clock):
        session = await sessions.start_session(users["client"].id, users["expert"].id, paid_duration_minutes=30)
        clock.advance(minutes=31)

        view = await sessions.get_session_status(session.id, users["client"].id)

        assert view.budget.remaining_minutes == 0
        assert view.budget.is_expired is True
        # Nothing ends a session just because its budget ran out
        assert view.status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_status_is_frozen_after_settlement(self, sessions, users, clock):
        session = await sessions.start_session(users["client"].id, users["expert"].id, paid_duration_minutes=30)
        clock.advance(minutes=5)
        await sessions.end_session(session.id, users["client"].id)
        clock.advance(minutes=60)

        view = await sessions.get_session_status(session.id, users["client"].id)

        assert view.status == SessionStatus.COMPLETED
        assert view.end_time is not None
        assert view.budget.elapsed_minutes == 5

    @pytest.mark.asyncio
    async def test_outsider_and_missing_look_the_same(self, sessions, users):
        session = await sessions.start_session(users["client"].id, users["expert"].id)

        with pytest.raises(SessionNotFound) as foreign:
            await sessions.get_session_status(session.id, users["outsider"].id)
        with pytest.raises(SessionNotFound) as missing:
            await sessions.get_session_status(uuid.uuid4(), users["client"].id)

        assert foreign.value.detail == missing.value.detail


class TestEndSession:
    """Exactly-once settlement."""

    @pytest.mark.asyncio
    async def test_flat_fee_settlement(self, sessions, users, session_factory, clock):
        payment = await seed_payment(session_factory, users["client"].id, "1250")
        session = await sessions.start_session(
            users["client"].id, users["expert"].id, paid_duration_minutes=30, payment_id=payment.id
        )
        clock.advance(minutes=12)

        result = await sessions.end_session(session.id, users["client"].id)

        assert result.settled_now is True
        assert result.status == SessionStatus.COMPLETED
        assert result.duration_minutes == 12
        assert result.total_amount == Decimal("1250")
        expert = await get_user(session_factory, users["expert"].id)
        assert expert.total_earnings == Decimal("1250")

    @pytest.mark.asyncio
    async def test_repeat_end_returns_same_result_without_credit(self, sessions, users, session_factory, clock):
        payment = await seed_payment(session_factory, users["client"].id, "625")
        session = await sessions.start_session(users["client"].id, users["expert"].id, payment_id=payment.id)
        clock.advance(minutes=6)
        first = await sessions.end_session(session.id, users["client"].id)
        clock.advance(minutes=3)

        second = await sessions.end_session(session.id, users["expert"].id)

        assert second.settled_now is False
        assert (second.duration_minutes, second.total_amount) == (first.duration_minutes, first.total_amount)
        expert = await get_user(session_factory, users["expert"].id)
        assert expert.total_earnings == Decimal("625")

    @pytest.mark.asyncio
    async def test_concurrent_ends_settle_once(self, sessions, users, session_factory, manager, gateway, clock):
        payment = await seed_payment(session_factory, users["client"].id, "625")
        session = await sessions.start_session(users["client"].id, users["expert"].id, payment_id=payment.id)
        ws = FakeWebSocket()
        connection = await manager.connect(ws, users["expert"].id)
        assert await gateway.join(session.id, connection)
        clock.advance(minutes=7, seconds=20)

        callers = [users["client"].id, users["expert"].id] * 3
        results = await asyncio.gather(*(sessions.end_session(session.id, c) for c in callers))
        await drain()

        assert sum(r.settled_now for r in results) == 1
        assert {(r.duration_minutes, r.total_amount) for r in results} == {(8, Decimal("625"))}
        expert = await get_user(session_factory, users["expert"].id)
        assert expert.total_earnings == Decimal("625")
        assert len(ws.of_type("session_ended")) == 1

    @pytest.mark.asyncio
    async def test_failed_credit_leaves_session_active(self, sessions, users, session_factory, clock, monkeypatch):
        payment = await seed_payment(session_factory, users["client"].id, "625")
        session = await sessions.start_session(users["client"].id, users["expert"].id, payment_id=payment.id)
        clock.advance(minutes=6)

        execute = AsyncSession.execute

        async def failing_execute(self, statement, *args, **kwargs):
            if getattr(statement, "is_update", False) and statement.table.name == "users":
                raise RuntimeError("earnings ledger unavailable")
            return await execute(self, statement, *args, **kwargs)

        monkeypatch.setattr(AsyncSession, "execute", failing_execute)
        with pytest.raises(RuntimeError):
            await sessions.end_session(session.id, users["client"].id)
        monkeypatch.undo()

        view = await sessions.get_session_status(session.id, users["client"].id)
        assert view.status == SessionStatus.ACTIVE
        assert view.end_time is None
        expert = await get_user(session_factory, users["expert"].id)
        assert expert.total_earnings == 0

        retry = await sessions.end_session(session.id, users["client"].id)
        assert retry.settled_now is True
        assert retry.total_amount == Decimal("625")
        expert = await get_user(session_factory, users["expert"].id)
        assert expert.total_earnings == Decimal("625")

    @pytest.mark.asyncio
    async def test_without_payment_nothing_is_credited(self, sessions, users, session_factory, clock):
        session = await sessions.start_session(users["client"].id, users["expert"].id)
        clock.advance(minutes=2)

        result = await sessions.end_session(session.id, users["expert"].id)

        assert result.total_amount == 0
        assert result.duration_minutes == 2
        expert = await get_user(session_factory, users["expert"].id)
        assert expert.total_earnings == 0

    @pytest.mark.asyncio
    async def test_outsider_cannot_end(self, sessions, users, session_factory):
        session = await sessions.start_session(users["client"].id, users["expert"].id)

        with pytest.raises(SessionNotFound):
            await sessions.end_session(session.id, users["outsider"].id)

        view = await sessions.get_session_status(session.id, users["client"].id)
        assert view.status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_broadcast_carries_who_ended(self, sessions, users, manager, gateway):
        session = await sessions.start_session(users["client"].id, users["expert"].id)
        client_ws, expert_ws = FakeWebSocket(), FakeWebSocket()
        for ws, user in ((client_ws, users["client"]), (expert_ws, users["expert"])):
            connection = await manager.connect(ws, user.id)
            await gateway.join(session.id, connection)

        await sessions.end_session(session.id, users["client"].id)
        await drain()

        for ws in (client_ws, expert_ws):
            [event] = ws.of_type("session_ended")
            assert event["session_id"] == str(session.id)
            assert event["data"]["ended_by"] == str(users["client"].id)
        assert manager.get_session_members(session.id) == set()


class TestExpirySweep:
    """Background expiry goes through the same settlement."""

    @pytest.mark.asyncio
    async def test_sweeps_only_sessions_past_grace(self, sessions, users, session_factory, clock):
        payment = await seed_payment(session_factory, users["client"].id, "625")
        overdue = await sessions.start_session(
            users["client"].id, users["expert"].id, paid_duration_minutes=15, payment_id=payment.id
        )
        fresh = await sessions.start_session(users["client"].id, users["expert"].id, paid_duration_minutes=60)
        clock.advance(minutes=17)

        assert await sessions.expire_overdue_sessions(grace_seconds=60) == 1
        assert await sessions.expire_overdue_sessions(grace_seconds=60) == 0

        overdue_view = await sessions.get_session_status(overdue.id, users["client"].id)
        fresh_view = await sessions.get_session_status(fresh.id, users["client"].id)
        assert overdue_view.status == SessionStatus.COMPLETED
        assert fresh_view.status == SessionStatus.ACTIVE

        # A participant ending afterwards sees the sweeper's settlement
        result = await sessions.end_session(overdue.id, users["client"].id)
        assert (result.duration_minutes, result.total_amount) == (17, Decimal("625"))
        expert = await get_user(session_factory, users["expert"].id)
        assert expert.total_earnings == Decimal("625")

    @pytest.mark.asyncio
    async def test_expiry_broadcast_has_no_author(self, sessions, users, manager, gateway, clock):
        session = await sessions.start_session(users["client"].id, users["expert"].id, paid_duration_minutes=15)
        ws = FakeWebSocket()
        connection = await manager.connect(ws, users["client"].id)
        await gateway.join(session.id, connection)
        clock.advance(minutes=20)

        await sessions.expire_overdue_sessions(grace_seconds=60)
        await drain()

        [event] = ws.of_type("session_ended")
        assert event["data"]["ended_by"] is None


class TestListingAndEarnings:
    """Session overview and expert earnings."""

    @pytest.mark.asyncio
    async def test_list_sessions_with_preview_and_unread(self, sessions, users, gateway, clock):
        older = await sessions.start_session(users["client"].id, users["expert"].id)
        clock.advance(minutes=1)
        newer = await sessions.start_session(users["client"].id, users["expert"].id)
        await gateway.send(newer.id, users["expert"].id, "Welcome")
        await gateway.send(newer.id, users["expert"].id, "How can I help?")
        await gateway.send(newer.id, users["client"].id, "Hi")

        summaries = await sessions.list_sessions(users["client"].id)

        assert [s.id for s in summaries] == [newer.id, older.id]
        assert summaries[0].last_message == "Hi"
        assert summaries[0].unread_count == 2
        assert summaries[0].expert_name == "Ravi Expert"
        assert summaries[0].user_name == "Asha Client"
        assert summaries[1].last_message == ""
        assert await sessions.list_sessions(users["outsider"].id) == []

    @pytest.mark.asyncio
    async def test_earnings_only_for_experts(self, sessions, users):
        assert await sessions.get_expert_earnings(users["expert"].id) == 0

        with pytest.raises(CounterpartyUnavailable):
            await sessions.get_expert_earnings(users["client"].id)
