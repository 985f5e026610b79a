"""Nightly quality gate decisions."""

from __future__ import annotations

from datetime import timedelta

import pytest

from callcore.db.models.core import PROBATION_CALLS, Listener
from callcore.domain.models import CallStatus, QualityStatus, StatusSource
from callcore.services.quality import ListenerMetrics, QualityGate, match_rule
from callcore.utils.datetime import as_utc, utc_now
from factories import create_call, create_listener, create_user


def _metrics(rating=4.5, avg=300.0, hangup=0.0, streak=0) -> ListenerMetrics:
    return ListenerMetrics(rating=rating, avg_duration=avg, hangup_rate=hangup, short_streak=streak)


@pytest.mark.parametrize(
    ("metrics", "status", "reason"),
    [
        (_metrics(rating=2.0), QualityStatus.SUSPENDED, "Rating critically low: 2.0 (threshold: 2.5)"),
        (_metrics(avg=50, streak=5), QualityStatus.SUSPENDED, "Average call duration <1 min for 5 days"),
        (_metrics(hangup=71), QualityStatus.SUSPENDED, "Hangup rate 71% exceeds 70% threshold"),
        (_metrics(rating=3.0), QualityStatus.WARNING, "Rating below 3.5: 3.0"),
        (_metrics(avg=100, streak=3), QualityStatus.WARNING, "Average call duration <2 min for 3 days"),
        (_metrics(hangup=55), QualityStatus.WARNING, "Hangup rate 55% exceeds 50%"),
    ],
)
def test_rules_first_match(metrics, status, reason):
    rule = match_rule(metrics)
    assert rule is not None
    assert rule.status is status
    assert rule.reason(metrics) == reason


def test_no_rule_for_healthy_metrics():
    assert match_rule(_metrics()) is None
    assert match_rule(_metrics(avg=50, streak=2)) is None


@pytest.mark.asyncio
async def test_probation_graduates_to_active(session, settings):
    listener = await create_listener(
        session,
        quality_status=QualityStatus.PROBATION,
        probation_calls_remaining=0,
        average_rating=4.0,
        avg_call_duration_seconds=200.0,
    )

    summary = await QualityGate(session, settings).run()

    refreshed = await session.get(Listener, listener.id)
    assert refreshed.quality_status == QualityStatus.ACTIVE
    assert refreshed.is_active is True
    assert summary.promoted == 1


@pytest.mark.asyncio
async def test_probation_failure_suspends_with_reason(session, settings):
    listener = await create_listener(
        session,
        quality_status=QualityStatus.PROBATION,
        probation_calls_remaining=0,
        average_rating=3.0,
        avg_call_duration_seconds=200.0,
    )

    summary = await QualityGate(session, settings).run()

    refreshed = await session.get(Listener, listener.id)
    assert refreshed.quality_status == QualityStatus.SUSPENDED
    assert refreshed.is_active is False
    assert refreshed.suspension_reason.startswith("Failed probation")
    assert "rating=3.0" in refreshed.suspension_reason
    assert summary.probation_failed == 1


@pytest.mark.asyncio
async def test_probation_with_calls_remaining_is_untouched(session, settings):
    listener = await create_listener(
        session,
        quality_status=QualityStatus.PROBATION,
        probation_calls_remaining=2,
        average_rating=1.0,
    )

    await QualityGate(session, settings).run()

    assert (await session.get(Listener, listener.id)).quality_status == QualityStatus.PROBATION


@pytest.mark.asyncio
async def test_low_rating_warns_active_listener(session, settings):
    listener = await create_listener(session, average_rating=3.0, avg_call_duration_seconds=300.0)

    summary = await QualityGate(session, settings).run()

    refreshed = await session.get(Listener, listener.id)
    assert refreshed.quality_status == QualityStatus.WARNING
    assert refreshed.warning_reason == "Rating below 3.5: 3.0"
    assert refreshed.status_source == StatusSource.QUALITY_GATE
    assert summary.warned == 1


@pytest.mark.asyncio
async def test_metrics_are_recomputed_before_decisions(session, settings):
    now = utc_now()
    caller = await create_user(session)
    listener = await create_listener(session, average_rating=4.5, avg_call_duration_seconds=600.0)
    for seconds in (10, 10, 10, 400):
        await create_call(
            session,
            caller,
            listener,
            status=CallStatus.COMPLETED,
            created_at=now - timedelta(days=1),
            duration_seconds=seconds,
        )
    await create_call(
        session,
        caller,
        listener,
        status=CallStatus.COMPLETED,
        created_at=now - timedelta(days=10),
        duration_seconds=5,
    )

    summary = await QualityGate(session, settings).run(now=now)

    refreshed = await session.get(Listener, listener.id)
    assert refreshed.hangup_rate == 75.0
    assert refreshed.avg_call_duration_seconds == 108.0
    assert refreshed.short_calls_streak == 1
    assert refreshed.quality_status == QualityStatus.SUSPENDED
    assert refreshed.suspension_reason == "Hangup rate 75% exceeds 70% threshold"
    assert summary.suspended == 1


@pytest.mark.asyncio
async def test_short_streak_resets_on_healthy_average(session, settings):
    listener = await create_listener(
        session, average_rating=4.5, avg_call_duration_seconds=300.0, short_calls_streak=2
    )

    await QualityGate(session, settings).run()

    assert (await session.get(Listener, listener.id)).short_calls_streak == 0


@pytest.mark.asyncio
async def test_warning_recovers_when_gate_owns_it(session, settings):
    listener = await create_listener(
        session,
        quality_status=QualityStatus.WARNING,
        status_source=StatusSource.QUALITY_GATE,
        warning_reason="Rating below 3.5: 3.1",
        average_rating=4.5,
        avg_call_duration_seconds=300.0,
    )

    summary = await QualityGate(session, settings).run()

    refreshed = await session.get(Listener, listener.id)
    assert refreshed.quality_status == QualityStatus.ACTIVE
    assert refreshed.warning_reason is None
    assert summary.recovered == 1


@pytest.mark.asyncio
async def test_gate_does_not_lift_strike_warning(session, settings):
    listener = await create_listener(
        session,
        quality_status=QualityStatus.WARNING,
        status_source=StatusSource.STRIKES,
        warning_reason="Strike 1: User reports received",
        average_rating=4.5,
        avg_call_duration_seconds=300.0,
    )

    summary = await QualityGate(session, settings).run()

    refreshed = await session.get(Listener, listener.id)
    assert refreshed.quality_status == QualityStatus.WARNING
    assert refreshed.warning_reason == "Strike 1: User reports received"
    assert summary.skipped == 1


@pytest.mark.asyncio
async def test_expired_suspension_is_lifted_to_warning(session, settings):
    now = utc_now()
    expired = await create_listener(
        session,
        quality_status=QualityStatus.SUSPENDED,
        status_source=StatusSource.STRIKES,
        suspension_reason="Suspended 24h: Strike 2 from user reports",
        suspended_until=now - timedelta(hours=1),
    )
    pending = await create_listener(
        session,
        quality_status=QualityStatus.SUSPENDED,
        suspended_until=now + timedelta(hours=1),
    )

    summary = await QualityGate(session, settings).run(now=now)

    lifted = await session.get(Listener, expired.id)
    assert lifted.quality_status == QualityStatus.WARNING
    assert lifted.is_active is True
    assert lifted.suspension_reason is None
    assert lifted.suspended_until is None
    assert lifted.warning_reason is None
    assert summary.suspensions_lifted == 1

    still = await session.get(Listener, pending.id)
    assert still.quality_status == QualityStatus.SUSPENDED
    assert as_utc(still.suspended_until) > now


@pytest.mark.asyncio
async def test_banned_listener_is_never_touched(session, settings):
    listener = await create_listener(
        session,
        quality_status=QualityStatus.BANNED,
        average_rating=5.0,
        avg_call_duration_seconds=600.0,
    )

    await QualityGate(session, settings).run()

    assert (await session.get(Listener, listener.id)).quality_status == QualityStatus.BANNED


@pytest.mark.asyncio
async def test_second_run_is_a_no_op(session, settings):
    listener = await create_listener(
        session,
        quality_status=QualityStatus.PROBATION,
        probation_calls_remaining=0,
        average_rating=4.0,
        avg_call_duration_seconds=200.0,
    )
    gate = QualityGate(session, settings)

    await gate.run()
    second = await gate.run()

    assert second.promoted == 0
    assert second.warned == 0
    assert second.suspended == 0
    assert (await session.get(Listener, listener.id)).quality_status == QualityStatus.ACTIVE


@pytest.mark.asyncio
async def test_new_listener_starts_probation_with_full_call_quota(session, settings):
    user = await create_user(session, balance="0.00")
    listener = Listener(user_id=user.id)
    session.add(listener)
    await session.flush()
    await session.commit()

    assert listener.quality_status == QualityStatus.PROBATION
    assert listener.probation_calls_remaining == PROBATION_CALLS == 10

    summary = await QualityGate(session, settings).run()

    assert summary.promoted == 0
    assert (await session.get(Listener, listener.id)).quality_status == QualityStatus.PROBATION
