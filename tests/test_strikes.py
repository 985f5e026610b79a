"""Report deduplication and the strike ladder."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from callcore.db.models.core import Listener, ListenerReport
from callcore.domain.models import QualityStatus, StatusSource
from callcore.services.exceptions import (
    CallNotFound,
    DuplicateReport,
    Forbidden,
    InvalidReportType,
    ListenerNotFound,
)
from callcore.services.quality import QualityGate
from callcore.services.strikes import StrikeSystem
from callcore.utils.datetime import as_utc, utc_now
from factories import create_call, create_listener, create_user


async def _report_times(strikes, reporter_id, listener_id, times, now):
    outcome = None
    for _ in range(times):
        outcome = await strikes.submit_report(reporter_id, listener_id, "rude", now=now)
    return outcome


@pytest.mark.asyncio
async def test_strike_ladder_warning_suspension_ban(session, settings):
    reporter = await create_user(session)
    listener = await create_listener(session)
    strikes = StrikeSystem(session, settings)
    now = utc_now()

    first = await _report_times(strikes, reporter.id, listener.id, 2, now)
    assert first.strike_applied is False
    assert first.action_taken == "report_recorded"

    warned = await strikes.submit_report(reporter.id, listener.id, "rude", now=now)
    assert warned.strike_applied is True
    assert warned.action_taken == "warning"
    assert warned.strike_count == 1
    refreshed = await session.get(Listener, listener.id)
    assert refreshed.quality_status == QualityStatus.WARNING
    assert refreshed.status_source == StatusSource.STRIKES

    suspended = await _report_times(strikes, reporter.id, listener.id, 3, now)
    assert suspended.action_taken == "suspended_24h"
    refreshed = await session.get(Listener, listener.id)
    assert refreshed.quality_status == QualityStatus.SUSPENDED
    assert refreshed.is_active is False
    assert as_utc(refreshed.suspended_until) == now + timedelta(hours=24)

    banned = await _report_times(strikes, reporter.id, listener.id, 3, now)
    assert banned.action_taken == "banned"
    refreshed = await session.get(Listener, listener.id)
    assert refreshed.quality_status == QualityStatus.BANNED
    assert refreshed.is_active is False
    assert refreshed.strike_count == 3

    after = await strikes.submit_report(reporter.id, listener.id, "silent", now=now)
    assert after.strike_applied is False
    assert after.strike_count == 3
    assert (await session.get(Listener, listener.id)).quality_status == QualityStatus.BANNED


@pytest.mark.asyncio
async def test_consumed_reports_are_marked_reviewed(session, settings):
    reporter = await create_user(session)
    listener = await create_listener(session)
    strikes = StrikeSystem(session, settings)

    await _report_times(strikes, reporter.id, listener.id, 4, utc_now())

    rows = (
        await session.execute(select(ListenerReport).order_by(ListenerReport.id))
    ).scalars().all()
    assert [row.reviewed for row in rows] == [True, True, True, False]
    assert [row.strike_applied for row in rows] == [False, False, True, False]


@pytest.mark.asyncio
async def test_old_reports_fall_out_of_window(session, settings):
    reporter = await create_user(session)
    listener = await create_listener(session)
    strikes = StrikeSystem(session, settings)
    now = utc_now()

    await _report_times(strikes, reporter.id, listener.id, 2, now - timedelta(days=31))
    outcome = await strikes.submit_report(reporter.id, listener.id, "boring", now=now)

    assert outcome.strike_applied is False


@pytest.mark.asyncio
async def test_duplicate_report_for_same_call(session, settings):
    caller = await create_user(session)
    listener = await create_listener(session)
    call = await create_call(session, caller, listener)
    strikes = StrikeSystem(session, settings)

    await strikes.submit_report(caller.id, listener.id, "fake", call_id=call.id)
    with pytest.raises(DuplicateReport):
        await strikes.submit_report(caller.id, listener.id, "rude", call_id=call.id)


@pytest.mark.asyncio
async def test_only_the_caller_can_report_a_call(session, settings):
    caller = await create_user(session)
    stranger = await create_user(session)
    listener = await create_listener(session)
    call = await create_call(session, caller, listener)

    with pytest.raises(Forbidden):
        await StrikeSystem(session, settings).submit_report(
            stranger.id, listener.id, "rude", call_id=call.id
        )


@pytest.mark.asyncio
async def test_invalid_report_type_is_rejected_before_writes(session, settings):
    reporter = await create_user(session)
    listener = await create_listener(session)

    with pytest.raises(InvalidReportType):
        await StrikeSystem(session, settings).submit_report(reporter.id, listener.id, "loud")

    rows = (await session.execute(select(ListenerReport))).scalars().all()
    assert rows == []


@pytest.mark.asyncio
async def test_unknown_listener(session, settings):
    reporter = await create_user(session)

    with pytest.raises(ListenerNotFound):
        await StrikeSystem(session, settings).submit_report(reporter.id, 404, "rude")


@pytest.mark.asyncio
async def test_strike_warning_does_not_soften_gate_suspension(session, settings):
    reporter = await create_user(session)
    listener = await create_listener(
        session,
        quality_status=QualityStatus.SUSPENDED,
        status_source=StatusSource.QUALITY_GATE,
        suspension_reason="Rating critically low: 2.0 (threshold: 2.5)",
    )
    strikes = StrikeSystem(session, settings)

    outcome = await _report_times(strikes, reporter.id, listener.id, 3, utc_now())

    assert outcome.strike_applied is True
    assert outcome.action_taken == "strike_recorded"
    assert outcome.strike_count == 1
    refreshed = await session.get(Listener, listener.id)
    assert refreshed.quality_status == QualityStatus.SUSPENDED
    assert refreshed.suspension_reason == "Rating critically low: 2.0 (threshold: 2.5)"


@pytest.mark.asyncio
async def test_dated_strike_suspension_keeps_open_ended_gate_suspension(session, settings):
    reporter = await create_user(session)
    listener = await create_listener(
        session,
        quality_status=QualityStatus.SUSPENDED,
        status_source=StatusSource.QUALITY_GATE,
        suspension_reason="Failed probation: rating=2.0 (need ≥3.5 rating, ≥180s)",
    )
    strikes = StrikeSystem(session, settings)
    now = utc_now()

    outcome = await _report_times(strikes, reporter.id, listener.id, 6, now)

    assert outcome.strike_count == 2
    assert outcome.action_taken == "strike_recorded"
    refreshed = await session.get(Listener, listener.id)
    assert refreshed.suspended_until is None
    assert refreshed.status_source == StatusSource.QUALITY_GATE

    await QualityGate(session, settings).run(now=now + timedelta(hours=25))

    refreshed = await session.get(Listener, listener.id)
    assert refreshed.quality_status == QualityStatus.SUSPENDED
    assert refreshed.is_active is False


@pytest.mark.asyncio
async def test_report_for_unknown_or_mismatched_call_is_rejected(session, settings):
    caller = await create_user(session)
    listener = await create_listener(session)
    other_listener = await create_listener(session)
    call = await create_call(session, caller, listener)
    strikes = StrikeSystem(session, settings)

    with pytest.raises(CallNotFound):
        await strikes.submit_report(caller.id, listener.id, "rude", call_id=9999)
    with pytest.raises(Forbidden):
        await strikes.submit_report(caller.id, other_listener.id, "rude", call_id=call.id)
    await session.rollback()

    reports = (await session.execute(select(ListenerReport))).scalars().all()
    assert reports == []
