"""Job bodies run against the shared test session."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import timedelta

import pytest

from callcore.db.models.core import Call, Listener
from callcore.domain.models import CallStatus, QualityStatus
from callcore.jobs.tasks import MarketJobs
from callcore.utils.datetime import utc_now
from factories import create_call, create_listener, create_user


class _Database:
    def __init__(self, session, settings) -> None:
        self._session = session
        self.settings = settings

    @asynccontextmanager
    async def session(self):
        yield self._session


@pytest.mark.asyncio
async def test_jobs_delegate_to_services(session, settings):
    caller = await create_user(session)
    listener = await create_listener(
        session,
        is_busy=True,
        quality_status=QualityStatus.PROBATION,
        probation_calls_remaining=0,
        average_rating=4.2,
        avg_call_duration_seconds=240.0,
    )
    zombie = await create_call(
        session, caller, listener, created_at=utc_now() - timedelta(hours=3)
    )
    jobs = MarketJobs(_Database(session, settings))

    sweep = await jobs.sweep_zombie_calls()
    gate = await jobs.run_quality_gate()
    streaks = await jobs.run_daily_streaks()
    drained = await jobs.drain_outbox()

    assert sweep.call_ids == [zombie.id]
    assert gate.promoted == 1
    assert streaks.errors == 0
    assert drained.applied == 0
    refreshed = await session.get(Listener, listener.id)
    assert refreshed.quality_status == QualityStatus.ACTIVE
    assert refreshed.is_busy is False


@pytest.mark.asyncio
async def test_ring_timeout_job_fails_unanswered_call(session, settings):
    caller = await create_user(session)
    listener = await create_listener(session)
    call = await create_call(session, caller, listener, status=CallStatus.INITIATED)
    jobs = MarketJobs(_Database(session, settings))

    assert await jobs.expire_unanswered_call(call.id) is True
    assert (await session.get(Call, call.id)).status == CallStatus.FAILED
