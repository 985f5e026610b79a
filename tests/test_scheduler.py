"""Scheduler wiring with a recording stand-in for APScheduler."""

from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from callcore.config import MarketSettings
from callcore.jobs.scheduler import (
    DAILY_STREAK_JOB,
    OUTBOX_DRAIN_JOB,
    QUALITY_GATE_JOB,
    ZOMBIE_SWEEP_JOB,
    MarketScheduler,
    ring_timeout_job_id,
)
from callcore.jobs.tasks import MarketJobs
from callcore.services.marketplace import get_default_timeouts
from callcore.utils.datetime import utc_now


class FakeScheduler:
    def __init__(self) -> None:
        self.jobs: dict[str, SimpleNamespace] = {}
        self.running = False
        self.shutdown_calls: list[bool] = []

    def add_job(self, func, trigger, *, id, args=None, **kwargs):
        self.jobs[id] = SimpleNamespace(func=func, trigger=trigger, args=args or [], kwargs=kwargs)

    def remove_job(self, job_id):
        if job_id not in self.jobs:
            raise JobLookupError(job_id)
        del self.jobs[job_id]

    def start(self):
        self.running = True

    def shutdown(self, wait=True):
        self.shutdown_calls.append(wait)
        self.running = False


def _scheduler(**overrides) -> tuple[MarketScheduler, FakeScheduler]:
    settings = MarketSettings(_env_file=None, **overrides)
    jobs = MarketJobs(SimpleNamespace(settings=settings))
    fake = FakeScheduler()
    return MarketScheduler(jobs, settings, scheduler=fake), fake


def test_start_registers_periodic_jobs():
    scheduler, fake = _scheduler()

    scheduler.start()

    assert fake.running is True
    assert set(fake.jobs) == {QUALITY_GATE_JOB, DAILY_STREAK_JOB, ZOMBIE_SWEEP_JOB, OUTBOX_DRAIN_JOB}
    assert isinstance(fake.jobs[QUALITY_GATE_JOB].trigger, CronTrigger)
    assert isinstance(fake.jobs[DAILY_STREAK_JOB].trigger, CronTrigger)
    assert isinstance(fake.jobs[ZOMBIE_SWEEP_JOB].trigger, IntervalTrigger)
    assert fake.jobs[ZOMBIE_SWEEP_JOB].trigger.interval == timedelta(minutes=15)
    assert fake.jobs[OUTBOX_DRAIN_JOB].trigger.interval == timedelta(seconds=60)
    assert fake.jobs[QUALITY_GATE_JOB].func == scheduler.jobs.run_quality_gate


def test_start_twice_is_harmless():
    scheduler, fake = _scheduler()

    scheduler.start()
    scheduler.start()

    assert len(fake.jobs) == 4


def test_disabled_scheduler_skips_periodic_jobs():
    scheduler, fake = _scheduler(scheduler={"enabled": False})

    scheduler.start()

    assert fake.running is True
    assert fake.jobs == {}


def test_ring_timeout_is_keyed_by_call():
    scheduler, fake = _scheduler(calls={"ring_timeout_seconds": 45})
    before = utc_now()

    scheduler.schedule_ring_timeout(7)

    job = fake.jobs[ring_timeout_job_id(7)]
    assert ring_timeout_job_id(7) == "ring-timeout:7"
    assert isinstance(job.trigger, DateTrigger)
    assert job.args == [7]
    assert job.func == scheduler.jobs.expire_unanswered_call
    assert before + timedelta(seconds=44) <= job.trigger.run_date <= utc_now() + timedelta(seconds=46)


def test_cancel_ring_timeout_tolerates_missing_job():
    scheduler, fake = _scheduler()
    scheduler.schedule_ring_timeout(3)

    scheduler.cancel_ring_timeout(3)
    scheduler.cancel_ring_timeout(3)

    assert fake.jobs == {}


def test_stop_shuts_down_without_waiting():
    scheduler, fake = _scheduler()
    scheduler.stop()
    assert fake.shutdown_calls == []

    scheduler.start()
    scheduler.stop()

    assert fake.shutdown_calls == [False]
    assert fake.running is False


def test_running_scheduler_handles_ring_timeouts_by_default():
    scheduler, fake = _scheduler()

    scheduler.start()
    assert get_default_timeouts() is scheduler

    scheduler.stop()
    assert get_default_timeouts() is None
