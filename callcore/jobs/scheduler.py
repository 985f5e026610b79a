"""APScheduler wiring for the batch passes and per-call ring timeouts."""

from __future__ import annotations

from datetime import timedelta

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from callcore.config import MarketSettings, get_settings
from callcore.jobs.tasks import MarketJobs
from callcore.logging import logger
from callcore.services.marketplace import get_default_timeouts, set_default_timeouts
from callcore.utils.datetime import utc_now

QUALITY_GATE_JOB = "quality_gate"
DAILY_STREAK_JOB = "daily_streaks"
ZOMBIE_SWEEP_JOB = "zombie_sweep"
OUTBOX_DRAIN_JOB = "outbox_drain"


def ring_timeout_job_id(call_id: int) -> str:
    return f"ring-timeout:{call_id}"


class MarketScheduler:
    """Owns the scheduler and implements the ring-timeout hooks used by
    :class:`callcore.services.marketplace.CallMarketplace`."""

    def __init__(
        self,
        jobs: MarketJobs,
        settings: MarketSettings | None = None,
        *,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self.jobs = jobs
        self.settings = settings or get_settings()
        self.scheduler = scheduler or AsyncIOScheduler(timezone=self.settings.timezone)
        self._running = False

    def register_jobs(self) -> None:
        cfg = self.settings.scheduler
        tz = self.settings.timezone
        self.scheduler.add_job(
            self.jobs.run_quality_gate,
            CronTrigger(hour=cfg.quality_gate_hour, minute=cfg.quality_gate_minute, timezone=tz),
            id=QUALITY_GATE_JOB,
            name="Nightly quality gate",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.jobs.run_daily_streaks,
            CronTrigger(hour=cfg.daily_streak_hour, minute=cfg.daily_streak_minute, timezone=tz),
            id=DAILY_STREAK_JOB,
            name="Daily listener streaks",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.jobs.sweep_zombie_calls,
            IntervalTrigger(minutes=cfg.zombie_sweep_interval_minutes),
            id=ZOMBIE_SWEEP_JOB,
            name="Zombie call sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.jobs.drain_outbox,
            IntervalTrigger(seconds=cfg.outbox_drain_interval_seconds),
            id=OUTBOX_DRAIN_JOB,
            name="Side effect outbox drain",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def start(self) -> None:
        if self._running:
            logger.warning("scheduler_already_running")
            return
        if self.settings.scheduler.enabled:
            self.register_jobs()
        self.scheduler.start()
        self._running = True
        set_default_timeouts(self)
        logger.info(
            "scheduler_started",
            periodic_jobs=self.settings.scheduler.enabled,
            zombie_sweep_minutes=self.settings.scheduler.zombie_sweep_interval_minutes,
            outbox_drain_seconds=self.settings.scheduler.outbox_drain_interval_seconds,
        )

    def stop(self) -> None:
        if not self._running:
            return
        self.scheduler.shutdown(wait=False)
        self._running = False
        if get_default_timeouts() is self:
            set_default_timeouts(None)
        logger.info("scheduler_stopped")

    # Ring timeouts ------------------------------------------------------

    def schedule_ring_timeout(self, call_id: int) -> None:
        run_at = utc_now() + timedelta(seconds=self.settings.calls.ring_timeout_seconds)
        self.scheduler.add_job(
            self.jobs.expire_unanswered_call,
            DateTrigger(run_date=run_at),
            args=[call_id],
            id=ring_timeout_job_id(call_id),
            name=f"Ring timeout for call {call_id}",
            replace_existing=True,
            misfire_grace_time=None,
        )
        logger.debug("ring_timeout_scheduled", call_id=call_id, run_at=run_at.isoformat())

    def cancel_ring_timeout(self, call_id: int) -> None:
        try:
            self.scheduler.remove_job(ring_timeout_job_id(call_id))
        except JobLookupError:
            return
        logger.debug("ring_timeout_cancelled", call_id=call_id)


__all__ = [
    "MarketScheduler",
    "ring_timeout_job_id",
    "QUALITY_GATE_JOB",
    "DAILY_STREAK_JOB",
    "ZOMBIE_SWEEP_JOB",
    "OUTBOX_DRAIN_JOB",
]
