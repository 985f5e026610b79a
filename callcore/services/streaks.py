"""Daily listener activity streaks and the weekly bonus."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from callcore.config import MarketSettings, get_settings
from callcore.db.models.core import Call, Listener
from callcore.domain.models import CallStatus, RateConfigModel, StreakSummary
from callcore.logging import logger
from callcore.services.wallets import WalletStore, to_money
from callcore.utils.datetime import utc_now


class StreakService:
    """Extends or resets each active listener's streak for one calendar day.

    A listener already stamped with ``last_daily_stats_date`` for the day is
    skipped, so the pass can be re-run after a partial failure.
    """

    def __init__(self, session: AsyncSession, settings: MarketSettings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.wallets = WalletStore(session, currency=self.settings.currency)

    def stats_day(self, now: datetime | None = None) -> date:
        local_now = (now or utc_now()).astimezone(ZoneInfo(self.settings.timezone))
        return local_now.date() - timedelta(days=1)

    async def run(
        self,
        *,
        rate_config: RateConfigModel,
        day: date | None = None,
        now: datetime | None = None,
    ) -> StreakSummary:
        day = day or self.stats_day(now)
        summary = StreakSummary()
        stmt = select(Listener.id).where(Listener.is_active.is_(True)).order_by(Listener.id)
        listener_ids = list((await self.session.execute(stmt)).scalars())

        for listener_id in listener_ids:
            try:
                await self._process(listener_id, day, rate_config, summary)
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                summary.errors += 1
                logger.exception("daily_streak_failed", listener_id=listener_id, day=day.isoformat())

        logger.info("daily_streak_finished", day=day.isoformat(), **summary.model_dump())
        return summary

    async def _process(
        self,
        listener_id: int,
        day: date,
        rate_config: RateConfigModel,
        summary: StreakSummary,
    ) -> None:
        listener = await self.wallets.lock_listener(listener_id)
        if listener.last_daily_stats_date is not None and listener.last_daily_stats_date >= day:
            summary.skipped += 1
            return

        calls, seconds = await self._day_totals(listener.id, day)
        minutes = seconds // 60
        targets = self.settings.streaks
        listener.last_daily_stats_date = day

        if minutes >= targets.daily_minutes_target or calls >= targets.daily_calls_target:
            listener.daily_streak_days = (listener.daily_streak_days or 0) + 1
            listener.last_streak_date = day
            summary.maintained += 1
            logger.info(
                "streak_maintained",
                listener_id=listener.id,
                calls=calls,
                minutes=minutes,
                streak=listener.daily_streak_days,
            )
            if listener.daily_streak_days % targets.bonus_cycle_days == 0:
                await self._award_bonus(listener, to_money(rate_config.weekly_streak_bonus), summary)
        else:
            if listener.daily_streak_days:
                summary.lost += 1
                logger.info("streak_lost", listener_id=listener.id, calls=calls, minutes=minutes)
            listener.daily_streak_days = 0

        await self.session.flush()

    async def _award_bonus(self, listener: Listener, amount: Decimal, summary: StreakSummary) -> None:
        if amount <= 0:
            return
        days = self.settings.streaks.bonus_cycle_days
        await self.wallets.credit_listener(
            listener,
            amount,
            description=f"Weekly Listener Streak Bonus ({days} Days)",
        )
        summary.bonuses += 1
        logger.info(
            "streak_bonus_awarded",
            listener_id=listener.id,
            amount=str(amount),
            streak=listener.daily_streak_days,
        )

    async def _day_totals(self, listener_id: int, day: date) -> tuple[int, int]:
        zone = ZoneInfo(self.settings.timezone)
        start = datetime.combine(day, time.min, tzinfo=zone).astimezone(timezone.utc)
        end = start + timedelta(days=1)
        stmt = select(func.count(Call.id), func.coalesce(func.sum(Call.duration_seconds), 0)).where(
            Call.listener_id == listener_id,
            Call.status == CallStatus.COMPLETED,
            Call.started_at >= start,
            Call.started_at < end,
        )
        count, seconds = (await self.session.execute(stmt)).one()
        return int(count or 0), int(seconds or 0)


__all__ = ["StreakService"]
