"""Premium subscription and free random-call quota helpers."""

from __future__ import annotations

from datetime import date, datetime, timedelta

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from callcore.config import MarketSettings, get_settings
from callcore.db.models.core import Subscription, User
from callcore.domain.models import RandomCallGate, RateConfigModel, SubscriptionStatusModel
from callcore.logging import logger
from callcore.services.exceptions import SubscriptionError, UserNotFound
from callcore.services.wallets import WalletStore, to_money
from callcore.utils.datetime import as_utc, utc_now

PREMIUM_PLAN = "random_premium"


class SubscriptionService:
    def __init__(self, session: AsyncSession, settings: MarketSettings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.wallets = WalletStore(session, currency=self.settings.currency)

    async def get_active_subscription(
        self, user_id: int, *, now: datetime | None = None, lock: bool = False
    ) -> Subscription | None:
        now = now or utc_now()
        stmt = (
            select(Subscription)
            .where(
                and_(
                    Subscription.user_id == user_id,
                    Subscription.is_active.is_(True),
                    Subscription.expires_at > now,
                )
            )
            .order_by(Subscription.expires_at.desc())
            .limit(1)
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def purchase_premium(
        self,
        user_id: int,
        *,
        rate_config: RateConfigModel,
        now: datetime | None = None,
    ) -> Subscription:
        """Debit the premium price and create or extend the subscription."""

        now = now or utc_now()
        price = to_money(rate_config.premium_price)
        if price <= 0 or rate_config.premium_duration_days <= 0:
            raise SubscriptionError("Premium plan is not configured.")
        duration = timedelta(days=rate_config.premium_duration_days)

        user = await self.wallets.lock_user(user_id)
        self.wallets.ensure_can_debit(user, price)
        existing = await self.get_active_subscription(user.id, now=now, lock=True)

        await self.wallets.debit(
            user,
            price,
            description=f"Random Premium Subscription ({price}/{rate_config.premium_duration_days} days)",
        )

        if existing is not None:
            existing.expires_at = as_utc(existing.expires_at) + duration
            await self.session.flush()
            logger.info(
                "premium_extended",
                user_id=user.id,
                subscription_id=existing.id,
                expires_at=existing.expires_at.isoformat(),
            )
            return existing

        subscription = Subscription(
            user_id=user.id,
            plan_type=PREMIUM_PLAN,
            price=price,
            starts_at=now,
            expires_at=now + duration,
            is_active=True,
        )
        self.session.add(subscription)
        await self.session.flush()
        logger.info(
            "premium_purchased",
            user_id=user.id,
            subscription_id=subscription.id,
            expires_at=subscription.expires_at.isoformat(),
        )
        return subscription

    async def get_status(
        self,
        user_id: int,
        *,
        rate_config: RateConfigModel,
        now: datetime | None = None,
    ) -> SubscriptionStatusModel:
        now = now or utc_now()
        subscription = await self.get_active_subscription(user_id, now=now)
        if subscription is not None:
            return SubscriptionStatusModel(
                is_premium=True,
                plan_type=subscription.plan_type,
                expires_at=as_utc(subscription.expires_at),
            )

        user = await self.session.get(User, user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found.")
        return SubscriptionStatusModel(
            is_premium=False,
            free_calls_used=self._calls_today(user, now.date()),
            free_calls_limit=rate_config.free_random_calls_per_day,
            max_free_call_minutes=rate_config.free_random_call_max_minutes,
        )

    async def check_random_call(
        self,
        user_id: int,
        *,
        rate_config: RateConfigModel,
        now: datetime | None = None,
    ) -> RandomCallGate:
        """Gate a random call and consume one free call when allowed."""

        now = now or utc_now()
        if await self.get_active_subscription(user_id, now=now) is not None:
            return RandomCallGate(allowed=True, is_premium=True, filters_enabled=True)

        user = await self.wallets.lock_user(user_id)
        today = now.date()
        used = self._calls_today(user, today)
        limit = rate_config.free_random_calls_per_day
        if used >= limit:
            logger.info("random_call_daily_limit", user_id=user.id, used=used, limit=limit)
            return RandomCallGate(
                allowed=False,
                is_premium=False,
                free_calls_used=used,
                free_calls_limit=limit,
                reason="daily_limit",
            )

        user.random_calls_today = used + 1
        user.last_random_call_date = today
        await self.session.flush()
        return RandomCallGate(
            allowed=True,
            is_premium=False,
            ad_required=True,
            max_minutes=rate_config.free_random_call_max_minutes,
            free_calls_used=used + 1,
            free_calls_limit=limit,
        )

    @staticmethod
    def _calls_today(user: User, today: date) -> int:
        if user.last_random_call_date != today:
            return 0
        return user.random_calls_today or 0


__all__ = ["SubscriptionService", "PREMIUM_PLAN"]
