"""Startup seed helpers and the rate config loader."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callcore.db.models.core import RateConfig
from callcore.domain.models import RateConfigModel
from callcore.logging import logger


async def ensure_rate_config(session: AsyncSession) -> RateConfig:
    """Ensure the single pricing row exists, creating it with defaults."""

    stmt = select(RateConfig).order_by(RateConfig.id).limit(1)
    row = (await session.execute(stmt)).scalar_one_or_none()
    if row is not None:
        return row

    defaults = RateConfigModel()
    row = RateConfig(**defaults.model_dump())
    session.add(row)
    await session.flush()
    await session.commit()
    logger.info("rate_config_seeded", rate_config_id=row.id)
    return row


async def load_rate_config(session: AsyncSession) -> RateConfigModel:
    """Snapshot the admin pricing row for the current unit of work."""

    stmt = select(RateConfig).order_by(RateConfig.id).limit(1)
    row = (await session.execute(stmt)).scalar_one_or_none()
    if row is None:
        logger.warning("rate_config_missing_using_defaults")
        return RateConfigModel()
    return RateConfigModel(
        default_user_rate_per_min=row.default_user_rate_per_min,
        default_listener_payout_per_min=row.default_listener_payout_per_min,
        first_time_offer_enabled=row.first_time_offer_enabled,
        offer_minutes_limit=row.offer_minutes_limit,
        offer_flat_price=row.offer_flat_price,
        weekly_streak_bonus=row.weekly_streak_bonus,
        premium_price=row.premium_price,
        premium_duration_days=row.premium_duration_days,
        free_random_calls_per_day=row.free_random_calls_per_day,
        free_random_call_max_minutes=row.free_random_call_max_minutes,
    )


__all__ = ["ensure_rate_config", "load_rate_config"]
