"""Post-call ratings."""

from __future__ import annotations

import math

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from callcore.db.models.core import Call, Listener, Rating
from callcore.domain.models import CallStatus
from callcore.logging import logger
from callcore.services.exceptions import (
    CallNotFound,
    DuplicateRating,
    Forbidden,
    InvalidRating,
    InvalidStatus,
    ListenerNotFound,
)

MIN_RATING = 1
MAX_RATING = 5


def parse_rating(value: int | float | str) -> float:
    try:
        rating = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidRating("Rating must be a number between 1 and 5.") from exc
    if not math.isfinite(rating) or not MIN_RATING <= rating <= MAX_RATING:
        raise InvalidRating("Rating must be a number between 1 and 5.")
    return rating


class RatingService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def submit_rating(
        self,
        call_id: int,
        user_id: int,
        rating: int | float | str,
        review_text: str | None = None,
    ) -> Rating:
        value = parse_rating(rating)
        call = await self.session.get(Call, call_id)
        if call is None:
            raise CallNotFound(f"Call {call_id} not found.")
        if call.caller_id != user_id:
            raise Forbidden("Only the caller can rate this call.")
        if call.status != CallStatus.COMPLETED:
            raise InvalidStatus("Only completed calls can be rated.")

        existing = await self.session.execute(select(Rating.id).where(Rating.call_id == call_id))
        if existing.scalar_one_or_none() is not None:
            raise DuplicateRating("This call has already been rated.")

        record = Rating(
            call_id=call.id,
            listener_id=call.listener_id,
            user_id=user_id,
            rating=value,
            review_text=review_text,
        )
        self.session.add(record)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise DuplicateRating("This call has already been rated.") from exc

        await self._refresh_listener_rating(call.listener_id)
        logger.info(
            "call_rated",
            call_id=call.id,
            listener_id=call.listener_id,
            rating=value,
        )
        return record

    async def _refresh_listener_rating(self, listener_id: int) -> None:
        stmt = (
            select(Listener)
            .where(Listener.id == listener_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        listener = (await self.session.execute(stmt)).scalar_one_or_none()
        if listener is None:
            raise ListenerNotFound(f"Listener {listener_id} not found.")
        avg, total = (
            await self.session.execute(
                select(func.avg(Rating.rating), func.count(Rating.id)).where(
                    Rating.listener_id == listener_id
                )
            )
        ).one()
        listener.average_rating = round(float(avg or 0), 2)
        listener.total_ratings = int(total or 0)
        await self.session.flush()


__all__ = ["RatingService", "parse_rating"]
