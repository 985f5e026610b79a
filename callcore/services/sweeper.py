"""Cleanup of calls stuck in a non-terminal state."""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callcore.config import MarketSettings, get_settings
from callcore.db.models.core import Call
from callcore.domain.models import ACTIVE_CALL_STATUSES, CallStatus, SweepSummary
from callcore.logging import logger
from callcore.services.calls import CallLedger
from callcore.utils.datetime import utc_now


class ZombieSweeper:
    """Fails calls that never reached a terminal state and frees their listeners.

    Candidates are re-read under a row lock, so a call that completes while
    the sweep is running is left alone.
    """

    def __init__(self, session: AsyncSession, settings: MarketSettings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.ledger = CallLedger(session)

    async def run(self, *, now: datetime | None = None) -> SweepSummary:
        now = now or utc_now()
        cutoff = now - timedelta(minutes=self.settings.calls.zombie_threshold_minutes)
        summary = SweepSummary()

        for call_id in await self._candidates(cutoff):
            try:
                call = await self.ledger.get_call(call_id, lock=True)
                if call.status not in ACTIVE_CALL_STATUSES:
                    continue
                await self.ledger.transition(call, CallStatus.FAILED, now=now)
                await self.session.commit()
                summary.swept += 1
                summary.call_ids.append(call_id)
                logger.warning(
                    "zombie_call_swept",
                    call_id=call_id,
                    listener_id=call.listener_id,
                )
            except Exception:
                await self.session.rollback()
                summary.errors += 1
                logger.exception("zombie_sweep_failed", call_id=call_id)

        if summary.swept or summary.errors:
            logger.info("zombie_sweep_finished", swept=summary.swept, errors=summary.errors)
        return summary

    async def _candidates(self, cutoff: datetime) -> list[int]:
        stmt = (
            select(Call.id)
            .where(
                Call.status.in_(list(ACTIVE_CALL_STATUSES)),
                Call.created_at < cutoff,
            )
            .order_by(Call.id)
        )
        return list((await self.session.execute(stmt)).scalars())


__all__ = ["ZombieSweeper"]
