"""Outbox for work that follows a settlement commit."""

from __future__ import annotations

from typing import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callcore.config import MarketSettings, get_settings
from callcore.db.models.core import Call, CallSideEffect, Listener
from callcore.domain.models import DrainSummary, QualityStatus, SideEffectKind, SideEffectState
from callcore.logging import logger
from callcore.services.calls import CallLedger
from callcore.services.exceptions import ListenerNotFound
from callcore.utils.datetime import utc_now

ERROR_TEXT_LIMIT = 500


class SideEffectOutbox:
    """Records side effects inside the billing transaction and applies them later.

    Each effect is applied in its own unit of work: success and the ``done``
    marker commit together, a failure rolls back and only bumps the attempt
    counter. Rows that reach ``max_attempts`` are parked as ``failed``.
    """

    def __init__(self, session: AsyncSession, settings: MarketSettings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self._handlers: dict[SideEffectKind, Callable[[CallSideEffect], Awaitable[None]]] = {
            SideEffectKind.INCREMENT_STATS: self._increment_stats,
            SideEffectKind.CLEAR_BUSY: self._clear_busy,
            SideEffectKind.DECREMENT_PROBATION: self._decrement_probation,
        }

    async def enqueue(
        self, call: Call, kind: SideEffectKind, payload: dict | None = None
    ) -> CallSideEffect:
        effect = CallSideEffect(
            call_id=call.id,
            listener_id=call.listener_id,
            kind=kind,
            payload=payload or {},
            state=SideEffectState.PENDING,
            attempts=0,
        )
        self.session.add(effect)
        await self.session.flush()
        return effect

    async def pending(self, *, call_id: int | None = None, limit: int | None = None) -> list[int]:
        stmt = (
            select(CallSideEffect.id)
            .where(CallSideEffect.state == SideEffectState.PENDING)
            .order_by(CallSideEffect.id)
            .limit(limit or self.settings.outbox.batch_size)
        )
        if call_id is not None:
            stmt = stmt.where(CallSideEffect.call_id == call_id)
        return list((await self.session.execute(stmt)).scalars())

    async def drain(self, *, call_id: int | None = None, limit: int | None = None) -> DrainSummary:
        summary = DrainSummary()
        for effect_id in await self.pending(call_id=call_id, limit=limit):
            try:
                await self._apply(effect_id)
                await self.session.commit()
                summary.applied += 1
            except Exception as exc:
                await self.session.rollback()
                logger.exception("side_effect_failed", effect_id=effect_id)
                parked = await self._record_failure(effect_id, exc)
                if parked:
                    summary.failed += 1
                else:
                    summary.retried += 1
        if summary.applied or summary.failed or summary.retried:
            logger.info("outbox_drained", call_id=call_id, **summary.model_dump())
        return summary

    async def _apply(self, effect_id: int) -> None:
        effect = await self._lock_effect(effect_id)
        if effect is None or effect.state != SideEffectState.PENDING:
            return
        handler = self._handlers[SideEffectKind(effect.kind)]
        await handler(effect)
        effect.attempts += 1
        effect.state = SideEffectState.DONE
        effect.processed_at = utc_now()
        effect.last_error = None
        await self.session.flush()

    async def _record_failure(self, effect_id: int, exc: Exception) -> bool:
        effect = await self._lock_effect(effect_id)
        if effect is None:
            return False
        effect.attempts += 1
        effect.last_error = f"{exc.__class__.__name__}: {exc}"[:ERROR_TEXT_LIMIT]
        parked = effect.attempts >= self.settings.outbox.max_attempts
        if parked:
            effect.state = SideEffectState.FAILED
            effect.processed_at = utc_now()
        await self.session.flush()
        await self.session.commit()
        return parked

    async def _lock_effect(self, effect_id: int) -> CallSideEffect | None:
        stmt = (
            select(CallSideEffect)
            .where(CallSideEffect.id == effect_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def _lock_listener(self, listener_id: int) -> Listener:
        stmt = (
            select(Listener)
            .where(Listener.id == listener_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        listener = (await self.session.execute(stmt)).scalar_one_or_none()
        if listener is None:
            raise ListenerNotFound(f"Listener {listener_id} not found.")
        return listener

    # Handlers ---------------------------------------------------------

    async def _increment_stats(self, effect: CallSideEffect) -> None:
        listener = await self._lock_listener(effect.listener_id)
        minutes = int((effect.payload or {}).get("minutes", 0))
        listener.total_calls = (listener.total_calls or 0) + 1
        listener.total_minutes = (listener.total_minutes or 0) + minutes

    async def _clear_busy(self, effect: CallSideEffect) -> None:
        await CallLedger(self.session).release_busy(effect.listener_id, call_id=effect.call_id)

    async def _decrement_probation(self, effect: CallSideEffect) -> None:
        listener = await self._lock_listener(effect.listener_id)
        if listener.quality_status != QualityStatus.PROBATION:
            return
        listener.probation_calls_remaining = max((listener.probation_calls_remaining or 0) - 1, 0)


__all__ = ["SideEffectOutbox"]
