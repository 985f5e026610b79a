"""Request-level entry points that own commit and rollback."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from callcore.config import MarketSettings, get_settings
from callcore.db.models.core import Call, ListenerReport, Rating, Subscription
from callcore.domain.models import (
    BillingResult,
    CallStatus,
    CallType,
    RandomCallGate,
    ReportOutcome,
    SubscriptionStatusModel,
)
from callcore.logging import logger
from callcore.services.billing import BillingEngine
from callcore.services.calls import CallLedger, can_transition, parse_status
from callcore.services.exceptions import InvalidStatus, RateLimitExceeded
from callcore.services.outbox import SideEffectOutbox
from callcore.services.ratings import RatingService
from callcore.services.seeds import load_rate_config
from callcore.services.strikes import StrikeSystem
from callcore.services.subscriptions import SubscriptionService
from callcore.utils.datetime import utc_now


class RingTimeouts(Protocol):
    def schedule_ring_timeout(self, call_id: int) -> None: ...

    def cancel_ring_timeout(self, call_id: int) -> None: ...


_default_timeouts: RingTimeouts | None = None


def set_default_timeouts(timeouts: RingTimeouts | None) -> None:
    """Register the process-wide ring-timeout hooks (the running scheduler)."""

    global _default_timeouts
    _default_timeouts = timeouts


def get_default_timeouts() -> RingTimeouts | None:
    return _default_timeouts


class CallMarketplace:
    """One instance per request; every public method is one unit of work.

    Services below this layer only flush. This class commits on success,
    rolls back on any error and re-raises it unchanged, then applies the
    outbox and ring-timeout bookkeeping that must follow a commit.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: MarketSettings | None = None,
        *,
        timeouts: RingTimeouts | None = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.timeouts = timeouts
        self.ledger = CallLedger(session)
        self.billing = BillingEngine(session, self.settings)
        self.outbox = SideEffectOutbox(session, self.settings)
        self.strikes = StrikeSystem(session, self.settings)
        self.ratings = RatingService(session)
        self.subscriptions = SubscriptionService(session, self.settings)

    # Calls ------------------------------------------------------------

    async def create_call(
        self,
        caller_id: int,
        listener_id: int,
        call_type: CallType | str | None = None,
    ) -> Call:
        call_type = call_type or self.settings.calls.default_call_type
        try:
            rate_config = await load_rate_config(self.session)
            call = await self.ledger.create_call(caller_id, listener_id, call_type, rate_config)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        self._schedule_ring_timeout(call.id)
        return call

    async def create_random_call(
        self, caller_id: int, call_type: CallType | str | None = None
    ) -> tuple[Call, RandomCallGate]:
        call_type = call_type or self.settings.calls.default_call_type
        try:
            rate_config = await load_rate_config(self.session)
            gate = await self.subscriptions.check_random_call(caller_id, rate_config=rate_config)
            if not gate.allowed:
                raise RateLimitExceeded(
                    f"You've used your {gate.free_calls_limit} free random calls today."
                )
            listener = await self.ledger.pick_random_listener()
            call = await self.ledger.create_call(caller_id, listener.id, call_type, rate_config)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        logger.info(
            "random_call_created",
            call_id=call.id,
            caller_id=caller_id,
            listener_id=call.listener_id,
            premium=gate.is_premium,
        )
        self._schedule_ring_timeout(call.id)
        return call, gate

    async def get_call(self, call_id: int, actor_id: int) -> Call:
        call = await self.ledger.get_call(call_id)
        await self.ledger.ensure_participant(call, actor_id)
        return call

    async def list_active_calls(self, caller_id: int | None = None) -> Sequence[Call]:
        return await self.ledger.list_active_calls(caller_id)

    async def update_call_status(
        self,
        call_id: int,
        actor_id: int,
        status: str | CallStatus,
        duration_hint: int | float | str | None = None,
    ) -> tuple[Call, BillingResult | None]:
        """Apply a participant's status update; ``completed`` settles the call first."""

        billing: BillingResult | None = None
        try:
            target = parse_status(status)
            call = await self.ledger.get_call(call_id, lock=True)
            await self.ledger.ensure_participant(call, actor_id)
            current = CallStatus(call.status)
            # Lost the race to an end-call request; report the stored settlement.
            settled = (
                target is CallStatus.COMPLETED
                and current is CallStatus.COMPLETED
                and call.billed
            )
            if not settled and not can_transition(current, target):
                raise InvalidStatus(f"Cannot move call from {current.value} to {target.value}.")

            now = utc_now()
            if target is CallStatus.COMPLETED:
                rate_config = await load_rate_config(self.session)
                billing = await self.billing.finalize(
                    call.id, duration_hint, rate_config=rate_config, now=now
                )
            if not settled:
                await self.ledger.transition(call, target, now=now)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        # Any accepted update means the call left ``initiated``.
        self._cancel_ring_timeout(call.id)
        if target.is_terminal:
            await self._drain(call.id)
        return call, billing

    async def finalize_call_billing(
        self,
        call_id: int,
        duration_seconds: int | float | str | None = None,
        *,
        actor_id: int | None = None,
    ) -> BillingResult:
        """Settle a call and close it if it is still live.

        A live call ends as ``completed``, or as ``cancelled`` when it was
        never answered.
        """

        try:
            call = await self.ledger.get_call(call_id, lock=True)
            if actor_id is not None:
                await self.ledger.ensure_participant(call, actor_id)
            now = utc_now()
            rate_config = await load_rate_config(self.session)
            result = await self.billing.finalize(
                call.id, duration_seconds, rate_config=rate_config, now=now
            )
            current = CallStatus(call.status)
            if not current.is_terminal:
                target = (
                    CallStatus.CANCELLED
                    if current is CallStatus.INITIATED
                    else CallStatus.COMPLETED
                )
                await self.ledger.transition(call, target, now=now)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        self._cancel_ring_timeout(call.id)
        await self._drain(call.id)
        return result

    async def expire_unanswered_call(self, call_id: int) -> bool:
        try:
            expired = await self.ledger.expire_if_unanswered(call_id)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        return expired

    # Reports and ratings --------------------------------------------------

    async def submit_report(
        self,
        reporter_id: int,
        listener_id: int,
        report_type: str,
        *,
        call_id: int | None = None,
        description: str | None = None,
    ) -> ReportOutcome:
        try:
            outcome = await self.strikes.submit_report(
                reporter_id,
                listener_id,
                report_type,
                call_id=call_id,
                description=description,
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        return outcome

    async def list_reports(self, listener_id: int) -> Sequence[ListenerReport]:
        return await self.strikes.list_reports(listener_id)

    async def submit_rating(
        self,
        call_id: int,
        user_id: int,
        rating: int | float | str,
        review_text: str | None = None,
    ) -> Rating:
        try:
            record = await self.ratings.submit_rating(call_id, user_id, rating, review_text)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        return record

    # Subscriptions ----------------------------------------------------

    async def purchase_premium(self, user_id: int) -> Subscription:
        try:
            rate_config = await load_rate_config(self.session)
            subscription = await self.subscriptions.purchase_premium(
                user_id, rate_config=rate_config
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        return subscription

    async def subscription_status(
        self, user_id: int, *, now: datetime | None = None
    ) -> SubscriptionStatusModel:
        rate_config = await load_rate_config(self.session)
        return await self.subscriptions.get_status(user_id, rate_config=rate_config, now=now)

    # Post-commit helpers ------------------------------------------------

    async def _drain(self, call_id: int) -> None:
        # Pending rows are picked up by the periodic drain if this fails.
        try:
            await self.outbox.drain(call_id=call_id)
        except Exception:
            await self.session.rollback()
            logger.exception("side_effect_drain_failed", call_id=call_id)

    def _ring_timeouts(self) -> RingTimeouts | None:
        return self.timeouts if self.timeouts is not None else _default_timeouts

    def _schedule_ring_timeout(self, call_id: int) -> None:
        timeouts = self._ring_timeouts()
        if timeouts is None:
            # Only the zombie sweep will close this call if it is never answered.
            logger.warning("ring_timeout_unscheduled", call_id=call_id)
            return
        try:
            timeouts.schedule_ring_timeout(call_id)
        except Exception:
            logger.exception("ring_timeout_schedule_failed", call_id=call_id)

    def _cancel_ring_timeout(self, call_id: int) -> None:
        timeouts = self._ring_timeouts()
        if timeouts is None:
            return
        try:
            timeouts.cancel_ring_timeout(call_id)
        except Exception:
            logger.exception("ring_timeout_cancel_failed", call_id=call_id)


__all__ = [
    "CallMarketplace",
    "RingTimeouts",
    "get_default_timeouts",
    "set_default_timeouts",
]
