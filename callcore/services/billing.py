"""Exactly-once settlement of finished calls."""

from __future__ import annotations

import math
from datetime import datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from callcore.config import MarketSettings, get_settings
from callcore.db.models.core import Call
from callcore.domain.models import BillingResult, RateConfigModel, SideEffectKind
from callcore.logging import logger
from callcore.services.calls import CallLedger
from callcore.services.outbox import SideEffectOutbox
from callcore.services.wallets import WalletStore, to_money
from callcore.utils.datetime import as_utc, utc_now


def resolve_duration_seconds(
    call: Call, duration_hint: int | float | str | None = None, *, now: datetime | None = None
) -> int:
    """Elapsed seconds from ``started_at``, else ``created_at``, else the hint."""

    now = now or utc_now()
    anchor = as_utc(call.started_at) or as_utc(call.created_at)
    if anchor is not None:
        elapsed = (now - anchor).total_seconds()
    elif duration_hint is not None:
        try:
            elapsed = float(duration_hint)
        except (TypeError, ValueError):
            elapsed = 0.0
        if not math.isfinite(elapsed):
            elapsed = 0.0
    else:
        elapsed = 0.0
    return max(0, math.floor(elapsed + 0.5))


def billable_minutes(duration_seconds: int) -> int:
    if duration_seconds <= 0:
        return 0
    return math.ceil(duration_seconds / 60)


class BillingEngine:
    """Moves money for a call exactly once.

    The call row is locked first, then the caller wallet, then the listener
    wallet. All checks run before the first write, so an insufficient balance
    leaves the session without pending changes and the call stays billable.
    """

    def __init__(self, session: AsyncSession, settings: MarketSettings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.ledger = CallLedger(session)
        self.wallets = WalletStore(session, currency=self.settings.currency)
        self.outbox = SideEffectOutbox(session, self.settings)

    async def finalize(
        self,
        call_id: int,
        duration_hint: int | float | str | None = None,
        *,
        rate_config: RateConfigModel,
        now: datetime | None = None,
    ) -> BillingResult:
        call = await self.ledger.get_call(call_id, lock=True)
        if call.billed:
            logger.info("call_already_billed", call_id=call.id)
            return self._stored_result(call)

        now = now or utc_now()
        duration = resolve_duration_seconds(call, duration_hint, now=now)
        minutes = billable_minutes(duration)
        user_charge = to_money(Decimal(minutes) * Decimal(call.rate_per_minute))

        caller = await self.wallets.lock_user(call.caller_id)
        self.wallets.ensure_can_debit(caller, user_charge)

        listener = await self.wallets.lock_listener(call.listener_id)
        payout_rate = listener.payout_per_min
        if payout_rate is None:
            payout_rate = rate_config.default_listener_payout_per_min
        listener_earn = to_money(Decimal(minutes) * Decimal(payout_rate))

        call.billed = True
        call.duration_seconds = duration
        call.billed_minutes = minutes
        call.user_charge = user_charge
        call.listener_earn = listener_earn
        call.billed_at = now

        if user_charge > 0:
            await self.wallets.debit(
                caller,
                user_charge,
                description=f"Call #{call.id}: {minutes} min",
                call_id=call.id,
            )
        if listener_earn > 0:
            await self.wallets.credit_listener(
                listener,
                listener_earn,
                description=f"Earnings for call #{call.id}: {minutes} min",
                call_id=call.id,
            )
        if call.is_offer_call and not caller.offer_used:
            caller.offer_used = True
            logger.info("first_time_offer_consumed", user_id=caller.id, call_id=call.id)

        await self.outbox.enqueue(call, SideEffectKind.INCREMENT_STATS, {"minutes": minutes})
        await self.outbox.enqueue(call, SideEffectKind.CLEAR_BUSY)
        await self.outbox.enqueue(call, SideEffectKind.DECREMENT_PROBATION)
        await self.session.flush()

        logger.info(
            "call_billed",
            call_id=call.id,
            duration_seconds=duration,
            minutes=minutes,
            user_charge=str(user_charge),
            listener_earn=str(listener_earn),
        )
        return BillingResult(
            call_id=call.id,
            minutes=minutes,
            user_charge=user_charge,
            listener_earn=listener_earn,
            duration_seconds=duration,
            already_billed=False,
        )

    @staticmethod
    def _stored_result(call: Call) -> BillingResult:
        return BillingResult(
            call_id=call.id,
            minutes=call.billed_minutes or 0,
            user_charge=to_money(call.user_charge),
            listener_earn=to_money(call.listener_earn),
            duration_seconds=call.duration_seconds or 0,
            already_billed=True,
        )


__all__ = ["BillingEngine", "resolve_duration_seconds", "billable_minutes"]
