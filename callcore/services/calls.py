"""Call lifecycle: creation checks, the status machine and the busy lock."""

from __future__ import annotations

import random
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callcore.db.models.core import Call, Listener, User
from callcore.domain.models import (
    ACTIVE_CALL_STATUSES,
    CallStatus,
    CallType,
    QualityStatus,
    RateConfigModel,
    VerificationStatus,
)
from callcore.logging import logger
from callcore.services.exceptions import (
    CallNotFound,
    Forbidden,
    InsufficientBalance,
    InvalidRate,
    InvalidStatus,
    ListenerBusy,
    ListenerNotApproved,
    ListenerNotFound,
    ListenerUnavailable,
    NoListenerAvailable,
    UserNotFound,
)
from callcore.services.wallets import to_money
from callcore.utils.datetime import utc_now

RATE_QUANTUM = Decimal("0.0001")
RANDOM_POOL_SIZE = 50

_FAILURE_EXITS = frozenset(
    {CallStatus.MISSED, CallStatus.REJECTED, CallStatus.CANCELLED, CallStatus.FAILED}
)

TRANSITIONS: dict[CallStatus, frozenset[CallStatus]] = {
    CallStatus.INITIATED: frozenset({CallStatus.RINGING, CallStatus.ONGOING}) | _FAILURE_EXITS,
    CallStatus.RINGING: frozenset({CallStatus.ONGOING, CallStatus.COMPLETED}) | _FAILURE_EXITS,
    CallStatus.ONGOING: frozenset({CallStatus.COMPLETED}) | _FAILURE_EXITS,
}

# ``failed`` is reserved for the ring timeout and the zombie sweeper.
REQUESTABLE_STATUSES = frozenset(
    {
        CallStatus.RINGING,
        CallStatus.ONGOING,
        CallStatus.COMPLETED,
        CallStatus.MISSED,
        CallStatus.REJECTED,
        CallStatus.CANCELLED,
    }
)

UNAVAILABLE_QUALITY = frozenset({QualityStatus.SUSPENDED, QualityStatus.BANNED})


def parse_status(value: str | CallStatus) -> CallStatus:
    try:
        status = CallStatus(value)
    except ValueError as exc:
        raise InvalidStatus(f"Unknown call status: {value!r}.") from exc
    if status not in REQUESTABLE_STATUSES:
        raise InvalidStatus(f"Status {status.value} cannot be requested.")
    return status


def can_transition(current: CallStatus, target: CallStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


class CallLedger:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # Lookup -----------------------------------------------------------

    async def get_call(self, call_id: int, *, lock: bool = False) -> Call:
        stmt = select(Call).where(Call.id == call_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        call = (await self.session.execute(stmt)).scalar_one_or_none()
        if call is None:
            raise CallNotFound(f"Call {call_id} not found.")
        return call

    async def ensure_participant(self, call: Call, actor_id: int) -> None:
        if call.caller_id == actor_id:
            return
        stmt = select(Listener.user_id).where(Listener.id == call.listener_id)
        listener_user_id = (await self.session.execute(stmt)).scalar_one_or_none()
        if listener_user_id is not None and listener_user_id == actor_id:
            return
        raise Forbidden("Actor is not a participant of this call.")

    async def list_active_calls(self, caller_id: int | None = None) -> Sequence[Call]:
        stmt = select(Call).where(Call.status.in_(list(ACTIVE_CALL_STATUSES)))
        if caller_id is not None:
            stmt = stmt.where(Call.caller_id == caller_id)
        stmt = stmt.order_by(Call.created_at.desc())
        return (await self.session.execute(stmt)).scalars().all()

    # Creation ---------------------------------------------------------

    async def create_call(
        self,
        caller_id: int,
        listener_id: int,
        call_type: CallType | str,
        rate_config: RateConfigModel,
    ) -> Call:
        listener = await self.session.get(Listener, listener_id)
        if listener is None:
            raise ListenerNotFound(f"Listener {listener_id} not found.")
        caller = await self.session.get(User, caller_id)
        if caller is None:
            raise UserNotFound(f"User {caller_id} not found.")

        self._ensure_bookable(listener)
        rate, is_offer = self._effective_rate(listener, caller, rate_config)

        balance = to_money(caller.wallet_balance)
        if balance < to_money(rate):
            raise InsufficientBalance(
                f"Minimum balance of {to_money(rate)} is required to start a call."
            )

        call = Call(
            caller_id=caller.id,
            listener_id=listener.id,
            call_type=CallType(call_type),
            status=CallStatus.INITIATED,
            rate_per_minute=rate,
            is_offer_call=is_offer,
            created_at=utc_now(),
        )
        self.session.add(call)
        await self.session.flush()
        logger.info(
            "call_created",
            call_id=call.id,
            caller_id=caller.id,
            listener_id=listener.id,
            rate_per_minute=str(rate),
            offer=is_offer,
        )
        return call

    async def pick_random_listener(self) -> Listener:
        stmt = (
            select(Listener.id)
            .where(
                Listener.is_active.is_(True),
                Listener.is_available.is_(True),
                Listener.is_online.is_(True),
                Listener.is_busy.is_(False),
                Listener.verification_status == VerificationStatus.APPROVED,
                Listener.quality_status.not_in(list(UNAVAILABLE_QUALITY)),
            )
            .limit(RANDOM_POOL_SIZE)
        )
        candidates = list((await self.session.execute(stmt)).scalars())
        if not candidates:
            raise NoListenerAvailable("No available listeners found.")
        listener = await self.session.get(Listener, random.choice(candidates))
        assert listener is not None
        return listener

    def _ensure_bookable(self, listener: Listener) -> None:
        if listener.verification_status != VerificationStatus.APPROVED:
            logger.info(
                "call_blocked_not_approved",
                listener_id=listener.id,
                verification_status=listener.verification_status.value,
            )
            raise ListenerNotApproved("Listener is under verification.")
        if (
            not listener.is_available
            or not listener.is_online
            or not listener.is_active
            or listener.quality_status in UNAVAILABLE_QUALITY
        ):
            raise ListenerUnavailable("Listener is not available.")
        if listener.is_busy:
            raise ListenerBusy("Listener is currently on another call.")

    def _effective_rate(
        self, listener: Listener, caller: User, rate_config: RateConfigModel
    ) -> tuple[Decimal, bool]:
        base = listener.user_rate_per_min
        if base is None:
            base = rate_config.default_user_rate_per_min
        base = Decimal(str(base))
        if not base.is_finite() or base <= 0:
            raise InvalidRate(f"Listener {listener.id} rate is invalid.")

        if caller.is_first_time_user and not caller.offer_used and rate_config.offer_available:
            rate = Decimal(rate_config.offer_flat_price) / rate_config.offer_minutes_limit
            return rate.quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP), True
        return base.quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP), False

    # Transitions ------------------------------------------------------

    async def transition(
        self,
        call: Call,
        target: CallStatus,
        *,
        now: datetime | None = None,
    ) -> Call:
        """Move a call forward, taking or releasing the listener busy lock."""

        current = CallStatus(call.status)
        if not can_transition(current, target):
            raise InvalidStatus(f"Cannot move call from {current.value} to {target.value}.")

        now = now or utc_now()
        if target is CallStatus.ONGOING:
            await self.acquire_busy(call.listener_id)
            call.started_at = call.started_at or now
        call.status = target
        if target.is_terminal:
            call.ended_at = now
            await self.release_busy(call.listener_id, call_id=call.id)
        await self.session.flush()
        logger.info(
            "call_status_changed",
            call_id=call.id,
            previous=current.value,
            status=target.value,
        )
        return call

    async def expire_if_unanswered(self, call_id: int) -> bool:
        """Fail a call still ``initiated`` after the ring timeout."""

        try:
            call = await self.get_call(call_id, lock=True)
        except CallNotFound:
            logger.warning("ring_timeout_call_missing", call_id=call_id)
            return False
        if call.status != CallStatus.INITIATED:
            return False
        await self.transition(call, CallStatus.FAILED)
        logger.info("call_ring_timeout", call_id=call.id, listener_id=call.listener_id)
        return True

    # Busy lock ----------------------------------------------------------

    async def acquire_busy(self, listener_id: int) -> Listener:
        listener = await self._lock_listener(listener_id)
        if listener.is_busy:
            raise ListenerBusy(f"Listener {listener_id} is already on a call.")
        listener.is_busy = True
        await self.session.flush()
        return listener

    async def release_busy(self, listener_id: int, *, call_id: int | None = None) -> bool:
        """Clear the busy flag; clearing an idle listener is a no-op.

        When ``call_id`` is given the flag is kept if the listener is
        ``ongoing`` in a different call, since that call owns the lock.
        """

        listener = await self._lock_listener(listener_id)
        if not listener.is_busy:
            return False
        if call_id is not None and await self._holds_other_call(listener_id, call_id):
            logger.info("listener_busy_kept", listener_id=listener_id, call_id=call_id)
            return False
        listener.is_busy = False
        await self.session.flush()
        logger.info("listener_busy_released", listener_id=listener_id, call_id=call_id)
        return True

    async def _holds_other_call(self, listener_id: int, call_id: int) -> bool:
        stmt = (
            select(Call.id)
            .where(
                Call.listener_id == listener_id,
                Call.status == CallStatus.ONGOING,
                Call.id != call_id,
            )
            .limit(1)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none() is not None

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


__all__ = [
    "CallLedger",
    "TRANSITIONS",
    "REQUESTABLE_STATUSES",
    "can_transition",
    "parse_status",
]
