"""Row builders shared by the service tests."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from callcore.db.models.core import Call, Listener, RateConfig, User
from callcore.domain.models import CallStatus, CallType, QualityStatus, RateConfigModel
from callcore.utils.datetime import utc_now

# Batch services commit per item and roll back on failure, so fixture rows
# are committed up front to survive those rollbacks.


async def create_user(session, *, balance: str = "100.00", **fields) -> User:
    user = User(wallet_balance=Decimal(balance), **fields)
    session.add(user)
    await session.flush()
    await session.commit()
    return user


async def create_listener(
    session,
    *,
    rate: str | None = "10.00",
    payout: str | None = "6.00",
    quality_status: QualityStatus = QualityStatus.ACTIVE,
    **fields,
) -> Listener:
    user = await create_user(session, balance="0.00")
    values = {
        "is_online": True,
        "is_available": True,
        "is_active": quality_status not in (QualityStatus.SUSPENDED, QualityStatus.BANNED),
    }
    values.update(fields)
    listener = Listener(
        user_id=user.id,
        user_rate_per_min=Decimal(rate) if rate is not None else None,
        payout_per_min=Decimal(payout) if payout is not None else None,
        quality_status=quality_status,
        **values,
    )
    session.add(listener)
    await session.flush()
    await session.commit()
    return listener


async def create_call(
    session,
    caller: User,
    listener: Listener,
    *,
    status: CallStatus = CallStatus.ONGOING,
    rate: str = "10.00",
    created_at: datetime | None = None,
    started_at: datetime | None = None,
    **fields,
) -> Call:
    created_at = created_at or utc_now()
    if started_at is None and status is CallStatus.ONGOING:
        started_at = created_at
    call = Call(
        caller_id=caller.id,
        listener_id=listener.id,
        call_type=CallType.AUDIO,
        status=status,
        rate_per_minute=Decimal(rate),
        created_at=created_at,
        started_at=started_at,
        **fields,
    )
    session.add(call)
    await session.flush()
    await session.commit()
    return call


async def store_rate_config(session, **overrides) -> RateConfig:
    row = RateConfig(**RateConfigModel(**overrides).model_dump())
    session.add(row)
    await session.flush()
    await session.commit()
    return row
