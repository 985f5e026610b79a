"""SQLAlchemy models for callers, listeners, calls and the wallet ledger."""

from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from callcore.db.base import Base
from callcore.domain.models import (
    CallStatus,
    CallType,
    QualityStatus,
    ReportType,
    SideEffectKind,
    SideEffectState,
    StatusSource,
    TransactionType,
    VerificationStatus,
)
from callcore.utils.datetime import utc_now

MONEY = Numeric(12, 2)
RATE = Numeric(10, 4)

# Completed calls a new listener must take before the gate judges probation.
PROBATION_CALLS = 10


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def _enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=_enum_values, validate_strings=True)


class User(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("mobile_number", name="uq_users_mobile_number"),)

    display_name: Mapped[str | None] = mapped_column(String(64))
    mobile_number: Mapped[str | None] = mapped_column(String(20))
    wallet_balance: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"), nullable=False)
    is_first_time_user: Mapped[bool] = mapped_column(default=True)
    offer_used: Mapped[bool] = mapped_column(default=False)
    random_calls_today: Mapped[int] = mapped_column(Integer, default=0)
    last_random_call_date: Mapped[date | None] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    listener_profile: Mapped["Listener | None"] = relationship(
        back_populates="user", uselist=False
    )
    subscriptions: Mapped[list["Subscription"]] = relationship(back_populates="user")


class Listener(Base):
    __tablename__ = "listeners"

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    professional_name: Mapped[str | None] = mapped_column(String(64))
    verification_status: Mapped[VerificationStatus] = mapped_column(
        _enum(VerificationStatus, "verification_status"),
        default=VerificationStatus.APPROVED,
        nullable=False,
    )
    user_rate_per_min: Mapped[Decimal | None] = mapped_column(RATE)
    payout_per_min: Mapped[Decimal | None] = mapped_column(RATE)

    wallet_balance: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"), nullable=False)
    total_earning: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"), nullable=False)

    is_active: Mapped[bool] = mapped_column(default=True)
    is_available: Mapped[bool] = mapped_column(default=True)
    is_online: Mapped[bool] = mapped_column(default=False)
    is_busy: Mapped[bool] = mapped_column(default=False)

    quality_status: Mapped[QualityStatus] = mapped_column(
        _enum(QualityStatus, "quality_status"),
        default=QualityStatus.PROBATION,
        nullable=False,
    )
    status_source: Mapped[StatusSource | None] = mapped_column(
        _enum(StatusSource, "quality_status_source")
    )
    probation_calls_remaining: Mapped[int] = mapped_column(Integer, default=PROBATION_CALLS)
    strike_count: Mapped[int] = mapped_column(SmallInteger, default=0)
    warning_reason: Mapped[str | None] = mapped_column(Text)
    suspension_reason: Mapped[str | None] = mapped_column(Text)
    suspended_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    average_rating: Mapped[float] = mapped_column(Float, default=0.0)
    total_ratings: Mapped[int] = mapped_column(Integer, default=0)
    total_calls: Mapped[int] = mapped_column(Integer, default=0)
    total_minutes: Mapped[int] = mapped_column(Integer, default=0)
    avg_call_duration_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    hangup_rate: Mapped[float] = mapped_column(Float, default=0.0)
    short_calls_streak: Mapped[int] = mapped_column(Integer, default=0)
    daily_streak_days: Mapped[int] = mapped_column(Integer, default=0)
    last_streak_date: Mapped[date | None] = mapped_column(Date)
    last_daily_stats_date: Mapped[date | None] = mapped_column(Date)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    user: Mapped[User] = relationship(back_populates="listener_profile")


class Call(Base):
    __tablename__ = "calls"

    caller_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    listener_id: Mapped[int] = mapped_column(
        ForeignKey("listeners.id"), nullable=False, index=True
    )
    call_type: Mapped[CallType] = mapped_column(
        _enum(CallType, "call_type"), default=CallType.AUDIO, nullable=False
    )
    status: Mapped[CallStatus] = mapped_column(
        _enum(CallStatus, "call_status"), default=CallStatus.INITIATED, nullable=False, index=True
    )
    rate_per_minute: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    is_offer_call: Mapped[bool] = mapped_column(default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, index=True
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    duration_seconds: Mapped[int | None] = mapped_column(Integer)
    billed: Mapped[bool] = mapped_column(default=False, nullable=False)
    billed_minutes: Mapped[int | None] = mapped_column(Integer)
    user_charge: Mapped[Decimal | None] = mapped_column(MONEY)
    listener_earn: Mapped[Decimal | None] = mapped_column(MONEY)
    billed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    caller: Mapped[User] = relationship(foreign_keys=[caller_id])
    listener: Mapped[Listener] = relationship(foreign_keys=[listener_id])


class Rating(Base):
    __tablename__ = "ratings"
    __table_args__ = (UniqueConstraint("call_id", name="uq_ratings_call_id"),)

    call_id: Mapped[int] = mapped_column(ForeignKey("calls.id", ondelete="CASCADE"))
    listener_id: Mapped[int] = mapped_column(ForeignKey("listeners.id", ondelete="CASCADE"))
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    rating: Mapped[float] = mapped_column(Float, nullable=False)
    review_text: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class ListenerReport(Base):
    __tablename__ = "listener_reports"
    __table_args__ = (
        UniqueConstraint("call_id", "reporter_user_id", name="uq_listener_reports_call_reporter"),
    )

    listener_id: Mapped[int] = mapped_column(
        ForeignKey("listeners.id", ondelete="CASCADE"), index=True
    )
    reporter_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    call_id: Mapped[int | None] = mapped_column(ForeignKey("calls.id", ondelete="SET NULL"))
    report_type: Mapped[ReportType] = mapped_column(
        _enum(ReportType, "report_type"), nullable=False
    )
    description: Mapped[str | None] = mapped_column(Text)
    reviewed: Mapped[bool] = mapped_column(default=False)
    strike_applied: Mapped[bool] = mapped_column(default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, index=True
    )


class Subscription(Base):
    __tablename__ = "subscriptions"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    plan_type: Mapped[str] = mapped_column(String(32), default="random_premium")
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_active: Mapped[bool] = mapped_column(default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    user: Mapped[User] = relationship(back_populates="subscriptions")


class Transaction(Base):
    """Append-only audit record of a wallet mutation."""

    __tablename__ = "transactions"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    call_id: Mapped[int | None] = mapped_column(ForeignKey("calls.id", ondelete="SET NULL"))
    transaction_type: Mapped[TransactionType] = mapped_column(
        _enum(TransactionType, "transaction_type"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="INR")
    description: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(16), default="completed")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class RateConfig(Base):
    """Single-row pricing table edited by administrators."""

    __tablename__ = "rate_config"

    default_user_rate_per_min: Mapped[Decimal] = mapped_column(RATE, default=Decimal("10.00"))
    default_listener_payout_per_min: Mapped[Decimal] = mapped_column(
        RATE, default=Decimal("6.00")
    )
    first_time_offer_enabled: Mapped[bool] = mapped_column(default=False)
    offer_minutes_limit: Mapped[int] = mapped_column(Integer, default=0)
    offer_flat_price: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"))
    weekly_streak_bonus: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("500.00"))
    premium_price: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("999.00"))
    premium_duration_days: Mapped[int] = mapped_column(Integer, default=365)
    free_random_calls_per_day: Mapped[int] = mapped_column(Integer, default=2)
    free_random_call_max_minutes: Mapped[int] = mapped_column(Integer, default=3)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )


class CallSideEffect(Base):
    """Outbox row for post-settlement work applied after commit."""

    __tablename__ = "call_side_effects"
    __table_args__ = (
        UniqueConstraint("call_id", "kind", name="uq_call_side_effects_call_kind"),
    )

    call_id: Mapped[int] = mapped_column(ForeignKey("calls.id", ondelete="CASCADE"))
    listener_id: Mapped[int] = mapped_column(ForeignKey("listeners.id", ondelete="CASCADE"))
    kind: Mapped[SideEffectKind] = mapped_column(
        _enum(SideEffectKind, "side_effect_kind"), nullable=False
    )
    payload: Mapped[dict | None] = mapped_column(JSON)
    state: Mapped[SideEffectState] = mapped_column(
        _enum(SideEffectState, "side_effect_state"),
        default=SideEffectState.PENDING,
        nullable=False,
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


__all__ = [
    "User",
    "Listener",
    "Call",
    "Rating",
    "ListenerReport",
    "Subscription",
    "Transaction",
    "RateConfig",
    "CallSideEffect",
]
