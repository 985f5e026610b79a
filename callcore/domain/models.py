"""Enums and pydantic models shared across logic/application layers."""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict


class CallType(str, enum.Enum):
    AUDIO = "audio"
    VIDEO = "video"


class CallStatus(str, enum.Enum):
    INITIATED = "initiated"
    RINGING = "ringing"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    MISSED = "missed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_CALL_STATUSES


TERMINAL_CALL_STATUSES = frozenset(
    {
        CallStatus.COMPLETED,
        CallStatus.MISSED,
        CallStatus.REJECTED,
        CallStatus.CANCELLED,
        CallStatus.FAILED,
    }
)
ACTIVE_CALL_STATUSES = frozenset(
    {CallStatus.INITIATED, CallStatus.RINGING, CallStatus.ONGOING}
)


class VerificationStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class QualityStatus(str, enum.Enum):
    PROBATION = "probation"
    ACTIVE = "active"
    WARNING = "warning"
    SUSPENDED = "suspended"
    BANNED = "banned"

    @property
    def severity(self) -> int:
        return QUALITY_SEVERITY[self]


# banned > suspended > warning > probation > active
QUALITY_SEVERITY = {
    QualityStatus.ACTIVE: 0,
    QualityStatus.PROBATION: 1,
    QualityStatus.WARNING: 2,
    QualityStatus.SUSPENDED: 3,
    QualityStatus.BANNED: 4,
}


class StatusSource(str, enum.Enum):
    """Subsystem that wrote a listener's current quality verdict."""

    QUALITY_GATE = "quality_gate"
    STRIKES = "strikes"


class ReportType(str, enum.Enum):
    SILENT = "silent"
    RUDE = "rude"
    FAKE = "fake"
    BORING = "boring"


class TransactionType(str, enum.Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class SideEffectKind(str, enum.Enum):
    INCREMENT_STATS = "increment_stats"
    CLEAR_BUSY = "clear_busy"
    DECREMENT_PROBATION = "decrement_probation"


class SideEffectState(str, enum.Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class RateConfigModel(BaseModel):
    """Snapshot of the admin-editable pricing row for one unit of work."""

    model_config = ConfigDict(frozen=True)

    default_user_rate_per_min: Decimal = Decimal("10.00")
    default_listener_payout_per_min: Decimal = Decimal("6.00")
    first_time_offer_enabled: bool = False
    offer_minutes_limit: int = 0
    offer_flat_price: Decimal = Decimal("0.00")
    weekly_streak_bonus: Decimal = Decimal("500.00")
    premium_price: Decimal = Decimal("999.00")
    premium_duration_days: int = 365
    free_random_calls_per_day: int = 2
    free_random_call_max_minutes: int = 3

    @property
    def offer_available(self) -> bool:
        return (
            self.first_time_offer_enabled
            and self.offer_minutes_limit > 0
            and self.offer_flat_price > 0
        )


class BillingResult(BaseModel):
    call_id: int
    minutes: int
    user_charge: Decimal
    listener_earn: Decimal
    duration_seconds: int
    already_billed: bool = False

    @property
    def platform_commission(self) -> Decimal:
        return self.user_charge - self.listener_earn


class ReportOutcome(BaseModel):
    report_id: int
    strike_applied: bool
    action_taken: str
    strike_count: int


class SubscriptionStatusModel(BaseModel):
    is_premium: bool
    plan_type: str | None = None
    expires_at: datetime | None = None
    free_calls_used: int = 0
    free_calls_limit: int = 0
    max_free_call_minutes: int | None = None


class RandomCallGate(BaseModel):
    allowed: bool
    is_premium: bool
    ad_required: bool = False
    max_minutes: int | None = None
    filters_enabled: bool = False
    free_calls_used: int = 0
    free_calls_limit: int = 0
    reason: str | None = None


class QualityGateSummary(BaseModel):
    metrics_updated: int = 0
    promoted: int = 0
    probation_failed: int = 0
    suspended: int = 0
    warned: int = 0
    recovered: int = 0
    suspensions_lifted: int = 0
    skipped: int = 0
    errors: int = 0


class StreakSummary(BaseModel):
    maintained: int = 0
    lost: int = 0
    bonuses: int = 0
    skipped: int = 0
    errors: int = 0


class SweepSummary(BaseModel):
    swept: int = 0
    call_ids: list[int] = []
    errors: int = 0


class DrainSummary(BaseModel):
    applied: int = 0
    failed: int = 0
    retried: int = 0


__all__ = [
    "CallType",
    "CallStatus",
    "TERMINAL_CALL_STATUSES",
    "ACTIVE_CALL_STATUSES",
    "VerificationStatus",
    "QualityStatus",
    "QUALITY_SEVERITY",
    "StatusSource",
    "ReportType",
    "TransactionType",
    "SideEffectKind",
    "SideEffectState",
    "RateConfigModel",
    "BillingResult",
    "ReportOutcome",
    "SubscriptionStatusModel",
    "RandomCallGate",
    "QualityGateSummary",
    "StreakSummary",
    "SweepSummary",
    "DrainSummary",
]
