"""Nightly listener quality gate."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from callcore.config import MarketSettings, get_settings
from callcore.db.models.core import Call, Listener
from callcore.domain.models import CallStatus, QualityGateSummary, QualityStatus, StatusSource
from callcore.logging import logger
from callcore.services.standing import apply_quality_status
from callcore.utils.datetime import as_utc, utc_now

PROMOTION_MIN_RATING = 3.5
PROMOTION_MIN_DURATION_SECONDS = 180
SHORT_AVERAGE_SECONDS = 120


@dataclass(frozen=True)
class ListenerMetrics:
    rating: float
    avg_duration: float
    hangup_rate: float
    short_streak: int

    @classmethod
    def from_listener(cls, listener: Listener) -> "ListenerMetrics":
        return cls(
            rating=float(listener.average_rating or 0),
            avg_duration=float(listener.avg_call_duration_seconds or 0),
            hangup_rate=float(listener.hangup_rate or 0),
            short_streak=int(listener.short_calls_streak or 0),
        )


@dataclass(frozen=True)
class QualityRule:
    status: QualityStatus
    predicate: Callable[[ListenerMetrics], bool]
    reason: Callable[[ListenerMetrics], str]

    def matches(self, metrics: ListenerMetrics) -> bool:
        return self.predicate(metrics)


# Evaluated top to bottom, first match wins.
DEMOTION_RULES: tuple[QualityRule, ...] = (
    QualityRule(
        QualityStatus.SUSPENDED,
        lambda m: m.rating < 2.5,
        lambda m: f"Rating critically low: {m.rating:.1f} (threshold: 2.5)",
    ),
    QualityRule(
        QualityStatus.SUSPENDED,
        lambda m: m.avg_duration < 60 and m.short_streak >= 5,
        lambda m: f"Average call duration <1 min for {m.short_streak} days",
    ),
    QualityRule(
        QualityStatus.SUSPENDED,
        lambda m: m.hangup_rate > 70,
        lambda m: f"Hangup rate {m.hangup_rate:.0f}% exceeds 70% threshold",
    ),
    QualityRule(
        QualityStatus.WARNING,
        lambda m: m.rating < 3.5,
        lambda m: f"Rating below 3.5: {m.rating:.1f}",
    ),
    QualityRule(
        QualityStatus.WARNING,
        lambda m: m.avg_duration < 120 and m.short_streak >= 3,
        lambda m: f"Average call duration <2 min for {m.short_streak} days",
    ),
    QualityRule(
        QualityStatus.WARNING,
        lambda m: m.hangup_rate > 50,
        lambda m: f"Hangup rate {m.hangup_rate:.0f}% exceeds 50%",
    ),
)


def match_rule(metrics: ListenerMetrics) -> QualityRule | None:
    for rule in DEMOTION_RULES:
        if rule.matches(metrics):
            return rule
    return None


def probation_failure_reason(metrics: ListenerMetrics) -> str:
    failing = []
    if metrics.rating < PROMOTION_MIN_RATING:
        failing.append(f"rating={metrics.rating:.1f}")
    if metrics.avg_duration < PROMOTION_MIN_DURATION_SECONDS:
        failing.append(f"avg_duration={round(metrics.avg_duration)}s")
    return f"Failed probation: {', '.join(failing)} (need ≥3.5 rating, ≥180s)"


class QualityGate:
    """Batch pass that recomputes listener metrics and applies verdicts.

    Every listener is handled in its own unit of work: a failure rolls back
    only that listener and the pass moves on. Running the pass twice in a row
    is safe because each phase re-reads the locked row before acting.
    """

    def __init__(self, session: AsyncSession, settings: MarketSettings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    async def run(self, *, now: datetime | None = None) -> QualityGateSummary:
        now = now or utc_now()
        summary = QualityGateSummary()
        logger.info("quality_gate_started")

        await self._recompute_metrics(summary, now)
        await self._each(
            await self._listener_ids(Listener.quality_status == QualityStatus.PROBATION),
            self._evaluate_probation,
            summary,
        )
        await self._each(
            await self._listener_ids(
                Listener.quality_status.in_([QualityStatus.ACTIVE, QualityStatus.WARNING]),
                Listener.is_active.is_(True),
            ),
            self._evaluate_standing,
            summary,
        )
        await self._each(
            await self._listener_ids(
                Listener.quality_status == QualityStatus.SUSPENDED,
                Listener.suspended_until.is_not(None),
            ),
            lambda listener, summary: self._lift_expired(listener, summary, now),
            summary,
        )

        logger.info("quality_gate_finished", **summary.model_dump())
        return summary

    # Phases -----------------------------------------------------------

    async def _recompute_metrics(self, summary: QualityGateSummary, now: datetime) -> None:
        window_start = now - timedelta(days=self.settings.quality.metrics_window_days)
        short = self.settings.quality.hangup_threshold_seconds
        stmt = (
            select(
                Call.listener_id,
                func.avg(Call.duration_seconds),
                func.count(Call.id),
                func.sum(case((Call.duration_seconds < short, 1), else_=0)),
            )
            .where(Call.status == CallStatus.COMPLETED, Call.created_at > window_start)
            .group_by(Call.listener_id)
        )
        stats = {
            listener_id: (float(avg or 0), int(total or 0), int(short_count or 0))
            for listener_id, avg, total, short_count in (await self.session.execute(stmt)).all()
        }
        tracked = await self._listener_ids(
            Listener.quality_status.in_([QualityStatus.ACTIVE, QualityStatus.WARNING])
        )
        listener_ids = sorted(set(stats) | set(tracked))

        async def recompute(listener: Listener, summary: QualityGateSummary) -> None:
            if listener.id in stats:
                avg, total, short_count = stats[listener.id]
                listener.avg_call_duration_seconds = float(round(avg))
                listener.hangup_rate = round(100.0 * short_count / total, 2) if total else 0.0
            if listener.quality_status in (QualityStatus.ACTIVE, QualityStatus.WARNING):
                if (listener.avg_call_duration_seconds or 0) < SHORT_AVERAGE_SECONDS:
                    listener.short_calls_streak = (listener.short_calls_streak or 0) + 1
                else:
                    listener.short_calls_streak = 0
            summary.metrics_updated += 1

        await self._each(listener_ids, recompute, summary)

    async def _evaluate_probation(self, listener: Listener, summary: QualityGateSummary) -> None:
        if listener.quality_status != QualityStatus.PROBATION:
            return
        if (listener.probation_calls_remaining or 0) > 0:
            return
        metrics = ListenerMetrics.from_listener(listener)
        passed = (
            metrics.rating >= PROMOTION_MIN_RATING
            and metrics.avg_duration >= PROMOTION_MIN_DURATION_SECONDS
        )
        if passed:
            target, reason = QualityStatus.ACTIVE, None
        else:
            target, reason = QualityStatus.SUSPENDED, probation_failure_reason(metrics)

        if not apply_quality_status(
            listener, target, source=StatusSource.QUALITY_GATE, reason=reason
        ):
            summary.skipped += 1
        elif passed:
            summary.promoted += 1
        else:
            summary.probation_failed += 1

    async def _evaluate_standing(self, listener: Listener, summary: QualityGateSummary) -> None:
        current = QualityStatus(listener.quality_status)
        if current not in (QualityStatus.ACTIVE, QualityStatus.WARNING) or not listener.is_active:
            return
        rule = match_rule(ListenerMetrics.from_listener(listener))
        if rule is None:
            if current is not QualityStatus.WARNING:
                return
            if apply_quality_status(
                listener, QualityStatus.ACTIVE, source=StatusSource.QUALITY_GATE
            ):
                summary.recovered += 1
            else:
                summary.skipped += 1
            return
        if rule.status is current:
            return

        reason = rule.reason(ListenerMetrics.from_listener(listener))
        if not apply_quality_status(
            listener, rule.status, source=StatusSource.QUALITY_GATE, reason=reason
        ):
            summary.skipped += 1
        elif rule.status is QualityStatus.SUSPENDED:
            summary.suspended += 1
        else:
            summary.warned += 1

    async def _lift_expired(
        self, listener: Listener, summary: QualityGateSummary, now: datetime
    ) -> None:
        until = as_utc(listener.suspended_until)
        if listener.quality_status != QualityStatus.SUSPENDED or until is None or until >= now:
            return
        if apply_quality_status(
            listener,
            QualityStatus.WARNING,
            source=StatusSource(listener.status_source or StatusSource.QUALITY_GATE),
            expiry=True,
        ):
            summary.suspensions_lifted += 1

    # Helpers ----------------------------------------------------------

    async def _listener_ids(self, *criteria) -> list[int]:
        stmt = select(Listener.id).where(*criteria).order_by(Listener.id)
        return list((await self.session.execute(stmt)).scalars())

    async def _each(
        self,
        listener_ids: list[int],
        step: Callable[[Listener, QualityGateSummary], Awaitable[None]],
        summary: QualityGateSummary,
    ) -> None:
        for listener_id in listener_ids:
            try:
                listener = await self._lock_listener(listener_id)
                if listener is None:
                    continue
                await step(listener, summary)
                await self.session.flush()
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                summary.errors += 1
                logger.exception("quality_gate_listener_failed", listener_id=listener_id)

    async def _lock_listener(self, listener_id: int) -> Listener | None:
        stmt = (
            select(Listener)
            .where(Listener.id == listener_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()


__all__ = [
    "QualityGate",
    "QualityRule",
    "ListenerMetrics",
    "DEMOTION_RULES",
    "match_rule",
    "probation_failure_reason",
]
