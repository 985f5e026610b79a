"""User reports and the strike ladder."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from callcore.config import MarketSettings, get_settings
from callcore.db.models.core import Call, Listener, ListenerReport, User
from callcore.domain.models import QualityStatus, ReportOutcome, ReportType, StatusSource
from callcore.logging import logger
from callcore.services.exceptions import (
    CallNotFound,
    DuplicateReport,
    Forbidden,
    InvalidReportType,
    ListenerNotFound,
    UserNotFound,
)
from callcore.services.standing import apply_quality_status
from callcore.utils.datetime import utc_now


def parse_report_type(value: str | ReportType) -> ReportType:
    try:
        return ReportType(value)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in ReportType)
        raise InvalidReportType(f"report_type must be one of: {allowed}") from exc


class StrikeSystem:
    def __init__(self, session: AsyncSession, settings: MarketSettings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    async def submit_report(
        self,
        reporter_id: int,
        listener_id: int,
        report_type: str | ReportType,
        *,
        call_id: int | None = None,
        description: str | None = None,
        now: datetime | None = None,
    ) -> ReportOutcome:
        """Record a report and apply a strike once enough reports pile up.

        The listener row is locked for the whole operation so two reports
        arriving together cannot both consume the same batch.
        """

        kind = parse_report_type(report_type)
        now = now or utc_now()

        if await self.session.get(User, reporter_id) is None:
            raise UserNotFound(f"User {reporter_id} not found.")
        listener = await self._lock_listener(listener_id)
        if call_id is not None:
            await self._ensure_reportable_call(call_id, reporter_id, listener_id)
            if await self._already_reported(call_id, reporter_id):
                raise DuplicateReport("You already reported this call.")

        report = ListenerReport(
            listener_id=listener.id,
            reporter_user_id=reporter_id,
            call_id=call_id,
            report_type=kind,
            description=description,
            created_at=now,
        )
        self.session.add(report)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise DuplicateReport("You already reported this call.") from exc
        logger.info(
            "listener_report_recorded",
            report_id=report.id,
            listener_id=listener.id,
            reporter_id=reporter_id,
            report_type=kind.value,
        )

        outcome = ReportOutcome(
            report_id=report.id,
            strike_applied=False,
            action_taken="report_recorded",
            strike_count=listener.strike_count or 0,
        )
        if listener.quality_status == QualityStatus.BANNED:
            return outcome

        pending = await self._unreviewed_count(listener.id, now)
        if pending < self.settings.strikes.reports_per_strike:
            return outcome

        listener.strike_count = (listener.strike_count or 0) + 1
        report.strike_applied = True
        await self.session.execute(
            update(ListenerReport)
            .where(
                ListenerReport.listener_id == listener.id,
                ListenerReport.reviewed.is_(False),
            )
            .values(reviewed=True)
            .execution_options(synchronize_session="fetch")
        )
        action = self._apply_consequence(listener, now)
        await self.session.flush()

        logger.info(
            "listener_strike_applied",
            listener_id=listener.id,
            strike_count=listener.strike_count,
            action=action,
        )
        return ReportOutcome(
            report_id=report.id,
            strike_applied=True,
            action_taken=action,
            strike_count=listener.strike_count,
        )

    async def list_reports(self, listener_id: int, *, limit: int = 50) -> Sequence[ListenerReport]:
        stmt = (
            select(ListenerReport)
            .where(ListenerReport.listener_id == listener_id)
            .order_by(ListenerReport.created_at.desc(), ListenerReport.id.desc())
            .limit(limit)
        )
        return (await self.session.execute(stmt)).scalars().all()

    def _apply_consequence(self, listener: Listener, now: datetime) -> str:
        strikes = listener.strike_count
        if strikes >= self.settings.strikes.ban_strike_count:
            target = QualityStatus.BANNED
            action = "banned"
            reason = f"Permanently banned: {strikes} strikes from user reports"
            until = None
        elif strikes >= 2:
            hours = self.settings.strikes.suspension_hours
            target = QualityStatus.SUSPENDED
            action = f"suspended_{hours}h"
            reason = f"Suspended {hours}h: Strike {strikes} from user reports"
            until = now + timedelta(hours=hours)
        else:
            target = QualityStatus.WARNING
            action = "warning"
            reason = f"Strike {strikes}: User reports received"
            until = None

        applied = apply_quality_status(
            listener,
            target,
            source=StatusSource.STRIKES,
            reason=reason,
            suspended_until=until,
        )
        return action if applied else "strike_recorded"

    async def _ensure_reportable_call(self, call_id: int, reporter_id: int, listener_id: int) -> None:
        call = await self.session.get(Call, call_id)
        if call is None:
            raise CallNotFound(f"Call {call_id} not found.")
        if call.caller_id != reporter_id or call.listener_id != listener_id:
            raise Forbidden("Only the caller can report the listener of this call.")

    async def _already_reported(self, call_id: int, reporter_id: int) -> bool:
        stmt = select(ListenerReport.id).where(
            ListenerReport.call_id == call_id,
            ListenerReport.reporter_user_id == reporter_id,
        )
        return (await self.session.execute(stmt)).scalar_one_or_none() is not None

    async def _unreviewed_count(self, listener_id: int, now: datetime) -> int:
        window_start = now - timedelta(days=self.settings.strikes.report_window_days)
        stmt = select(func.count(ListenerReport.id)).where(
            ListenerReport.listener_id == listener_id,
            ListenerReport.reviewed.is_(False),
            ListenerReport.created_at > window_start,
        )
        return int((await self.session.execute(stmt)).scalar_one())

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


__all__ = ["StrikeSystem", "parse_report_type"]
