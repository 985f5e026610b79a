"""Single writer for listener quality status.

QualityGate and StrikeSystem share ``Listener.quality_status``. Both go
through :func:`apply_quality_status`, which only lets a verdict become less
severe when the subsystem that wrote it is the one relaxing it. A ban is
final for every automated writer.
"""

from __future__ import annotations

from datetime import datetime

from callcore.db.models.core import Listener
from callcore.domain.models import QualityStatus, StatusSource
from callcore.logging import logger
from callcore.utils.datetime import as_utc

INACTIVE_STATUSES = frozenset({QualityStatus.SUSPENDED, QualityStatus.BANNED})


def can_apply(
    listener: Listener,
    target: QualityStatus,
    source: StatusSource,
    *,
    expiry: bool = False,
    suspended_until: datetime | None = None,
) -> bool:
    current = QualityStatus(listener.quality_status)
    if current is QualityStatus.BANNED:
        return False
    if target is QualityStatus.SUSPENDED and current is QualityStatus.SUSPENDED:
        return _outlasts(suspended_until, listener.suspended_until)
    if target.severity >= current.severity:
        return True
    if expiry and current is QualityStatus.SUSPENDED:
        return True
    owner = StatusSource(listener.status_source) if listener.status_source else None
    return owner is None or owner is source


def _outlasts(candidate: datetime | None, existing: datetime | None) -> bool:
    """An open-ended suspension outlasts any dated one."""

    if candidate is None:
        return True
    if existing is None:
        return False
    return as_utc(candidate) >= as_utc(existing)


def apply_quality_status(
    listener: Listener,
    target: QualityStatus,
    *,
    source: StatusSource,
    reason: str | None = None,
    suspended_until: datetime | None = None,
    expiry: bool = False,
) -> bool:
    """Write ``target`` unless it would soften another subsystem's verdict.

    Returns ``True`` when the listener row changed.
    """

    current = QualityStatus(listener.quality_status)
    if not can_apply(
        listener, target, source, expiry=expiry, suspended_until=suspended_until
    ):
        logger.info(
            "quality_status_refused",
            listener_id=listener.id,
            current=current.value,
            target=target.value,
            source=source.value,
            owner=listener.status_source.value if listener.status_source else None,
        )
        return False

    listener.quality_status = target
    listener.status_source = source
    if target is QualityStatus.WARNING:
        listener.warning_reason = reason
        if expiry:
            listener.suspension_reason = None
            listener.suspended_until = None
    elif target in INACTIVE_STATUSES:
        listener.suspension_reason = reason
        listener.suspended_until = suspended_until
    else:
        listener.warning_reason = None
        listener.suspension_reason = None
        listener.suspended_until = None
    listener.is_active = target not in INACTIVE_STATUSES

    if current is not target or reason:
        logger.info(
            "quality_status_changed",
            listener_id=listener.id,
            previous=current.value,
            status=target.value,
            source=source.value,
            reason=reason,
        )
    return True


__all__ = ["apply_quality_status", "can_apply"]
