from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from app.db.models import DeviceWarning, WarningNotification

WARNING_STATUSES = ("active", "acknowledged", "resolved", "ignored")
WARNING_SEVERITIES = ("minor", "moderate", "major", "critical")


def get_warning(db: Session, warning_id: int) -> DeviceWarning | None:
    return db.get(DeviceWarning, warning_id)


def find_active_warning(db: Session, *, device_id: int, warning_type: str) -> DeviceWarning | None:
    return db.scalars(
        select(DeviceWarning).where(
            DeviceWarning.device_id == device_id,
            DeviceWarning.warning_type == warning_type,
            DeviceWarning.status == "active",
        )
    ).first()


def list_active_warnings(db: Session, *, device_id: int | None = None) -> list[DeviceWarning]:
    statement = select(DeviceWarning).where(DeviceWarning.status == "active")
    if device_id is not None:
        statement = statement.where(DeviceWarning.device_id == device_id)
    statement = statement.order_by(DeviceWarning.created_at.desc(), DeviceWarning.id.desc())
    return list(db.scalars(statement))


def list_warnings_for_device(
    db: Session,
    *,
    device_id: int,
    newest_first: bool = False,
    limit: int | None = None,
) -> list[DeviceWarning]:
    statement = select(DeviceWarning).where(DeviceWarning.device_id == device_id)
    if newest_first:
        statement = statement.order_by(DeviceWarning.created_at.desc(), DeviceWarning.id.desc())
    else:
        statement = statement.order_by(DeviceWarning.created_at.asc(), DeviceWarning.id.asc())
    if limit is not None:
        statement = statement.limit(limit)
    return list(db.scalars(statement))


def create_warning(
    db: Session,
    *,
    device_id: int,
    device_type: str,
    device_name: str | None,
    warning_type: str,
    severity: str,
    measured_value: float,
    threshold_value: float,
    message: str,
    now: datetime,
) -> DeviceWarning:
    warning = DeviceWarning(
        device_id=device_id,
        device_type=device_type,
        device_name=device_name,
        warning_type=warning_type,
        severity=severity,
        measured_value=measured_value,
        threshold_value=threshold_value,
        message=message,
        status="active",
        created_at=now,
        updated_at=now,
    )
    db.add(warning)
    db.flush()
    return warning


def update_warning(
    db: Session,
    warning: DeviceWarning,
    *,
    measured_value: float,
    message: str,
    now: datetime,
) -> DeviceWarning:
    warning.measured_value = measured_value
    warning.message = message
    warning.updated_at = now
    db.flush()
    return warning


def close_warning(
    db: Session,
    warning: DeviceWarning,
    *,
    status: str,
    now: datetime,
    notes: str | None = None,
) -> DeviceWarning:
    warning.status = status
    warning.updated_at = now
    if status == "resolved":
        warning.resolved_at = now
    elif status == "acknowledged":
        warning.acknowledged_at = now
    if notes is not None:
        warning.resolution_notes = notes
    db.flush()
    return warning


def resolve_active_warning(
    db: Session,
    *,
    device_id: int,
    warning_type: str,
    now: datetime,
    notes: str | None = None,
) -> DeviceWarning | None:
    warning = find_active_warning(db, device_id=device_id, warning_type=warning_type)
    if warning is None:
        return None
    return close_warning(db, warning, status="resolved", now=now, notes=notes)


def delete_closed_warnings_before(db: Session, *, cutoff: datetime) -> int:
    """Deletes resolved, acknowledged and ignored warnings last changed before ``cutoff``."""
    warning_ids = list(
        db.scalars(
            select(DeviceWarning.id).where(
                DeviceWarning.status != "active",
                DeviceWarning.updated_at < cutoff,
            )
        )
    )
    if not warning_ids:
        return 0
    db.execute(delete(WarningNotification).where(WarningNotification.warning_id.in_(warning_ids)))
    db.execute(delete(DeviceWarning).where(DeviceWarning.id.in_(warning_ids)))
    return len(warning_ids)


def get_warning_stats(db: Session, *, since: datetime | None = None) -> dict[str, Any]:
    """Warning counts by status, severity and device type, optionally from ``since`` on."""
    filters = [DeviceWarning.created_at >= since] if since is not None else []

    def _grouped(column: Any) -> dict[str, int]:
        rows = db.execute(
            select(column, func.count(DeviceWarning.id)).where(*filters).group_by(column)
        ).all()
        return {str(key): int(count) for key, count in rows}

    by_status = _grouped(DeviceWarning.status)
    by_severity = _grouped(DeviceWarning.severity)
    return {
        "total": sum(by_status.values()),
        "by_status": {status: by_status.get(status, 0) for status in WARNING_STATUSES},
        "by_severity": {severity: by_severity.get(severity, 0) for severity in WARNING_SEVERITIES},
        "by_device_type": dict(sorted(_grouped(DeviceWarning.device_type).items())),
    }
