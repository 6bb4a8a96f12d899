from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, delete, func, select
from sqlalchemy.orm import Session

from app.db.models import DeviceWarning, WarningNotification


@dataclass(frozen=True)
class DueNotification:
    notification_id: int
    warning_id: int
    level: int
    send_time: datetime


@dataclass(frozen=True)
class QueueCounts:
    by_status: dict[str, int]
    scheduled_by_level: dict[int, int]
    overdue: int
    dropped: int = 0


def schedule_notifications(
    db: Session,
    warning: DeviceWarning,
    *,
    level_delays: Sequence[tuple[int, int]],
) -> list[WarningNotification]:
    entries: list[WarningNotification] = []
    for level, delay_seconds in level_delays:
        entry = WarningNotification(
            warning_id=warning.id,
            level=level,
            send_time=warning.created_at + timedelta(seconds=delay_seconds),
            status="scheduled",
        )
        db.add(entry)
        entries.append(entry)
    db.flush()
    return entries


def list_due_notifications(
    db: Session,
    *,
    now: datetime,
    warning_id: int | None = None,
    limit: int | None = None,
) -> list[DueNotification]:
    """Scheduled entries whose send time has passed and whose warning is still active."""
    statement = (
        select(
            WarningNotification.id,
            WarningNotification.warning_id,
            WarningNotification.level,
            WarningNotification.send_time,
        )
        .join(DeviceWarning, DeviceWarning.id == WarningNotification.warning_id)
        .where(
            WarningNotification.status == "scheduled",
            WarningNotification.send_time <= now,
            DeviceWarning.status == "active",
        )
        .order_by(WarningNotification.send_time.asc(), WarningNotification.level.asc())
    )
    if warning_id is not None:
        statement = statement.where(WarningNotification.warning_id == warning_id)
    if limit is not None:
        statement = statement.limit(limit)

    return [
        DueNotification(
            notification_id=row.id,
            warning_id=row.warning_id,
            level=row.level,
            send_time=row.send_time,
        )
        for row in db.execute(statement).all()
    ]


def get_notification(db: Session, notification_id: int) -> WarningNotification | None:
    return db.get(WarningNotification, notification_id)


def list_notifications_for_warning(db: Session, *, warning_id: int) -> list[WarningNotification]:
    return list(
        db.scalars(
            select(WarningNotification)
            .where(WarningNotification.warning_id == warning_id)
            .order_by(WarningNotification.level.asc())
        )
    )


def mark_notification(
    db: Session,
    entry: WarningNotification,
    *,
    status: str,
    now: datetime,
    message_id: str | None = None,
    error_text: str | None = None,
) -> WarningNotification:
    entry.status = status
    if status == "sent":
        entry.sent_at = now
        entry.message_id = message_id
        entry.error_text = None
    else:
        entry.error_text = error_text
    db.flush()
    return entry


def delete_finished_notifications_before(db: Session, *, cutoff: datetime) -> int:
    result = db.execute(
        delete(WarningNotification).where(
            WarningNotification.status.in_(("sent", "failed")),
            WarningNotification.send_time < cutoff,
        )
    )
    return int(result.rowcount or 0)


def get_queue_counts(db: Session, *, now: datetime) -> QueueCounts:
    """Counts by status; ``scheduled`` only covers entries whose warning is still active."""
    by_status = {
        str(status): int(count)
        for status, count in db.execute(
            select(WarningNotification.status, func.count(WarningNotification.id))
            .where(WarningNotification.status != "scheduled")
            .group_by(WarningNotification.status)
        ).all()
    }
    pending = (
        select(WarningNotification.level, func.count(WarningNotification.id))
        .join(DeviceWarning, DeviceWarning.id == WarningNotification.warning_id)
        .where(WarningNotification.status == "scheduled")
    )
    scheduled_by_level = {
        int(level): int(count)
        for level, count in db.execute(
            pending.where(DeviceWarning.status == "active")
            .group_by(WarningNotification.level)
            .order_by(WarningNotification.level.asc())
        ).all()
    }
    by_status["scheduled"] = sum(scheduled_by_level.values())
    dropped = sum(
        int(count)
        for _level, count in db.execute(
            pending.where(DeviceWarning.status != "active").group_by(WarningNotification.level)
        ).all()
    )
    overdue = (
        db.scalar(
            select(func.count(WarningNotification.id))
            .join(DeviceWarning, DeviceWarning.id == WarningNotification.warning_id)
            .where(
                WarningNotification.status == "scheduled",
                WarningNotification.send_time <= now,
                DeviceWarning.status == "active",
            )
        )
        or 0
    )
    return QueueCounts(
        by_status=by_status,
        scheduled_by_level=scheduled_by_level,
        overdue=int(overdue),
        dropped=dropped,
    )


def get_notification_stats(db: Session, *, since: datetime | None = None) -> dict[str, Any]:
    statement = select(
        func.count(WarningNotification.id),
        func.sum(case((WarningNotification.status == "sent", 1), else_=0)),
        func.sum(case((WarningNotification.status == "failed", 1), else_=0)),
        func.avg(WarningNotification.level),
    )
    if since is not None:
        statement = statement.where(WarningNotification.send_time >= since)
    total, sent, failed, avg_level = db.execute(statement).one()
    return {
        "total": int(total or 0),
        "sent": int(sent or 0),
        "failed": int(failed or 0),
        "avg_level": round(float(avg_level), 2) if avg_level is not None else None,
    }
