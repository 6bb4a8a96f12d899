from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Event, Lock, Thread
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings
from app.core.errors import WarningNotFoundError
from app.db.models import DeviceWarning, WarningNotification
from app.repositories.notifications import (
    DueNotification,
    delete_finished_notifications_before,
    get_notification,
    get_queue_counts,
    list_due_notifications,
    list_notifications_for_warning,
    mark_notification,
    schedule_notifications,
)
from app.repositories.warnings import delete_closed_warnings_before, get_warning
from app.services.notifier import NotificationEvent, Notifier, NotifyResult


@dataclass
class SweepResult:
    started_at: datetime
    due: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    busy: bool = False
    notification_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "due": self.due,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "busy": self.busy,
            "notification_ids": list(self.notification_ids),
        }


class EscalationService:
    """Schedules per-warning notification levels and sends them when due.

    Entries are written with the warning they belong to. Sending happens on
    the sweep thread (or synchronously for level 1 right after creation) and
    is serialized by a dispatch lock so each entry is sent at most once.
    Entries of warnings that are no longer active are never sent.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        notifier: Notifier,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._notifier = notifier
        self._logger = logging.getLogger("app.escalation")

        self._stop_event = Event()
        self._thread: Thread | None = None
        self._dispatch_lock = Lock()

        self._lock = Lock()
        self._running = False
        self._last_sweep_ts: datetime | None = None
        self._last_housekeeping_ts: datetime | None = None
        self._next_housekeeping_ts: datetime | None = None
        self._last_error: str | None = None
        self._last_status: str | None = None
        self._sent_total = 0
        self._failed_total = 0

    def start(self) -> None:
        if not self._settings.escalation_enabled:
            self._logger.info("escalation disabled by configuration")
            return
        with self._lock:
            if self._running:
                return
            self._running = True
            self._next_housekeeping_ts = datetime.now(timezone.utc)
        self._stop_event.clear()
        self._thread = Thread(target=self._loop, name="escalation-sweep", daemon=True)
        self._thread.start()
        self._logger.info(
            "started escalation sweep interval=%ss send_delay=%ss levels=%s",
            self._settings.escalation_sweep_seconds,
            self._settings.escalation_send_delay_seconds,
            self._settings.escalation_level_delays(),
        )

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        with self._lock:
            self._running = False

    def schedule(self, db: Session, warning: DeviceWarning) -> list[WarningNotification]:
        """Add every escalation level for a new warning to the open transaction."""
        entries = schedule_notifications(
            db,
            warning,
            level_delays=self._settings.escalation_level_delays(),
        )
        self._logger.info(
            "scheduled escalation warning_id=%s levels=%s",
            warning.id,
            [entry.level for entry in entries],
        )
        return entries

    def send_initial(self, warning_id: int, *, now: datetime | None = None) -> SweepResult:
        """Send whatever is already due for one freshly created warning (level 1)."""
        started = _to_utc(now or datetime.now(timezone.utc))
        result = SweepResult(started_at=started)
        if not self._settings.escalation_enabled:
            return result
        with self._dispatch_lock:
            with self._session_factory() as db:
                due = list_due_notifications(db, now=started, warning_id=warning_id)
            self._dispatch(due, now=started, result=result, pause_between=False)
        return result

    def sweep(self, *, now: datetime | None = None) -> SweepResult:
        started = _to_utc(now or datetime.now(timezone.utc))
        result = SweepResult(started_at=started)
        if not self._dispatch_lock.acquire(blocking=False):
            self._logger.info("escalation sweep skipped, dispatch already running")
            result.busy = True
            return result
        try:
            with self._session_factory() as db:
                due = list_due_notifications(db, now=started)
            self._dispatch(due, now=started, result=result, pause_between=True)
        finally:
            self._dispatch_lock.release()

        with self._lock:
            self._last_sweep_ts = started
            self._sent_total += result.sent
            self._failed_total += result.failed
        if result.due:
            self._logger.info(
                "escalation sweep due=%s sent=%s failed=%s skipped=%s",
                result.due,
                result.sent,
                result.failed,
                result.skipped,
            )
        return result

    def run_housekeeping(self, *, now: datetime | None = None) -> dict[str, int]:
        current = _to_utc(now or datetime.now(timezone.utc))
        warning_cutoff = current - timedelta(days=self._settings.warning_retention_days)
        notification_cutoff = current - timedelta(days=self._settings.notification_retention_days)
        with self._session_factory() as db:
            try:
                warnings_deleted = delete_closed_warnings_before(db, cutoff=warning_cutoff)
                notifications_deleted = delete_finished_notifications_before(db, cutoff=notification_cutoff)
                db.commit()
            except Exception:
                db.rollback()
                raise

        with self._lock:
            self._last_housekeeping_ts = current
        if warnings_deleted or notifications_deleted:
            self._logger.info(
                "escalation housekeeping warnings_deleted=%s notifications_deleted=%s",
                warnings_deleted,
                notifications_deleted,
            )
        return {
            "warnings_deleted": warnings_deleted,
            "notifications_deleted": notifications_deleted,
        }

    def list_notifications(self, warning_id: int) -> list[WarningNotification]:
        with self._session_factory() as db:
            if get_warning(db, warning_id) is None:
                raise WarningNotFoundError(warning_id=warning_id)
            return list_notifications_for_warning(db, warning_id=warning_id)

    def get_queue_status(self, *, now: datetime | None = None) -> dict[str, Any]:
        current = _to_utc(now or datetime.now(timezone.utc))
        with self._session_factory() as db:
            counts = get_queue_counts(db, now=current)
        return {
            "generated_at": current.isoformat(),
            "by_status": {status: counts.by_status.get(status, 0) for status in ("scheduled", "sent", "failed")},
            "scheduled_by_level": counts.scheduled_by_level,
            "overdue": counts.overdue,
            "dropped": counts.dropped,
        }

    def get_status_snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "enabled": self._settings.escalation_enabled,
                "running": self._running and not self._stop_event.is_set(),
                "sweep_seconds": self._settings.escalation_sweep_seconds,
                "last_sweep_ts": _to_iso(self._last_sweep_ts),
                "last_housekeeping_ts": _to_iso(self._last_housekeeping_ts),
                "last_status": self._last_status,
                "last_error": self._last_error,
                "sent_total": self._sent_total,
                "failed_total": self._failed_total,
            }

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            now = datetime.now(timezone.utc)
            try:
                self.sweep(now=now)
                if self._housekeeping_due(now):
                    self.run_housekeeping(now=now)
                    with self._lock:
                        self._next_housekeeping_ts = now + timedelta(
                            seconds=self._settings.housekeeping_interval_seconds
                        )
                self._set_runtime_status(status="ok", error=None)
            except Exception as exc:
                self._logger.exception("escalation sweep failed")
                self._set_runtime_status(status="error", error=str(exc))

            self._stop_event.wait(float(self._settings.escalation_sweep_seconds))

    def _housekeeping_due(self, now: datetime) -> bool:
        with self._lock:
            next_ts = self._next_housekeeping_ts
        return next_ts is None or now >= next_ts

    def _dispatch(self, due: list[DueNotification], *, now: datetime, result: SweepResult, pause_between: bool) -> None:
        result.due += len(due)
        for index, item in enumerate(due):
            if self._stop_event.is_set():
                result.skipped += len(due) - index
                return
            if pause_between and index > 0 and self._settings.escalation_send_delay_seconds > 0:
                self._stop_event.wait(self._settings.escalation_send_delay_seconds)
            self._send_one(item.notification_id, now=now, result=result)

    def _send_one(self, notification_id: int, *, now: datetime, result: SweepResult) -> None:
        with self._session_factory() as db:
            entry = get_notification(db, notification_id)
            if entry is None or entry.status != "scheduled" or entry.warning.status != "active":
                result.skipped += 1
                return

            warning = entry.warning
            event = NotificationEvent(
                notification_id=int(entry.id),
                warning_id=int(warning.id),
                device_id=int(warning.device_id),
                device_name=warning.device_name,
                device_type=warning.device_type,
                warning_type=warning.warning_type,
                severity=warning.severity,
                measured_value=float(warning.measured_value),
                threshold_value=float(warning.threshold_value),
                message=warning.message,
                level=int(entry.level),
                warning_created_at=_to_utc(warning.created_at),
            )
            try:
                outcome = self._notifier.notify(event)
            except Exception as exc:
                self._logger.exception(
                    "notifier raised warning_id=%s level=%s",
                    event.warning_id,
                    event.level,
                )
                outcome = NotifyResult(success=False, error=str(exc))

            if outcome.success:
                mark_notification(db, entry, status="sent", now=now, message_id=outcome.message_id)
                result.sent += 1
            else:
                mark_notification(
                    db,
                    entry,
                    status="failed",
                    now=now,
                    error_text=outcome.error or "notifier reported failure",
                )
                result.failed += 1
                self._logger.warning(
                    "escalation send failed warning_id=%s level=%s error=%s",
                    event.warning_id,
                    event.level,
                    outcome.error,
                )
            db.commit()
        result.notification_ids.append(notification_id)

    def _set_runtime_status(self, *, status: str, error: str | None) -> None:
        with self._lock:
            self._last_status = status
            self._last_error = error


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _to_utc(value).isoformat()
