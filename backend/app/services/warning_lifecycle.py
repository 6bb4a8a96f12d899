from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings
from app.core.errors import WarningNotFoundError, WarningStateError
from app.db.models import DeviceWarning
from app.repositories.endpoints import get_device
from app.repositories.notifications import get_notification_stats
from app.repositories.warnings import (
    close_warning,
    create_warning,
    find_active_warning,
    get_warning,
    get_warning_stats,
    list_active_warnings,
    list_warnings_for_device,
    resolve_active_warning,
    update_warning,
)
from app.services.escalation import EscalationService
from app.services.thresholds import CandidateWarning

MANUAL_STATUSES = ("acknowledged", "resolved", "ignored")


@dataclass
class ProcessOutcome:
    device_id: int
    created: list[int] = field(default_factory=list)
    updated: list[int] = field(default_factory=list)
    resolved: list[int] = field(default_factory=list)
    within_cooldown: list[int] = field(default_factory=list)
    escalated: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "created": list(self.created),
            "updated": list(self.updated),
            "resolved": list(self.resolved),
            "within_cooldown": list(self.within_cooldown),
            "escalated": list(self.escalated),
        }


class WarningLifecycleService:
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        escalation: EscalationService | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._escalation = escalation
        self._logger = logging.getLogger("app.warning_lifecycle")
        self._locks_guard = Lock()
        self._device_locks: dict[int, Lock] = {}

    def process(
        self,
        device_id: int,
        device_type: str,
        candidates: list[CandidateWarning],
        *,
        evaluated_types: Iterable[str],
        device_name: str | None = None,
        now: datetime | None = None,
    ) -> ProcessOutcome:
        """Apply one evaluation cycle to the device's warnings.

        A candidate without an active warning of its type creates one and
        schedules its escalation in the same transaction. A candidate with an
        active warning updates it in place. Every evaluated type without a
        candidate resolves its active warning.
        """
        current = _to_utc(now or datetime.now(timezone.utc))
        outcome = ProcessOutcome(device_id=device_id)
        breached = {candidate.warning_type for candidate in candidates}
        to_resolve = sorted(set(evaluated_types) - breached)

        with self._device_lock(device_id):
            with self._session_factory() as db:
                try:
                    if device_name is None:
                        device = get_device(db, device_id)
                        device_name = device.name if device is not None else None
                    for candidate in candidates:
                        self._apply_candidate(
                            db,
                            device_id=device_id,
                            device_type=device_type,
                            device_name=device_name,
                            candidate=candidate,
                            now=current,
                            outcome=outcome,
                        )
                    for warning_type in to_resolve:
                        warning = resolve_active_warning(
                            db,
                            device_id=device_id,
                            warning_type=warning_type,
                            now=current,
                            notes="value back within threshold",
                        )
                        if warning is not None:
                            outcome.resolved.append(int(warning.id))
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    self._logger.exception("warning transition conflicted device_id=%s", device_id)
                    raise
                except Exception:
                    db.rollback()
                    raise

        for warning_id in outcome.created:
            self._logger.warning("warning created warning_id=%s device_id=%s", warning_id, device_id)
        for warning_id in outcome.resolved:
            self._logger.info("warning resolved warning_id=%s device_id=%s", warning_id, device_id)

        if self._escalation is not None:
            for warning_id in outcome.created:
                try:
                    self._escalation.send_initial(warning_id, now=current)
                    outcome.escalated.append(warning_id)
                except Exception:
                    self._logger.exception("initial escalation failed warning_id=%s", warning_id)
        return outcome

    def resolve(
        self,
        device_id: int,
        warning_type: str,
        *,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> DeviceWarning | None:
        current = _to_utc(now or datetime.now(timezone.utc))
        with self._device_lock(device_id):
            with self._session_factory() as db:
                warning = resolve_active_warning(
                    db,
                    device_id=device_id,
                    warning_type=warning_type,
                    now=current,
                    notes=notes,
                )
                db.commit()
        if warning is not None:
            self._logger.info("warning resolved warning_id=%s device_id=%s", warning.id, device_id)
        return warning

    def acknowledge(
        self,
        warning_id: int,
        *,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> DeviceWarning:
        return self.set_status(warning_id, "acknowledged", notes=notes, now=now)

    def set_status(
        self,
        warning_id: int,
        status: str,
        *,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> DeviceWarning:
        """Moves an active warning to a manual status; closed warnings are left alone."""
        if status not in MANUAL_STATUSES:
            raise ValueError(f"unsupported warning status '{status}'")
        current = _to_utc(now or datetime.now(timezone.utc))
        with self._session_factory() as db:
            warning = get_warning(db, warning_id)
            if warning is None:
                raise WarningNotFoundError(warning_id=warning_id)
            device_id = warning.device_id

        with self._device_lock(device_id):
            with self._session_factory() as db:
                warning = get_warning(db, warning_id)
                if warning is None:
                    raise WarningNotFoundError(warning_id=warning_id)
                if warning.status != "active":
                    raise WarningStateError(warning_id=warning_id, status=warning.status, target=status)
                close_warning(db, warning, status=status, now=current, notes=notes)
                db.commit()
                db.refresh(warning)
        self._logger.info("warning status changed warning_id=%s status=%s", warning_id, status)
        return warning

    def list_active(self, *, device_id: int | None = None) -> list[DeviceWarning]:
        with self._session_factory() as db:
            return list_active_warnings(db, device_id=device_id)

    def list_for_device(self, device_id: int, *, limit: int | None = None) -> list[DeviceWarning]:
        with self._session_factory() as db:
            return list_warnings_for_device(db, device_id=device_id, newest_first=True, limit=limit)

    def get_stats(self, *, since: datetime | None = None) -> dict[str, Any]:
        since_utc = _to_utc(since) if since is not None else None
        with self._session_factory() as db:
            return {
                "since": since_utc.isoformat() if since_utc is not None else None,
                "warnings": get_warning_stats(db, since=since_utc),
                "notifications": get_notification_stats(db, since=since_utc),
            }

    def _apply_candidate(
        self,
        db: Session,
        *,
        device_id: int,
        device_type: str,
        device_name: str | None,
        candidate: CandidateWarning,
        now: datetime,
        outcome: ProcessOutcome,
    ) -> None:
        existing = find_active_warning(db, device_id=device_id, warning_type=candidate.warning_type)
        if existing is not None:
            cooldown = timedelta(seconds=self._settings.warning_cooldown_seconds)
            within_cooldown = now - _to_utc(existing.updated_at) < cooldown
            if within_cooldown or not self._settings.warning_recreate_after_cooldown:
                update_warning(
                    db,
                    existing,
                    measured_value=candidate.measured_value,
                    message=candidate.message,
                    now=now,
                )
                outcome.updated.append(int(existing.id))
                if within_cooldown:
                    outcome.within_cooldown.append(int(existing.id))
                return
            close_warning(db, existing, status="resolved", now=now, notes="superseded after cooldown")
            db.flush()
            outcome.resolved.append(int(existing.id))

        warning = create_warning(
            db,
            device_id=device_id,
            device_type=device_type,
            device_name=device_name,
            warning_type=candidate.warning_type,
            severity=candidate.severity,
            measured_value=candidate.measured_value,
            threshold_value=candidate.threshold_value,
            message=candidate.message,
            now=now,
        )
        if self._escalation is not None:
            self._escalation.schedule(db, warning)
        outcome.created.append(int(warning.id))

    def _device_lock(self, device_id: int) -> Lock:
        with self._locks_guard:
            lock = self._device_locks.get(device_id)
            if lock is None:
                lock = Lock()
                self._device_locks[device_id] = lock
            return lock


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
