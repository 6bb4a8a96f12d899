from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.core.errors import TelemetryStoreError
from app.repositories.telemetry import (
    append_history,
    append_raw_message,
    get_snapshot,
    merge_reading,
    upsert_snapshot,
)
from app.services.reading_parser import Reading


@dataclass(frozen=True)
class StoredReading:
    device_id: int
    history_id: int
    merged: dict[str, Any]
    first_record: bool
    stored_at: datetime


class TelemetryStoreService:
    def __init__(self, *, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory
        self._logger = logging.getLogger("app.telemetry_store")
        self._locks_guard = Lock()
        self._device_locks: dict[int, Lock] = {}
        self._stored_count = 0
        self._failed_count = 0
        self._last_error: str | None = None

    def merge_and_store(
        self,
        device_id: int,
        reading: Reading,
        *,
        endpoint_id: int | None,
        received_at: datetime | None = None,
    ) -> StoredReading:
        """Merge a partial reading into the device snapshot and append history.

        Snapshot, history and raw message land in one transaction. Any failure
        rolls back all three and raises ``TelemetryStoreError``.
        """
        stored_at = _to_utc(received_at or reading.received_at or datetime.now(timezone.utc))
        with self._device_lock(device_id):
            with self._session_factory() as db:
                try:
                    prior = get_snapshot(db, device_id=device_id, for_update=True)
                    merged = merge_reading(prior, reading.values)
                    history = append_history(
                        db,
                        device_id=device_id,
                        endpoint_id=endpoint_id,
                        merged=merged,
                        device_ts=reading.device_ts,
                        ingested_at=stored_at,
                    )
                    append_raw_message(
                        db,
                        device_id=device_id,
                        endpoint_id=endpoint_id,
                        payload_json=dict(reading.raw),
                        received_at=stored_at,
                    )
                    upsert_snapshot(
                        db,
                        snapshot=prior,
                        device_id=device_id,
                        endpoint_id=endpoint_id,
                        merged=merged,
                        device_ts=reading.device_ts,
                        seen_at=stored_at,
                    )
                    db.commit()
                except SQLAlchemyError as exc:
                    db.rollback()
                    self._record_failure(str(exc))
                    self._logger.exception("telemetry merge failed device_id=%s", device_id)
                    raise TelemetryStoreError(device_id=device_id, detail=str(exc)) from exc

        with self._locks_guard:
            self._stored_count += 1
        self._logger.debug(
            "telemetry stored device_id=%s history_id=%s supplied=%s",
            device_id,
            history.id,
            sorted(reading.supplied),
        )
        return StoredReading(
            device_id=device_id,
            history_id=int(history.id),
            merged=merged,
            first_record=prior is None,
            stored_at=stored_at,
        )

    def get_status_snapshot(self) -> dict[str, Any]:
        with self._locks_guard:
            return {
                "stored_count": self._stored_count,
                "failed_count": self._failed_count,
                "tracked_devices": len(self._device_locks),
                "last_error": self._last_error,
            }

    def _device_lock(self, device_id: int) -> Lock:
        with self._locks_guard:
            lock = self._device_locks.get(device_id)
            if lock is None:
                lock = Lock()
                self._device_locks[device_id] = lock
            return lock

    def _record_failure(self, error: str) -> None:
        with self._locks_guard:
            self._failed_count += 1
            self._last_error = error


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
