from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any

from sqlalchemy.orm import sessionmaker

from app.core.config import Settings
from app.repositories.endpoints import get_device
from app.services.reading_parser import Reading
from app.services.telemetry_store import TelemetryStoreService
from app.services.thresholds import CandidateWarning, evaluate, evaluated_types
from app.services.warning_lifecycle import ProcessOutcome, WarningLifecycleService


@dataclass
class IngestResult:
    status: str
    device_id: int
    history_id: int | None = None
    candidates: list[CandidateWarning] = field(default_factory=list)
    outcome: ProcessOutcome | None = None


class IngestPipelineService:
    """Store a reading, evaluate it and drive the warning lifecycle."""

    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        telemetry_store: TelemetryStoreService,
        warning_lifecycle: WarningLifecycleService,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._telemetry_store = telemetry_store
        self._warning_lifecycle = warning_lifecycle
        self._logger = logging.getLogger("app.ingest_pipeline")
        self._lock = Lock()
        self._recent_fingerprints: dict[str, datetime] = {}
        self._ingested_count = 0
        self._duplicate_count = 0
        self._last_ingest_ts: datetime | None = None

    def ingest(
        self,
        *,
        device_id: int,
        endpoint_id: int | None,
        reading: Reading,
    ) -> IngestResult:
        received_at = _to_utc(reading.received_at)
        if self._is_duplicate(device_id, reading, received_at):
            with self._lock:
                self._duplicate_count += 1
            self._logger.info("duplicate message skipped device_id=%s endpoint_id=%s", device_id, endpoint_id)
            return IngestResult(status="duplicate", device_id=device_id)

        with self._session_factory() as db:
            device = get_device(db, device_id)
            if device is None:
                self._logger.warning("reading for unknown device skipped device_id=%s", device_id)
                return IngestResult(status="unknown_device", device_id=device_id)
            device_type = device.device_type
            device_name = device.name

        stored = self._telemetry_store.merge_and_store(
            device_id,
            reading,
            endpoint_id=endpoint_id,
            received_at=received_at,
        )
        candidates = evaluate(device_type, reading)
        outcome = self._warning_lifecycle.process(
            device_id,
            device_type,
            candidates,
            evaluated_types=evaluated_types(device_type, reading),
            device_name=device_name,
            now=received_at,
        )

        with self._lock:
            self._ingested_count += 1
            self._last_ingest_ts = received_at
        return IngestResult(
            status="stored",
            device_id=device_id,
            history_id=stored.history_id,
            candidates=candidates,
            outcome=outcome,
        )

    def get_status_snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "ingested_count": self._ingested_count,
                "duplicate_count": self._duplicate_count,
                "last_ingest_ts": self._last_ingest_ts.isoformat() if self._last_ingest_ts else None,
                "dedup_window_seconds": self._settings.ingest_dedup_window_seconds,
            }

    def _is_duplicate(self, device_id: int, reading: Reading, received_at: datetime) -> bool:
        window_seconds = self._settings.ingest_dedup_window_seconds
        if window_seconds <= 0:
            return False
        fingerprint = _fingerprint(device_id, reading.raw)
        window = timedelta(seconds=window_seconds)
        with self._lock:
            self._recent_fingerprints = {
                key: seen_at
                for key, seen_at in self._recent_fingerprints.items()
                if received_at - seen_at < window
            }
            if fingerprint in self._recent_fingerprints:
                return True
            self._recent_fingerprints[fingerprint] = received_at
        return False


def _fingerprint(device_id: int, payload: dict[str, Any]) -> str:
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.md5(f"{device_id}:{encoded}".encode("utf-8")).hexdigest()


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
