from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.db.models import DeviceSnapshot, HistoryRecord, RawMessage
from app.services.reading_parser import BOOLEAN_FIELDS, MEASUREMENT_FIELDS, NUMERIC_FIELDS


def get_snapshot(db: Session, *, device_id: int, for_update: bool = False) -> DeviceSnapshot | None:
    statement = select(DeviceSnapshot).where(DeviceSnapshot.device_id == device_id)
    if for_update:
        statement = statement.with_for_update()
    return db.scalars(statement).first()


def merge_reading(
    prior: DeviceSnapshot | None,
    values: Mapping[str, float | bool],
) -> dict[str, Any]:
    """Combine the supplied fields with the prior snapshot.

    A supplied field always wins. Unsupplied fields carry the prior value
    forward; without a prior snapshot numeric fields stay ``None`` and boolean
    flags fall back to ``False``.
    """
    merged: dict[str, Any] = {}
    for name in NUMERIC_FIELDS:
        if name in values:
            merged[name] = float(values[name])
        elif prior is not None:
            merged[name] = getattr(prior, name)
        else:
            merged[name] = None
    for name in BOOLEAN_FIELDS:
        if name in values:
            merged[name] = bool(values[name])
        elif prior is not None:
            merged[name] = bool(getattr(prior, name))
        else:
            merged[name] = False
    return merged


def append_history(
    db: Session,
    *,
    device_id: int,
    endpoint_id: int | None,
    merged: Mapping[str, Any],
    device_ts: datetime | None,
    ingested_at: datetime,
) -> HistoryRecord:
    record = HistoryRecord(
        device_id=device_id,
        endpoint_id=endpoint_id,
        device_ts=device_ts,
        ingested_at=ingested_at,
        **{name: merged[name] for name in MEASUREMENT_FIELDS},
    )
    db.add(record)
    db.flush()
    return record


def append_raw_message(
    db: Session,
    *,
    device_id: int,
    endpoint_id: int | None,
    payload_json: dict[str, Any],
    received_at: datetime,
) -> RawMessage:
    row = RawMessage(
        device_id=device_id,
        endpoint_id=endpoint_id,
        payload_json=payload_json,
        received_at=received_at,
    )
    db.add(row)
    db.flush()
    return row


def upsert_snapshot(
    db: Session,
    *,
    snapshot: DeviceSnapshot | None,
    device_id: int,
    endpoint_id: int | None,
    merged: Mapping[str, Any],
    device_ts: datetime | None,
    seen_at: datetime,
) -> DeviceSnapshot:
    if snapshot is None:
        snapshot = DeviceSnapshot(device_id=device_id)
        db.add(snapshot)

    for name in MEASUREMENT_FIELDS:
        setattr(snapshot, name, merged[name])
    snapshot.endpoint_id = endpoint_id
    snapshot.device_ts = device_ts
    snapshot.is_connected = True
    snapshot.last_seen_at = seen_at
    snapshot.updated_at = seen_at
    db.flush()
    return snapshot


def list_history(db: Session, *, device_id: int, limit: int = 100) -> list[HistoryRecord]:
    return list(
        db.scalars(
            select(HistoryRecord)
            .where(HistoryRecord.device_id == device_id)
            .order_by(HistoryRecord.ingested_at.desc(), HistoryRecord.id.desc())
            .limit(limit)
        )
    )


def count_history(db: Session, *, device_id: int) -> int:
    return db.scalar(select(func.count(HistoryRecord.id)).where(HistoryRecord.device_id == device_id)) or 0
