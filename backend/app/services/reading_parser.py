from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from app.core.errors import ReadingParseError
from app.schemas.telemetry import InboundMessage

NUMERIC_FIELDS: tuple[str, ...] = (
    "voltage",
    "current",
    "power",
    "frequency",
    "power_factor",
    "temperature",
    "humidity",
    "leak_current",
)
BOOLEAN_FIELDS: tuple[str, ...] = (
    "machine_state",
    "socket_state",
    "sensor_state",
    "over_voltage",
    "under_voltage",
)
MEASUREMENT_FIELDS: tuple[str, ...] = NUMERIC_FIELDS + BOOLEAN_FIELDS

DEVICE_TIMESTAMP_FORMAT = "%H:%M:%S %d/%m/%Y"


@dataclass(frozen=True)
class Reading:
    """A possibly partial set of measurements.

    ``values`` only ever holds the fields the device actually sent, so
    ``supplied`` is the presence marker the merge relies on. A field sent as
    JSON ``null`` counts as absent.
    """

    values: dict[str, float | bool]
    device_ts: datetime
    received_at: datetime
    timestamp_supplied: bool = False
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def supplied(self) -> frozenset[str]:
        return frozenset(self.values)

    def supplies(self, name: str) -> bool:
        return name in self.values

    def get(self, name: str) -> float | bool | None:
        return self.values.get(name)


def parse_reading(
    payload: bytes | str,
    *,
    received_at: datetime,
    logger: logging.Logger,
) -> Reading:
    text_payload = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
    try:
        decoded = json.loads(text_payload)
    except json.JSONDecodeError as exc:
        raise ReadingParseError(f"payload is not valid JSON: {exc.msg}") from exc
    if not isinstance(decoded, dict):
        raise ReadingParseError("payload is not a JSON object")

    return build_reading(decoded, received_at=received_at, logger=logger)


def build_reading(
    decoded: dict[str, Any],
    *,
    received_at: datetime,
    logger: logging.Logger,
) -> Reading:
    raw_timestamp = decoded.get("timestamp")
    try:
        message = InboundMessage.model_validate(
            {key: value for key, value in decoded.items() if key != "timestamp"}
        )
    except ValidationError as exc:
        raise ReadingParseError(f"payload fields are invalid: {exc.error_count()} error(s)") from exc

    values: dict[str, float | bool] = {}
    for name in MEASUREMENT_FIELDS:
        if name not in message.model_fields_set:
            continue
        value = getattr(message, name)
        if value is None:
            continue
        values[name] = value

    received_utc = _to_utc(received_at)
    if raw_timestamp is not None and not isinstance(raw_timestamp, str):
        logger.warning("device timestamp is not a string value=%s, using ingestion time", raw_timestamp)
        raw_timestamp = None
    device_ts = parse_device_timestamp(raw_timestamp, logger=logger)
    return Reading(
        values=values,
        device_ts=device_ts or received_utc.replace(tzinfo=None),
        received_at=received_utc,
        timestamp_supplied=device_ts is not None,
        raw=dict(decoded),
    )


def parse_device_timestamp(raw: str | None, *, logger: logging.Logger) -> datetime | None:
    """Parse ``HH:mm:ss DD/MM/YYYY`` into a naive datetime.

    The device clock is kept as-is: no timezone is attached or converted.
    """
    if raw is None:
        return None
    value = raw.strip()
    if value == "":
        return None

    try:
        return datetime.strptime(value, DEVICE_TIMESTAMP_FORMAT)
    except ValueError:
        pass

    try:
        parsed = datetime.fromisoformat(value[:-1] + "+00:00" if value.endswith("Z") else value)
    except ValueError:
        logger.warning("device timestamp is not parseable value=%s, using ingestion time", raw)
        return None
    return parsed.replace(tzinfo=None)


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
