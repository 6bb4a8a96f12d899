from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class InboundMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    voltage: float | None = None
    current: float | None = None
    power: float | None = None
    frequency: float | None = None
    power_factor: float | None = None
    temperature: float | None = None
    humidity: float | None = None
    leak_current: float | None = None
    machine_state: bool | None = None
    socket_state: bool | None = None
    sensor_state: bool | None = None
    over_voltage: bool | None = None
    under_voltage: bool | None = None


class DeviceSnapshotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    device_id: int
    endpoint_id: int | None
    voltage: float | None
    current: float | None
    power: float | None
    frequency: float | None
    power_factor: float | None
    temperature: float | None
    humidity: float | None
    leak_current: float | None
    machine_state: bool
    socket_state: bool
    sensor_state: bool
    over_voltage: bool
    under_voltage: bool
    device_ts: datetime | None
    is_connected: bool
    last_seen_at: datetime
    updated_at: datetime
    last_seen_seconds: int | None = None
    status: str = "online"
