from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class WarningNotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    level: int
    send_time: datetime
    status: str
    sent_at: datetime | None
    message_id: str | None
    error_text: str | None


class WarningResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    device_id: int
    device_type: str
    device_name: str | None
    warning_type: str
    severity: str
    measured_value: float
    threshold_value: float
    message: str
    status: str
    resolution_notes: str | None
    created_at: datetime
    updated_at: datetime
    acknowledged_at: datetime | None
    resolved_at: datetime | None


class WarningStatusRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)


class WarningStatusChangeRequest(BaseModel):
    status: Literal["acknowledged", "resolved", "ignored"]
    notes: str | None = Field(default=None, max_length=2000)


class WarningCountsResponse(BaseModel):
    total: int
    by_status: dict[str, int]
    by_severity: dict[str, int]
    by_device_type: dict[str, int]


class NotificationCountsResponse(BaseModel):
    total: int
    sent: int
    failed: int
    avg_level: float | None


class WarningStatsResponse(BaseModel):
    since: str | None
    warnings: WarningCountsResponse
    notifications: NotificationCountsResponse


class SweepResponse(BaseModel):
    started_at: str
    due: int
    sent: int
    failed: int
    skipped: int
    busy: bool
    notification_ids: list[int]


class QueueStatusResponse(BaseModel):
    generated_at: str
    by_status: dict[str, int]
    scheduled_by_level: dict[int, int]
    overdue: int
    dropped: int
