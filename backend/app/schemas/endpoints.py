from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class EndpointStatusResponse(BaseModel):
    endpoint_id: int
    endpoint_code: str
    name: str
    device_id: int | None
    status: str
    connected: bool
    broker_host: str | None
    broker_port: int
    topic: str | None
    qos: int
    client_id: str
    reconnect_attempts: int
    reconnect_pending: bool
    last_error: str | None
    status_changed_at: str | None
    connected_at: str | None
    messages_received: int
    messages_discarded: int
    last_message_ts: str | None


class PublishRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class PublishResponse(BaseModel):
    endpoint_id: int
    published: bool
    error: str | None = None
