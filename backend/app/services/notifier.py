from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen
from uuid import uuid4

from app.core.config import Settings
from app.core.errors import NotifierError


@dataclass(frozen=True)
class NotificationEvent:
    notification_id: int
    warning_id: int
    device_id: int
    device_name: str | None
    device_type: str
    warning_type: str
    severity: str
    measured_value: float
    threshold_value: float
    message: str
    level: int
    warning_created_at: datetime

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["warning_created_at"] = self.warning_created_at.isoformat()
        return payload


@dataclass(frozen=True)
class NotifyResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


class Notifier(Protocol):
    def notify(self, event: NotificationEvent) -> NotifyResult: ...


class LoggingNotifier:
    """Writes each escalation to the log; used when no webhook is configured."""

    def __init__(self) -> None:
        self._logger = logging.getLogger("app.notifier")

    def notify(self, event: NotificationEvent) -> NotifyResult:
        message_id = f"log-{event.warning_id}-{event.level}-{uuid4().hex[:12]}"
        self._logger.warning(
            "warning escalation level=%s warning_id=%s device_id=%s type=%s severity=%s measured=%s threshold=%s",
            event.level,
            event.warning_id,
            event.device_id,
            event.warning_type,
            event.severity,
            event.measured_value,
            event.threshold_value,
        )
        return NotifyResult(success=True, message_id=message_id)


class WebhookNotifier:
    def __init__(self, *, url: str, timeout_seconds: float) -> None:
        self._url = url
        self._timeout_seconds = timeout_seconds
        self._logger = logging.getLogger("app.notifier")

    def notify(self, event: NotificationEvent) -> NotifyResult:
        idempotency_key = f"warning-{event.warning_id}-level-{event.level}"
        try:
            http_status, body = _send_webhook_request(
                url=self._url,
                payload=event.to_payload(),
                timeout_seconds=self._timeout_seconds,
                idempotency_key=idempotency_key,
            )
        except NotifierError as exc:
            self._logger.warning(
                "webhook notify failed warning_id=%s level=%s status=%s error=%s",
                event.warning_id,
                event.level,
                exc.http_status,
                exc,
            )
            return NotifyResult(success=False, error=str(exc))

        return NotifyResult(success=True, message_id=_message_id_from_body(body) or f"http-{http_status}-{idempotency_key}")


def build_notifier(settings: Settings) -> Notifier:
    if settings.notifier_webhook_url:
        return WebhookNotifier(
            url=settings.notifier_webhook_url,
            timeout_seconds=settings.notifier_timeout_seconds,
        )
    return LoggingNotifier()


def _send_webhook_request(
    *,
    url: str,
    payload: dict[str, Any],
    timeout_seconds: float,
    idempotency_key: str,
) -> tuple[int, str]:
    encoded = json.dumps(payload).encode("utf-8")
    request_headers = {
        "Content-Type": "application/json",
        "X-Idempotency-Key": idempotency_key,
    }

    req = Request(url=url, data=encoded, headers=request_headers, method="POST")
    try:
        with urlopen(req, timeout=max(1.0, float(timeout_seconds))) as response:
            body = response.read().decode("utf-8", errors="replace")
            if response.status < 200 or response.status >= 300:
                raise NotifierError(
                    message=f"unexpected http status {response.status}: {body}",
                    http_status=response.status,
                )
            return response.status, body
    except HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace")
        raise NotifierError(
            message=f"http error {exc.code}: {body}",
            http_status=exc.code,
        )
    except URLError as exc:
        raise NotifierError(message=f"connection error: {exc}")
    except TimeoutError as exc:
        raise NotifierError(message=f"timeout: {exc}")


def _message_id_from_body(body: str) -> str | None:
    try:
        decoded = json.loads(body)
    except json.JSONDecodeError:
        return None
    if not isinstance(decoded, dict):
        return None
    value = decoded.get("message_id") or decoded.get("id")
    return str(value) if value is not None else None
