from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock, Timer
from typing import Any

import paho.mqtt.client as mqtt
from sqlalchemy.orm import sessionmaker

from app.core.config import Settings
from app.core.errors import (
    EndpointConfigError,
    EndpointNotConnectedError,
    EndpointNotFoundError,
    ReadingParseError,
)
from app.db.models import IngestionEndpoint
from app.repositories.endpoints import get_endpoint, list_enabled_endpoints, update_endpoint_status
from app.services.ingest_pipeline import IngestPipelineService
from app.services.reading_parser import Reading, parse_reading

ClientFactory = Callable[[str], Any]
TimerFactory = Callable[[float, Callable[[], None]], Any]
Listener = Callable[["ConnectionEvent"], None]


@dataclass(frozen=True)
class EndpointConfig:
    id: int
    code: str
    name: str
    host: str | None
    port: int
    topic: str | None
    qos: int
    retain: bool
    keepalive_seconds: int
    username: str | None
    password: str | None
    client_id: str
    device_id: int | None

    @classmethod
    def from_model(cls, endpoint: IngestionEndpoint, settings: Settings) -> "EndpointConfig":
        return cls(
            id=int(endpoint.id),
            code=endpoint.code,
            name=endpoint.name,
            host=_clean_str(endpoint.broker_host),
            port=int(endpoint.broker_port or settings.mqtt_default_port),
            topic=_clean_str(endpoint.topic),
            qos=int(endpoint.qos or 0),
            retain=bool(endpoint.retain),
            keepalive_seconds=int(endpoint.keepalive_seconds or settings.mqtt_default_keepalive_seconds),
            username=_clean_str(endpoint.username),
            password=endpoint.password,
            client_id=_clean_str(endpoint.client_id) or f"{settings.mqtt_client_id_prefix}-{endpoint.code}",
            device_id=int(endpoint.device_id) if endpoint.device_id is not None else None,
        )

    def validate(self) -> None:
        if self.host is None:
            raise EndpointConfigError(endpoint_id=self.id, detail="broker host is missing")
        if self.topic is None:
            raise EndpointConfigError(endpoint_id=self.id, detail="topic is missing")
        if self.qos not in (0, 1, 2):
            raise EndpointConfigError(endpoint_id=self.id, detail=f"invalid qos {self.qos}")
        if not 1 <= self.port <= 65535:
            raise EndpointConfigError(endpoint_id=self.id, detail=f"invalid port {self.port}")


@dataclass(frozen=True)
class ConnectionEvent:
    kind: str
    endpoint_id: int
    endpoint_code: str
    status: str
    at: datetime
    detail: str | None = None
    attempt: int | None = None
    delay_seconds: float | None = None


class _EndpointWorker:
    """One endpoint's client plus its connection state machine.

    State is guarded by ``_lock``; client teardown and callbacks into the
    manager always happen outside it, since paho callbacks take the same lock
    from the network thread.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        config: EndpointConfig,
        client_factory: ClientFactory,
        timer_factory: TimerFactory,
        on_reading: Callable[[EndpointConfig, Reading], None],
        emit: Callable[[ConnectionEvent], None],
        persist_status: Callable[[int, str, int, str | None], None],
    ) -> None:
        self.config = config
        self._settings = settings
        self._client_factory = client_factory
        self._timer_factory = timer_factory
        self._on_reading = on_reading
        self._emit = emit
        self._persist_status = persist_status
        self._logger = logging.getLogger(f"app.connection_manager.worker.{config.code}")
        self._lock = Lock()

        self._client: Any | None = None
        self._timer: Any | None = None
        self._stopped = True
        self._status = "disconnected"
        self._attempts = 0
        self._last_error: str | None = None
        self._status_changed_at: datetime | None = None
        self._connected_at: datetime | None = None
        self._messages_received = 0
        self._messages_discarded = 0
        self._last_message_ts: datetime | None = None

    @property
    def status(self) -> str:
        with self._lock:
            return self._status

    def start(self) -> bool:
        with self._lock:
            if self._status in ("connecting", "connected"):
                return False
            self._stopped = False
        self._open()
        return True

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            timer, self._timer = self._timer, None
            client, self._client = self._client, None
            previous = self._status
            self._status = "disconnected"
            self._status_changed_at = _utcnow()
            attempts = self._attempts
        if timer is not None:
            timer.cancel()
        self._release_client(client)
        self._logger.info("mqtt endpoint stopped endpoint=%s previous=%s", self.config.code, previous)
        self._notify("disconnected", "disconnected", attempts=attempts, error=None, detail="explicit disconnect")

    def retry(self) -> None:
        with self._lock:
            self._stopped = False
            timer, self._timer = self._timer, None
            client, self._client = self._client, None
            self._attempts = 0
            self._status = "disconnected"
        if timer is not None:
            timer.cancel()
        self._release_client(client)
        self._logger.info("manual reconnect requested endpoint=%s", self.config.code)
        self._open()

    def mark_config_error(self, error: EndpointConfigError) -> None:
        with self._lock:
            self._stopped = True
            self._status = "error"
            self._last_error = error.detail
            self._status_changed_at = _utcnow()
            attempts = self._attempts
        self._logger.error("mqtt endpoint misconfigured endpoint=%s error=%s", self.config.code, error.detail)
        self._notify("error", "error", attempts=attempts, error=error.detail, detail=error.detail)

    def publish(self, payload: dict[str, Any]) -> tuple[bool, str | None]:
        with self._lock:
            client = self._client
            status = self._status
        if status != "connected" or client is None:
            raise EndpointNotConnectedError(endpoint_id=self.config.id, status=status)

        try:
            payload_text = json.dumps(payload, separators=(",", ":"), ensure_ascii=True)
            publish_result = client.publish(
                self.config.topic,
                payload=payload_text,
                qos=self.config.qos,
                retain=self.config.retain,
            )
            if publish_result.rc != mqtt.MQTT_ERR_SUCCESS:
                return False, f"mqtt publish rc={publish_result.rc}"
            publish_result.wait_for_publish(timeout=self._settings.mqtt_publish_timeout_seconds)
            return True, None
        except Exception as exc:
            self._logger.exception("mqtt publish failed endpoint=%s topic=%s", self.config.code, self.config.topic)
            return False, str(exc)

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "endpoint_id": self.config.id,
                "endpoint_code": self.config.code,
                "name": self.config.name,
                "device_id": self.config.device_id,
                "status": self._status,
                "connected": self._status == "connected",
                "broker_host": self.config.host,
                "broker_port": self.config.port,
                "topic": self.config.topic,
                "qos": self.config.qos,
                "client_id": self.config.client_id,
                "reconnect_attempts": self._attempts,
                "reconnect_pending": self._timer is not None,
                "last_error": self._last_error,
                "status_changed_at": _to_iso(self._status_changed_at),
                "connected_at": _to_iso(self._connected_at),
                "messages_received": self._messages_received,
                "messages_discarded": self._messages_discarded,
                "last_message_ts": _to_iso(self._last_message_ts),
            }

    def _open(self) -> None:
        client = self._client_factory(self.config.client_id)
        if self.config.username is not None:
            client.username_pw_set(self.config.username, self.config.password)
        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        with self._lock:
            if self._stopped:
                return
            self._client = client
            self._status = "connecting"
            self._status_changed_at = _utcnow()
            attempts = self._attempts

        self._logger.info(
            "connecting mqtt endpoint=%s broker=%s:%s topic=%s attempt=%s",
            self.config.code,
            self.config.host,
            self.config.port,
            self.config.topic,
            attempts,
        )
        self._notify("connecting", "connecting", attempts=attempts, error=None)
        try:
            client.connect_async(
                host=self.config.host,
                port=self.config.port,
                keepalive=self.config.keepalive_seconds,
            )
            client.loop_start()
        except Exception as exc:
            self._logger.exception("mqtt connect setup failed endpoint=%s", self.config.code)
            self._handle_failure(client, f"connect setup failed: {exc}")
            return

        # stop() may have released this client while the loop was starting
        with self._lock:
            orphaned = client is not self._client or self._stopped
        if orphaned:
            self._logger.info("discarding client started after stop endpoint=%s", self.config.code)
            self._release_client(client)

    def _on_connect(
        self,
        client: mqtt.Client,
        _userdata: object,
        _flags: object,
        reason_code: object,
        _properties: object = None,
    ) -> None:
        if _is_failure(reason_code):
            self._handle_failure(client, f"connect refused: {reason_code}")
            return

        with self._lock:
            if client is not self._client or self._stopped:
                return
            self._status = "connected"
            self._attempts = 0
            self._last_error = None
            self._connected_at = _utcnow()
            self._status_changed_at = self._connected_at

        result, _mid = client.subscribe(self.config.topic, qos=self.config.qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._logger.error(
                "mqtt subscribe failed endpoint=%s topic=%s rc=%s",
                self.config.code,
                self.config.topic,
                result,
            )
        self._logger.info("mqtt connected endpoint=%s topic=%s", self.config.code, self.config.topic)
        self._notify("connected", "connected", attempts=0, error=None)

    def _on_connect_fail(self, client: mqtt.Client, _userdata: object) -> None:
        self._handle_failure(client, "connection to broker failed")

    def _on_disconnect(
        self,
        client: mqtt.Client,
        _userdata: object,
        _flags: object,
        reason_code: object,
        _properties: object = None,
    ) -> None:
        with self._lock:
            if client is not self._client or self._stopped:
                return
            self._client = None
            self._status = "disconnected"
            self._status_changed_at = _utcnow()
            attempts = self._attempts

        self._logger.warning("mqtt disconnected endpoint=%s reason=%s", self.config.code, reason_code)
        self._release_client(client)
        self._notify("disconnected", "disconnected", attempts=attempts, error=None, detail=str(reason_code))
        self._schedule_reconnect()

    def _on_message(self, _client: mqtt.Client, _userdata: object, message: mqtt.MQTTMessage) -> None:
        received_at = datetime.now(timezone.utc)
        with self._lock:
            self._messages_received += 1
            self._last_message_ts = received_at

        if self.config.device_id is None:
            self._discard(f"endpoint {self.config.code} has no assigned device")
            return

        try:
            reading = parse_reading(message.payload, received_at=received_at, logger=self._logger)
        except ReadingParseError as exc:
            self._discard(str(exc))
            return

        try:
            self._on_reading(self.config, reading)
        except Exception:
            self._logger.exception(
                "ingest failed endpoint=%s device_id=%s",
                self.config.code,
                self.config.device_id,
            )

    def _discard(self, reason: str) -> None:
        with self._lock:
            self._messages_discarded += 1
            status = self._status
        self._logger.warning("message discarded endpoint=%s reason=%s", self.config.code, reason)
        self._emit(self._event("discarded", status, detail=reason))

    def _handle_failure(self, client: Any, error: str) -> None:
        with self._lock:
            if client is not self._client or self._stopped:
                return
            self._client = None
            self._status = "error"
            self._last_error = error
            self._status_changed_at = _utcnow()
            attempts = self._attempts

        self._logger.error("mqtt endpoint error endpoint=%s error=%s", self.config.code, error)
        self._release_client(client)
        self._notify("error", "error", attempts=attempts, error=error, detail=error)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        max_attempts = self._settings.mqtt_max_reconnect_attempts
        with self._lock:
            if self._stopped or self._timer is not None:
                return
            if self._attempts >= max_attempts:
                self._status = "disconnected"
                self._status_changed_at = _utcnow()
                attempts = self._attempts
                status = self._status
                exhausted = True
            else:
                exhausted = False
                delay = self._settings.mqtt_reconnect_base_seconds * (2 ** self._attempts)
                self._attempts += 1
                attempts = self._attempts
                status = self._status
                timer = self._timer_factory(delay, self._reconnect)
                self._timer = timer

        if exhausted:
            self._logger.warning(
                "reconnect attempts exhausted endpoint=%s attempts=%s, waiting for manual retry",
                self.config.code,
                attempts,
            )
            self._notify("disconnected", status, attempts=attempts, error=None, detail="reconnect attempts exhausted")
            return

        timer.daemon = True
        timer.start()
        self._logger.info(
            "reconnect scheduled endpoint=%s attempt=%s delay=%ss",
            self.config.code,
            attempts,
            delay,
        )
        self._persist(status, attempts)
        self._emit(self._event("reconnect_scheduled", status, attempt=attempts, delay_seconds=delay))

    def _reconnect(self) -> None:
        with self._lock:
            self._timer = None
            if self._stopped:
                return
        self._open()

    def _release_client(self, client: Any | None) -> None:
        if client is None:
            return
        client.on_connect = None
        client.on_connect_fail = None
        client.on_disconnect = None
        client.on_message = None
        try:
            client.loop_stop()
            client.disconnect()
        except Exception:
            self._logger.exception("mqtt client teardown failed endpoint=%s", self.config.code)

    def _notify(
        self,
        kind: str,
        status: str,
        *,
        attempts: int,
        error: str | None,
        detail: str | None = None,
    ) -> None:
        self._persist(status, attempts, error)
        self._emit(self._event(kind, status, detail=detail))

    def _persist(self, status: str, attempts: int, error: str | None = None) -> None:
        with self._lock:
            last_error = error if error is not None else self._last_error
        self._persist_status(self.config.id, status, attempts, last_error)

    def _event(
        self,
        kind: str,
        status: str,
        *,
        detail: str | None = None,
        attempt: int | None = None,
        delay_seconds: float | None = None,
    ) -> ConnectionEvent:
        return ConnectionEvent(
            kind=kind,
            endpoint_id=self.config.id,
            endpoint_code=self.config.code,
            status=status,
            at=_utcnow(),
            detail=detail,
            attempt=attempt,
            delay_seconds=delay_seconds,
        )


class ConnectionManager:
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        ingest_pipeline: IngestPipelineService | None,
        client_factory: ClientFactory | None = None,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._ingest_pipeline = ingest_pipeline
        self._client_factory = client_factory or _default_client_factory
        self._timer_factory = timer_factory or Timer
        self._logger = logging.getLogger("app.connection_manager")
        self._lock = Lock()
        self._workers: dict[int, _EndpointWorker] = {}
        self._listeners: list[Listener] = []

    def initialize_all(self) -> int:
        with self._session_factory() as db:
            configs = [EndpointConfig.from_model(endpoint, self._settings) for endpoint in list_enabled_endpoints(db)]

        started = 0
        for config in configs:
            if self._connect_config(config):
                started += 1
        self._logger.info("initialized mqtt endpoints total=%s started=%s", len(configs), started)
        return started

    def connect(self, endpoint: IngestionEndpoint | EndpointConfig) -> dict[str, Any]:
        config = endpoint if isinstance(endpoint, EndpointConfig) else EndpointConfig.from_model(endpoint, self._settings)
        self._connect_config(config)
        return self.get_status(config.id) or {}

    def disconnect(self, endpoint_id: int) -> dict[str, Any]:
        with self._lock:
            worker = self._workers.get(endpoint_id)
        if worker is None:
            raise EndpointNotFoundError(endpoint_id=endpoint_id)
        worker.stop()
        return worker.get_status()

    def retry(self, endpoint_id: int) -> dict[str, Any]:
        with self._session_factory() as db:
            endpoint = get_endpoint(db, endpoint_id)
            config = EndpointConfig.from_model(endpoint, self._settings) if endpoint is not None else None
        if config is None:
            raise EndpointNotFoundError(endpoint_id=endpoint_id)

        with self._lock:
            worker = self._workers.get(endpoint_id)
            if worker is not None and worker.config != config:
                self._workers.pop(endpoint_id)
                stale = worker
                worker = None
            else:
                stale = None
        if stale is not None:
            stale.stop()
        if worker is None:
            self._connect_config(config)
        else:
            try:
                config.validate()
            except EndpointConfigError as exc:
                worker.mark_config_error(exc)
            else:
                worker.retry()
        return self.get_status(endpoint_id) or {}

    def publish(self, endpoint_id: int, payload: dict[str, Any]) -> tuple[bool, str | None]:
        with self._lock:
            worker = self._workers.get(endpoint_id)
        if worker is None:
            raise EndpointNotFoundError(endpoint_id=endpoint_id)
        return worker.publish(payload)

    def get_status(self, endpoint_id: int) -> dict[str, Any] | None:
        with self._lock:
            worker = self._workers.get(endpoint_id)
        return worker.get_status() if worker is not None else None

    def get_all_statuses(self) -> list[dict[str, Any]]:
        with self._lock:
            workers = list(self._workers.values())
        statuses = [worker.get_status() for worker in workers]
        return sorted(statuses, key=lambda item: (str(item["endpoint_code"]), int(item["endpoint_id"])))

    def get_summary(self) -> dict[str, Any]:
        statuses = self.get_all_statuses()
        counts: dict[str, int] = {}
        for item in statuses:
            counts[item["status"]] = counts.get(item["status"], 0) + 1
        return {
            "endpoints_total": len(statuses),
            "endpoints_connected": counts.get("connected", 0),
            "by_status": counts,
        }

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def shutdown(self) -> None:
        with self._lock:
            workers = list(self._workers.values())
            self._workers = {}
        for worker in workers:
            worker.stop()
        self._logger.info("connection manager shut down endpoints=%s", len(workers))

    def _connect_config(self, config: EndpointConfig) -> bool:
        with self._lock:
            worker = self._workers.get(config.id)
            if worker is None:
                worker = _EndpointWorker(
                    settings=self._settings,
                    config=config,
                    client_factory=self._client_factory,
                    timer_factory=self._timer_factory,
                    on_reading=self._handle_reading,
                    emit=self._emit,
                    persist_status=self._persist_status,
                )
                self._workers[config.id] = worker

        try:
            config.validate()
        except EndpointConfigError as exc:
            worker.mark_config_error(exc)
            return False
        return worker.start()

    def _handle_reading(self, config: EndpointConfig, reading: Reading) -> None:
        if self._ingest_pipeline is None or config.device_id is None:
            return
        result = self._ingest_pipeline.ingest(
            device_id=config.device_id,
            endpoint_id=config.id,
            reading=reading,
        )
        with self._lock:
            worker = self._workers.get(config.id)
        status = worker.status if worker is not None else "connected"
        self._emit(
            ConnectionEvent(
                kind="reading",
                endpoint_id=config.id,
                endpoint_code=config.code,
                status=status,
                at=_utcnow(),
                detail=result.status,
            )
        )

    def _emit(self, event: ConnectionEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                self._logger.exception("connection listener failed kind=%s endpoint=%s", event.kind, event.endpoint_code)

    def _persist_status(self, endpoint_id: int, status: str, attempts: int, last_error: str | None) -> None:
        try:
            with self._session_factory() as db:
                update_endpoint_status(
                    db,
                    endpoint_id=endpoint_id,
                    status=status,
                    reconnect_attempts=attempts,
                    last_error=last_error,
                    changed_at=_utcnow(),
                )
        except Exception:
            self._logger.exception("endpoint status persist failed endpoint_id=%s status=%s", endpoint_id, status)


def _default_client_factory(client_id: str) -> mqtt.Client:
    return mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id, clean_session=True)


def _is_failure(reason_code: object) -> bool:
    is_failure = getattr(reason_code, "is_failure", None)
    if is_failure is not None:
        return bool(is_failure)
    return bool(reason_code)


def _clean_str(value: str | None) -> str | None:
    if value is None:
        return None
    text_value = str(value).strip()
    return text_value or None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
