from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest import TestCase

from app.repositories.notifications import list_notifications_for_warning
from app.repositories.telemetry import count_history, get_snapshot
from app.repositories.warnings import list_warnings_for_device
from app.services.connection_manager import ConnectionManager
from app.services.escalation import EscalationService
from app.services.ingest_pipeline import IngestPipelineService
from app.services.telemetry_store import TelemetryStoreService
from app.services.warning_lifecycle import WarningLifecycleService

from db_support import RecordingNotifier, add_device, add_endpoint, make_session_factory, make_settings, reading
from mqtt_fakes import FakeClient

T0 = datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)


def _build_pipeline(session_factory, settings, notifier):
    escalation = EscalationService(settings=settings, session_factory=session_factory, notifier=notifier)
    lifecycle = WarningLifecycleService(settings=settings, session_factory=session_factory, escalation=escalation)
    return IngestPipelineService(
        settings=settings,
        session_factory=session_factory,
        telemetry_store=TelemetryStoreService(session_factory=session_factory),
        warning_lifecycle=lifecycle,
    )


class IngestPipelineTests(TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        self.device_id = add_device(self.session_factory)
        self.notifier = RecordingNotifier()

    def test_duplicate_payload_within_window_is_skipped(self) -> None:
        pipeline = _build_pipeline(self.session_factory, make_settings(ingest_dedup_window_seconds=10), self.notifier)

        first = pipeline.ingest(device_id=self.device_id, endpoint_id=None, reading=reading({"voltage": 220.0}, received_at=T0))
        second = pipeline.ingest(
            device_id=self.device_id,
            endpoint_id=None,
            reading=reading({"voltage": 220.0}, received_at=T0 + timedelta(seconds=5)),
        )
        third = pipeline.ingest(
            device_id=self.device_id,
            endpoint_id=None,
            reading=reading({"voltage": 220.0}, received_at=T0 + timedelta(seconds=16)),
        )

        self.assertEqual([first.status, second.status, third.status], ["stored", "duplicate", "stored"])
        with self.session_factory() as db:
            self.assertEqual(count_history(db, device_id=self.device_id), 2)

    def test_unknown_device_is_skipped(self) -> None:
        pipeline = _build_pipeline(self.session_factory, make_settings(), self.notifier)

        result = pipeline.ingest(device_id=999, endpoint_id=None, reading=reading({"voltage": 220.0}))

        self.assertEqual(result.status, "unknown_device")

    def test_breach_is_evaluated_against_device_type(self) -> None:
        pump_id = add_device(self.session_factory, name="CO2 Pump", device_type="co2_pump", serial_number="SN-PUMP")
        pipeline = _build_pipeline(self.session_factory, make_settings(), self.notifier)

        result = pipeline.ingest(device_id=pump_id, endpoint_id=None, reading=reading({"power": 260.0}))

        self.assertEqual([candidate.warning_type for candidate in result.candidates], ["power_warning"])
        self.assertEqual(len(result.outcome.created), 1)
        self.assertEqual(self.notifier.events[0].device_name, "CO2 Pump")


class EndToEndScenarioTests(TestCase):
    """Endpoint message through storage, warning creation, escalation and resolution."""

    def test_breach_then_recovery(self) -> None:
        session_factory = make_session_factory()
        device_id = add_device(session_factory)
        endpoint_id = add_endpoint(session_factory, device_id=device_id)
        settings = make_settings()
        notifier = RecordingNotifier()
        clients = []

        def client_factory(client_id: str):
            client = FakeClient(client_id)
            clients.append(client)
            return client

        manager = ConnectionManager(
            settings=settings,
            session_factory=session_factory,
            ingest_pipeline=_build_pipeline(session_factory, settings, notifier),
            client_factory=client_factory,
            timer_factory=lambda delay, callback: SimpleNamespace(start=lambda: None, cancel=lambda: None),
        )
        manager.initialize_all()
        client = clients[0]
        client.fire_connect()

        client.fire_message(json.dumps({"voltage": 300, "current": 0.4, "timestamp": "10:00:00 01/01/2025"}).encode())

        with session_factory() as db:
            snapshot = get_snapshot(db, device_id=device_id)
            warnings = list_warnings_for_device(db, device_id=device_id)
            entries = list_notifications_for_warning(db, warning_id=warnings[0].id)
            self.assertEqual(count_history(db, device_id=device_id), 1)
        self.assertEqual(snapshot.voltage, 300.0)
        self.assertEqual(snapshot.endpoint_id, endpoint_id)
        self.assertEqual(snapshot.device_ts, datetime(2025, 1, 1, 10, 0, 0))
        self.assertEqual([(item.warning_type, item.severity, item.status) for item in warnings], [("voltage_high", "major", "active")])
        self.assertEqual(entries[0].status, "sent")
        self.assertEqual([event.level for event in notifier.events], [1])

        client.fire_message(json.dumps({"voltage": 220}).encode())

        with session_factory() as db:
            snapshot = get_snapshot(db, device_id=device_id)
            warnings = list_warnings_for_device(db, device_id=device_id)
            self.assertEqual(count_history(db, device_id=device_id), 2)
        self.assertEqual(snapshot.voltage, 220.0)
        self.assertEqual(snapshot.current, 0.4)
        self.assertEqual(warnings[0].status, "resolved")
        manager.shutdown()
