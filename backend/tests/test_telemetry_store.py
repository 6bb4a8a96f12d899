from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest import TestCase
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from app.core.errors import TelemetryStoreError
from app.db.models import HistoryRecord, RawMessage
from app.repositories.telemetry import count_history, get_snapshot, list_history, merge_reading
from app.services.telemetry_store import TelemetryStoreService

from db_support import add_device, add_endpoint, make_session_factory, reading

T0 = datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)


class MergeReadingTests(TestCase):
    def test_first_record_sets_only_supplied_numeric_fields(self) -> None:
        merged = merge_reading(None, {"voltage": 231.0})

        self.assertEqual(merged["voltage"], 231.0)
        self.assertIsNone(merged["current"])
        self.assertIsNone(merged["power"])
        self.assertIs(merged["machine_state"], False)
        self.assertIs(merged["over_voltage"], False)


class TelemetryStoreServiceTests(TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        self.device_id = add_device(self.session_factory)
        self.endpoint_id = add_endpoint(self.session_factory, device_id=self.device_id)
        self.store = TelemetryStoreService(session_factory=self.session_factory)

    def test_merge_replaces_only_supplied_fields(self) -> None:
        self.store.merge_and_store(
            self.device_id,
            reading({"voltage": 230.0, "current": 0.5, "power": 110.0, "machine_state": True}),
            endpoint_id=self.endpoint_id,
            received_at=T0,
        )

        stored = self.store.merge_and_store(
            self.device_id,
            reading({"voltage": 5.0}, received_at=T0 + timedelta(seconds=30)),
            endpoint_id=self.endpoint_id,
            received_at=T0 + timedelta(seconds=30),
        )

        self.assertFalse(stored.first_record)
        with self.session_factory() as db:
            snapshot = get_snapshot(db, device_id=self.device_id)
        self.assertEqual(snapshot.voltage, 5.0)
        self.assertEqual(snapshot.current, 0.5)
        self.assertEqual(snapshot.power, 110.0)
        self.assertTrue(snapshot.machine_state)

    def test_history_rows_are_immutable_and_match_snapshot(self) -> None:
        self.store.merge_and_store(
            self.device_id,
            reading({"voltage": 230.0, "current": 0.5}),
            endpoint_id=self.endpoint_id,
            received_at=T0,
        )
        self.store.merge_and_store(
            self.device_id,
            reading({"current": 0.7}),
            endpoint_id=self.endpoint_id,
            received_at=T0 + timedelta(minutes=1),
        )

        with self.session_factory() as db:
            history = list(reversed(list_history(db, device_id=self.device_id)))
            snapshot = get_snapshot(db, device_id=self.device_id)
            self.assertEqual(count_history(db, device_id=self.device_id), 2)
            raw_count = db.query(RawMessage).filter(RawMessage.device_id == self.device_id).count()

        self.assertEqual(raw_count, 2)
        self.assertEqual((history[0].voltage, history[0].current), (230.0, 0.5))
        self.assertEqual((history[1].voltage, history[1].current), (230.0, 0.7))
        self.assertEqual((snapshot.voltage, snapshot.current), (history[1].voltage, history[1].current))

    def test_first_record_uses_neutral_booleans(self) -> None:
        stored = self.store.merge_and_store(
            self.device_id,
            reading({"power": 80.0}),
            endpoint_id=self.endpoint_id,
            received_at=T0,
        )

        self.assertTrue(stored.first_record)
        with self.session_factory() as db:
            snapshot = get_snapshot(db, device_id=self.device_id)
        self.assertIsNone(snapshot.voltage)
        self.assertFalse(snapshot.socket_state)
        self.assertEqual(snapshot.power, 80.0)

    def test_device_timestamp_is_stored_as_sent(self) -> None:
        self.store.merge_and_store(
            self.device_id,
            reading({"voltage": 230.0, "timestamp": "10:00:00 01/01/2025"}),
            endpoint_id=self.endpoint_id,
            received_at=T0 + timedelta(hours=3),
        )

        with self.session_factory() as db:
            snapshot = get_snapshot(db, device_id=self.device_id)
        self.assertEqual(snapshot.device_ts, datetime(2025, 1, 1, 10, 0, 0))

    def test_failure_rolls_back_history_and_snapshot(self) -> None:
        self.store.merge_and_store(
            self.device_id,
            reading({"voltage": 230.0}),
            endpoint_id=self.endpoint_id,
            received_at=T0,
        )

        with patch(
            "app.services.telemetry_store.upsert_snapshot",
            side_effect=OperationalError("UPDATE device_snapshots", {}, Exception("disk full")),
        ):
            with self.assertRaises(TelemetryStoreError):
                self.store.merge_and_store(
                    self.device_id,
                    reading({"voltage": 250.0}),
                    endpoint_id=self.endpoint_id,
                    received_at=T0 + timedelta(minutes=1),
                )

        with self.session_factory() as db:
            snapshot = get_snapshot(db, device_id=self.device_id)
            history_count = db.query(HistoryRecord).count()
        self.assertEqual(snapshot.voltage, 230.0)
        self.assertEqual(history_count, 1)
        self.assertEqual(self.store.get_status_snapshot()["failed_count"], 1)
