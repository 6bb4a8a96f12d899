from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest import TestCase

from app.core.errors import WarningNotFoundError, WarningStateError
from app.repositories.notifications import list_notifications_for_warning
from app.repositories.warnings import find_active_warning, get_warning, list_warnings_for_device
from app.services.escalation import EscalationService
from app.services.thresholds import evaluate, evaluated_types
from app.services.warning_lifecycle import WarningLifecycleService

from db_support import RecordingNotifier, add_device, make_session_factory, make_settings

T0 = datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)


class WarningLifecycleTests(TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        self.device_id = add_device(self.session_factory)
        self.notifier = RecordingNotifier()
        self._build(make_settings())

    def _build(self, settings) -> None:
        self.escalation = EscalationService(
            settings=settings,
            session_factory=self.session_factory,
            notifier=self.notifier,
        )
        self.service = WarningLifecycleService(
            settings=settings,
            session_factory=self.session_factory,
            escalation=self.escalation,
        )

    def _process(self, values: dict[str, float], *, now: datetime):
        return self.service.process(
            self.device_id,
            "display",
            evaluate("display", values),
            evaluated_types=evaluated_types("display", values),
            now=now,
        )

    def test_breach_creates_warning_with_schedule_and_sends_level_one(self) -> None:
        outcome = self._process({"voltage": 300.0}, now=T0)

        self.assertEqual(len(outcome.created), 1)
        with self.session_factory() as db:
            warning = get_warning(db, outcome.created[0])
            entries = list_notifications_for_warning(db, warning_id=warning.id)
        self.assertEqual(warning.warning_type, "voltage_high")
        self.assertEqual(warning.severity, "major")
        self.assertEqual(warning.device_name, "OR-1 Display")
        self.assertEqual([entry.level for entry in entries], [1, 2, 3, 4, 5])
        self.assertEqual([entry.status for entry in entries], ["sent", "scheduled", "scheduled", "scheduled", "scheduled"])
        self.assertEqual([event.level for event in self.notifier.events], [1])

    def test_repeated_breach_updates_in_place(self) -> None:
        first = self._process({"voltage": 300.0}, now=T0)
        second = self._process({"voltage": 310.0}, now=T0 + timedelta(seconds=30))

        self.assertEqual(second.created, [])
        self.assertEqual(second.updated, first.created)
        self.assertEqual(second.within_cooldown, first.created)
        with self.session_factory() as db:
            warnings = list_warnings_for_device(db, device_id=self.device_id)
        self.assertEqual(len(warnings), 1)
        self.assertEqual(warnings[0].measured_value, 310.0)
        self.assertEqual(len(self.notifier.events), 1)

    def test_replaying_same_input_is_idempotent(self) -> None:
        self._process({"voltage": 300.0}, now=T0)
        self._process({"voltage": 300.0}, now=T0)

        with self.session_factory() as db:
            warnings = list_warnings_for_device(db, device_id=self.device_id)
        self.assertEqual(len(warnings), 1)
        self.assertEqual(warnings[0].status, "active")

    def test_non_breaching_reading_resolves_active_warning(self) -> None:
        created = self._process({"voltage": 300.0}, now=T0).created[0]

        outcome = self._process({"voltage": 220.0}, now=T0 + timedelta(minutes=2))

        self.assertEqual(outcome.resolved, [created])
        with self.session_factory() as db:
            warning = get_warning(db, created)
        self.assertEqual(warning.status, "resolved")
        self.assertIsNotNone(warning.resolved_at)

    def test_reading_without_governed_field_does_not_resolve(self) -> None:
        created = self._process({"voltage": 300.0}, now=T0).created[0]

        outcome = self._process({"current": 0.1}, now=T0 + timedelta(minutes=2))

        self.assertEqual(outcome.resolved, [])
        with self.session_factory() as db:
            self.assertEqual(get_warning(db, created).status, "active")

    def test_tier_change_resolves_old_type_and_creates_new(self) -> None:
        high = self._process({"voltage": 300.0}, now=T0).created[0]

        outcome = self._process({"voltage": 250.0}, now=T0 + timedelta(minutes=1))

        self.assertEqual(outcome.resolved, [high])
        self.assertEqual(len(outcome.created), 1)
        with self.session_factory() as db:
            active = find_active_warning(db, device_id=self.device_id, warning_type="voltage_warning")
        self.assertIsNotNone(active)

    def test_new_breach_after_resolution_creates_new_warning(self) -> None:
        first = self._process({"voltage": 300.0}, now=T0).created[0]
        self._process({"voltage": 220.0}, now=T0 + timedelta(minutes=1))

        second = self._process({"voltage": 300.0}, now=T0 + timedelta(minutes=2)).created

        self.assertEqual(len(second), 1)
        self.assertNotEqual(second[0], first)
        self.assertEqual(len(self.notifier.events), 2)

    def test_stale_warning_is_updated_by_default(self) -> None:
        created = self._process({"voltage": 300.0}, now=T0).created[0]

        outcome = self._process({"voltage": 305.0}, now=T0 + timedelta(minutes=10))

        self.assertEqual(outcome.updated, [created])
        self.assertEqual(outcome.within_cooldown, [])

    def test_stale_warning_is_recreated_when_configured(self) -> None:
        self._build(make_settings(warning_recreate_after_cooldown=True))
        created = self._process({"voltage": 300.0}, now=T0).created[0]

        outcome = self._process({"voltage": 305.0}, now=T0 + timedelta(minutes=10))

        self.assertEqual(outcome.resolved, [created])
        self.assertEqual(len(outcome.created), 1)
        with self.session_factory() as db:
            warnings = list_warnings_for_device(db, device_id=self.device_id)
        self.assertEqual([warning.status for warning in warnings], ["resolved", "active"])

    def test_acknowledge_sets_status_and_notes(self) -> None:
        created = self._process({"voltage": 300.0}, now=T0).created[0]

        warning = self.service.acknowledge(created, notes="technician on site", now=T0 + timedelta(minutes=1))

        self.assertEqual(warning.status, "acknowledged")
        self.assertEqual(warning.resolution_notes, "technician on site")
        self.assertIsNotNone(warning.acknowledged_at)

    def test_set_status_rejects_unknown_values(self) -> None:
        created = self._process({"voltage": 300.0}, now=T0).created[0]

        with self.assertRaises(ValueError):
            self.service.set_status(created, "active")
        with self.assertRaises(WarningNotFoundError):
            self.service.set_status(9999, "ignored")

    def test_explicit_resolve(self) -> None:
        created = self._process({"voltage": 300.0}, now=T0).created[0]

        warning = self.service.resolve(self.device_id, "voltage_high", now=T0 + timedelta(minutes=1))

        self.assertEqual(warning.id, created)
        self.assertIsNone(self.service.resolve(self.device_id, "voltage_high"))

    def test_closed_warning_cannot_be_acknowledged(self) -> None:
        created = self._process({"voltage": 300.0}, now=T0).created[0]
        self._process({"voltage": 220.0}, now=T0 + timedelta(seconds=5))

        with self.assertRaises(WarningStateError):
            self.service.acknowledge(created, now=T0 + timedelta(seconds=10))

        with self.session_factory() as db:
            warning = get_warning(db, created)
        self.assertEqual(warning.status, "resolved")
        self.assertIsNone(warning.acknowledged_at)

    def test_acknowledged_warning_cannot_change_again(self) -> None:
        created = self._process({"voltage": 300.0}, now=T0).created[0]
        self.service.acknowledge(created, now=T0 + timedelta(minutes=1))

        with self.assertRaises(WarningStateError):
            self.service.set_status(created, "ignored")
        with self.assertRaises(WarningStateError):
            self.service.acknowledge(created)

    def test_manual_ignore_closes_active_warning(self) -> None:
        created = self._process({"voltage": 300.0}, now=T0).created[0]

        warning = self.service.set_status(created, "ignored", notes="sensor recalibration", now=T0 + timedelta(minutes=1))

        self.assertEqual(warning.status, "ignored")
        self.assertEqual(self.service.list_active(device_id=self.device_id), [])

    def test_device_history_is_newest_first(self) -> None:
        first = self._process({"voltage": 300.0}, now=T0).created[0]
        self._process({"voltage": 220.0}, now=T0 + timedelta(minutes=1))
        second = self._process({"voltage": 250.0}, now=T0 + timedelta(minutes=2)).created[0]

        history = self.service.list_for_device(self.device_id)
        latest = self.service.list_for_device(self.device_id, limit=1)

        self.assertEqual([warning.id for warning in history], [second, first])
        self.assertEqual([warning.id for warning in latest], [second])

    def test_stats_count_warnings_and_notifications(self) -> None:
        self._process({"voltage": 300.0}, now=T0)

        stats = self.service.get_stats()

        self.assertEqual(stats["warnings"]["total"], 1)
        self.assertEqual(
            stats["warnings"]["by_status"],
            {"active": 1, "acknowledged": 0, "resolved": 0, "ignored": 0},
        )
        self.assertEqual(stats["warnings"]["by_severity"]["major"], 1)
        self.assertEqual(stats["warnings"]["by_device_type"], {"display": 1})
        self.assertEqual(stats["notifications"], {"total": 5, "sent": 1, "failed": 0, "avg_level": 3.0})

        later = self.service.get_stats(since=T0 + timedelta(hours=1))

        self.assertEqual(later["warnings"]["total"], 0)
        self.assertEqual(later["notifications"]["total"], 1)
