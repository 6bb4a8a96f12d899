from __future__ import annotations

from datetime import datetime, timedelta, timezone
from threading import Thread
from unittest import TestCase

from app.db.models import DeviceWarning, WarningNotification
from app.repositories.notifications import list_notifications_for_warning
from app.services.escalation import EscalationService
from app.services.thresholds import evaluate, evaluated_types
from app.services.warning_lifecycle import WarningLifecycleService

from db_support import RecordingNotifier, add_device, make_session_factory, make_settings

T0 = datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)


class EscalationTimingTests(TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        self.device_id = add_device(self.session_factory)
        self.settings = make_settings()
        self._build(RecordingNotifier())

    def _build(self, notifier: RecordingNotifier) -> None:
        self.notifier = notifier
        self.escalation = EscalationService(
            settings=self.settings,
            session_factory=self.session_factory,
            notifier=notifier,
        )
        self.lifecycle = WarningLifecycleService(
            settings=self.settings,
            session_factory=self.session_factory,
            escalation=self.escalation,
        )

    def _breach(self, voltage: float = 300.0, *, now: datetime = T0) -> int:
        values = {"voltage": voltage}
        outcome = self.lifecycle.process(
            self.device_id,
            "display",
            evaluate("display", values),
            evaluated_types=evaluated_types("display", values),
            now=now,
        )
        return outcome.created[0]

    def _statuses(self, warning_id: int) -> dict[int, str]:
        with self.session_factory() as db:
            return {entry.level: entry.status for entry in list_notifications_for_warning(db, warning_id=warning_id)}

    def test_schedule_offsets_follow_configured_levels(self) -> None:
        warning_id = self._breach()

        with self.session_factory() as db:
            entries = list_notifications_for_warning(db, warning_id=warning_id)
            offsets = [
                (entry.send_time.replace(tzinfo=timezone.utc) - T0).total_seconds()
                for entry in entries
            ]
        self.assertEqual(offsets, [0, 300, 900, 1800, 3600])

    def test_level_two_waits_for_its_send_time(self) -> None:
        warning_id = self._breach()

        early = self.escalation.sweep(now=T0 + timedelta(minutes=4, seconds=59))
        self.assertEqual(early.sent, 0)
        self.assertEqual(self._statuses(warning_id)[2], "scheduled")

        due = self.escalation.sweep(now=T0 + timedelta(minutes=5, seconds=1))
        self.assertEqual(due.sent, 1)
        statuses = self._statuses(warning_id)
        self.assertEqual(statuses[1], "sent")
        self.assertEqual(statuses[2], "sent")
        self.assertEqual(statuses[3], "scheduled")
        self.assertEqual([event.level for event in self.notifier.events], [1, 2])

    def test_sweep_sends_each_entry_once(self) -> None:
        warning_id = self._breach()
        later = T0 + timedelta(hours=2)

        first = self.escalation.sweep(now=later)
        second = self.escalation.sweep(now=later)

        self.assertEqual(first.sent, 4)
        self.assertEqual(second.sent, 0)
        self.assertEqual(set(self._statuses(warning_id).values()), {"sent"})
        self.assertEqual(sorted(event.level for event in self.notifier.events), [1, 2, 3, 4, 5])

    def test_failed_send_is_marked_and_not_retried(self) -> None:
        self._build(RecordingNotifier(fail_levels={2}))
        warning_id = self._breach()

        self.escalation.sweep(now=T0 + timedelta(minutes=6))
        self.escalation.sweep(now=T0 + timedelta(minutes=7))

        with self.session_factory() as db:
            entry = next(
                item for item in list_notifications_for_warning(db, warning_id=warning_id) if item.level == 2
            )
        self.assertEqual(entry.status, "failed")
        self.assertEqual(entry.error_text, "level 2 rejected")
        self.assertEqual([event.level for event in self.notifier.events], [1, 2])

    def test_notifier_exception_marks_failed(self) -> None:
        self._build(RecordingNotifier(raise_error=True))
        warning_id = self._breach()

        self.assertEqual(self._statuses(warning_id)[1], "failed")

    def test_resolved_warning_entries_are_never_sent(self) -> None:
        warning_id = self._breach()
        values = {"voltage": 220.0}
        self.lifecycle.process(
            self.device_id,
            "display",
            evaluate("display", values),
            evaluated_types=evaluated_types("display", values),
            now=T0 + timedelta(minutes=1),
        )

        result = self.escalation.sweep(now=T0 + timedelta(hours=2))

        self.assertEqual(result.due, 0)
        self.assertEqual(self._statuses(warning_id)[2], "scheduled")
        self.assertEqual(len(self.notifier.events), 1)

    def test_busy_sweep_is_skipped(self) -> None:
        self.escalation._dispatch_lock.acquire()
        try:
            result = self.escalation.sweep(now=T0)
        finally:
            self.escalation._dispatch_lock.release()

        self.assertTrue(result.busy)

    def test_concurrent_sweeps_do_not_double_send(self) -> None:
        self._breach()
        later = T0 + timedelta(hours=2)
        threads = [Thread(target=self.escalation.sweep, kwargs={"now": later}) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        levels = [event.level for event in self.notifier.events]
        self.assertEqual(sorted(levels), [1, 2, 3, 4, 5])

    def test_queue_status_counts(self) -> None:
        self._breach()

        status = self.escalation.get_queue_status(now=T0 + timedelta(minutes=20))

        self.assertEqual(status["by_status"], {"scheduled": 4, "sent": 1, "failed": 0})
        self.assertEqual(status["scheduled_by_level"], {2: 1, 3: 1, 4: 1, 5: 1})
        self.assertEqual(status["overdue"], 2)

    def test_entries_of_closed_warnings_are_not_counted_as_scheduled(self) -> None:
        warning_id = self._breach()
        self.lifecycle.acknowledge(warning_id, now=T0 + timedelta(minutes=1))

        status = self.escalation.get_queue_status(now=T0 + timedelta(minutes=20))

        self.assertEqual(status["by_status"], {"scheduled": 0, "sent": 1, "failed": 0})
        self.assertEqual(status["scheduled_by_level"], {})
        self.assertEqual(status["overdue"], 0)
        self.assertEqual(status["dropped"], 4)


class EscalationHousekeepingTests(TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        self.device_id = add_device(self.session_factory)
        self.escalation = EscalationService(
            settings=make_settings(),
            session_factory=self.session_factory,
            notifier=RecordingNotifier(),
        )

    def _warning(self, *, status: str, resolved_at: datetime | None) -> int:
        with self.session_factory() as db:
            warning = DeviceWarning(
                device_id=self.device_id,
                device_type="display",
                device_name="OR-1 Display",
                warning_type="voltage_high",
                severity="major",
                measured_value=300.0,
                threshold_value=288.0,
                message="Voltage far above maximum",
                status=status,
                created_at=T0,
                updated_at=T0,
                resolved_at=resolved_at,
            )
            db.add(warning)
            db.flush()
            db.add(
                WarningNotification(
                    warning_id=warning.id,
                    level=1,
                    send_time=T0,
                    status="sent",
                    sent_at=T0,
                )
            )
            db.commit()
            return int(warning.id)

    def test_old_resolved_warnings_and_finished_entries_are_deleted(self) -> None:
        old_id = self._warning(status="resolved", resolved_at=T0)
        active_id = self._warning(status="active", resolved_at=None)

        result = self.escalation.run_housekeeping(now=T0 + timedelta(days=31))

        self.assertEqual(result["warnings_deleted"], 1)
        self.assertEqual(result["notifications_deleted"], 1)
        with self.session_factory() as db:
            self.assertIsNone(db.get(DeviceWarning, old_id))
            self.assertIsNotNone(db.get(DeviceWarning, active_id))
            self.assertEqual(db.query(WarningNotification).count(), 0)

    def test_old_acknowledged_and_ignored_warnings_are_deleted(self) -> None:
        acknowledged_id = self._warning(status="acknowledged", resolved_at=None)
        ignored_id = self._warning(status="ignored", resolved_at=None)

        result = self.escalation.run_housekeeping(now=T0 + timedelta(days=31))

        self.assertEqual(result["warnings_deleted"], 2)
        with self.session_factory() as db:
            self.assertIsNone(db.get(DeviceWarning, acknowledged_id))
            self.assertIsNone(db.get(DeviceWarning, ignored_id))

    def test_recent_rows_are_kept(self) -> None:
        self._warning(status="resolved", resolved_at=T0)

        result = self.escalation.run_housekeeping(now=T0 + timedelta(days=3))

        self.assertEqual(result, {"warnings_deleted": 0, "notifications_deleted": 0})
