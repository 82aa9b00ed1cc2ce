import sqlite3
import tempfile
import unittest
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from crewcal.models import AppConfig, UserProfile
from crewcal.service import SchedulingService
from crewcal.state_store import StateStore
from crewcal.sync_dispatcher import SyncDispatcher
from crewcal.sync_engine import CalendarSyncEngine
from crewcal.token_manager import TokenResponse
from tests.fakes import FakeCalendarProvider


class SchedulingServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.config_manager = mock.Mock()
        self.config_manager.load.return_value = AppConfig.from_dict({"sync": {"timezone": "UTC"}})
        self.token_manager = mock.Mock()
        self.token_manager.get_valid_token.side_effect = lambda connection: ("token", connection)
        self.provider = FakeCalendarProvider()
        self.engine = CalendarSyncEngine(
            self.config_manager,
            self.store,
            self.token_manager,
            client_factory=self.provider.client_factory,
            sleep=lambda seconds: None,
        )
        self.dispatcher = SyncDispatcher(max_workers=1)
        self.service = SchedulingService(
            self.config_manager,
            self.store,
            self.token_manager,
            self.engine,
            self.dispatcher,
        )
        self.store.save_profile(UserProfile(id="u1", full_name="Alex Rivera"))
        self.connection = self.store.save_connection(
            user_id="u1",
            provider="microsoft",
            access_token="access",
            refresh_token="refresh",
            token_expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc),
        )
        self.project_id = self.service.save_project({"name": "Stadium Install"}).data.id

    def tearDown(self) -> None:
        self.dispatcher.shutdown()
        self.temp_dir.cleanup()

    def _settle(self) -> None:
        self.assertTrue(self.dispatcher.wait_idle(timeout=10))

    def _create(self, **kwargs):
        kwargs.setdefault("days", [{"date": "2026-03-02"}, {"date": "2026-03-03"}])
        result = self.service.create_assignment(self.project_id, "u1", **kwargs)
        self.assertTrue(result.success, result.error)
        self._settle()
        return result.data["assignment"]

    def test_create_then_cycle_three_times_updates_one_event(self) -> None:
        assignment = self._create()
        self.assertEqual(self.provider.created, 1)

        statuses = []
        for _ in range(3):
            result = self.service.cycle_assignment_status(assignment.id, changed_by="lead")
            statuses.append(result.data["booking_status"])
            self._settle()

        self.assertEqual(statuses, ["pending_confirm", "confirmed", "draft"])
        self.assertEqual(self.provider.created, 1)
        self.assertEqual(self.provider.updated, 3)
        self.assertEqual(len(self.provider.events), 1)
        self.assertEqual(self.store.count_synced_events(assignment.id), 1)
        history = self.service.get_status_history(assignment.id).data
        self.assertEqual(len(history), 4)

    def test_remove_assignment_deletes_external_event(self) -> None:
        assignment = self._create()

        result = self.service.remove_assignment(assignment.id)
        self._settle()

        self.assertTrue(result.success)
        self.assertEqual(self.provider.events, {})
        self.assertIsNone(self.store.get_assignment(assignment.id))
        self.assertEqual(self.store.count_synced_events(assignment.id), 0)

    def test_sync_failure_does_not_fail_the_booking_change(self) -> None:
        self.provider.fail_with = 500

        assignment = self._create()

        self.assertIsNotNone(self.store.get_assignment(assignment.id))
        errors = self.service.get_sync_errors("u1").data
        self.assertEqual(len(errors), 1)

        dismissed = self.service.dismiss_sync_error(errors[0].id)
        self.assertTrue(dismissed.success)
        self.assertEqual(self.service.get_sync_errors("u1").data, [])

        retried = self.service.retry_sync_for_assignment(assignment.id, "u1")
        self.assertFalse(retried.success)
        self.assertEqual(retried.error_kind, "integration")

    def test_error_kinds(self) -> None:
        assignment = self._create()

        duplicate = self.service.create_assignment(self.project_id, "u1")
        self.assertEqual(duplicate.error_kind, "conflict")

        missing = self.service.cycle_assignment_status("missing")
        self.assertEqual(missing.error_kind, "not_found")

        bad_status = self.service.update_assignment_status(assignment.id, "complete")
        self.assertEqual(bad_status.error_kind, "validation")

        bad_range = self.service.check_conflicts("u1", "2026-03-05", "2026-03-01")
        self.assertEqual(bad_range.error_kind, "validation")

        duplicate_day = self.service.add_assignment_days(assignment.id, [{"date": "2026-03-02"}])
        self.assertEqual(duplicate_day.error_kind, "validation")
        self.assertIn("2026-03-02", duplicate_day.error)

    def test_storage_failure_is_returned_as_a_result(self) -> None:
        assignment = self._create()

        with mock.patch.object(
            self.store, "get_assignment", side_effect=sqlite3.OperationalError("database is locked")
        ):
            with self.assertLogs("crewcal.service", level="ERROR"):
                result = self.service.cycle_assignment_status(assignment.id)

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "error")
        self.assertIn("database is locked", result.error)

    def test_bulk_status_survives_a_storage_failure_and_syncs_applied_items(self) -> None:
        first = self._create()
        other_project = self.service.save_project({"name": "Arena Refit"}).data.id
        second = self.service.create_assignment(other_project, "u1", days=[{"date": "2026-03-10"}]).data["assignment"]
        self._settle()
        get_assignment = self.store.get_assignment

        def flaky_get(assignment_id):
            if assignment_id == first.id:
                raise sqlite3.OperationalError("database is locked")
            return get_assignment(assignment_id)

        with mock.patch.object(self.store, "get_assignment", side_effect=flaky_get):
            with self.assertLogs("crewcal.bulk", level="ERROR"):
                result = self.service.bulk_update_assignment_status([first.id, second.id], "confirmed")
        self._settle()

        self.assertTrue(result.success)
        self.assertEqual(result.data.succeeded, [second.id])
        self.assertEqual(result.data.failed[0].kind, "error")
        self.assertEqual(self.provider.updated, 1)

    def test_create_reports_conflicts(self) -> None:
        self._create()
        other_project = self.service.save_project({"name": "Arena Refit"}).data.id

        result = self.service.create_assignment(other_project, "u1", days=[{"date": "2026-03-03"}])
        self._settle()

        conflicts = result.data["conflicts"]
        self.assertEqual(len(conflicts), 1)
        self.assertEqual(conflicts[0].conflict_dates, [date(2026, 3, 3)])
        unresolved = self.service.get_unresolved_conflicts("u1").data
        self.assertEqual(len(unresolved), 1)
        override = self.service.override_conflict(unresolved[0].id, "Split shift", "lead")
        self.assertTrue(override.success)

    def test_bulk_status_reports_partial_failure(self) -> None:
        assignment = self._create()

        result = self.service.bulk_update_assignment_status([assignment.id, "missing"], "confirmed")
        self._settle()

        self.assertTrue(result.success)
        self.assertEqual(result.data.succeeded, [assignment.id])
        self.assertEqual(result.data.failed[0].kind, "not_found")
        self.assertEqual(self.provider.updated, 1)

    def test_day_changes_resync(self) -> None:
        assignment = self._create()
        day = self.store.list_days(assignment.id)[0]

        self.assertTrue(self.service.move_assignment_day(day.id, "2026-03-06").success)
        self._settle()
        event = next(iter(self.provider.events.values()))
        self.assertEqual(event["end"]["dateTime"], "2026-03-07")

        removed = self.service.remove_assignment_days([d.id for d in self.store.list_days(assignment.id)])
        self._settle()
        self.assertEqual(removed.data, {"removed": 2})
        self.assertEqual(self.provider.events, {})

    def test_project_change_resyncs_its_assignments(self) -> None:
        self._create()

        result = self.service.save_project({"id": self.project_id, "name": "Stadium Install Phase 2"})
        self._settle()

        self.assertTrue(result.success)
        event = next(iter(self.provider.events.values()))
        self.assertEqual(event["subject"], "Stadium Install Phase 2")

    def test_gantt_view(self) -> None:
        self._create()

        result = self.service.get_gantt_data_for_range("2026-03-01", "2026-03-31")

        self.assertEqual(len(result.data["rows"]), 1)
        self.assertEqual(result.data["projects"][0]["project_name"], "Stadium Install")
        payload = result.to_dict()
        self.assertEqual(payload["data"]["rows"][0]["user_name"], "Alex Rivera")

    def test_oauth_connect_flow(self) -> None:
        self.token_manager.authorization_url.return_value = "https://login.example.com/authorize?state=x"
        self.token_manager.exchange_code.return_value = TokenResponse(
            access_token="new-access",
            refresh_token="new-refresh",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )
        started = self.service.start_calendar_connect("u2").data

        with mock.patch.object(
            self.engine,
            "client_factory",
            return_value=mock.Mock(get_profile=mock.Mock(return_value={"email": "sam@example.com"})),
        ):
            connected = self.service.complete_calendar_connect(started["state"], "auth-code")
        self._settle()

        self.assertTrue(connected.success, connected.error)
        self.assertEqual(connected.data["account_email"], "sam@example.com")
        self.assertNotIn("access_token", connected.data)

        replay = self.service.complete_calendar_connect(started["state"], "auth-code")
        self.assertEqual(replay.error_kind, "integration")

        disconnected = self.service.disconnect_calendar(connected.data["id"], user_id="u2")
        self.assertTrue(disconnected.success)
        self.assertEqual(self.service.get_active_connections("u2").data, [])

    def test_connect_requires_refresh_token(self) -> None:
        self.token_manager.exchange_code.return_value = TokenResponse(
            access_token="a",
            refresh_token=None,
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )
        result = self.service.connect_calendar("u2", "auth-code")
        self.assertFalse(result.success)
        self.assertIn("offline_access", result.error)


if __name__ == "__main__":
    unittest.main()
