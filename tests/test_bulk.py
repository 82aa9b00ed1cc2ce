import sqlite3
import tempfile
import unittest
from datetime import date
from pathlib import Path
from unittest import mock

from crewcal.bulk import BulkOperationCoordinator
from crewcal.errors import UnsupportedStatusError, ValidationError
from crewcal.models import Project
from crewcal.state_store import StateStore


class BulkOperationCoordinatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.assignments = []
        for index in range(3):
            project_id = f"p{index}"
            self.store.save_project(Project(id=project_id, name=f"Project {index}"))
            self.assignments.append(
                self.store.create_assignment(project_id=project_id, user_id="u1", booking_status="draft")
            )
        self.bulk = BulkOperationCoordinator(self.store)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_partial_failure_keeps_successful_items(self) -> None:
        ids = [a.id for a in self.assignments] + ["missing"]

        result = self.bulk.bulk_update_status(ids, "confirmed", note="Client approved", changed_by="lead")

        self.assertEqual(result.succeeded, [a.id for a in self.assignments])
        self.assertEqual(len(result.failed), 1)
        self.assertEqual(result.failed[0].id, "missing")
        self.assertEqual(result.failed[0].kind, "not_found")
        for assignment in self.assignments:
            self.assertEqual(self.store.get_assignment(assignment.id).booking_status, "confirmed")
            self.assertEqual(self.store.list_status_history(assignment.id)[0].note, "Client approved")

    def test_storage_error_on_one_item_does_not_stop_the_rest(self) -> None:
        first, middle, last = self.assignments
        get_assignment = self.store.get_assignment

        def flaky_get(assignment_id):
            if assignment_id == middle.id:
                raise sqlite3.OperationalError("database is locked")
            return get_assignment(assignment_id)

        with mock.patch.object(self.store, "get_assignment", side_effect=flaky_get):
            with self.assertLogs("crewcal.bulk", level="ERROR"):
                result = self.bulk.bulk_update_status([first.id, middle.id, last.id], "confirmed")

        self.assertEqual(result.succeeded, [first.id, last.id])
        self.assertEqual(len(result.failed), 1)
        self.assertEqual(result.failed[0].id, middle.id)
        self.assertEqual(result.failed[0].kind, "error")
        self.assertIn("database is locked", result.failed[0].reason)
        self.assertEqual(self.store.get_assignment(last.id).booking_status, "confirmed")
        self.assertEqual(self.store.get_assignment(middle.id).booking_status, "draft")

    def test_storage_error_on_one_exclusion_does_not_stop_the_rest(self) -> None:
        excluded = self.store.add_excluded_dates(self.assignments[0].id, [date(2026, 3, 2), date(2026, 3, 3)])

        with mock.patch.object(
            self.store,
            "delete_excluded_date",
            side_effect=[sqlite3.OperationalError("database is locked"), True],
        ):
            with self.assertLogs("crewcal.bulk", level="ERROR"):
                result, touched = self.bulk.bulk_remove_excluded_dates([item.id for item in excluded])

        self.assertEqual(result.succeeded, [excluded[1].id])
        self.assertEqual(result.failed[0].kind, "error")
        self.assertEqual(touched, [self.assignments[0].id])

    def test_item_already_at_target_writes_no_history(self) -> None:
        target = self.assignments[0]

        result = self.bulk.bulk_update_status([target.id], "draft")

        self.assertEqual(result.succeeded, [target.id])
        self.assertEqual(len(self.store.list_status_history(target.id)), 1)

    def test_duplicate_ids_are_processed_once(self) -> None:
        target = self.assignments[0]
        result = self.bulk.bulk_update_status([target.id, target.id], "pending_confirm")
        self.assertEqual(result.succeeded, [target.id])
        self.assertEqual(len(self.store.list_status_history(target.id)), 2)

    def test_invalid_target_rejects_whole_request(self) -> None:
        with self.assertRaises(UnsupportedStatusError):
            self.bulk.bulk_update_status([a.id for a in self.assignments], "complete")
        for assignment in self.assignments:
            self.assertEqual(self.store.get_assignment(assignment.id).booking_status, "draft")

    def test_empty_selection(self) -> None:
        with self.assertRaises(ValidationError):
            self.bulk.bulk_update_status([], "confirmed")
        with self.assertRaises(ValidationError):
            self.bulk.bulk_remove_excluded_dates([])

    def test_bulk_remove_excluded_dates_reports_touched_assignments(self) -> None:
        first, second, _ = self.assignments
        excluded = self.store.add_excluded_dates(first.id, [date(2026, 3, 2), date(2026, 3, 3)])
        excluded += self.store.add_excluded_dates(second.id, [date(2026, 3, 2)])

        result, touched = self.bulk.bulk_remove_excluded_dates([item.id for item in excluded] + ["missing"])

        self.assertEqual(len(result.succeeded), 3)
        self.assertEqual([item.id for item in result.failed], ["missing"])
        self.assertEqual(touched, [first.id, second.id])
        self.assertEqual(self.store.list_excluded_dates(first.id), [])


if __name__ == "__main__":
    unittest.main()
