import tempfile
import unittest
from datetime import date, time
from pathlib import Path

from crewcal.conflicts import ConflictDetector
from crewcal.errors import InvalidRangeError, NotFoundError, ValidationError
from crewcal.models import DayInput, Project
from crewcal.state_store import StateStore


def _days(*values: date) -> list[DayInput]:
    return [DayInput(work_date=v, start_time=time(7, 0), end_time=time(16, 0)) for v in values]


class ConflictDetectorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.store.save_project(Project(id="p1", name="Stadium Install"))
        self.store.save_project(Project(id="p2", name="Arena Refit"))
        self.detector = ConflictDetector(self.store)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_conflicts_are_symmetric(self) -> None:
        first = self.store.create_assignment(
            project_id="p1",
            user_id="u1",
            booking_status="confirmed",
            days=_days(date(2026, 3, 2), date(2026, 3, 3)),
        )
        second = self.store.create_assignment(
            project_id="p2",
            user_id="u1",
            booking_status="draft",
            days=_days(date(2026, 3, 3), date(2026, 3, 4)),
        )

        from_first = self.detector.conflicts_for_assignment(first)
        from_second = self.detector.conflicts_for_assignment(second)

        self.assertEqual([c.assignment_id for c in from_first], [second.id])
        self.assertEqual([c.assignment_id for c in from_second], [first.id])
        self.assertEqual(from_first[0].conflict_dates, [date(2026, 3, 3)])
        self.assertEqual(from_second[0].conflict_dates, [date(2026, 3, 3)])
        self.assertEqual(from_second[0].project_name, "Stadium Install")

    def test_other_users_do_not_conflict(self) -> None:
        first = self.store.create_assignment(
            project_id="p1", user_id="u1", booking_status="draft", days=_days(date(2026, 3, 2))
        )
        self.store.create_assignment(project_id="p2", user_id="u2", booking_status="draft", days=_days(date(2026, 3, 2)))

        self.assertEqual(self.detector.conflicts_for_assignment(first), [])

    def test_find_conflicts_excludes_given_assignment(self) -> None:
        first = self.store.create_assignment(
            project_id="p1", user_id="u1", booking_status="draft", days=_days(date(2026, 3, 2))
        )

        found = self.detector.find_conflicts("u1", date(2026, 3, 1), date(2026, 3, 31))
        self.assertEqual([c.assignment_id for c in found], [first.id])

        found = self.detector.find_conflicts(
            "u1", date(2026, 3, 1), date(2026, 3, 31), exclude_assignment_id=first.id
        )
        self.assertEqual(found, [])

    def test_project_range_is_used_when_no_days_exist(self) -> None:
        self.store.save_project(
            Project(id="p3", name="Festival", start_date=date(2026, 3, 1), end_date=date(2026, 3, 5))
        )
        ranged = self.store.create_assignment(project_id="p3", user_id="u1", booking_status="draft")
        self.store.add_excluded_dates(ranged.id, [date(2026, 3, 4)])
        self.store.create_assignment(
            project_id="p1", user_id="u1", booking_status="draft", days=_days(date(2026, 3, 4), date(2026, 3, 5))
        )

        found = self.detector.find_conflicts("u1", date(2026, 3, 3), date(2026, 3, 10))

        by_id = {c.assignment_id: c for c in found}
        self.assertEqual(by_id[ranged.id].conflict_dates, [date(2026, 3, 3), date(2026, 3, 5)])
        self.assertEqual(by_id[ranged.id].overlap_start, date(2026, 3, 3))
        self.assertEqual(by_id[ranged.id].overlap_end, date(2026, 3, 5))

    def test_assignment_without_days_or_range_books_nothing(self) -> None:
        empty = self.store.create_assignment(project_id="p1", user_id="u1", booking_status="draft")
        self.assertEqual(self.detector.booked_dates_for(empty), [])
        self.assertEqual(self.detector.conflicts_for_assignment(empty), [])

    def test_invalid_range(self) -> None:
        with self.assertRaises(InvalidRangeError):
            self.detector.find_conflicts("u1", date(2026, 3, 5), date(2026, 3, 1))

    def test_record_and_override(self) -> None:
        self.store.create_assignment(
            project_id="p1", user_id="u1", booking_status="draft", days=_days(date(2026, 3, 2))
        )
        second = self.store.create_assignment(
            project_id="p2", user_id="u1", booking_status="draft", days=_days(date(2026, 3, 2))
        )

        recorded = self.detector.record_conflicts_for_assignment(second)
        self.assertEqual(len(recorded), 1)
        unresolved = self.detector.get_unresolved_conflicts("u1")
        self.assertEqual(len(unresolved), 1)

        with self.assertRaises(ValidationError):
            self.detector.override_conflict(unresolved[0].id, "   ")
        with self.assertRaises(NotFoundError):
            self.detector.override_conflict("missing", "Approved")

        resolved = self.detector.override_conflict(unresolved[0].id, "Approved by PM", "lead")
        self.assertTrue(resolved.is_resolved)
        self.assertEqual(resolved.override_reason, "Approved by PM")
        self.assertEqual(self.detector.get_unresolved_conflicts("u1"), [])


if __name__ == "__main__":
    unittest.main()
