import tempfile
import unittest
from datetime import date, time
from pathlib import Path

from crewcal.assignment_days import AssignmentDayManager
from crewcal.booking_status import BookingStatus
from crewcal.errors import (
    DuplicateDateError,
    InvalidRangeError,
    InvalidStateError,
    NotFoundError,
    UnsupportedStatusError,
    ValidationError,
)
from crewcal.models import Project, ScheduleConfig
from crewcal.state_store import StateStore


class AssignmentDayManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.store.save_project(Project(id="p1", name="Stadium Install"))
        self.assignment = self.store.create_assignment(project_id="p1", user_id="u1", booking_status="draft")
        self.manager = AssignmentDayManager(self.store)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_add_days_applies_default_times(self) -> None:
        days = self.manager.add_days(self.assignment.id, [{"date": "2026-03-02"}])

        self.assertEqual(len(days), 1)
        self.assertEqual(days[0].start_time, time(7, 0))
        self.assertEqual(days[0].end_time, time(16, 0))

    def test_default_times_follow_schedule_config(self) -> None:
        manager = AssignmentDayManager(
            self.store,
            ScheduleConfig(default_start_time="06:30", default_end_time="15:00"),
        )
        days = manager.add_days(self.assignment.id, [{"work_date": "2026-03-02"}])
        self.assertEqual(days[0].start_time, time(6, 30))
        self.assertEqual(days[0].end_time, time(15, 0))

    def test_add_days_rejects_duplicates_in_request(self) -> None:
        with self.assertRaises(DuplicateDateError) as ctx:
            self.manager.add_days(
                self.assignment.id,
                [{"date": "2026-03-02"}, {"date": "2026-03-03"}, {"date": "2026-03-02"}],
            )
        self.assertEqual(ctx.exception.dates, ["2026-03-02"])
        self.assertEqual(self.store.list_days(self.assignment.id), [])

    def test_add_days_names_every_stored_duplicate_and_inserts_nothing(self) -> None:
        self.manager.add_days(self.assignment.id, [{"date": "2026-03-02"}, {"date": "2026-03-04"}])

        with self.assertRaises(DuplicateDateError) as ctx:
            self.manager.add_days(
                self.assignment.id,
                [{"date": "2026-03-02"}, {"date": "2026-03-03"}, {"date": "2026-03-04"}],
            )

        self.assertEqual(ctx.exception.dates, ["2026-03-02", "2026-03-04"])
        self.assertEqual(len(self.store.list_days(self.assignment.id)), 2)

    def test_add_days_rejects_inverted_times(self) -> None:
        with self.assertRaises(InvalidRangeError):
            self.manager.add_days(
                self.assignment.id,
                [{"date": "2026-03-02", "start_time": "16:00", "end_time": "07:00"}],
            )

    def test_add_days_requires_at_least_one_day(self) -> None:
        with self.assertRaises(ValidationError):
            self.manager.add_days(self.assignment.id, [])

    def test_add_days_for_missing_assignment(self) -> None:
        with self.assertRaises(NotFoundError):
            self.manager.add_days("missing", [{"date": "2026-03-02"}])

    def test_update_day_validates_range(self) -> None:
        day = self.manager.add_days(self.assignment.id, [{"date": "2026-03-02"}])[0]

        updated = self.manager.update_day(day.id, "08:00", "12:30")
        self.assertEqual(updated.start_time, time(8, 0))
        self.assertEqual(updated.end_time, time(12, 30))

        with self.assertRaises(InvalidRangeError):
            self.manager.update_day(day.id, "12:00", "12:00")

    def test_move_day_to_same_date_is_noop(self) -> None:
        day = self.manager.add_days(self.assignment.id, [{"date": "2026-03-02"}])[0]
        moved = self.manager.move_day(day.id, "2026-03-02")
        self.assertEqual(moved.work_date, date(2026, 3, 2))

    def test_move_day_onto_booked_date_fails(self) -> None:
        days = self.manager.add_days(self.assignment.id, [{"date": "2026-03-02"}, {"date": "2026-03-03"}])

        with self.assertRaises(DuplicateDateError):
            self.manager.move_day(days[0].id, "2026-03-03")

        moved = self.manager.move_day(days[0].id, "2026-03-05")
        self.assertEqual(moved.work_date, date(2026, 3, 5))

    def test_remove_days_is_idempotent(self) -> None:
        day = self.manager.add_days(self.assignment.id, [{"date": "2026-03-02"}])[0]
        self.assertEqual(self.manager.remove_days([day.id]), 1)
        self.assertEqual(self.manager.remove_days([day.id]), 0)
        self.assertEqual(self.manager.remove_days([]), 0)

    def test_cycle_status_writes_history(self) -> None:
        self.assertEqual(self.manager.cycle_status(self.assignment.id, "lead"), BookingStatus.PENDING_CONFIRM)
        self.assertEqual(self.manager.cycle_status(self.assignment.id, "lead"), BookingStatus.CONFIRMED)
        self.assertEqual(self.manager.cycle_status(self.assignment.id, "lead"), BookingStatus.DRAFT)

        history = self.store.list_status_history(self.assignment.id)
        self.assertEqual(len(history), 4)
        latest = history[0]
        self.assertEqual(latest.old_status, "confirmed")
        self.assertEqual(latest.new_status, "draft")
        self.assertEqual(latest.changed_by, "lead")
        self.assertEqual(latest.note, "Status cycled")

    def test_cycle_status_rejects_legacy_value(self) -> None:
        self.store.update_assignment_status(self.assignment.id, "complete")
        with self.assertRaises(InvalidStateError):
            self.manager.cycle_status(self.assignment.id)
        self.assertEqual(self.store.get_assignment(self.assignment.id).booking_status, "complete")

    def test_update_status_rejects_unknown_target(self) -> None:
        with self.assertRaises(UnsupportedStatusError):
            self.manager.update_status(self.assignment.id, "complete")
        self.assertEqual(self.store.get_assignment(self.assignment.id).booking_status, "draft")

    def test_excluded_dates_replace_days(self) -> None:
        self.manager.add_days(self.assignment.id, [{"date": "2026-03-02"}, {"date": "2026-03-03"}])

        excluded = self.manager.add_excluded_dates(self.assignment.id, ["2026-03-03"], reason="  Holiday ")

        self.assertEqual(excluded[0].reason, "Holiday")
        self.assertEqual([d.work_date for d in self.store.list_days(self.assignment.id)], [date(2026, 3, 2)])

        removed = self.manager.remove_excluded_date(excluded[0].id)
        self.assertEqual(removed.excluded_date, date(2026, 3, 3))
        with self.assertRaises(NotFoundError):
            self.manager.remove_excluded_date(excluded[0].id)

    def test_invalid_date_format(self) -> None:
        with self.assertRaises(ValidationError):
            self.manager.add_days(self.assignment.id, [{"date": "03/02/2026"}])


if __name__ == "__main__":
    unittest.main()
