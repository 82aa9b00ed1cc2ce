import tempfile
import unittest
from datetime import date, time
from pathlib import Path
from unittest import mock

from icalendar import Calendar

from crewcal.errors import NotFoundError, ValidationError
from crewcal.ical_feed import ICalFeedService
from crewcal.models import AppConfig, DayInput, Project, UserProfile
from crewcal.state_store import StateStore


class ICalFeedServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.store.save_project(Project(id="p1", name="Stadium Install"))
        self.store.save_project(
            Project(id="p2", name="Arena Refit", start_date=date(2026, 3, 9), end_date=date(2026, 3, 11))
        )
        self.store.save_profile(UserProfile(id="u1", full_name="Alex Rivera"))
        self.store.save_profile(UserProfile(id="u2", full_name="Sam Lee"))
        self.store.create_assignment(
            project_id="p1",
            user_id="u1",
            booking_status="confirmed",
            days=[DayInput(work_date=date(2026, 3, 2), start_time=time(7, 0), end_time=time(16, 0))],
        )
        ranged = self.store.create_assignment(project_id="p2", user_id="u2", booking_status="draft")
        self.store.add_excluded_dates(ranged.id, [date(2026, 3, 10)])
        config_manager = mock.Mock()
        config_manager.load.return_value = AppConfig.from_dict({"sync": {"timezone": "America/Chicago"}})
        self.feeds = ICalFeedService(config_manager, self.store)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _events(self, token: str):
        calendar = Calendar.from_ical(self.feeds.render_feed(token))
        return [component for component in calendar.walk() if component.name == "VEVENT"]

    def test_personal_feed_lists_own_days(self) -> None:
        subscription = self.feeds.create_subscription("u1", "personal")

        events = self._events(subscription.token)

        self.assertEqual(len(events), 1)
        self.assertEqual(str(events[0]["SUMMARY"]), "[Confirmed] Stadium Install")
        self.assertEqual(str(events[0]["STATUS"]), "CONFIRMED")
        start = events[0].decoded("DTSTART")
        self.assertEqual((start.hour, start.minute), (7, 0))
        self.assertEqual(str(start.tzinfo), "America/Chicago")

    def test_master_feed_covers_everyone_and_expands_project_range(self) -> None:
        subscription = self.feeds.create_subscription("u1", "master")

        events = self._events(subscription.token)

        summaries = sorted(str(event["SUMMARY"]) for event in events)
        self.assertEqual(
            summaries,
            [
                "[Confirmed] Stadium Install - Alex Rivera",
                "[Draft] Arena Refit - Sam Lee",
                "[Draft] Arena Refit - Sam Lee",
            ],
        )
        all_day = sorted(event.decoded("DTSTART") for event in events if "Arena" in str(event["SUMMARY"]))
        self.assertEqual(all_day, [date(2026, 3, 9), date(2026, 3, 11)])

    def test_project_feed(self) -> None:
        subscription = self.feeds.create_subscription("u1", "project", "p2")
        self.assertEqual(len(self._events(subscription.token)), 2)

        with self.assertRaises(ValidationError):
            self.feeds.create_subscription("u1", "project")
        with self.assertRaises(NotFoundError):
            self.feeds.create_subscription("u1", "project", "missing")

    def test_subscription_is_reused_and_touched(self) -> None:
        first = self.feeds.create_subscription("u1", "personal")
        second = self.feeds.create_subscription("u1", "PERSONAL")
        self.assertEqual(first.token, second.token)
        self.assertIsNone(first.last_accessed_at)

        self.feeds.render_feed(first.token)

        self.assertIsNotNone(self.store.get_subscription_by_token(first.token).last_accessed_at)

    def test_unknown_token_and_feed_type(self) -> None:
        with self.assertRaises(NotFoundError):
            self.feeds.render_feed("nope")
        with self.assertRaises(ValidationError):
            self.feeds.create_subscription("u1", "weekly")


if __name__ == "__main__":
    unittest.main()
