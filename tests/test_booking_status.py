import unittest

from crewcal.booking_status import (
    BookingStatus,
    category_label,
    cycle,
    parse_status,
    provider_category,
    show_as,
    status_label,
    transition_to,
)
from crewcal.errors import InvalidStateError, UnsupportedStatusError


class BookingStatusTests(unittest.TestCase):
    def test_cycle_order(self) -> None:
        self.assertEqual(cycle("draft"), BookingStatus.PENDING_CONFIRM)
        self.assertEqual(cycle("pending_confirm"), BookingStatus.CONFIRMED)
        self.assertEqual(cycle("confirmed"), BookingStatus.DRAFT)

    def test_three_cycles_return_to_start(self) -> None:
        for status in BookingStatus:
            self.assertEqual(cycle(cycle(cycle(status))), status)

    def test_cycle_rejects_values_outside_the_cycle(self) -> None:
        for value in ("complete", "pencil", "tentative", "", None, "CONFIRMED!"):
            with self.assertRaises(InvalidStateError):
                cycle(value)

    def test_parse_status_is_case_insensitive(self) -> None:
        self.assertEqual(parse_status(" Confirmed "), BookingStatus.CONFIRMED)

    def test_transition_to_rejects_complete(self) -> None:
        with self.assertRaises(UnsupportedStatusError):
            transition_to("confirmed", "complete")
        with self.assertRaises(UnsupportedStatusError):
            transition_to("draft", "archived")

    def test_transition_to_repairs_legacy_current_value(self) -> None:
        self.assertEqual(transition_to("complete", "draft"), BookingStatus.DRAFT)

    def test_appearance_table(self) -> None:
        self.assertEqual(show_as("draft"), "tentative")
        self.assertEqual(category_label("draft"), "Blue")
        self.assertEqual(show_as("pending_confirm"), "tentative")
        self.assertEqual(category_label("pending_confirm"), "Purple")
        self.assertEqual(show_as("confirmed"), "busy")
        self.assertEqual(category_label("confirmed"), "Green")
        self.assertEqual(provider_category("confirmed"), "Green category")

    def test_status_label_falls_back_to_raw_value(self) -> None:
        self.assertEqual(status_label("pending_confirm"), "Pending Confirmation")
        self.assertEqual(status_label("complete"), "complete")


if __name__ == "__main__":
    unittest.main()
