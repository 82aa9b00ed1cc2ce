import unittest
from datetime import datetime, timezone
from unittest import mock

from crewcal.errors import TokenRefreshError
from crewcal.models import CalendarConnection
from crewcal.scheduler import KeepAliveScheduler


def _connection(connection_id: str) -> CalendarConnection:
    return CalendarConnection(
        id=connection_id,
        user_id=f"user-{connection_id}",
        provider="microsoft",
        access_token="access",
        refresh_token="refresh",
        token_expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc),
    )


class KeepAliveSchedulerTests(unittest.TestCase):
    def _scheduler(self, connections, token_side_effect=None, client=None) -> KeepAliveScheduler:
        repository = mock.Mock()
        repository.list_connections.return_value = connections
        token_manager = mock.Mock()
        token_manager.get_valid_token.side_effect = token_side_effect or (lambda c: ("token", c))
        client = client or mock.Mock()
        return KeepAliveScheduler(
            token_manager,
            repository,
            graph_base_url="https://graph.example.com/v1.0",
            client_factory=lambda token, base_url, timeout: client,
        )

    def test_run_once_counts_successes_and_failures(self) -> None:
        def token_side_effect(connection):
            if connection.id == "c2":
                raise TokenRefreshError("Token refresh failed: invalid_grant")
            return "token", connection

        scheduler = self._scheduler([_connection("c1"), _connection("c2"), _connection("c3")], token_side_effect)

        report = scheduler.run_once()

        self.assertEqual(report.kept_alive, 2)
        self.assertEqual(report.failed, 1)
        self.assertEqual(report.errors, ["c2: Token refresh failed: invalid_grant"])
        self.assertIs(scheduler.last_report, report)

    def test_profile_call_failure_is_reported(self) -> None:
        client = mock.Mock()
        client.get_profile.side_effect = RuntimeError("boom")
        scheduler = self._scheduler([_connection("c1")], client=client)

        report = scheduler.run_once()

        self.assertEqual(report.kept_alive, 0)
        self.assertEqual(report.errors, ["c1: boom"])

    def test_no_connections(self) -> None:
        report = self._scheduler([]).run_once()
        self.assertEqual((report.kept_alive, report.failed), (0, 0))

    def test_start_and_stop(self) -> None:
        scheduler = self._scheduler([])
        scheduler.initial_delay_seconds = 60
        scheduler.start()
        self.assertTrue(scheduler.is_running())
        scheduler.stop()
        self.assertFalse(scheduler.is_running())


if __name__ == "__main__":
    unittest.main()
