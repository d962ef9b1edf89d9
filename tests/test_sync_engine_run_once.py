import tempfile
import unittest
from pathlib import Path
from typing import Any
from unittest import mock

from calimport.config_manager import ConfigManager
from calimport.google_client import RecoverableAuthError
from calimport.models import REQUEST_AUTHORIZATION
from calimport.state_store import StateStore
from calimport.sync_engine import STATE_CANCELLED, STATE_COMPLETED, STATE_IDLE, SyncEngine


def _item(
    uid: str,
    *,
    status: str = "confirmed",
    updated: str = "2020-01-01T12:00:00.000Z",
    color: str = "11",
    summary: str = "Event",
) -> dict[str, Any]:
    return {
        "kind": "calendar#event",
        "id": uid.split("@")[0],
        "status": status,
        "summary": summary,
        "iCalUID": uid,
        "updated": updated,
        "colorId": color,
        "start": {"date": "2020-01-01"},
        "end": {"date": "2020-01-03"},
        "reminders": {"useDefault": False, "overrides": [{"method": "popup", "minutes": 15}]},
    }


class _FakeFeed:
    def __init__(self, pages: list[Any]) -> None:
        self.pages = pages
        self.calls: list[tuple[str, str]] = []

    def list_page(self, calendar_id: str, page_token: str = "") -> dict[str, Any]:
        self.calls.append((calendar_id, page_token))
        page = self.pages[len(self.calls) - 1]
        if isinstance(page, Exception):
            raise page
        return page


class SyncEngineRunOnceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        base = Path(self.temp_dir.name)
        self.config_manager = ConfigManager(str(base / "config.yaml"))
        self.store = StateStore(str(base / "state.db"))
        self.handoff = mock.Mock()
        self.engine = SyncEngine(self.config_manager, self.store, reauth_handoff=self.handoff)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _run(self, pages: list[Any]) -> tuple[Any, _FakeFeed]:
        feed = _FakeFeed(pages)
        with mock.patch("calimport.sync_engine.GoogleCalendarClient", return_value=feed):
            result = self.engine.run_once(trigger="manual")
        return result, feed

    def test_three_pages_are_imported_and_rerun_is_idempotent(self) -> None:
        pages = [
            {"items": [_item("a@google.com")], "nextPageToken": "t1"},
            {"items": [_item("b@google.com")], "nextPageToken": "t2"},
            {"items": [_item("c@google.com"), _item("gone@google.com", status="cancelled")]},
        ]
        self.assertEqual(self.engine.state, STATE_IDLE)

        first, feed = self._run(pages)
        self.assertEqual(first.status, STATE_COMPLETED)
        self.assertEqual(self.engine.state, STATE_COMPLETED)
        self.assertEqual(feed.calls, [("primary", ""), ("primary", "t1"), ("primary", "t2")])
        self.assertEqual((first.inserted, first.updated, first.skipped), (3, 0, 1))
        self.assertEqual(self.store.list_import_ids(), {"a@google.com", "b@google.com", "c@google.com"})

        second, _ = self._run(pages)
        self.assertEqual((second.inserted, second.updated, second.skipped), (0, 0, 4))
        self.assertEqual(self.store.count_events(), 3)

    def test_event_fields_are_normalized(self) -> None:
        self._run([{"items": [_item("a@google.com")]}])
        event = self.store.get_event_by_import_id("a@google.com")
        self.assertTrue(event.is_all_day)
        self.assertEqual(event.start_ts, 1577840400)
        self.assertEqual(event.end_ts, 1577926800)
        self.assertEqual(event.reminders, [15, -1, -1])
        self.assertEqual(event.last_updated, 1577880000000)

    def test_shared_color_creates_one_event_type(self) -> None:
        self._run([{"items": [_item("a@google.com"), _item("b@google.com")]}])
        self._run([{"items": [_item("c@google.com")]}])

        types = self.store.list_event_types()
        self.assertEqual([item.title for item in types], ["google_sync_11"])
        ids = {self.store.get_event_by_import_id(uid).event_type_id for uid in ("a@google.com", "c@google.com")}
        self.assertEqual(ids, {types[0].id})

    def test_newer_remote_copy_replaces_row(self) -> None:
        self._run([{"items": [_item("a@google.com", summary="Old")]}])
        original = self.store.get_event_by_import_id("a@google.com")

        result, _ = self._run(
            [{"items": [_item("a@google.com", summary="New", updated="2020-02-01T00:00:00Z")]}]
        )

        self.assertEqual((result.inserted, result.updated), (0, 1))
        refreshed = self.store.get_event_by_import_id("a@google.com")
        self.assertEqual(refreshed.id, original.id)
        self.assertEqual(refreshed.title, "New")
        self.assertEqual(self.store.count_events(), 1)

    def test_repeated_id_within_run_keeps_one_row(self) -> None:
        result, _ = self._run(
            [
                {"items": [_item("a@google.com")], "nextPageToken": "t1"},
                {"items": [_item("a@google.com")]},
            ]
        )
        self.assertEqual((result.inserted, result.skipped), (1, 1))
        self.assertEqual(self.store.count_events(), 1)

    def test_recoverable_auth_hands_off_and_keeps_committed_events(self) -> None:
        recovery = {"authorization_url": "https://accounts.example/auth", "state": "xyz"}
        result, _ = self._run(
            [
                {"items": [_item("a@google.com")], "nextPageToken": "t1"},
                RecoverableAuthError("Google authorization required: token refresh rejected", recovery),
            ]
        )

        self.assertEqual(result.status, STATE_CANCELLED)
        self.assertEqual(self.engine.state, STATE_CANCELLED)
        self.assertTrue(result.failure.is_recoverable_auth)
        self.handoff.assert_called_once_with(recovery, REQUEST_AUTHORIZATION)
        self.assertEqual(self.store.list_import_ids(), {"a@google.com"})
        self.assertEqual(self.store.recent_sync_runs()[0]["status"], STATE_CANCELLED)

    def test_generic_failure_is_terminal_without_handoff(self) -> None:
        result, _ = self._run([ConnectionError("network down")])

        self.assertEqual(result.status, STATE_CANCELLED)
        self.assertEqual(result.failure.kind, "failure")
        self.assertEqual(result.failure.message, "ConnectionError: network down")
        self.handoff.assert_not_called()
        audit = self.store.recent_audit_events()
        self.assertEqual(audit[0]["action"], "run_error")
        self.assertIn("ConnectionError", audit[0]["details"]["traceback"])

    def test_malformed_item_fails_the_whole_page(self) -> None:
        broken = _item("b@google.com")
        broken["start"] = {"timeZone": "UTC"}
        result, _ = self._run(
            [
                {"items": [_item("a@google.com")], "nextPageToken": "t1"},
                {"items": [_item("c@google.com"), broken]},
            ]
        )

        self.assertEqual(result.status, STATE_CANCELLED)
        self.assertEqual(result.inserted, 1)
        self.assertEqual(self.store.list_import_ids(), {"a@google.com"})

    def test_cancelled_instance_without_ical_uid_is_skipped(self) -> None:
        cancelled_instance = {
            "kind": "calendar#event",
            "id": "abc_20200108T090000Z",
            "status": "cancelled",
            "recurringEventId": "abc",
            "originalStartTime": {"dateTime": "2020-01-08T09:00:00Z"},
        }
        result, _ = self._run([{"items": [_item("a@google.com"), cancelled_instance]}])

        self.assertEqual(result.status, STATE_COMPLETED)
        self.assertEqual((result.inserted, result.updated, result.skipped), (1, 0, 1))
        self.assertEqual(self.store.count_events(), 1)
        self.assertEqual(self.store.list_import_ids(), {"a@google.com"})

    def test_handoff_errors_do_not_escape(self) -> None:
        self.handoff.side_effect = RuntimeError("host gone")
        result, _ = self._run([RecoverableAuthError("auth", {"authorization_url": "u", "state": "s"})])
        self.assertEqual(result.status, STATE_CANCELLED)
        self.handoff.assert_called_once()


if __name__ == "__main__":
    unittest.main()
