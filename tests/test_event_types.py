import tempfile
import unittest
from pathlib import Path
from unittest import mock

from calimport.event_types import resolve_event_type_id, sync_type_title
from calimport.models import EventType
from calimport.state_store import StateStore


class ResolveEventTypeTests(unittest.TestCase):
    def test_title_is_synthesized_from_color(self) -> None:
        self.assertEqual(sync_type_title("11"), "google_sync_11")

    def test_existing_type_matches_case_insensitively(self) -> None:
        store = mock.Mock()
        cache = [EventType(id=1, title="Regular"), EventType(id=7, title="Google_Sync_11")]
        self.assertEqual(resolve_event_type_id("11", cache, "#000000", store), 7)
        store.insert_event_type.assert_not_called()

    def test_new_type_is_created_once_and_cached_with_its_id(self) -> None:
        store = mock.Mock()
        store.insert_event_type.return_value = 42
        cache: list[EventType] = []

        first = resolve_event_type_id("11", cache, "#3F51B5", store)
        second = resolve_event_type_id("11", cache, "#3F51B5", store)

        self.assertEqual(first, 42)
        self.assertEqual(second, 42)
        store.insert_event_type.assert_called_once()
        created = store.insert_event_type.call_args.args[0]
        self.assertEqual(created.title, "google_sync_11")
        self.assertEqual(created.color, "#3F51B5")
        self.assertEqual(cache, [EventType(id=42, title="google_sync_11", color="#3F51B5")])

    def test_later_run_reuses_stored_type(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            store = StateStore(str(Path(temp_dir) / "state.db"))
            first_run_cache = store.list_event_types()
            created_id = resolve_event_type_id("11", first_run_cache, "#111111", store)

            second_run_cache = store.list_event_types()
            reused_id = resolve_event_type_id("11", second_run_cache, "#222222", store)

            self.assertEqual(reused_id, created_id)
            self.assertEqual(len(store.list_event_types()), 1)


if __name__ == "__main__":
    unittest.main()
