import os
import tempfile
import threading
import unittest

from roomchat.cursors import CursorStore
from roomchat.errors import ValidationError
from roomchat.read_state import ReadStateTracker
from roomchat.sqlite_backend import SQLiteBackend
from roomchat.sqlite_cursors import SQLiteCursorStore
from roomchat.store import InMemoryMessageStore

from tests.chat_util import FakeClock, text


class TestReadStateTracker(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock(1_000)
        self.store = InMemoryMessageStore(now_func=self.clock)
        self.tracker = ReadStateTracker(self.store, CursorStore(now_func=self.clock), now_func=self.clock)

    def test_first_access_starts_cursor_at_now(self):
        self.store.append_broadcast("bob", text("history"), created_at_ms=500)

        self.assertIsNone(self.tracker.peek_cursor("alice"))
        self.assertEqual(self.tracker.unread_broadcast_count("alice"), 0)
        self.assertEqual(self.tracker.peek_cursor("alice"), 1_000)

    def test_broadcast_count_is_strictly_after_cursor(self):
        self.tracker.advance_cursor("alice", 2_000)
        for ts in (1_999, 2_000, 2_001, 2_500):
            self.store.append_broadcast("bob", text(str(ts)), created_at_ms=ts)

        self.assertEqual(self.tracker.unread_broadcast_count("alice"), 2)

        self.tracker.advance_cursor("alice", 2_001)
        self.assertEqual(self.tracker.unread_broadcast_count("alice"), 1)

        self.tracker.advance_cursor("alice", 3_000)
        self.assertEqual(self.tracker.unread_broadcast_count("alice"), 0)

    def test_cursor_never_moves_backwards(self):
        self.assertEqual(self.tracker.advance_cursor("alice", 5_000), 5_000)
        self.assertEqual(self.tracker.advance_cursor("alice", 4_000), 5_000)
        self.assertEqual(self.tracker.get_cursor("alice"), 5_000)

    def test_advance_without_timestamp_uses_clock(self):
        self.clock.tick(250)

        self.assertEqual(self.tracker.advance_cursor("alice"), 1_250)

    def test_message_landing_after_advance_is_still_counted(self):
        self.tracker.advance_cursor("alice")
        self.store.append_broadcast("bob", text("same ms"), created_at_ms=1_000)
        self.store.append_broadcast("bob", text("next ms"), created_at_ms=1_001)

        self.assertEqual(self.tracker.unread_broadcast_count("alice"), 1)

    def test_concurrent_advances_keep_the_maximum(self):
        targets = list(range(100, 2_100, 100))
        threads = [threading.Thread(target=self.tracker.advance_cursor, args=("alice", ts)) for ts in targets]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(self.tracker.get_cursor("alice"), max(targets))

    def test_private_counts_and_idempotent_mark_read(self):
        self.store.append_private("bob", "alice", text("1"))
        self.store.append_private("bob", "alice", text("2"))
        self.store.append_private("carol", "alice", text("3"))

        self.assertEqual(self.tracker.unread_private_count("alice", "bob"), 2)
        self.assertEqual(len(self.tracker.mark_private_read("alice", "bob")), 2)
        self.assertEqual(self.tracker.mark_private_read("alice", "bob"), [])
        self.assertEqual(self.tracker.unread_private_count("alice", "bob"), 0)
        self.assertEqual(self.tracker.unread_private_count("alice", "carol"), 1)

    def test_negative_cursor_is_rejected(self):
        with self.assertRaises(ValidationError):
            self.tracker.advance_cursor("alice", -1)

    def test_self_conversation_is_a_validation_error(self):
        with self.assertRaises(ValidationError):
            self.tracker.mark_private_read("alice", "alice")
        with self.assertRaises(ValidationError):
            self.store.append_private("alice", "alice", text("me"))


class TestSQLiteCursorStore(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "roomchat.db")
        self.backend = SQLiteBackend(self.db_path)
        self.clock = FakeClock(7_000)

    def tearDown(self) -> None:
        self.backend.close()
        self.tmpdir.cleanup()

    def test_get_creates_cursor_at_now(self):
        cursors = SQLiteCursorStore(self.backend, now_func=self.clock)

        self.assertIsNone(cursors.peek("alice"))
        self.assertEqual(cursors.get("alice"), 7_000)
        self.clock.tick(100)
        self.assertEqual(cursors.get("alice"), 7_000)

    def test_advance_is_monotonic_and_durable(self):
        cursors = SQLiteCursorStore(self.backend, now_func=self.clock)
        self.assertEqual(cursors.advance("alice", 9_000), 9_000)
        self.assertEqual(cursors.advance("alice", 8_000), 9_000)
        self.backend.close()

        self.backend = SQLiteBackend(self.db_path)
        reopened = SQLiteCursorStore(self.backend, now_func=self.clock)

        self.assertEqual(reopened.peek("alice"), 9_000)

    def test_negative_timestamp_is_rejected(self):
        cursors = SQLiteCursorStore(self.backend, now_func=self.clock)

        with self.assertRaises(ValidationError):
            cursors.advance("alice", -5)
        self.assertIsNone(cursors.peek("alice"))


if __name__ == "__main__":
    unittest.main()
