import os
import tempfile
import unittest

from roomchat.errors import AuthorizationError, ConversationUnavailable, NotFound, ValidationError
from roomchat.hub import FanoutHub
from roomchat.messages import EventType, MessageBody, MessageKind
from roomchat.sqlite_backend import SQLiteBackend
from roomchat.sqlite_store import SQLiteMessageStore
from roomchat.store import InMemoryMessageStore
from roomchat.topics import BROADCAST, PrivateTopic

from tests.chat_util import FakeClock, image, text


class MessageStoreContract:
    """Behaviour shared by every message store; mixed into a TestCase below."""

    def make_store(self, hub, clock):
        raise NotImplementedError

    def setUp(self) -> None:
        self.clock = FakeClock(1_000)
        self.hub = FanoutHub()
        self.store = self.make_store(self.hub, self.clock)

    def test_broadcast_orders_by_timestamp_then_seq(self):
        self.store.append_broadcast("alice", text("late"), created_at_ms=30)
        self.store.append_broadcast("bob", text("early"), created_at_ms=10)
        self.store.append_broadcast("carol", text("tie-1"), created_at_ms=20)
        self.store.append_broadcast("dave", text("tie-2"), created_at_ms=20)

        contents = [m.content for m in self.store.list(BROADCAST)]

        self.assertEqual(contents, ["early", "tie-1", "tie-2", "late"])

    def test_seq_is_assigned_per_conversation(self):
        b1, _ = self.store.append_broadcast("alice", text("one"))
        p1, _ = self.store.append_private("alice", "bob", text("dm"))
        b2, _ = self.store.append_broadcast("alice", text("two"))
        p2, _ = self.store.append_private("bob", "alice", text("reply"))
        other, _ = self.store.append_private("alice", "carol", text("hi"))

        self.assertEqual((b1.seq, b2.seq), (1, 2))
        self.assertEqual((p1.seq, p2.seq), (1, 2))
        self.assertEqual(other.seq, 1)

    def test_repeated_client_msg_id_returns_original(self):
        first, created_first = self.store.append_broadcast("alice", text("hello"), client_msg_id="c1")
        repeat, created_repeat = self.store.append_broadcast("alice", text("ignored"), client_msg_id="c1")

        self.assertTrue(created_first)
        self.assertFalse(created_repeat)
        self.assertEqual(first, repeat)
        self.assertEqual(len(self.store.list(BROADCAST)), 1)

    def test_list_since_id_is_exclusive_and_limited(self):
        ids = [self.store.append_broadcast("alice", text(str(i)), created_at_ms=i)[0].id for i in range(1, 6)]

        window = self.store.list(BROADCAST, since_id=ids[1], limit=2)

        self.assertEqual([m.content for m in window], ["3", "4"])

    def test_list_since_unknown_id_raises_not_found(self):
        self.store.append_broadcast("alice", text("only"))

        with self.assertRaises(NotFound):
            self.store.list(BROADCAST, since_id=999)

    def test_list_since_ms_is_strict(self):
        for ts in (10, 20, 30):
            self.store.append_broadcast("alice", text(str(ts)), created_at_ms=ts)

        self.assertEqual([m.content for m in self.store.list(BROADCAST, since_ms=20)], ["30"])

    def test_recent_returns_newest_in_ascending_order(self):
        for ts in range(1, 6):
            self.store.append_broadcast("alice", text(str(ts)), created_at_ms=ts)

        self.assertEqual([m.content for m in self.store.recent(BROADCAST, 2)], ["4", "5"])
        self.assertEqual(self.store.recent(BROADCAST, 0), [])

    def test_private_list_only_contains_the_pair(self):
        self.store.append_private("alice", "bob", text("ab"))
        self.store.append_private("alice", "carol", text("ac"))
        self.store.append_private("bob", "alice", text("ba"))

        thread = self.store.list(PrivateTopic.for_pair("bob", "alice"))

        self.assertEqual([m.content for m in thread], ["ab", "ba"])

    def test_media_message_carries_reference_without_text(self):
        broadcast, _ = self.store.append_broadcast(
            "alice", MessageBody(kind=MessageKind.IMAGE, content="", media_ref="/media/a.png")
        )
        private, _ = self.store.append_private("alice", "bob", image("/media/b.png"))

        self.assertEqual((broadcast.content, broadcast.media_ref), ("", "/media/a.png"))
        self.assertEqual((private.content, private.media_ref), (None, "/media/b.png"))

    def test_invalid_body_is_rejected_before_storage(self):
        with self.assertRaises(ValidationError):
            self.store.append_broadcast("alice", text("   "))
        with self.assertRaises(ValidationError):
            self.store.append_private("alice", "bob", MessageBody(kind=MessageKind.AUDIO, content=None, media_ref=None))

        self.assertEqual(self.store.list(BROADCAST), [])

    def test_append_publishes_insert_event(self):
        subscription = self.hub.subscribe(PrivateTopic.for_pair("alice", "bob"), "bob")

        message, _ = self.store.append_private("alice", "bob", text("hi"))

        events = subscription.drain()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].type, EventType.INSERT)
        self.assertEqual(events[0].payload["message"]["id"], message.id)

    def test_delete_by_sender_removes_and_publishes_tombstone(self):
        message, _ = self.store.append_private("alice", "bob", text("oops"))
        subscription = self.hub.subscribe(message.topic, "bob")

        deleted = self.store.delete_private(message.id, "alice")

        events = subscription.drain()
        self.assertEqual(deleted.id, message.id)
        self.assertEqual(self.store.list(message.topic), [])
        self.assertIsNone(self.store.get_private(message.id))
        self.assertEqual(len(events), 1)
        self.assertTrue(events[0].tombstone)
        self.assertEqual(events[0].payload, {"entity": "private_message", "id": message.id})

    def test_delete_by_non_sender_is_refused_and_store_unchanged(self):
        message, _ = self.store.append_private("alice", "bob", text("keep"))
        subscription = self.hub.subscribe(message.topic, "bob")

        with self.assertRaises(AuthorizationError):
            self.store.delete_private(message.id, "bob")

        self.assertEqual([m.id for m in self.store.list(message.topic)], [message.id])
        self.assertEqual(subscription.drain(), [])

    def test_delete_unknown_message_raises_not_found(self):
        with self.assertRaises(NotFound):
            self.store.delete_private(404, "alice")

    def test_mark_private_read_flips_only_incoming_unread(self):
        self.store.append_private("bob", "alice", text("1"))
        self.store.append_private("bob", "alice", text("2"))
        self.store.append_private("alice", "bob", text("mine"))

        flipped = self.store.mark_private_read("alice", "bob")
        again = self.store.mark_private_read("alice", "bob")

        self.assertEqual([m.content for m in flipped], ["1", "2"])
        self.assertTrue(all(m.is_read for m in flipped))
        self.assertEqual(again, [])
        self.assertEqual(self.store.count_unread_private("alice", "bob"), 0)
        self.assertEqual(self.store.count_unread_private("bob", "alice"), 1)

    def test_count_broadcast_after_is_strict(self):
        for ts in (10, 20, 20, 30):
            self.store.append_broadcast("alice", text(str(ts)), created_at_ms=ts)

        self.assertEqual(self.store.count_broadcast_after(0), 4)
        self.assertEqual(self.store.count_broadcast_after(20), 1)
        self.assertEqual(self.store.count_broadcast_after(30), 0)

    def test_private_activity_maps_counterparts_to_latest_timestamp(self):
        self.store.append_private("alice", "bob", text("a"), created_at_ms=10)
        self.store.append_private("bob", "alice", text("b"), created_at_ms=25)
        self.store.append_private("carol", "alice", text("c"), created_at_ms=15)

        self.assertEqual(self.store.private_activity("alice"), {"bob": 25, "carol": 15})
        self.assertEqual(self.store.private_activity("dave"), {})

    def test_unavailable_conversation_fails_without_touching_others(self):
        topic = PrivateTopic.for_pair("alice", "bob")
        self.store.append_private("alice", "bob", text("before"))

        self.store.mark_unavailable(topic)

        with self.assertRaises(ConversationUnavailable):
            self.store.append_private("alice", "bob", text("after"))
        with self.assertRaises(ConversationUnavailable):
            self.store.list(topic)
        self.assertFalse(self.store.is_available(topic))
        self.store.append_private("alice", "carol", text("still fine"))
        self.assertEqual(len(self.store.list(BROADCAST)), 0)


class InMemoryMessageStoreTests(MessageStoreContract, unittest.TestCase):
    def make_store(self, hub, clock):
        return InMemoryMessageStore(hub, now_func=clock)

    def test_default_timestamp_comes_from_clock(self):
        message, _ = self.store.append_broadcast("alice", text("now"))

        self.assertEqual(message.created_at_ms, 1_000)


class SQLiteMessageStoreTests(MessageStoreContract, unittest.TestCase):
    def make_store(self, hub, clock):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "roomchat.db")
        self.backend = SQLiteBackend(self.db_path)
        return SQLiteMessageStore(self.backend, hub, now_func=clock)

    def tearDown(self) -> None:
        self.backend.close()
        self.tmpdir.cleanup()

    def test_messages_survive_restart(self):
        self.store.append_broadcast("alice", text("persisted"), client_msg_id="c1")
        self.store.append_private("alice", "bob", text("dm"))
        self.backend.close()

        self.backend = SQLiteBackend(self.db_path)
        reopened = SQLiteMessageStore(self.backend, self.hub, now_func=self.clock)
        repeat, created = reopened.append_broadcast("alice", text("again"), client_msg_id="c1")
        next_message, _ = reopened.append_broadcast("alice", text("next"))

        self.assertFalse(created)
        self.assertEqual(repeat.content, "persisted")
        self.assertEqual(next_message.seq, 2)
        self.assertEqual([m.content for m in reopened.list(PrivateTopic.for_pair("alice", "bob"))], ["dm"])


if __name__ == "__main__":
    unittest.main()
