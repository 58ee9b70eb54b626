import os
import tempfile
import unittest
from pathlib import Path

from roomchat.chat import ChatService
from roomchat.errors import (
    ConversationUnavailable,
    MediaRejected,
    MediaRejectReason,
    MediaStoreUnavailable,
    ValidationError,
)
from roomchat.media import LocalMediaResolver, validate_upload
from roomchat.messages import MessageKind
from roomchat.topics import BROADCAST, PrivateTopic

from tests.chat_util import FakeClock

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


class FailingMediaStore:
    def __init__(self) -> None:
        self.uploads = 0

    def upload(self, owner_id: str, data: bytes, content_type: str) -> str:
        self.uploads += 1
        raise MediaStoreUnavailable("bucket offline")


class TestValidateUpload(unittest.TestCase):
    def test_accepts_matching_types(self):
        self.assertIs(validate_upload("image", PNG, "image/png"), MessageKind.IMAGE)
        self.assertIs(validate_upload("audio", b"ogg", "audio/webm; codecs=opus"), MessageKind.AUDIO)

    def test_rejections_carry_a_reason(self):
        cases = [
            (("image", b"", "image/png"), MediaRejectReason.EMPTY),
            (("image", b"x" * 11, "image/png"), MediaRejectReason.TOO_LARGE),
            (("image", PNG, "audio/webm"), MediaRejectReason.WRONG_TYPE),
            (("audio", b"x", None), MediaRejectReason.WRONG_TYPE),
            (("text", b"x", "text/plain"), MediaRejectReason.WRONG_TYPE),
        ]
        for (kind, data, content_type), reason in cases:
            with self.subTest(kind=kind, reason=reason):
                with self.assertRaises(MediaRejected) as ctx:
                    validate_upload(kind, data, content_type, max_bytes=10)
                self.assertEqual(ctx.exception.reason, reason)
                self.assertIsInstance(ctx.exception, ValidationError)


class TestLocalMediaResolver(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.resolver = LocalMediaResolver(self.tmpdir.name, "/media", now_func=FakeClock(42))

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def test_upload_writes_unique_object_under_owner(self):
        first = self.resolver.upload("alice", PNG, "image/png")
        second = self.resolver.upload("alice", PNG, "image/png")

        self.assertNotEqual(first, second)
        self.assertTrue(first.startswith("/media/alice/42-"))
        self.assertTrue(first.endswith(".png"))
        path = self.resolver.resolve(first)
        self.assertEqual(path.read_bytes(), PNG)
        self.assertEqual([p.name for p in path.parent.iterdir() if p.suffix == ".part"], [])

    def test_discard_removes_object(self):
        url = self.resolver.upload("alice", b"voice", "audio/webm")

        self.resolver.discard(url)

        self.assertFalse(self.resolver.resolve(url).exists())

    def test_resolve_rejects_foreign_or_traversing_urls(self):
        self.assertIsNone(self.resolver.resolve("https://elsewhere/x.png"))
        self.assertIsNone(self.resolver.resolve("/media/../etc/passwd"))
        self.assertIsNone(self.resolver.resolve("/media/alice"))

    def test_unwritable_root_reports_store_unavailable(self):
        blocker = Path(self.tmpdir.name) / "blocker"
        blocker.write_text("not a directory")
        resolver = LocalMediaResolver(blocker, "/media")

        with self.assertRaises(MediaStoreUnavailable):
            resolver.upload("alice", PNG, "image/png")


class TestSendMedia(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.clock = FakeClock(1_000)
        self.resolver = LocalMediaResolver(self.tmpdir.name, "/media", max_bytes=64, now_func=self.clock)
        self.service = ChatService.in_memory(now_func=self.clock, media=self.resolver, max_media_bytes=64)
        self.broadcast = self.service.hub.subscribe(BROADCAST, "watcher")

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def _stored_files(self) -> list[str]:
        return [name for _, _, files in os.walk(self.tmpdir.name) for name in files]

    def test_broadcast_image_is_uploaded_then_appended(self):
        message = self.service.send_media("alice", "image", PNG, "image/png")

        self.assertEqual(message.kind, MessageKind.IMAGE)
        self.assertEqual(message.content, "")
        self.assertIsNotNone(self.resolver.resolve(message.media_ref))
        self.assertEqual(len(self.broadcast.drain()), 1)

    def test_private_audio_defaults_to_webm(self):
        message = self.service.send_media("alice", "audio", b"voice", None, receiver_id="bob")

        self.assertEqual(message.kind, MessageKind.AUDIO)
        self.assertIsNone(message.content)
        self.assertTrue(message.media_ref.endswith(".webm"))

    def test_retried_upload_keeps_only_the_original_object(self):
        first = self.service.send_media("alice", "image", PNG, "image/png", client_msg_id="c1")
        self.clock.tick()
        again = self.service.send_media("alice", "image", PNG, "image/png", client_msg_id="c1")

        self.assertEqual((again.id, again.media_ref), (first.id, first.media_ref))
        self.assertEqual(len(self._stored_files()), 1)
        self.assertIsNotNone(self.resolver.resolve(first.media_ref))
        self.assertTrue(self.resolver.resolve(first.media_ref).exists())
        self.assertEqual(len(self.broadcast.drain()), 1)

    def test_oversized_upload_creates_nothing(self):
        with self.assertRaises(MediaRejected) as ctx:
            self.service.send_media("alice", "image", b"x" * 65, "image/png")

        self.assertEqual(ctx.exception.reason, MediaRejectReason.TOO_LARGE)
        self.assertEqual(self.service.broadcast_history(), [])
        self.assertEqual(self.broadcast.drain(), [])
        self.assertEqual(self._stored_files(), [])

    def test_wrong_type_creates_nothing(self):
        with self.assertRaises(MediaRejected):
            self.service.send_media("alice", "image", b"not an image", "application/pdf", receiver_id="bob")

        self.assertEqual(self.service.private_history("alice", "bob"), [])
        self.assertEqual(self._stored_files(), [])

    def test_failed_upload_stores_no_message(self):
        failing = FailingMediaStore()
        service = ChatService.in_memory(now_func=self.clock, media=failing)
        subscription = service.hub.subscribe(PrivateTopic.for_pair("alice", "bob"), "bob")

        with self.assertRaises(MediaStoreUnavailable):
            service.send_media("alice", "image", PNG, "image/png", receiver_id="bob")

        self.assertEqual(failing.uploads, 1)
        self.assertEqual(service.private_history("alice", "bob"), [])
        self.assertEqual(subscription.drain(), [])

    def test_rejected_append_discards_upload(self):
        self.service.store.mark_unavailable(BROADCAST)

        with self.assertRaises(ConversationUnavailable):
            self.service.send_media("alice", "image", PNG, "image/png")

        self.assertEqual(self._stored_files(), [])

    def test_missing_media_store_is_transient(self):
        service = ChatService.in_memory(now_func=self.clock)

        with self.assertRaises(MediaStoreUnavailable):
            service.send_media("alice", "image", PNG, "image/png")


if __name__ == "__main__":
    unittest.main()
