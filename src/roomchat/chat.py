"""The messaging engine as one object: store, bus, read state, aggregator, directory.

Every operation validates first, then writes, then lets the aggregator derive
counts from what was written. Callers always receive the stored record or one
of the errors from ``roomchat.errors``.
"""

from __future__ import annotations

from typing import Any, Callable

from .aggregator import NotificationAggregator
from .cursors import CursorStore
from .directory import ConversationDirectory, DirectoryListing
from .errors import AuthorizationError, ChatError, MediaStoreUnavailable, NotFound, ValidationError
from .hub import FanoutHub, Subscription
from .identity import Profile
from .logging import get_logger
from .media import AUDIO_CONTENT_TYPE, MAX_MEDIA_BYTES, validate_upload
from .messages import BroadcastMessage, Message, MessageKind, PrivateMessage, validate_body
from .notifications import InMemoryNotificationStore, Notification, SQLiteNotificationStore
from .read_state import ReadStateTracker
from .sessions import _now_ms
from .sqlite_backend import SQLiteBackend
from .sqlite_cursors import SQLiteCursorStore
from .sqlite_store import SQLiteMessageStore
from .store import InMemoryMessageStore
from .topics import BROADCAST, BroadcastTopic, ConversationSelector, PrivateTopic, Topic, UserTopic
from .viewers import ViewerRegistry

logger = get_logger(__name__)


class ChatService:
    def __init__(
        self,
        *,
        store,
        cursors,
        notifications,
        hub: FanoutHub,
        media=None,
        profiles=None,
        backend: SQLiteBackend | None = None,
        now_func: Callable[[], int] = _now_ms,
        history_limit: int = 100,
        max_media_bytes: int = MAX_MEDIA_BYTES,
    ) -> None:
        self.store = store
        self.hub = hub
        self.media = media
        self.profiles = profiles
        self.backend = backend
        self.history_limit = history_limit
        self.max_media_bytes = max_media_bytes
        self.viewers = ViewerRegistry()
        self.tracker = ReadStateTracker(store, cursors, now_func=now_func)
        self.aggregator = NotificationAggregator(self.tracker, notifications, hub, self.viewers, store=store)
        self.directory = ConversationDirectory(store, self.tracker)

    @classmethod
    def in_memory(
        cls,
        *,
        hub: FanoutHub | None = None,
        media=None,
        profiles=None,
        now_func: Callable[[], int] = _now_ms,
        **options: Any,
    ) -> "ChatService":
        hub = hub or FanoutHub()
        return cls(
            store=InMemoryMessageStore(hub, now_func=now_func),
            cursors=CursorStore(now_func=now_func),
            notifications=InMemoryNotificationStore(now_func=now_func),
            hub=hub,
            media=media,
            profiles=profiles,
            now_func=now_func,
            **options,
        )

    @classmethod
    def with_sqlite(
        cls,
        db_path: str,
        *,
        hub: FanoutHub | None = None,
        media=None,
        profiles=None,
        now_func: Callable[[], int] = _now_ms,
        **options: Any,
    ) -> "ChatService":
        hub = hub or FanoutHub()
        backend = SQLiteBackend(db_path)
        return cls(
            store=SQLiteMessageStore(backend, hub, now_func=now_func),
            cursors=SQLiteCursorStore(backend, now_func=now_func),
            notifications=SQLiteNotificationStore(backend, now_func=now_func),
            hub=hub,
            media=media,
            profiles=profiles,
            backend=backend,
            now_func=now_func,
            **options,
        )

    def close(self) -> None:
        if self.backend is not None:
            self.backend.close()

    # Broadcast conversation

    def send_broadcast(
        self,
        author_id: str,
        content: str | None = "",
        kind: MessageKind | str = MessageKind.TEXT,
        media_ref: str | None = None,
        *,
        client_msg_id: str | None = None,
        created_at_ms: int | None = None,
    ) -> BroadcastMessage:
        body = validate_body(kind, content, media_ref, private=False)
        message, created = self.store.append_broadcast(
            author_id, body, created_at_ms=created_at_ms, client_msg_id=client_msg_id
        )
        if created:
            self.aggregator.on_broadcast_insert(message)
        return message

    def broadcast_history(
        self,
        *,
        since_id: int | None = None,
        since_ms: int | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        return self._history(BROADCAST, since_id=since_id, since_ms=since_ms, limit=limit)

    def open_broadcast(self, user_id: str) -> int:
        """Advance the user's cursor to now; return the recomputed unread count."""

        self.tracker.advance_cursor(user_id)
        return self.aggregator.publish_broadcast_count(user_id)

    # Private conversations

    def send_private(
        self,
        sender_id: str,
        receiver_id: str,
        content: str | None = None,
        kind: MessageKind | str = MessageKind.TEXT,
        media_ref: str | None = None,
        *,
        client_msg_id: str | None = None,
        created_at_ms: int | None = None,
    ) -> PrivateMessage:
        self._require_counterpart(sender_id, receiver_id)
        body = validate_body(kind, content, media_ref, private=True)
        message, created = self.store.append_private(
            sender_id, receiver_id, body, created_at_ms=created_at_ms, client_msg_id=client_msg_id
        )
        if created:
            self.aggregator.on_private_insert(message)
        return message

    def private_history(
        self,
        user_id: str,
        counterpart: str,
        *,
        since_id: int | None = None,
        since_ms: int | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        self._require_counterpart(user_id, counterpart)
        topic = PrivateTopic.for_pair(user_id, counterpart)
        return self._history(topic, since_id=since_id, since_ms=since_ms, limit=limit)

    def open_private(self, user_id: str, counterpart: str) -> int:
        """Mark everything from ``counterpart`` read; return the recomputed unread count."""

        self._require_counterpart(user_id, counterpart)
        self.tracker.mark_private_read(user_id, counterpart)
        return self.aggregator.publish_private_count(user_id, counterpart)

    def delete_private(self, message_id: int, user_id: str) -> PrivateMessage:
        message = self.store.delete_private(message_id, user_id)
        self.aggregator.on_private_delete(message)
        return message

    # Media

    def send_media(
        self,
        user_id: str,
        kind: MessageKind | str,
        data: bytes,
        content_type: str | None = None,
        *,
        receiver_id: str | None = None,
        client_msg_id: str | None = None,
    ) -> Message:
        """Upload a blob, then append a message referencing it.

        Nothing is appended unless the upload returned a URL. If the append
        itself is rejected the uploaded object is discarded again.
        """

        parsed = MessageKind.parse(kind)
        if parsed is MessageKind.AUDIO and not content_type:
            content_type = AUDIO_CONTENT_TYPE
        validate_upload(parsed, data, content_type, max_bytes=self.max_media_bytes)
        if receiver_id is not None:
            self._require_counterpart(user_id, receiver_id)
        if self.media is None:
            raise MediaStoreUnavailable("media store is not configured")

        url = self.media.upload(user_id, data, content_type)
        try:
            if receiver_id is None:
                message = self.send_broadcast(user_id, "", parsed, url, client_msg_id=client_msg_id)
            else:
                message = self.send_private(user_id, receiver_id, None, parsed, url, client_msg_id=client_msg_id)
        except ChatError:
            self._discard_media(url)
            raise
        if message.media_ref != url:
            # A retried client_msg_id returns the original message.
            self._discard_media(url)
        return message

    def _discard_media(self, url: str) -> None:
        discard = getattr(self.media, "discard", None)
        if discard is not None:
            discard(url)

    # Viewer signals and subscriptions

    def viewer_active(self, user_id: str, selector: ConversationSelector) -> int:
        """Record that ``user_id`` has ``selector`` open; opening it also reads it."""

        self._authorize_topic(user_id, selector)
        self.viewers.activate(user_id, selector)
        try:
            if isinstance(selector, BroadcastTopic):
                return self.open_broadcast(user_id)
            return self.open_private(user_id, selector.counterpart(user_id))
        except ChatError:
            self.viewers.deactivate(user_id, selector)
            raise

    def viewer_inactive(self, user_id: str, selector: ConversationSelector) -> None:
        self.viewers.deactivate(user_id, selector)

    def subscribe(self, user_id: str, topic: Topic, subscriber_id: str = "") -> Subscription:
        self._authorize_topic(user_id, topic)
        return self.hub.subscribe(topic, subscriber_id or user_id)

    # Derived views

    def list_conversations(self, user_id: str) -> DirectoryListing:
        known = self.profiles.all_user_ids() if self.profiles is not None else ()
        return self.directory.listing(user_id, known)

    def unread_summary(self, user_id: str) -> dict[str, Any]:
        return self.aggregator.unread_summary(user_id)

    # Notifications

    def create_notification(
        self, user_id: str, type: str, message: str, metadata: dict[str, Any] | None = None
    ) -> Notification:
        return self.aggregator.create_notification(user_id, type, message, metadata)

    def list_notifications(self, user_id: str, limit: int = 20) -> list[Notification]:
        return self.aggregator.list_notifications(user_id, limit)

    def mark_notification_read(self, notification_id: int, user_id: str) -> Notification:
        return self.aggregator.mark_read(notification_id, user_id)

    def mark_all_notifications_read(self, user_id: str) -> int:
        return self.aggregator.mark_all_read(user_id)

    def profile_for(self, user_id: str) -> Profile | None:
        if self.profiles is None:
            return None
        return self.profiles.get(user_id)

    def _history(
        self,
        selector: ConversationSelector,
        *,
        since_id: int | None,
        since_ms: int | None,
        limit: int | None,
    ) -> list[Message]:
        if since_id is None and since_ms is None:
            return self.store.recent(selector, self.history_limit if limit is None else limit)
        return self.store.list(selector, since_id=since_id, since_ms=since_ms, limit=limit)

    def _require_counterpart(self, user_id: str, counterpart: str) -> None:
        if not counterpart or counterpart == user_id:
            raise ValidationError("a private conversation needs another user")
        if self.profiles is not None and self.profiles.get(counterpart) is None:
            raise NotFound(f"unknown user {counterpart}")

    @staticmethod
    def _authorize_topic(user_id: str, topic: Topic) -> None:
        if isinstance(topic, PrivateTopic) and not topic.includes(user_id):
            raise AuthorizationError("not a participant of this conversation")
        if isinstance(topic, UserTopic) and topic.user_id != user_id:
            raise AuthorizationError("cannot subscribe to another user's topic")
