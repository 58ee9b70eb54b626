from __future__ import annotations

from typing import Any

from .errors import AuthorizationError, NotFound, ValidationError
from .hub import FanoutHub
from .logging import get_logger
from .messages import BroadcastMessage, ChangeEvent, EventType, PrivateMessage
from .notifications import Notification
from .read_state import ReadStateTracker
from .topics import BROADCAST, UserTopic
from .viewers import ViewerRegistry

logger = get_logger(__name__)


class NotificationAggregator:
    """Derives unread counts and pushes them, plus notifications, on user topics.

    Counts published here are always recomputed through the tracker; nothing
    is cached, so the store is the only source of truth. Broadcast inserts
    are pushed only to users with a live user-topic subscription (or an open
    broadcast view); everyone else gets an accurate count on their next query.
    """

    def __init__(
        self,
        tracker: ReadStateTracker,
        notifications,
        hub: FanoutHub,
        viewers: ViewerRegistry,
        *,
        store=None,
    ) -> None:
        self._tracker = tracker
        self._notifications = notifications
        self._hub = hub
        self._viewers = viewers
        self._store = store

    def on_broadcast_insert(self, message: BroadcastMessage) -> list[str]:
        """Push fresh broadcast counts to listeners whose cursor predates ``message``.

        Returns the ids of the users that were notified.
        """

        listeners = {topic.user_id for topic in self._hub.topics() if isinstance(topic, UserTopic)}
        listeners.update(self._viewers.active_users(BROADCAST))
        notified: list[str] = []
        for user_id in sorted(listeners):
            viewing = self._viewers.is_active(user_id, BROADCAST)
            if viewing:
                self._tracker.advance_cursor(user_id, message.created_at_ms)
            cursor = self._tracker.peek_cursor(user_id)
            if cursor is None:
                cursor = self._tracker.get_cursor(user_id)
            if cursor >= message.created_at_ms:
                continue
            self._publish_user(
                user_id,
                EventType.UPDATE,
                {"entity": "unread", "scope": "broadcast", "count": self._tracker.unread_broadcast_count(user_id)},
            )
            if user_id != message.author_id:
                self._publish_hint(user_id, "broadcast", message.author_id, message.id, message.kind.value)
            notified.append(user_id)
        return notified

    def on_private_insert(self, message: PrivateMessage) -> int:
        """Update the receiver's count for the sender; returns the new count."""

        receiver, sender = message.receiver_id, message.sender_id
        if self._viewers.is_active(receiver, message.topic):
            self._tracker.mark_private_read(receiver, sender)
        else:
            self._publish_hint(receiver, "private", sender, message.id, message.kind.value)
        return self.publish_private_count(receiver, sender)

    def on_private_delete(self, message: PrivateMessage) -> None:
        if not message.is_read:
            self.publish_private_count(message.receiver_id, message.sender_id)

    def publish_private_count(self, receiver_id: str, sender_id: str) -> int:
        count = self._tracker.unread_private_count(receiver_id, sender_id)
        self._publish_user(
            receiver_id,
            EventType.UPDATE,
            {"entity": "unread", "scope": "private", "counterpart": sender_id, "count": count},
        )
        return count

    def publish_broadcast_count(self, user_id: str) -> int:
        count = self._tracker.unread_broadcast_count(user_id)
        self._publish_user(user_id, EventType.UPDATE, {"entity": "unread", "scope": "broadcast", "count": count})
        return count

    def create_notification(
        self,
        user_id: str,
        type: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> Notification:
        if not type or not type.strip():
            raise ValidationError("notification type required")
        if not message or not message.strip():
            raise ValidationError("notification message required")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("notification metadata must be an object")
        notification = self._notifications.create(user_id, type.strip(), message.strip(), metadata)
        logger.info("notification_created", user_id=user_id, notification_id=notification.id, type=notification.type)
        self._publish_user(
            user_id, EventType.INSERT, {"entity": "notification", "notification": notification.as_dict()}
        )
        self._publish_notification_count(user_id)
        return notification

    def mark_read(self, notification_id: int, user_id: str) -> Notification:
        existing = self._notifications.get(notification_id)
        if existing is None:
            raise NotFound(f"notification {notification_id} does not exist")
        if existing.user_id != user_id:
            raise AuthorizationError("notification belongs to another user")
        if existing.is_read:
            return existing
        notification = self._notifications.mark_read(notification_id)
        self._publish_user(
            user_id, EventType.UPDATE, {"entity": "notification", "notification": notification.as_dict()}
        )
        self._publish_notification_count(user_id)
        return notification

    def mark_all_read(self, user_id: str) -> int:
        flipped = self._notifications.mark_all_read(user_id)
        if flipped:
            self._publish_notification_count(user_id)
        return len(flipped)

    def list_notifications(self, user_id: str, limit: int = 20) -> list[Notification]:
        return self._notifications.list_recent(user_id, limit)

    def unread_notification_count(self, user_id: str) -> int:
        return self._notifications.unread_count(user_id)

    def unread_summary(self, user_id: str) -> dict[str, Any]:
        """Every badge the user can see, recomputed from the stores."""

        private: dict[str, int] = {}
        if self._store is not None:
            for counterpart in self._store.private_activity(user_id):
                count = self._tracker.unread_private_count(user_id, counterpart)
                if count:
                    private[counterpart] = count
        return {
            "broadcast": self._tracker.unread_broadcast_count(user_id),
            "private": private,
            "notifications": self._notifications.unread_count(user_id),
        }

    def _publish_notification_count(self, user_id: str) -> None:
        self._publish_user(
            user_id,
            EventType.UPDATE,
            {"entity": "unread", "scope": "notifications", "count": self._notifications.unread_count(user_id)},
        )

    def _publish_hint(self, user_id: str, source: str, from_user: str, message_id: int, kind: str) -> None:
        self._publish_user(
            user_id,
            EventType.INSERT,
            {"entity": "notify", "source": source, "from": from_user, "message_id": message_id, "kind": kind},
        )

    def _publish_user(self, user_id: str, event_type: EventType, payload: dict[str, Any]) -> None:
        self._hub.publish(ChangeEvent(topic=UserTopic(user_id), type=event_type, payload=payload))

