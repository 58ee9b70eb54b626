from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from .read_state import ReadStateTracker


@dataclass(frozen=True)
class ConversationSummary:
    counterpart: str
    last_activity_ms: int
    unread_count: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "counterpart": self.counterpart,
            "last_activity_ms": self.last_activity_ms,
            "unread_count": self.unread_count,
        }


@dataclass(frozen=True)
class DirectoryListing:
    conversations: list[ConversationSummary]
    available: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "conversations": [item.as_dict() for item in self.conversations],
            "available": list(self.available),
        }


class ConversationDirectory:
    """Derives a user's private conversations from the messages themselves.

    There is no conversation entity: counterparts are whoever shares at
    least one stored private message with the user. Conversations are
    ordered newest activity first, ties by counterpart id.
    """

    def __init__(self, store, tracker: ReadStateTracker) -> None:
        self._store = store
        self._tracker = tracker

    def list_conversations(self, user_id: str) -> list[ConversationSummary]:
        activity = self._store.private_activity(user_id)
        summaries = [
            ConversationSummary(
                counterpart=counterpart,
                last_activity_ms=last_ms,
                unread_count=self._tracker.unread_private_count(user_id, counterpart),
            )
            for counterpart, last_ms in activity.items()
        ]
        summaries.sort(key=lambda item: (-item.last_activity_ms, item.counterpart))
        return summaries

    def listing(self, user_id: str, known_users: Iterable[str] = ()) -> DirectoryListing:
        """Conversations plus every other known user without one."""

        conversations = self.list_conversations(user_id)
        with_activity = {item.counterpart for item in conversations}
        available = sorted(
            {other for other in known_users if other != user_id and other not in with_activity}
        )
        return DirectoryListing(conversations=conversations, available=available)
