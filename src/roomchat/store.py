from __future__ import annotations

import bisect
import itertools
import sys
import threading
from dataclasses import replace
from typing import Callable, Dict, List, Tuple

from .errors import AuthorizationError, ConversationUnavailable, NotFound
from .hub import FanoutHub
from .logging import get_logger
from .messages import BroadcastMessage, ChangeEvent, Message, MessageBody, PrivateMessage, validate_body
from .sessions import _now_ms
from .topics import BROADCAST, BroadcastTopic, ConversationSelector, PrivateTopic

logger = get_logger(__name__)


def _sort_key(message: Message) -> tuple[int, int]:
    return message.sort_key


class InMemoryMessageStore:
    """In-memory message store with one append path per conversation.

    Messages are ordered by ``(created_at_ms, seq)`` where ``seq`` is assigned
    per conversation under that conversation's lock, so equal timestamps
    still have a total order. Appends to different conversations never share
    a lock. Every committed append, read flip or delete is published to the
    hub after the lock is released.
    """

    def __init__(self, hub: FanoutHub | None = None, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._hub = hub
        self._now = now_func
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._next_seq: Dict[str, int] = {}
        self._broadcast: List[BroadcastMessage] = []
        self._private: Dict[str, List[PrivateMessage]] = {}
        self._private_by_id: Dict[int, PrivateMessage] = {}
        self._pairs_by_user: Dict[str, set[str]] = {}
        self._idempotency: Dict[Tuple[str, str], Message] = {}
        self._broadcast_ids = itertools.count(1)
        self._private_ids = itertools.count(1)
        self._unavailable: set[str] = set()

    def append_broadcast(
        self,
        author_id: str,
        body: MessageBody,
        *,
        created_at_ms: int | None = None,
        client_msg_id: str | None = None,
    ) -> tuple[BroadcastMessage, bool]:
        """Store a broadcast message, or return the original for a repeated ``client_msg_id``."""

        body = validate_body(body.kind, body.content, body.media_ref, private=False)
        key = BROADCAST.key
        self._require_available(key)
        with self._lock_for(key):
            existing = self._idempotent_hit(key, client_msg_id)
            if existing is not None:
                return existing, False
            message = BroadcastMessage(
                id=self._allocate_id(self._broadcast_ids),
                seq=self._take_seq(key),
                author_id=author_id,
                content=body.content or "",
                kind=body.kind,
                media_ref=body.media_ref,
                created_at_ms=self._now() if created_at_ms is None else created_at_ms,
                client_msg_id=client_msg_id,
            )
            bisect.insort(self._broadcast, message, key=_sort_key)
            if client_msg_id is not None:
                self._idempotency[(key, client_msg_id)] = message
        logger.info("message_appended", topic=key, message_id=message.id, seq=message.seq, kind=message.kind.value)
        self._publish(ChangeEvent.inserted(message))
        return message, True

    def append_private(
        self,
        sender_id: str,
        receiver_id: str,
        body: MessageBody,
        *,
        created_at_ms: int | None = None,
        client_msg_id: str | None = None,
    ) -> tuple[PrivateMessage, bool]:
        body = validate_body(body.kind, body.content, body.media_ref, private=True)
        topic = PrivateTopic.for_pair(sender_id, receiver_id)
        key = topic.key
        self._require_available(key)
        with self._lock_for(key):
            existing = self._idempotent_hit(key, client_msg_id)
            if existing is not None:
                return existing, False
            message = PrivateMessage(
                id=self._allocate_id(self._private_ids),
                seq=self._take_seq(key),
                sender_id=sender_id,
                receiver_id=receiver_id,
                content=body.content,
                kind=body.kind,
                media_ref=body.media_ref,
                is_read=False,
                created_at_ms=self._now() if created_at_ms is None else created_at_ms,
                client_msg_id=client_msg_id,
            )
            bisect.insort(self._private.setdefault(key, []), message, key=_sort_key)
            self._private_by_id[message.id] = message
            for user_id in topic.participants:
                self._pairs_by_user.setdefault(user_id, set()).add(key)
            if client_msg_id is not None:
                self._idempotency[(key, client_msg_id)] = message
        logger.info("message_appended", topic=key, message_id=message.id, seq=message.seq, kind=message.kind.value)
        self._publish(ChangeEvent.inserted(message))
        return message, True

    def list(
        self,
        selector: ConversationSelector,
        *,
        since_id: int | None = None,
        since_ms: int | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        """Return messages ascending, strictly after the anchor when one is given.

        ``since_id`` anchors on a message's position in the conversation and
        must name a message that is still stored. ``since_ms`` keeps only
        messages created strictly after that timestamp. ``limit`` caps the
        result from the oldest end.
        """

        key = selector.key
        self._require_available(key)
        with self._lock_for(key):
            messages = list(self._conversation(selector))
        if since_id is not None:
            anchor = next((m for m in messages if m.id == since_id), None)
            if anchor is None:
                raise NotFound(f"message {since_id} is not in {key}")
            messages = [m for m in messages if m.sort_key > anchor.sort_key]
        if since_ms is not None:
            messages = [m for m in messages if m.created_at_ms > since_ms]
        if limit is not None:
            messages = messages[: max(limit, 0)]
        return messages

    def recent(self, selector: ConversationSelector, limit: int) -> list[Message]:
        """Return the newest ``limit`` messages, still in ascending order."""

        key = selector.key
        self._require_available(key)
        if limit <= 0:
            return []
        with self._lock_for(key):
            return list(self._conversation(selector)[-limit:])

    def get_private(self, message_id: int) -> PrivateMessage | None:
        return self._private_by_id.get(message_id)

    def delete_private(self, message_id: int, requesting_user: str) -> PrivateMessage:
        """Remove a private message; only its sender may do so."""

        message = self._private_by_id.get(message_id)
        if message is None:
            raise NotFound(f"message {message_id} does not exist")
        key = message.topic.key
        self._require_available(key)
        with self._lock_for(key):
            message = self._private_by_id.get(message_id)
            if message is None:
                raise NotFound(f"message {message_id} does not exist")
            if message.sender_id != requesting_user:
                raise AuthorizationError("only the sender may delete a message")
            thread = self._private[key]
            thread.remove(message)
            del self._private_by_id[message_id]
            if message.client_msg_id is not None:
                self._idempotency.pop((key, message.client_msg_id), None)
        logger.info("message_deleted", topic=key, message_id=message_id)
        self._publish(ChangeEvent.deleted(message))
        return message

    def mark_private_read(self, receiver_id: str, sender_id: str) -> list[PrivateMessage]:
        """Flip every unread message from ``sender_id`` to ``receiver_id``; return the flipped ones."""

        key = PrivateTopic.for_pair(receiver_id, sender_id).key
        self._require_available(key)
        flipped: list[PrivateMessage] = []
        with self._lock_for(key):
            thread = self._private.get(key, [])
            for index, message in enumerate(thread):
                if message.receiver_id == receiver_id and message.sender_id == sender_id and not message.is_read:
                    updated = replace(message, is_read=True)
                    thread[index] = updated
                    self._private_by_id[updated.id] = updated
                    flipped.append(updated)
        for message in flipped:
            self._publish(ChangeEvent.updated(message))
        return flipped

    def count_broadcast_after(self, ts_ms: int) -> int:
        key = BROADCAST.key
        self._require_available(key)
        with self._lock_for(key):
            position = bisect.bisect_right(self._broadcast, (ts_ms, sys.maxsize), key=_sort_key)
            return len(self._broadcast) - position

    def count_unread_private(self, receiver_id: str, sender_id: str) -> int:
        key = PrivateTopic.for_pair(receiver_id, sender_id).key
        self._require_available(key)
        with self._lock_for(key):
            return sum(
                1
                for m in self._private.get(key, [])
                if m.receiver_id == receiver_id and m.sender_id == sender_id and not m.is_read
            )

    def private_activity(self, user_id: str) -> dict[str, int]:
        """Map each counterpart of ``user_id`` to the newest message timestamp between them."""

        activity: dict[str, int] = {}
        for key in sorted(self._pairs_by_user.get(user_id, set())):
            if key in self._unavailable:
                continue
            with self._lock_for(key):
                thread = self._private.get(key, [])
                if not thread:
                    continue
                last = thread[-1]
            activity[last.topic.counterpart(user_id)] = last.created_at_ms
        return activity

    def mark_unavailable(self, selector: ConversationSelector) -> None:
        logger.error("conversation_marked_unavailable", topic=selector.key)
        self._unavailable.add(selector.key)

    def is_available(self, selector: ConversationSelector) -> bool:
        return selector.key not in self._unavailable

    def _conversation(self, selector: ConversationSelector) -> List[Message]:
        if isinstance(selector, BroadcastTopic):
            return self._broadcast
        return self._private.get(selector.key, [])

    def _idempotent_hit(self, key: str, client_msg_id: str | None) -> Message | None:
        if client_msg_id is None:
            return None
        return self._idempotency.get((key, client_msg_id))

    def _take_seq(self, key: str) -> int:
        seq = self._next_seq.get(key, 1)
        self._next_seq[key] = seq + 1
        return seq

    def _allocate_id(self, counter: itertools.count) -> int:
        with self._registry_lock:
            return next(counter)

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def _require_available(self, key: str) -> None:
        if key in self._unavailable:
            raise ConversationUnavailable(key)

    def _publish(self, event: ChangeEvent) -> None:
        if self._hub is not None:
            self._hub.publish(event)
