from __future__ import annotations

from typing import Callable

from .logging import get_logger
from .messages import PrivateMessage
from .sessions import _now_ms

logger = get_logger(__name__)


class ReadStateTracker:
    """Per-user broadcast cursors and per-message private read flags.

    Counts are never cached: each call re-reads the current cursor and the
    current store, so a message appended while a cursor is being advanced is
    still counted on the next query.
    """

    def __init__(self, store, cursors, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._store = store
        self._cursors = cursors
        self._now = now_func

    def get_cursor(self, user_id: str) -> int:
        return self._cursors.get(user_id)

    def peek_cursor(self, user_id: str) -> int | None:
        return self._cursors.peek(user_id)

    def advance_cursor(self, user_id: str, ts_ms: int | None = None) -> int:
        target = self._now() if ts_ms is None else ts_ms
        position = self._cursors.advance(user_id, target)
        logger.debug("cursor_advanced", user_id=user_id, requested=target, position=position)
        return position

    def mark_private_read(self, receiver_id: str, sender_id: str) -> list[PrivateMessage]:
        flipped = self._store.mark_private_read(receiver_id, sender_id)
        if flipped:
            logger.info("private_marked_read", user_id=receiver_id, sender_id=sender_id, count=len(flipped))
        return flipped

    def unread_broadcast_count(self, user_id: str) -> int:
        cursor = self._cursors.get(user_id)
        return max(self._store.count_broadcast_after(cursor), 0)

    def unread_private_count(self, receiver_id: str, sender_id: str) -> int:
        return max(self._store.count_unread_private(receiver_id, sender_id), 0)
