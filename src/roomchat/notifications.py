from __future__ import annotations

import itertools
import json
import threading
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Dict, List

from .sessions import _now_ms
from .sqlite_backend import SQLiteBackend


@dataclass(frozen=True)
class Notification:
    id: int
    user_id: str
    type: str
    message: str
    is_read: bool
    created_at_ms: int
    metadata: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class InMemoryNotificationStore:
    def __init__(self, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._now = now_func
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._by_id: Dict[int, Notification] = {}
        self._by_user: Dict[str, List[int]] = {}

    def create(
        self, user_id: str, type: str, message: str, metadata: dict[str, Any] | None = None
    ) -> Notification:
        with self._lock:
            notification = Notification(
                id=next(self._ids),
                user_id=user_id,
                type=type,
                message=message,
                is_read=False,
                created_at_ms=self._now(),
                metadata=dict(metadata) if metadata is not None else None,
            )
            self._by_id[notification.id] = notification
            self._by_user.setdefault(user_id, []).append(notification.id)
        return notification

    def get(self, notification_id: int) -> Notification | None:
        return self._by_id.get(notification_id)

    def list_recent(self, user_id: str, limit: int) -> list[Notification]:
        """Newest first."""
        with self._lock:
            items = [self._by_id[nid] for nid in self._by_user.get(user_id, [])]
        items.sort(key=lambda n: (n.created_at_ms, n.id), reverse=True)
        return items[: max(limit, 0)]

    def mark_read(self, notification_id: int) -> Notification | None:
        with self._lock:
            notification = self._by_id.get(notification_id)
            if notification is None or notification.is_read:
                return notification
            notification = replace(notification, is_read=True)
            self._by_id[notification_id] = notification
            return notification

    def mark_all_read(self, user_id: str) -> list[int]:
        flipped: list[int] = []
        with self._lock:
            for nid in self._by_user.get(user_id, []):
                notification = self._by_id[nid]
                if not notification.is_read:
                    self._by_id[nid] = replace(notification, is_read=True)
                    flipped.append(nid)
        return flipped

    def unread_count(self, user_id: str) -> int:
        with self._lock:
            return sum(1 for nid in self._by_user.get(user_id, []) if not self._by_id[nid].is_read)


class SQLiteNotificationStore:
    """Durable notification records backed by SQLite."""

    def __init__(self, backend: SQLiteBackend, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._backend = backend
        self._now = now_func

    def create(
        self, user_id: str, type: str, message: str, metadata: dict[str, Any] | None = None
    ) -> Notification:
        created_at = self._now()
        encoded = json.dumps(metadata, sort_keys=True) if metadata is not None else None
        with self._backend.guarded() as conn:
            cursor = conn.execute(
                """
                INSERT INTO notifications (user_id, type, message, is_read, created_at_ms, metadata)
                VALUES (?, ?, ?, 0, ?, ?)
                """,
                (user_id, type, message, created_at, encoded),
            )
            notification_id = int(cursor.lastrowid)
        return Notification(
            id=notification_id,
            user_id=user_id,
            type=type,
            message=message,
            is_read=False,
            created_at_ms=created_at,
            metadata=dict(metadata) if metadata is not None else None,
        )

    def get(self, notification_id: int) -> Notification | None:
        with self._backend.guarded() as conn:
            row = conn.execute(
                "SELECT id, user_id, type, message, is_read, created_at_ms, metadata FROM notifications WHERE id=?",
                (notification_id,),
            ).fetchone()
        return self._from_row(row) if row is not None else None

    def list_recent(self, user_id: str, limit: int) -> list[Notification]:
        with self._backend.guarded() as conn:
            rows = conn.execute(
                """
                SELECT id, user_id, type, message, is_read, created_at_ms, metadata FROM notifications
                WHERE user_id=?
                ORDER BY created_at_ms DESC, id DESC
                LIMIT ?
                """,
                (user_id, max(limit, 0)),
            ).fetchall()
        return [self._from_row(row) for row in rows]

    def mark_read(self, notification_id: int) -> Notification | None:
        with self._backend.guarded() as conn:
            conn.execute("UPDATE notifications SET is_read=1 WHERE id=?", (notification_id,))
        return self.get(notification_id)

    def mark_all_read(self, user_id: str) -> list[int]:
        with self._backend.guarded() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                rows = conn.execute(
                    "SELECT id FROM notifications WHERE user_id=? AND is_read=0 ORDER BY id ASC",
                    (user_id,),
                ).fetchall()
                conn.execute("UPDATE notifications SET is_read=1 WHERE user_id=? AND is_read=0", (user_id,))
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return [int(row[0]) for row in rows]

    def unread_count(self, user_id: str) -> int:
        with self._backend.guarded() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM notifications WHERE user_id=? AND is_read=0",
                (user_id,),
            ).fetchone()
        return int(row[0])

    @staticmethod
    def _from_row(row) -> Notification:
        return Notification(
            id=row["id"],
            user_id=row["user_id"],
            type=row["type"],
            message=row["message"],
            is_read=bool(row["is_read"]),
            created_at_ms=row["created_at_ms"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
        )
