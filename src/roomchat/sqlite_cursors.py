from __future__ import annotations

from typing import Callable

from .errors import ValidationError
from .sessions import _now_ms
from .sqlite_backend import SQLiteBackend


class SQLiteCursorStore:
    """Durable broadcast read cursors backed by SQLite."""

    def __init__(self, backend: SQLiteBackend, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._backend = backend
        self._now = now_func

    def get(self, user_id: str) -> int:
        with self._backend.guarded() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO read_cursors (user_id, last_read_at_ms) VALUES (?, ?)",
                (user_id, self._now()),
            )
            row = conn.execute(
                "SELECT last_read_at_ms FROM read_cursors WHERE user_id=?",
                (user_id,),
            ).fetchone()
        return int(row[0])

    def peek(self, user_id: str) -> int | None:
        with self._backend.guarded() as conn:
            row = conn.execute(
                "SELECT last_read_at_ms FROM read_cursors WHERE user_id=?",
                (user_id,),
            ).fetchone()
        return int(row[0]) if row else None

    def advance(self, user_id: str, ts_ms: int) -> int:
        if ts_ms < 0:
            raise ValidationError("cursor timestamp must be non-negative")

        with self._backend.guarded() as conn:
            conn.execute(
                """
                INSERT INTO read_cursors (user_id, last_read_at_ms)
                VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET last_read_at_ms = CASE
                    WHEN excluded.last_read_at_ms > read_cursors.last_read_at_ms THEN excluded.last_read_at_ms
                    ELSE read_cursors.last_read_at_ms
                END
                """,
                (user_id, ts_ms),
            )
            row = conn.execute(
                "SELECT last_read_at_ms FROM read_cursors WHERE user_id=?",
                (user_id,),
            ).fetchone()
        return int(row[0]) if row else ts_ms
