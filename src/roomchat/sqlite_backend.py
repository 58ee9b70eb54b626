from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import FatalError, TransientError

SCHEMA_VERSION = 1


@contextmanager
def translate_sqlite_errors() -> Iterator[None]:
    """Map sqlite3 failures onto the retryable/fatal error kinds."""
    try:
        yield
    except sqlite3.OperationalError as exc:
        raise TransientError(f"storage unavailable: {exc}") from exc
    except sqlite3.DatabaseError as exc:
        raise FatalError(f"storage failure: {exc}") from exc


class SQLiteBackend:
    """Owns a shared SQLite connection and applies roomchat migrations."""

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._configure()
        self._apply_migrations()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def guarded(self) -> Iterator[sqlite3.Connection]:
        with translate_sqlite_errors(), self._lock:
            yield self._conn

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif user_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS broadcast_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                seq INTEGER NOT NULL UNIQUE,
                author_id TEXT NOT NULL,
                content TEXT NOT NULL,
                kind TEXT NOT NULL,
                media_ref TEXT,
                created_at_ms INTEGER NOT NULL,
                client_msg_id TEXT UNIQUE,
                CHECK ((kind = 'text' AND media_ref IS NULL) OR (kind <> 'text' AND media_ref IS NOT NULL AND content = ''))
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS broadcast_order ON broadcast_messages (created_at_ms, seq)"
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS private_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pair_key TEXT NOT NULL,
                seq INTEGER NOT NULL,
                sender_id TEXT NOT NULL,
                receiver_id TEXT NOT NULL,
                content TEXT,
                kind TEXT NOT NULL,
                media_ref TEXT,
                is_read INTEGER NOT NULL DEFAULT 0,
                created_at_ms INTEGER NOT NULL,
                client_msg_id TEXT,
                UNIQUE (pair_key, seq),
                UNIQUE (pair_key, client_msg_id),
                CHECK ((kind = 'text' AND media_ref IS NULL) OR (kind <> 'text' AND media_ref IS NOT NULL AND content IS NULL))
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS private_order ON private_messages (pair_key, created_at_ms, seq)"
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS private_unread ON private_messages (receiver_id, sender_id, is_read)"
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS conv_seq (
                conv_key TEXT PRIMARY KEY,
                next_seq INTEGER NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS read_cursors (
                user_id TEXT PRIMARY KEY,
                last_read_at_ms INTEGER NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                message TEXT NOT NULL,
                is_read INTEGER NOT NULL DEFAULT 0,
                created_at_ms INTEGER NOT NULL,
                metadata TEXT
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS notifications_by_user ON notifications (user_id, created_at_ms)"
        )
