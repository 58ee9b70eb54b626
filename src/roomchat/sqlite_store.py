from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from typing import Callable, Iterator

from .errors import AuthorizationError, ConversationUnavailable, FatalError, NotFound, TransientError
from .hub import FanoutHub
from .logging import get_logger
from .messages import (
    BroadcastMessage,
    ChangeEvent,
    Message,
    MessageBody,
    MessageKind,
    PrivateMessage,
    validate_body,
)
from .sessions import _now_ms
from .sqlite_backend import SQLiteBackend
from .topics import BROADCAST, BroadcastTopic, ConversationSelector, PrivateTopic

logger = get_logger(__name__)

_BROADCAST_COLUMNS = "id, seq, author_id, content, kind, media_ref, created_at_ms, client_msg_id"
_PRIVATE_COLUMNS = (
    "id, seq, sender_id, receiver_id, content, kind, media_ref, is_read, created_at_ms, client_msg_id"
)


def _broadcast_from_row(row: sqlite3.Row) -> BroadcastMessage:
    return BroadcastMessage(
        id=row["id"],
        seq=row["seq"],
        author_id=row["author_id"],
        content=row["content"],
        kind=MessageKind(row["kind"]),
        media_ref=row["media_ref"],
        created_at_ms=row["created_at_ms"],
        client_msg_id=row["client_msg_id"],
    )


def _private_from_row(row: sqlite3.Row) -> PrivateMessage:
    return PrivateMessage(
        id=row["id"],
        seq=row["seq"],
        sender_id=row["sender_id"],
        receiver_id=row["receiver_id"],
        content=row["content"],
        kind=MessageKind(row["kind"]),
        media_ref=row["media_ref"],
        is_read=bool(row["is_read"]),
        created_at_ms=row["created_at_ms"],
        client_msg_id=row["client_msg_id"],
    )


class SQLiteMessageStore:
    """Durable message store backed by SQLite.

    Same contract as ``InMemoryMessageStore``. Sequence numbers come from the
    ``conv_seq`` table inside the appending transaction. Lock contention and
    I/O failures surface as ``TransientError``; any other database fault marks
    the affected conversation unavailable.
    """

    def __init__(
        self,
        backend: SQLiteBackend,
        hub: FanoutHub | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._backend = backend
        self._hub = hub
        self._now = now_func
        self._unavailable: set[str] = set()

    def append_broadcast(
        self,
        author_id: str,
        body: MessageBody,
        *,
        created_at_ms: int | None = None,
        client_msg_id: str | None = None,
    ) -> tuple[BroadcastMessage, bool]:
        body = validate_body(body.kind, body.content, body.media_ref, private=False)
        key = BROADCAST.key
        created_at = self._now() if created_at_ms is None else created_at_ms
        with self._transaction(key) as cursor:
            if client_msg_id is not None:
                row = cursor.execute(
                    f"SELECT {_BROADCAST_COLUMNS} FROM broadcast_messages WHERE client_msg_id=?",
                    (client_msg_id,),
                ).fetchone()
                if row is not None:
                    return _broadcast_from_row(row), False
            seq = self._take_seq(cursor, key)
            cursor.execute(
                """
                INSERT INTO broadcast_messages (seq, author_id, content, kind, media_ref, created_at_ms, client_msg_id)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (seq, author_id, body.content or "", body.kind.value, body.media_ref, created_at, client_msg_id),
            )
            message = BroadcastMessage(
                id=int(cursor.lastrowid),
                seq=seq,
                author_id=author_id,
                content=body.content or "",
                kind=body.kind,
                media_ref=body.media_ref,
                created_at_ms=created_at,
                client_msg_id=client_msg_id,
            )
        logger.info("message_appended", topic=key, message_id=message.id, seq=seq, kind=message.kind.value)
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
        key = PrivateTopic.for_pair(sender_id, receiver_id).key
        created_at = self._now() if created_at_ms is None else created_at_ms
        with self._transaction(key) as cursor:
            if client_msg_id is not None:
                row = cursor.execute(
                    f"SELECT {_PRIVATE_COLUMNS} FROM private_messages WHERE pair_key=? AND client_msg_id=?",
                    (key, client_msg_id),
                ).fetchone()
                if row is not None:
                    return _private_from_row(row), False
            seq = self._take_seq(cursor, key)
            cursor.execute(
                """
                INSERT INTO private_messages
                    (pair_key, seq, sender_id, receiver_id, content, kind, media_ref, is_read, created_at_ms, client_msg_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (key, seq, sender_id, receiver_id, body.content, body.kind.value, body.media_ref, created_at, client_msg_id),
            )
            message = PrivateMessage(
                id=int(cursor.lastrowid),
                seq=seq,
                sender_id=sender_id,
                receiver_id=receiver_id,
                content=body.content,
                kind=body.kind,
                media_ref=body.media_ref,
                is_read=False,
                created_at_ms=created_at,
                client_msg_id=client_msg_id,
            )
        logger.info("message_appended", topic=key, message_id=message.id, seq=seq, kind=message.kind.value)
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
        table, columns, convert = self._table_for(selector)
        clauses: list[str] = []
        params: list[object] = []
        if isinstance(selector, PrivateTopic):
            clauses.append("pair_key=?")
            params.append(selector.key)

        with self._read(selector.key) as conn:
            if since_id is not None:
                anchor_query = f"SELECT created_at_ms, seq FROM {table} WHERE id=?"
                anchor_params: list[object] = [since_id]
                if isinstance(selector, PrivateTopic):
                    anchor_query += " AND pair_key=?"
                    anchor_params.append(selector.key)
                anchor = conn.execute(anchor_query, anchor_params).fetchone()
                if anchor is None:
                    raise NotFound(f"message {since_id} is not in {selector.key}")
                clauses.append("(created_at_ms, seq) > (?, ?)")
                params.extend([anchor[0], anchor[1]])
            if since_ms is not None:
                clauses.append("created_at_ms > ?")
                params.append(since_ms)

            query = f"SELECT {columns} FROM {table}"
            if clauses:
                query += " WHERE " + " AND ".join(clauses)
            query += " ORDER BY created_at_ms ASC, seq ASC"
            if limit is not None:
                query += " LIMIT ?"
                params.append(max(limit, 0))
            rows = conn.execute(query, params).fetchall()
        return [convert(row) for row in rows]

    def recent(self, selector: ConversationSelector, limit: int) -> list[Message]:
        if limit <= 0:
            return []
        table, columns, convert = self._table_for(selector)
        query = f"SELECT {columns} FROM {table}"
        params: list[object] = []
        if isinstance(selector, PrivateTopic):
            query += " WHERE pair_key=?"
            params.append(selector.key)
        query += " ORDER BY created_at_ms DESC, seq DESC LIMIT ?"
        params.append(limit)
        with self._read(selector.key) as conn:
            rows = conn.execute(query, params).fetchall()
        return [convert(row) for row in reversed(rows)]

    def get_private(self, message_id: int) -> PrivateMessage | None:
        with self._read(None) as conn:
            row = conn.execute(
                f"SELECT {_PRIVATE_COLUMNS} FROM private_messages WHERE id=?", (message_id,)
            ).fetchone()
        return _private_from_row(row) if row is not None else None

    def delete_private(self, message_id: int, requesting_user: str) -> PrivateMessage:
        existing = self.get_private(message_id)
        if existing is None:
            raise NotFound(f"message {message_id} does not exist")
        key = existing.topic.key
        with self._transaction(key) as cursor:
            row = cursor.execute(
                f"SELECT {_PRIVATE_COLUMNS} FROM private_messages WHERE id=?", (message_id,)
            ).fetchone()
            if row is None:
                raise NotFound(f"message {message_id} does not exist")
            message = _private_from_row(row)
            if message.sender_id != requesting_user:
                raise AuthorizationError("only the sender may delete a message")
            cursor.execute("DELETE FROM private_messages WHERE id=?", (message_id,))
        logger.info("message_deleted", topic=key, message_id=message_id)
        self._publish(ChangeEvent.deleted(message))
        return message

    def mark_private_read(self, receiver_id: str, sender_id: str) -> list[PrivateMessage]:
        key = PrivateTopic.for_pair(receiver_id, sender_id).key
        with self._transaction(key) as cursor:
            rows = cursor.execute(
                f"""
                SELECT {_PRIVATE_COLUMNS} FROM private_messages
                WHERE receiver_id=? AND sender_id=? AND is_read=0
                ORDER BY created_at_ms ASC, seq ASC
                """,
                (receiver_id, sender_id),
            ).fetchall()
            cursor.execute(
                "UPDATE private_messages SET is_read=1 WHERE receiver_id=? AND sender_id=? AND is_read=0",
                (receiver_id, sender_id),
            )
        flipped = [replace(_private_from_row(row), is_read=True) for row in rows]
        for message in flipped:
            self._publish(ChangeEvent.updated(message))
        return flipped

    def count_broadcast_after(self, ts_ms: int) -> int:
        with self._read(BROADCAST.key) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM broadcast_messages WHERE created_at_ms > ?", (ts_ms,)
            ).fetchone()
        return int(row[0])

    def count_unread_private(self, receiver_id: str, sender_id: str) -> int:
        key = PrivateTopic.for_pair(receiver_id, sender_id).key
        with self._read(key) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM private_messages WHERE receiver_id=? AND sender_id=? AND is_read=0",
                (receiver_id, sender_id),
            ).fetchone()
        return int(row[0])

    def private_activity(self, user_id: str) -> dict[str, int]:
        with self._read(None) as conn:
            rows = conn.execute(
                """
                SELECT CASE WHEN sender_id = ? THEN receiver_id ELSE sender_id END AS counterpart,
                       MAX(created_at_ms) AS last_ms
                FROM private_messages
                WHERE sender_id = ? OR receiver_id = ?
                GROUP BY counterpart
                ORDER BY counterpart ASC
                """,
                (user_id, user_id, user_id),
            ).fetchall()
        activity: dict[str, int] = {}
        for row in rows:
            counterpart = row["counterpart"]
            if PrivateTopic.for_pair(user_id, counterpart).key in self._unavailable:
                continue
            activity[counterpart] = int(row["last_ms"])
        return activity

    def mark_unavailable(self, selector: ConversationSelector) -> None:
        self._mark_unavailable_key(selector.key)

    def is_available(self, selector: ConversationSelector) -> bool:
        return selector.key not in self._unavailable

    @staticmethod
    def _table_for(selector: ConversationSelector):
        if isinstance(selector, BroadcastTopic):
            return "broadcast_messages", _BROADCAST_COLUMNS, _broadcast_from_row
        return "private_messages", _PRIVATE_COLUMNS, _private_from_row

    @staticmethod
    def _take_seq(cursor: sqlite3.Cursor, key: str) -> int:
        cursor.execute("INSERT OR IGNORE INTO conv_seq (conv_key, next_seq) VALUES (?, 1)", (key,))
        seq = int(cursor.execute("SELECT next_seq FROM conv_seq WHERE conv_key=?", (key,)).fetchone()[0])
        cursor.execute("UPDATE conv_seq SET next_seq = next_seq + 1 WHERE conv_key=?", (key,))
        return seq

    @contextmanager
    def _transaction(self, key: str) -> Iterator[sqlite3.Cursor]:
        with self._translate_errors(key), self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                yield cursor
                conn.commit()
            except BaseException:
                if conn.in_transaction:
                    conn.rollback()
                raise
            finally:
                cursor.close()

    @contextmanager
    def _read(self, key: str | None) -> Iterator[sqlite3.Connection]:
        with self._translate_errors(key), self._backend.lock:
            yield self._backend.connection

    @contextmanager
    def _translate_errors(self, key: str | None) -> Iterator[None]:
        if key is not None and key in self._unavailable:
            raise ConversationUnavailable(key)
        try:
            yield
        except sqlite3.OperationalError as exc:
            logger.warning("store_transient_failure", topic=key, error=str(exc))
            raise TransientError(f"storage unavailable: {exc}") from exc
        except sqlite3.IntegrityError as exc:
            logger.error("store_integrity_failure", topic=key, error=str(exc))
            raise FatalError(f"integrity violation: {exc}") from exc
        except sqlite3.DatabaseError as exc:
            if key is None:
                logger.error("store_failure", error=str(exc))
                raise FatalError(f"storage failure: {exc}") from exc
            self._mark_unavailable_key(key)
            raise ConversationUnavailable(key) from exc

    def _mark_unavailable_key(self, key: str) -> None:
        logger.error("conversation_marked_unavailable", topic=key)
        self._unavailable.add(key)

    def _publish(self, event: ChangeEvent) -> None:
        if self._hub is not None:
            self._hub.publish(event)
