from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from .errors import ValidationError
from .topics import BROADCAST, BroadcastTopic, PrivateTopic, Topic


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"

    @classmethod
    def parse(cls, raw: Any) -> "MessageKind":
        if isinstance(raw, cls):
            return raw
        try:
            return cls(raw)
        except ValueError:
            raise ValidationError(f"unsupported message kind: {raw!r}") from None

    @property
    def is_media(self) -> bool:
        return self is not MessageKind.TEXT


class EventType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class BroadcastMessage:
    """A room-wide message. Immutable once stored."""

    id: int
    seq: int
    author_id: str
    content: str
    kind: MessageKind
    media_ref: str | None
    created_at_ms: int
    client_msg_id: str | None = None

    @property
    def topic(self) -> BroadcastTopic:
        return BROADCAST

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.created_at_ms, self.seq)

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


@dataclass(frozen=True)
class PrivateMessage:
    """A 1:1 message. ``is_read`` only ever flips from False to True."""

    id: int
    seq: int
    sender_id: str
    receiver_id: str
    content: str | None
    kind: MessageKind
    media_ref: str | None
    is_read: bool
    created_at_ms: int
    client_msg_id: str | None = None

    @property
    def topic(self) -> PrivateTopic:
        return PrivateTopic.for_pair(self.sender_id, self.receiver_id)

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.created_at_ms, self.seq)

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


Message = BroadcastMessage | PrivateMessage


@dataclass(frozen=True)
class MessageBody:
    """Validated content/kind/media triple ready for ``append``."""

    kind: MessageKind
    content: str | None
    media_ref: str | None


def validate_body(kind: Any, content: str | None, media_ref: str | None, *, private: bool) -> MessageBody:
    """Enforce the text/media invariants before anything touches a store.

    Text messages need non-blank content and no media reference. Media
    messages need a media reference and carry no text: an empty string for
    broadcast, ``None`` for private.
    """

    parsed = MessageKind.parse(kind)
    ref = (media_ref or "").strip() or None
    text = (content or "").strip()

    if not parsed.is_media:
        if ref is not None:
            raise ValidationError("text messages cannot carry a media reference")
        if not text:
            raise ValidationError("text messages need content")
        return MessageBody(kind=parsed, content=text, media_ref=None)

    if ref is None:
        raise ValidationError(f"{parsed.value} messages need a media reference")
    if text:
        raise ValidationError(f"{parsed.value} messages cannot carry text content")
    return MessageBody(kind=parsed, content=None if private else "", media_ref=ref)


@dataclass(frozen=True)
class ChangeEvent:
    """A fan-out event. Deletes travel as tombstones without message content."""

    topic: Topic
    type: EventType
    payload: dict[str, Any]
    tombstone: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic.key,
            "type": self.type.value,
            "tombstone": self.tombstone,
            "payload": self.payload,
        }

    @classmethod
    def inserted(cls, message: Message) -> "ChangeEvent":
        return cls(topic=message.topic, type=EventType.INSERT, payload=_message_payload(message))

    @classmethod
    def updated(cls, message: Message) -> "ChangeEvent":
        return cls(topic=message.topic, type=EventType.UPDATE, payload=_message_payload(message))

    @classmethod
    def deleted(cls, message: Message) -> "ChangeEvent":
        return cls(
            topic=message.topic,
            type=EventType.DELETE,
            payload={"entity": _entity(message), "id": message.id},
            tombstone=True,
        )


def _entity(message: Message) -> str:
    return "broadcast_message" if isinstance(message, BroadcastMessage) else "private_message"


def _message_payload(message: Message) -> dict[str, Any]:
    return {"entity": _entity(message), "message": message.as_dict()}
