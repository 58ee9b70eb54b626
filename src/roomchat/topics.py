from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from .errors import ValidationError


@dataclass(frozen=True)
class BroadcastTopic:
    """The single room-wide message stream."""

    @property
    def key(self) -> str:
        return "broadcast"


@dataclass(frozen=True)
class PrivateTopic:
    """The stream between exactly two users, keyed by the unordered pair."""

    low: str
    high: str

    @classmethod
    def for_pair(cls, user_a: str, user_b: str) -> "PrivateTopic":
        if user_a == user_b:
            raise ValidationError("a private conversation needs two distinct users")
        low, high = sorted((user_a, user_b))
        return cls(low=low, high=high)

    @property
    def key(self) -> str:
        return f"private:{self.low}:{self.high}"

    @property
    def participants(self) -> tuple[str, str]:
        return (self.low, self.high)

    def includes(self, user_id: str) -> bool:
        return user_id in (self.low, self.high)

    def counterpart(self, user_id: str) -> str:
        if user_id == self.low:
            return self.high
        if user_id == self.high:
            return self.low
        raise ValueError(f"{user_id} is not part of {self.key}")


@dataclass(frozen=True)
class UserTopic:
    """Per-user stream for unread counts, notifications and hints."""

    user_id: str

    @property
    def key(self) -> str:
        return f"user:{self.user_id}"


Topic = Union[BroadcastTopic, PrivateTopic, UserTopic]
ConversationSelector = Union[BroadcastTopic, PrivateTopic]

BROADCAST = BroadcastTopic()
