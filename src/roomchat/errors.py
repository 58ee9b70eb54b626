"""Error taxonomy shared by the store, trackers and transport.

Every public operation either returns a value or raises one of these. The
transport maps ``code`` onto wire errors; nothing below it catches them.
"""

from __future__ import annotations

from enum import Enum


class ChatError(Exception):
    code = "internal"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ChatError):
    """Rejected locally before any store call."""

    code = "invalid_request"


class MediaRejectReason(str, Enum):
    EMPTY = "empty"
    TOO_LARGE = "too_large"
    WRONG_TYPE = "wrong_type"


class MediaRejected(ValidationError):
    def __init__(self, reason: MediaRejectReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class AuthorizationError(ChatError):
    code = "forbidden"


class NotFound(ChatError):
    code = "not_found"


class TransientError(ChatError):
    """Storage or transport unavailable; the whole operation may be retried."""

    code = "unavailable"


class MediaStoreUnavailable(TransientError):
    pass


class FatalError(ChatError):
    code = "internal"


class ConversationUnavailable(FatalError):
    code = "conversation_unavailable"

    def __init__(self, topic_key: str, message: str | None = None) -> None:
        super().__init__(message or f"conversation {topic_key} is unavailable")
        self.topic_key = topic_key


ERROR_CODE_TO_STATUS: dict[str, int] = {
    ValidationError.code: 400,
    AuthorizationError.code: 403,
    NotFound.code: 404,
    TransientError.code: 503,
    ConversationUnavailable.code: 503,
    FatalError.code: 500,
}
