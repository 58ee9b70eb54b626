"""Media validation and the local-disk media reference resolver.

Uploads must resolve to a URL before any message referencing them is
appended. Each object gets a unique name, and partial writes are removed on
failure or cancellation, so an aborted upload can never be referenced.
"""

from __future__ import annotations

import os
import re
import secrets
from pathlib import Path
from typing import Callable

from .errors import MediaRejected, MediaRejectReason, MediaStoreUnavailable
from .logging import get_logger
from .messages import MessageKind
from .sessions import _now_ms

logger = get_logger(__name__)

MAX_MEDIA_BYTES = 10 * 1024 * 1024
AUDIO_CONTENT_TYPE = "audio/webm"

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
    "audio/webm": "webm",
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
}
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def normalize_content_type(content_type: str | None) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def validate_upload(
    kind: MessageKind | str,
    data: bytes,
    content_type: str | None,
    *,
    max_bytes: int = MAX_MEDIA_BYTES,
) -> MessageKind:
    """Reject empty, oversized or mistyped media before it reaches storage."""

    parsed = MessageKind.parse(kind)
    if not parsed.is_media:
        raise MediaRejected(MediaRejectReason.WRONG_TYPE, "text is not a media kind")
    if not data:
        raise MediaRejected(MediaRejectReason.EMPTY, "media upload is empty")
    if len(data) > max_bytes:
        raise MediaRejected(
            MediaRejectReason.TOO_LARGE, f"media must be at most {max_bytes} bytes, got {len(data)}"
        )
    normalized = normalize_content_type(content_type)
    if not normalized.startswith(f"{parsed.value}/"):
        raise MediaRejected(
            MediaRejectReason.WRONG_TYPE, f"{parsed.value} upload cannot have content type {normalized or 'none'}"
        )
    return parsed


class LocalMediaResolver:
    """Stores blobs under ``root/<owner>/<ms>-<token>.<ext>`` and serves them from ``base_url``."""

    def __init__(
        self,
        root: str | Path,
        base_url: str = "/media",
        *,
        max_bytes: int = MAX_MEDIA_BYTES,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self._max_bytes = max_bytes
        self._now = now_func

    def upload(self, owner_id: str, data: bytes, content_type: str) -> str:
        normalized = normalize_content_type(content_type)
        category = normalized.split("/", 1)[0]
        if category not in ("image", "audio"):
            raise MediaRejected(MediaRejectReason.WRONG_TYPE, f"unsupported content type {normalized or 'none'}")
        validate_upload(category, data, normalized, max_bytes=self._max_bytes)

        owner_dir = _UNSAFE_CHARS.sub("_", owner_id) or "_"
        extension = _EXTENSIONS.get(normalized, "bin")
        name = f"{self._now()}-{secrets.token_hex(8)}.{extension}"
        target = self.root / owner_dir / name
        partial = target.with_name(name + ".part")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(partial, "wb") as handle:
                handle.write(data)
            os.replace(partial, target)
        except OSError as exc:
            _unlink_quietly(partial)
            logger.error("media_store_failed", owner_id=owner_id, error=str(exc))
            raise MediaStoreUnavailable(f"media store unavailable: {exc}") from exc
        except BaseException:
            _unlink_quietly(partial)
            raise
        url = f"{self.base_url}/{owner_dir}/{name}"
        logger.info("media_uploaded", owner_id=owner_id, url=url, size=len(data), content_type=normalized)
        return url

    def discard(self, url: str) -> None:
        """Remove an uploaded object that ended up unreferenced."""

        path = self.resolve(url)
        if path is not None:
            _unlink_quietly(path)

    def resolve(self, url: str) -> Path | None:
        prefix = self.base_url + "/"
        if not url.startswith(prefix):
            return None
        relative = url[len(prefix) :]
        parts = relative.split("/")
        if len(parts) != 2 or any(part in ("", ".", "..") for part in parts):
            return None
        return self.root / parts[0] / parts[1]


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
