from __future__ import annotations

import threading
from typing import Callable, Dict

from .errors import ValidationError
from .sessions import _now_ms


class CursorStore:
    """Tracks each user's broadcast read watermark in memory."""

    def __init__(self, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._now = now_func
        self._lock = threading.Lock()
        self._positions: Dict[str, int] = {}

    def get(self, user_id: str) -> int:
        """Return the cursor, creating it at "now" on first access."""

        with self._lock:
            position = self._positions.get(user_id)
            if position is None:
                position = self._now()
                self._positions[user_id] = position
            return position

    def peek(self, user_id: str) -> int | None:
        with self._lock:
            return self._positions.get(user_id)

    def advance(self, user_id: str, ts_ms: int) -> int:
        """Move the cursor forward to ``ts_ms``; never moves it back."""

        if ts_ms < 0:
            raise ValidationError("cursor timestamp must be non-negative")
        with self._lock:
            current = self._positions.get(user_id)
            position = ts_ms if current is None else max(current, ts_ms)
            self._positions[user_id] = position
            return position
