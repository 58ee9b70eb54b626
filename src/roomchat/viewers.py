from __future__ import annotations

from typing import Dict, Tuple

from .topics import ConversationSelector


class ViewerRegistry:
    """Which conversation each user currently has open.

    The UI reports open/close explicitly; nothing here is inferred. A user may
    have the same conversation open from several connections, so activity is
    reference counted per ``(user, conversation)``.
    """

    def __init__(self) -> None:
        self._active: Dict[Tuple[str, str], int] = {}

    def activate(self, user_id: str, selector: ConversationSelector) -> None:
        key = (user_id, selector.key)
        self._active[key] = self._active.get(key, 0) + 1

    def deactivate(self, user_id: str, selector: ConversationSelector) -> None:
        key = (user_id, selector.key)
        count = self._active.get(key, 0)
        if count <= 1:
            self._active.pop(key, None)
        else:
            self._active[key] = count - 1

    def is_active(self, user_id: str, selector: ConversationSelector) -> bool:
        return (user_id, selector.key) in self._active

    def active_users(self, selector: ConversationSelector) -> list[str]:
        return sorted(user_id for user_id, key in self._active if key == selector.key)
