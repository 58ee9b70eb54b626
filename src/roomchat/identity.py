from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable

OPERATOR_ROLES = frozenset({"admin", "developer"})


@dataclass(frozen=True)
class Profile:
    """Authorship data supplied by the identity provider; read-only here."""

    user_id: str
    display_name: str
    avatar_ref: str | None = None
    chat_color: str = "#3b82f6"
    gradient_start: str | None = None
    gradient_end: str | None = None
    roles: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_operator(self) -> bool:
        return any(role in OPERATOR_ROLES for role in self.roles)

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["roles"] = list(self.roles)
        return data


class StaticProfileProvider:
    """Profiles known up front, e.g. loaded from a JSON file at startup."""

    def __init__(self, profiles: Iterable[Profile] = ()) -> None:
        self._profiles: Dict[str, Profile] = {profile.user_id: profile for profile in profiles}

    @classmethod
    def from_json_file(cls, path: str | Path) -> "StaticProfileProvider":
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(raw, list):
            raise ValueError("profiles file must contain a JSON list")
        profiles = []
        for entry in raw:
            if not isinstance(entry, dict) or not isinstance(entry.get("user_id"), str):
                raise ValueError("every profile needs a string user_id")
            profiles.append(
                Profile(
                    user_id=entry["user_id"],
                    display_name=entry.get("display_name") or entry["user_id"],
                    avatar_ref=entry.get("avatar_ref"),
                    chat_color=entry.get("chat_color", "#3b82f6"),
                    gradient_start=entry.get("gradient_start"),
                    gradient_end=entry.get("gradient_end"),
                    roles=tuple(entry.get("roles") or ()),
                )
            )
        return cls(profiles)

    def get(self, user_id: str) -> Profile | None:
        return self._profiles.get(user_id)

    def all_user_ids(self) -> list[str]:
        return sorted(self._profiles)
