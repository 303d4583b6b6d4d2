from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Set

CABAL_WIDE = "@"
ROLES = frozenset({"admin", "mod", "normal", "hide", "mute", "block"})


@dataclass
class User:
    """One participant of a cabal.

    ``flags`` maps a channel name, or ``"@"`` for the whole cabal, to the set of
    role tokens held in that scope. Role queries OR the channel scope with the
    cabal-wide scope.
    """

    key: str = ""
    name: str = ""
    local: bool = False
    online: bool = False
    flags: Dict[str, Set[str]] = field(default_factory=dict)

    def set_flags(self, channel: str | None, flags: Iterable[str]) -> None:
        self.flags[channel or CABAL_WIDE] = set(flags)

    def has_role(self, role: str, channel: str | None = None) -> bool:
        if role in self.flags.get(CABAL_WIDE, ()):
            return True
        if channel is None or channel == CABAL_WIDE:
            return False
        return role in self.flags.get(channel, ())

    def is_admin(self, channel: str | None = None) -> bool:
        return self.has_role("admin", channel)

    def is_moderator(self, channel: str | None = None) -> bool:
        return self.has_role("mod", channel)

    def is_hidden(self, channel: str | None = None) -> bool:
        return self.has_role("hide", channel)

    def is_blocked(self, channel: str | None = None) -> bool:
        return self.has_role("block", channel)

    def can_moderate(self, channel: str | None = None) -> bool:
        return self.is_admin(channel) or self.is_moderator(channel)

    def display_name(self) -> str:
        return self.name or self.key[:8]

    def update(self, profile: Dict[str, Any]) -> None:
        """Merge a profile record fetched from the log, keeping local-only fields."""

        name = profile.get("name")
        if isinstance(name, str):
            self.name = name
        flags = profile.get("flags")
        if isinstance(flags, dict):
            for channel, tokens in flags.items():
                self.set_flags(channel, tokens)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "local": self.local,
            "online": self.online,
            "flags": {channel: sorted(tokens) for channel, tokens in self.flags.items()},
        }

    @classmethod
    def from_profile(cls, key: str, profile: Dict[str, Any] | None = None, **overrides: Any) -> "User":
        user = cls(key=key)
        if profile:
            user.update(profile)
        for attr, value in overrides.items():
            setattr(user, attr, value)
        return user
