from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .log import CabalLog
from .user import CABAL_WIDE, User

logger = logging.getLogger(__name__)

_WATCHED_ROLES = ("admin", "mod", "hide", "mute", "block")
_ACTIONS = {
    "admin": ("added", "removed"),
    "mod": ("added", "removed"),
    "hide": ("hid", "unhid"),
    "mute": ("muted", "unmuted"),
    "block": ("blocked", "unblocked"),
}


def role_snapshot(user: User, channel: str | None) -> Tuple[bool, ...]:
    return tuple(user.has_role(role, channel) for role in _WATCHED_ROLES)


def describe_flag_change(issuer_name: str, receiver_name: str, role: str, type: str, reason: str = "") -> str:
    added, removed = _ACTIONS.get(role, ("set", "unset"))
    action = added if type == "add" else removed
    if role in ("admin", "mod"):
        text = f"{issuer_name} {action} {receiver_name} as {role} {reason}"
    elif role in _ACTIONS:
        text = f"{issuer_name} {action} {receiver_name} {reason}"
    else:
        text = f"{issuer_name} {action} {role} on {receiver_name} {reason}"
    return text.strip()


@dataclass
class FlagChange:
    """Outcome of applying one moderation-update event to the user registry."""

    user: User
    channel: str
    role: str
    type: str
    reason: str
    issuer: str
    changed: bool
    authorized: bool
    text: str = ""

    @property
    def narrate(self) -> bool:
        return self.changed and self.authorized

    def status_message(self, timestamp: int) -> Dict[str, Any]:
        return {
            "key": "!status",
            "value": {
                "timestamp": timestamp,
                "type": "chat/moderation",
                "content": {
                    "text": self.text,
                    "issuerid": self.issuer,
                    "receiverid": self.user.key,
                    "role": self.role,
                    "type": self.type,
                    "reason": self.reason,
                },
            },
        }


def apply_flag_update(users: Dict[str, User], info: Mapping[str, Any], local_key: str | None) -> FlagChange:
    """Update ``users`` from a moderation-update event and decide whether it is worth narrating.

    The issuer's authority is judged on the roles it held before this update.
    """

    receiver_key = info["id"]
    channel = info.get("channel") or CABAL_WIDE
    issuer_key = info.get("by", "")
    issuer = users.get(issuer_key)
    is_local = local_key is not None and issuer_key == local_key
    authorized = is_local or (issuer is not None and issuer.can_moderate(channel))

    user = users.get(receiver_key)
    if user is None:
        user = User(key=receiver_key)
        users[receiver_key] = user
    before = role_snapshot(user, channel)
    user.set_flags(channel, info.get("flags") or [])
    changed = before != role_snapshot(user, channel)

    change = FlagChange(
        user=user,
        channel=channel,
        role=info.get("role", ""),
        type=info.get("type", "add"),
        reason=info.get("reason") or "",
        issuer=issuer_key,
        changed=changed,
        authorized=authorized,
    )
    if change.narrate:
        issuer_name = issuer.display_name() if issuer is not None else issuer_key[:8]
        change.text = describe_flag_change(issuer_name, user.display_name(), change.role, change.type, change.reason)
    elif changed:
        logger.debug("suppressed flag change on %s by unprivileged %s", receiver_key, issuer_key)
    return change


FlagTarget = Union[str, Sequence[Tuple[str, str]]]


class Moderation:
    """Thin wrapper over the log's moderation operations."""

    def __init__(self, log: CabalLog) -> None:
        self._log = log

    async def get_admins(self, channel: str = CABAL_WIDE) -> List[str]:
        return await self._log.list_by_flag("admin", channel)

    async def get_mods(self, channel: str = CABAL_WIDE) -> List[str]:
        return await self._log.list_by_flag("mod", channel)

    async def get_hides(self, channel: str = CABAL_WIDE) -> List[str]:
        return await self._log.list_by_flag("hide", channel)

    async def get_blocks(self, channel: str = CABAL_WIDE) -> List[str]:
        return await self._log.list_by_flag("block", channel)

    async def hide(self, id: FlagTarget, channel: str = CABAL_WIDE, reason: str = "") -> None:
        await self.set_flag("hide", "add", id, channel, reason)

    async def unhide(self, id: FlagTarget, channel: str = CABAL_WIDE, reason: str = "") -> None:
        await self.set_flag("hide", "remove", id, channel, reason)

    async def block(self, id: FlagTarget, channel: str = CABAL_WIDE, reason: str = "") -> None:
        await self.set_flag("block", "add", id, channel, reason)

    async def unblock(self, id: FlagTarget, channel: str = CABAL_WIDE, reason: str = "") -> None:
        await self.set_flag("block", "remove", id, channel, reason)

    async def add_admin(self, id: FlagTarget, channel: str = CABAL_WIDE, reason: str = "") -> None:
        await self.set_flag("admin", "add", id, channel, reason)

    async def remove_admin(self, id: FlagTarget, channel: str = CABAL_WIDE, reason: str = "") -> None:
        await self.set_flag("admin", "remove", id, channel, reason)

    async def add_mod(self, id: FlagTarget, channel: str = CABAL_WIDE, reason: str = "") -> None:
        await self.set_flag("mod", "add", id, channel, reason)

    async def remove_mod(self, id: FlagTarget, channel: str = CABAL_WIDE, reason: str = "") -> None:
        await self.set_flag("mod", "remove", id, channel, reason)

    async def set_flag(
        self, flag: str, type: str, id: FlagTarget, channel: Optional[str] = CABAL_WIDE, reason: str = ""
    ) -> None:
        """Add or remove ``flag`` for one key, or for every ``(key, reason)`` pair given."""

        if type not in ("add", "remove"):
            raise ValueError(f"unknown flag operation: {type}")
        channel = channel or CABAL_WIDE
        if isinstance(id, str):
            await self._flag(flag, type, channel, id, reason)
            return
        await asyncio.gather(*(self._flag(flag, type, channel, key, entry_reason) for key, entry_reason in id))

    async def _flag(self, flag: str, type: str, channel: str, id: str, reason: str) -> None:
        if type == "add":
            await self._log.add_flags(id, channel, [flag], reason)
        else:
            await self._log.remove_flags(id, channel, [flag], reason)
