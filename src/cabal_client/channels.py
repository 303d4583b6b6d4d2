from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .errors import InvalidChannelName
from .log import CabalLog, Message
from .util import day_start, merge, message_timestamp

STATUS_CHANNEL = "!status"
DATE_CHANGED = "status/date-changed"


class ChannelKind(str, Enum):
    PERSISTED = "persisted"
    PRIVATE = "private"
    VIRTUAL = "virtual"


@dataclass(frozen=True)
class Mention:
    message: Message
    direct: bool


class ChannelState:
    """State shared by every channel variant: membership, focus, unread and virtual messages."""

    kind = ChannelKind.PERSISTED
    is_private = False

    def __init__(self, name: str) -> None:
        self.name = name
        self.members: Set[str] = set()
        self.joined = False
        self.focused = False
        self.archived = False
        self.topic = ""
        self.new_message_count = 0
        self.mentions: List[Mention] = []
        self.dates_seen: Set[int] = set()
        self.virtual_messages: List[Message] = []

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"

    def handle_message(self, message: Message, mention: Optional[Mention] = None) -> None:
        if self.focused:
            return
        self.new_message_count += 1
        if mention is not None:
            self.mentions.append(mention)

    def get_new_message_count(self) -> int:
        return self.new_message_count

    def get_mentions(self) -> List[Mention]:
        return list(self.mentions)

    def mark_as_read(self) -> None:
        self.new_message_count = 0
        self.mentions = []

    def focus(self) -> None:
        self.focused = True

    def unfocus(self) -> None:
        self.focused = False

    def join(self) -> bool:
        """Mark the channel joined and return whether it already was."""

        joined = self.joined
        self.joined = True
        return joined

    def leave(self) -> bool:
        """Mark the channel left and return whether it was joined before."""

        joined = self.joined
        self.joined = False
        return joined

    def archive(self) -> None:
        self.archived = True

    def unarchive(self) -> None:
        self.archived = False

    def add_member(self, key: str) -> None:
        self.members.add(key)

    def remove_member(self, key: str) -> None:
        self.members.discard(key)

    def get_members(self) -> List[str]:
        return sorted(self.members)

    def add_virtual_message(self, message: Message) -> None:
        self.virtual_messages.append(message)

    def clear_virtual_messages(self) -> None:
        self.virtual_messages = []

    async def get_page(
        self,
        limit: int | None = None,
        newer_than: float | None = None,
        older_than: float | None = None,
    ) -> List[Message]:
        """Return up to ``limit`` messages, oldest first, durable and virtual interleaved.

        Every calendar day seen in the durable window gets one date-changed
        virtual message the first time it is scanned.
        """

        newest_first = await self._read(limit, newer_than, older_than)
        durable = list(reversed(newest_first))
        self._record_days(durable)
        return self.interleave_virtual_messages(durable, limit, newer_than, older_than)

    async def _read(self, limit: int | None, newer_than: float | None, older_than: float | None) -> List[Message]:
        return []

    def _record_days(self, messages: List[Message]) -> None:
        for message in messages:
            day = day_start(message_timestamp(message))
            if day in self.dates_seen:
                continue
            self.dates_seen.add(day)
            date = _dt.datetime.fromtimestamp(day / 1000, tz=_dt.timezone.utc).date().isoformat()
            self.add_virtual_message(
                {
                    "key": self.name,
                    "value": {
                        "type": DATE_CHANGED,
                        "timestamp": day,
                        "content": {"text": f"day changed to {date}"},
                    },
                }
            )

    def interleave_virtual_messages(
        self,
        messages: List[Message],
        limit: int | None = None,
        newer_than: float | None = None,
        older_than: float | None = None,
    ) -> List[Message]:
        lower = float("-inf") if newer_than is None else float(newer_than)
        upper = float("inf") if older_than is None else float(older_than)
        in_window = sorted(
            (vm for vm in self.virtual_messages if lower < message_timestamp(vm) < upper),
            key=message_timestamp,
        )
        merged = merge(messages, in_window, message_timestamp)
        if limit is None:
            return merged
        if limit <= 0:
            return []
        return merged[-limit:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "joined": self.joined,
            "focused": self.focused,
            "archived": self.archived,
            "topic": self.topic,
            "unread": self.new_message_count,
            "mentions": len(self.mentions),
            "members": self.get_members(),
        }


class PersistedChannel(ChannelState):
    """A public channel whose durable messages live in the replicated log."""

    def __init__(self, log: CabalLog, name: str) -> None:
        super().__init__(name)
        self._log = log

    async def _read(self, limit: int | None, newer_than: float | None, older_than: float | None) -> List[Message]:
        return await self._log.read_messages(self.name, limit=limit, lt=older_than, gt=newer_than)


class PrivateChannel(PersistedChannel):
    """A private conversation, named after the counterparty's public key."""

    kind = ChannelKind.PRIVATE
    is_private = True

    @property
    def recipient(self) -> str:
        return self.name

    def archive(self) -> None:
        raise InvalidChannelName("cannot archive private message channels")

    def unarchive(self) -> None:
        raise InvalidChannelName("cannot archive or unarchive private message channels")

    async def _read(self, limit: int | None, newer_than: float | None, older_than: float | None) -> List[Message]:
        return await self._log.read_private_messages(self.name, limit=limit, lt=older_than, gt=newer_than)


class VirtualChannel(ChannelState):
    """A local-only channel (``!status``) holding nothing but virtual messages."""

    kind = ChannelKind.VIRTUAL

    def __init__(self, name: str = STATUS_CHANNEL) -> None:
        super().__init__(name)
        self.joined = True

    def join(self) -> bool:
        return True

    def leave(self) -> bool:
        raise InvalidChannelName(f"cannot leave the {self.name} channel")

    def archive(self) -> None:
        raise InvalidChannelName(f"cannot archive the {self.name} channel")

    def unarchive(self) -> None:
        raise InvalidChannelName(f"cannot unarchive the {self.name} channel")
