"""Contract for the replicated log a cabal state object sits on, plus an in-memory implementation."""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from .errors import UpstreamFailure
from .events import Emitter
from .util import MonotonicClock, _now_ms, generate_key, message_timestamp

logger = logging.getLogger(__name__)

Message = Dict[str, Any]


def messages_topic(channel: str) -> str:
    return f"messages/{channel}"


class CabalLog(Protocol):
    """Operations and event topics consumed from the replication engine.

    Reads return messages newest first. Events are delivered synchronously to
    handlers registered with :meth:`on`; the topics are ``user-update``,
    ``topic-update``, ``peer-added``, ``peer-dropped``, ``archive``,
    ``unarchive``, ``membership-add``, ``membership-remove``, ``channel-add``,
    ``moderation-update``, ``private-message`` and ``messages/<channel>``.
    """

    key: str

    def on(self, topic: str, handler: Callable[..., None]) -> None: ...

    def off(self, topic: str, handler: Callable[..., None]) -> None: ...

    async def ready(self) -> None: ...

    async def get_local_key(self) -> str: ...

    async def list_channels(self) -> List[str]: ...

    async def list_archived(self) -> List[str]: ...

    async def get_channel_members(self, channel: str) -> List[str]: ...

    async def get_topic(self, channel: str) -> str: ...

    async def get_memberships(self, key: str) -> List[str]: ...

    async def get_users(self) -> Dict[str, Dict[str, Any]]: ...

    async def get_user(self, key: str) -> Optional[Dict[str, Any]]: ...

    async def list_moderation(self) -> List[Dict[str, Any]]: ...

    async def list_private_messages(self) -> List[str]: ...

    async def read_messages(
        self, channel: str, *, limit: int | None = None, lt: float | None = None, gt: float | None = None
    ) -> List[Message]: ...

    async def read_private_messages(
        self, recipient: str, *, limit: int | None = None, lt: float | None = None, gt: float | None = None
    ) -> List[Message]: ...

    async def publish(self, message: Dict[str, Any], opts: Dict[str, Any] | None = None) -> Message: ...

    async def publish_private(self, message: Dict[str, Any], recipient: str) -> Message: ...

    async def publish_nick(self, nick: str) -> None: ...

    async def publish_channel_topic(self, channel: str, topic: str) -> None: ...

    async def add_flags(self, id: str, channel: str, flags: List[str], reason: str = "") -> None: ...

    async def remove_flags(self, id: str, channel: str, flags: List[str], reason: str = "") -> None: ...

    async def list_by_flag(self, flag: str, channel: str = "@") -> List[str]: ...

    async def close(self) -> None: ...


class InMemoryCabalLog:
    """In-memory, single-process cabal log.

    Local writes and simulated remote writes (:meth:`receive`) go through the
    same indexing path, so events fire exactly as a replicated log would fire
    them. :meth:`fail_next` makes the next call to a named operation raise.
    """

    def __init__(
        self,
        key: str | None = None,
        *,
        local_key: str | None = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.key = key or generate_key()
        self.local_key = local_key or generate_key()
        self.events = Emitter()
        self.closed = False
        self._clock = MonotonicClock(now_func)
        self._seqs: Dict[str, int] = {}
        self._channels: List[str] = []
        self._feeds: Dict[str, List[Message]] = {}
        self._private: Dict[str, List[Message]] = {}
        self._members: Dict[str, Set[str]] = {}
        self._topics: Dict[str, str] = {}
        self._archived: Set[str] = set()
        self._users: Dict[str, Dict[str, Any]] = {}
        self._flags: Dict[Tuple[str, str], Set[str]] = {}
        self._failures: Dict[str, Exception] = {}

    # -- event topics -------------------------------------------------

    def on(self, topic: str, handler: Callable[..., None]) -> None:
        self.events.on(topic, handler)

    def off(self, topic: str, handler: Callable[..., None]) -> None:
        self.events.off(topic, handler)

    # -- failure injection --------------------------------------------

    def fail_next(self, operation: str, exc: Exception | None = None) -> None:
        self._failures[operation] = exc or UpstreamFailure(f"{operation} failed")

    def _check(self, operation: str) -> None:
        if self.closed:
            raise UpstreamFailure("log is closed")
        exc = self._failures.pop(operation, None)
        if exc is not None:
            raise exc

    # -- reads ----------------------------------------------------------

    async def ready(self) -> None:
        self._check("ready")

    async def get_local_key(self) -> str:
        self._check("get_local_key")
        return self.local_key

    async def list_channels(self) -> List[str]:
        self._check("list_channels")
        return list(self._channels)

    async def list_archived(self) -> List[str]:
        self._check("list_archived")
        return sorted(self._archived)

    async def get_channel_members(self, channel: str) -> List[str]:
        self._check("get_channel_members")
        return sorted(self._members.get(channel, set()))

    async def get_topic(self, channel: str) -> str:
        self._check("get_topic")
        return self._topics.get(channel, "")

    async def get_memberships(self, key: str) -> List[str]:
        self._check("get_memberships")
        return sorted(channel for channel, members in self._members.items() if key in members)

    async def get_users(self) -> Dict[str, Dict[str, Any]]:
        self._check("get_users")
        return copy.deepcopy(self._users)

    async def get_user(self, key: str) -> Optional[Dict[str, Any]]:
        self._check("get_user")
        user = self._users.get(key)
        return copy.deepcopy(user) if user is not None else None

    async def list_moderation(self) -> List[Dict[str, Any]]:
        self._check("list_moderation")
        return [
            {"id": id, "channel": channel, "flags": sorted(flags)}
            for (id, channel), flags in sorted(self._flags.items())
            if flags
        ]

    async def list_private_messages(self) -> List[str]:
        self._check("list_private_messages")
        return sorted(self._private)

    async def read_messages(
        self, channel: str, *, limit: int | None = None, lt: float | None = None, gt: float | None = None
    ) -> List[Message]:
        self._check("read_messages")
        return self._window(self._feeds.get(channel, []), limit, lt, gt)

    async def read_private_messages(
        self, recipient: str, *, limit: int | None = None, lt: float | None = None, gt: float | None = None
    ) -> List[Message]:
        self._check("read_private_messages")
        return self._window(self._private.get(recipient, []), limit, lt, gt)

    @staticmethod
    def _window(feed: List[Message], limit: int | None, lt: float | None, gt: float | None) -> List[Message]:
        selected = [
            message
            for message in feed
            if (lt is None or message_timestamp(message) < lt) and (gt is None or message_timestamp(message) > gt)
        ]
        selected.sort(key=message_timestamp)
        if limit is not None:
            selected = selected[-max(limit, 0) :] if limit > 0 else []
        return [copy.deepcopy(message) for message in reversed(selected)]

    # -- writes ---------------------------------------------------------

    async def publish(self, message: Dict[str, Any], opts: Dict[str, Any] | None = None) -> Message:
        self._check("publish")
        return self._append(self.local_key, message, timestamp=(opts or {}).get("timestamp"))

    async def publish_private(self, message: Dict[str, Any], recipient: str) -> Message:
        self._check("publish_private")
        body = copy.deepcopy(message)
        body.setdefault("content", {})["channel"] = recipient
        body["private"] = True
        return self._append(self.local_key, body)

    async def publish_nick(self, nick: str) -> None:
        self._check("publish_nick")
        self._append(self.local_key, {"type": "about", "content": {"name": nick}})

    async def publish_channel_topic(self, channel: str, topic: str) -> None:
        self._check("publish_channel_topic")
        self._append(self.local_key, {"type": "channel/topic", "content": {"channel": channel, "text": topic}})

    async def add_flags(self, id: str, channel: str, flags: List[str], reason: str = "") -> None:
        self._check("add_flags")
        self.apply_flags(self.local_key, id, channel, flags, "add", reason)

    async def remove_flags(self, id: str, channel: str, flags: List[str], reason: str = "") -> None:
        self._check("remove_flags")
        self.apply_flags(self.local_key, id, channel, flags, "remove", reason)

    async def list_by_flag(self, flag: str, channel: str = "@") -> List[str]:
        self._check("list_by_flag")
        return sorted(id for (id, scope), flags in self._flags.items() if scope == channel and flag in flags)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        logger.debug("closed log %s", self.key)

    # -- simulated remote activity ------------------------------------

    def receive(self, author: str, message: Dict[str, Any], *, timestamp: float | None = None) -> Message:
        """Index a message written by ``author`` as if it had just replicated in."""

        return self._append(author, message, timestamp=timestamp)

    def add_peer(self, key: str, name: str = "") -> None:
        self._users.setdefault(key, {"key": key, "name": ""})
        if name:
            self._users[key]["name"] = name

    def peer_connected(self, key: str) -> None:
        self.add_peer(key)
        self.events.emit("peer-added", key)

    def peer_dropped(self, key: str) -> None:
        self.events.emit("peer-dropped", key)

    def apply_flags(
        self, by: str, id: str, channel: str, flags: Iterable[str], type: str, reason: str = ""
    ) -> None:
        flags = list(flags)
        current = self._flags.setdefault((id, channel or "@"), set())
        if type == "add":
            current.update(flags)
        else:
            current.difference_update(flags)
        info = {
            "id": id,
            "channel": channel or "@",
            "flags": sorted(current),
            "by": by,
            "type": type,
            "role": flags[0] if flags else "",
            "reason": reason,
        }
        self.events.emit("moderation-update", info)

    # -- indexing -----------------------------------------------------

    def _append(self, author: str, body: Dict[str, Any], *, timestamp: float | None = None) -> Message:
        seq = self._seqs.get(author, 0)
        self._seqs[author] = seq + 1
        value = {
            "type": body.get("type", "chat/text"),
            "timestamp": timestamp if timestamp is not None else self._clock(),
            "content": copy.deepcopy(body.get("content") or {}),
        }
        if body.get("private"):
            value["private"] = True
        message = {"key": author, "seq": seq, "value": value}
        self._users.setdefault(author, {"key": author, "name": ""})
        self._index(message)
        return copy.deepcopy(message)

    def _index(self, message: Message) -> None:
        author = message["key"]
        value = message["value"]
        msg_type = value["type"]
        content = value["content"]
        channel = content.get("channel")

        if msg_type == "about":
            self._users[author]["name"] = content.get("name", "")
            self.events.emit("user-update", author)
            return

        if value.get("private"):
            counterparty = channel if author == self.local_key else author
            self._private.setdefault(counterparty, []).append(message)
            self.events.emit("private-message", copy.deepcopy(message))
            return

        if not isinstance(channel, str) or not channel:
            return

        if msg_type.startswith("chat/") or msg_type in {"channel/join", "channel/topic"}:
            self._ensure_channel(channel)

        if msg_type.startswith("chat/"):
            self._feeds.setdefault(channel, []).append(message)
            self.events.emit(messages_topic(channel), copy.deepcopy(message))
        elif msg_type == "channel/join":
            members = self._members.setdefault(channel, set())
            if author not in members:
                members.add(author)
                self.events.emit("membership-add", channel, author)
        elif msg_type == "channel/leave":
            members = self._members.setdefault(channel, set())
            if author in members:
                members.discard(author)
                self.events.emit("membership-remove", channel, author)
        elif msg_type == "channel/topic":
            self._topics[channel] = content.get("text", "")
            self.events.emit("topic-update", copy.deepcopy(message))
        elif msg_type == "channel/archive":
            self._archived.add(channel)
            self.events.emit("archive", channel, content.get("reason", ""), author)
        elif msg_type == "channel/unarchive":
            self._archived.discard(channel)
            self.events.emit("unarchive", channel, content.get("reason", ""), author)

    def _ensure_channel(self, channel: str) -> None:
        if channel in self._channels:
            return
        self._channels.append(channel)
        self.events.emit("channel-add", channel)
