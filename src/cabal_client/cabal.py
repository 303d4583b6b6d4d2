from __future__ import annotations

import asyncio
import copy
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from .channels import (
    STATUS_CHANNEL,
    ChannelKind,
    ChannelState,
    Mention,
    PersistedChannel,
    PrivateChannel,
    VirtualChannel,
)
from .errors import InvalidChannelName, NotAvailable, NotFound, UnsupportedMessageType
from .events import UPDATE, CabalEvent, Callback, EventHub, ListenerRegistry, Subscription
from .log import CabalLog, Message, messages_topic
from .moderation import Moderation, apply_flag_update
from .settings import InMemorySettingsStore, SettingsStore
from .user import CABAL_WIDE, User
from .util import MonotonicClock, _now_ms, is_key, scrub_key

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "default"
PRIVATE_MESSAGE_TYPES = ("chat/text", "chat/emote")


class Lifecycle(str, Enum):
    UNINITIALIZED = "uninitialized"
    BOOTSTRAPPING = "bootstrapping"
    READY = "ready"
    DESTROYED = "destroyed"


class CommandResponse:
    """Capability handed to a command: report progress with ``info``, failures with ``error``, finish with ``end``."""

    def __init__(self, state: "CabalState", command: str, uid: str) -> None:
        self._state = state
        self.command = command
        self.uid = uid
        self.seq = 0

    def info(self, msg: Union[str, Dict[str, Any]], extra: Optional[Dict[str, Any]] = None) -> None:
        payload = {"text": msg} if isinstance(msg, str) else dict(msg)
        if extra:
            payload.update(extra)
        payload["meta"] = {"uid": self.uid, "command": self.command, "seq": self.seq}
        self.seq += 1
        self._state._emit_update("info", payload)

    def error(self, err: BaseException | str) -> None:
        self._state._emit_update(
            "error",
            {"command": self.command, "uid": self.uid, "error": err, "message": str(err)},
        )

    def end(self) -> None:
        self._state._emit_update("end", {"uid": self.uid, "command": self.command, "seq": self.seq})


class CabalState:
    """Queryable view of one cabal, kept in sync with its replicated log.

    Construct it, then ``await initialize()``; the state answers queries once
    every bootstrap fetch has completed. ``await destroy()`` detaches every
    upstream listener and closes the log.
    """

    def __init__(
        self,
        log: CabalLog,
        *,
        settings: SettingsStore | None = None,
        default_channel: str = DEFAULT_CHANNEL,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.log = log
        self.key = scrub_key(log.key)
        self.moderation = Moderation(log)
        self.default_channel = default_channel
        self.lifecycle = Lifecycle.UNINITIALIZED
        self._clock = MonotonicClock(now_func)

        status = VirtualChannel(STATUS_CHANNEL)
        status.focus()
        self.channels: Dict[str, ChannelState] = {STATUS_CHANNEL: status}
        self.chname = STATUS_CHANNEL
        self.users: Dict[str, User] = {}
        self.user = User(local=True, online=True)

        self._settings_store = settings or InMemorySettingsStore()
        self.settings = self._settings_store.get(self.key)

        self._hub = EventHub()
        self._listeners = ListenerRegistry()
        self._watched: Set[str] = set()
        self._pending: List[Tuple[Callable[..., None], Tuple[Any, ...]]] = []
        self._tasks: Set[asyncio.Task] = set()
        self._needs_default_channel = False

    def __repr__(self) -> str:
        return f"CabalState({self.key[:8]}, {self.lifecycle.value})"

    # -- upward events --------------------------------------------------

    def on(self, event_type: str, callback: Callback) -> Subscription:
        return self._hub.subscribe(event_type, callback)

    def off(self, event_type: str, callback: Callback) -> None:
        self._hub.unsubscribe_callback(event_type, callback)

    def subscribe(self, callback: Callback) -> Subscription:
        return self._hub.subscribe(UPDATE, callback)

    def unsubscribe(self, callback: Callback) -> None:
        self._hub.unsubscribe_callback(UPDATE, callback)

    def _emit_update(self, event_type: str | None, payload: Dict[str, Any] | None = None) -> None:
        self._hub.broadcast(CabalEvent(UPDATE, self.key, {"type": event_type}))
        if not event_type:
            logger.debug("update (no assigned type)")
            return
        if payload:
            logger.debug("%s %s", event_type, payload)
        else:
            logger.debug("%s", event_type)
        self._hub.broadcast(CabalEvent(event_type, self.key, payload or {}))

    def responder(self, command: str) -> CommandResponse:
        return CommandResponse(self, command, str(self._clock()))

    def emit_cabal_focus(self) -> None:
        self._emit_update("cabal-focus", {"key": self.key})

    # -- lifecycle --------------------------------------------------------

    @property
    def ready(self) -> bool:
        return self.lifecycle is Lifecycle.READY

    def _require_ready(self) -> None:
        if self.lifecycle is not Lifecycle.READY:
            raise NotAvailable(f"cabal {self.key[:8]} is {self.lifecycle.value}")

    def _require_alive(self) -> None:
        if self.lifecycle is Lifecycle.DESTROYED:
            raise NotAvailable(f"cabal {self.key[:8]} is destroyed")

    async def initialize(self) -> "CabalState":
        """Fetch channels, local identity, roster and private conversations, then go live."""

        if self.lifecycle is Lifecycle.READY:
            return self
        if self.lifecycle is not Lifecycle.UNINITIALIZED:
            raise NotAvailable(f"cannot initialize a cabal that is {self.lifecycle.value}")
        self.lifecycle = Lifecycle.BOOTSTRAPPING
        try:
            await self.log.ready()
        except Exception:
            if self.lifecycle is Lifecycle.BOOTSTRAPPING:
                self.lifecycle = Lifecycle.UNINITIALIZED
            raise
        if self.lifecycle is Lifecycle.DESTROYED:
            return self
        self._register_listeners()

        results = await asyncio.gather(
            self._load_channels(),
            self._load_local_memberships(),
            self._load_users(),
            self._load_private_messages(),
            return_exceptions=True,
        )
        failures = [result for result in results if isinstance(result, BaseException)]
        if self.lifecycle is Lifecycle.DESTROYED:
            return self
        if failures:
            self._listeners.drain()
            self._watched.clear()
            self._pending.clear()
            self.lifecycle = Lifecycle.UNINITIALIZED
            raise failures[0]

        self.lifecycle = Lifecycle.READY
        pending, self._pending = self._pending, []
        logger.debug("cabal %s ready, replaying %d queued events", self.key[:8], len(pending))
        for handler, args in pending:
            self._dispatch(handler, args)

        if self._needs_default_channel:
            try:
                await self.join_channel(self.default_channel)
            except Exception as exc:
                logger.warning("could not join %s: %s", self.default_channel, exc)
                self._emit_update("error", {"command": "join", "error": exc, "message": str(exc)})
        if self.lifecycle is Lifecycle.DESTROYED:
            return self
        self._emit_update("init", {"key": self.key})
        return self

    async def destroy(self) -> None:
        """Detach listeners, cancel in-flight listener work and close the log. Safe to call twice."""

        if self.lifecycle is Lifecycle.DESTROYED:
            return
        self.lifecycle = Lifecycle.DESTROYED
        self._listeners.drain()
        self._pending.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.log.close()
        logger.debug("destroyed cabal %s", self.key[:8])

    async def flush(self) -> None:
        """Wait for listener work that had to call back into the log."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- bootstrap ------------------------------------------------------

    async def _load_channels(self) -> None:
        archived = set(await self.log.list_archived())
        channels = [channel for channel in await self.log.list_channels() if not is_key(channel)]
        for channel in channels:
            details = self._ensure_channel(channel)
            if channel in archived:
                details.archive()
        await asyncio.gather(*(self._load_channel_details(channel) for channel in channels))

    async def _load_channel_details(self, channel: str) -> None:
        members = await self.log.get_channel_members(channel)
        topic = await self.log.get_topic(channel)
        details = self.channels[channel]
        for member in members:
            details.add_member(member)
        details.topic = topic or ""

    async def _load_local_memberships(self) -> None:
        local_key = await self.log.get_local_key()
        self._backfill_local_user(local_key)
        channels = await self.log.get_memberships(local_key)
        self._needs_default_channel = len(channels) == 0
        for channel in channels:
            # joined-but-empty channels are not returned by list_channels
            if is_key(channel) or channel == STATUS_CHANNEL:
                continue
            self._ensure_channel(channel).joined = True

    async def _load_users(self) -> None:
        for key, profile in (await self.log.get_users()).items():
            existing = self.users.get(key)
            if existing is None:
                self.users[key] = User.from_profile(key, profile)
            else:
                existing.update(profile)
        await self._initialize_local_user()
        for info in await self.log.list_moderation():
            user = self.users.get(info["id"])
            if user is None:
                user = User(key=info["id"])
                self.users[info["id"]] = user
            user.set_flags(info.get("channel"), info.get("flags") or [])

    async def _initialize_local_user(self) -> None:
        local_key = await self.log.get_local_key()
        self._backfill_local_user(local_key)
        profile = await self.log.get_user(local_key)
        if profile:
            self.user.update(profile)

    async def _load_private_messages(self) -> None:
        self.settings = self._settings_store.get(self.key)
        joined = set(self.settings.get("joined_private_messages", []))
        keys = set(await self.log.list_private_messages()) | joined
        for key in sorted(keys):
            if not is_key(key):
                continue
            details = self._ensure_channel(key)
            details.joined = key in joined

    def _backfill_local_user(self, key: str) -> None:
        self.user.key = key
        self.user.local = True
        self.user.online = True
        existing = self.users.get(key)
        if existing is not None and existing is not self.user:
            self.user.name = self.user.name or existing.name
            for channel, flags in existing.flags.items():
                self.user.flags.setdefault(channel, set(flags))
        self.users[key] = self.user

    # -- upstream listeners ---------------------------------------------

    def _listen(
        self,
        topic: str,
        handler: Callable[..., None],
        on_arrival: Optional[Callable[..., None]] = None,
    ) -> None:
        """Route ``topic`` to ``handler``, queueing it until READY.

        ``on_arrival`` runs immediately even while bootstrapping, for work that
        must not wait for the replay (such as subscribing to a new channel feed).
        """

        if self.lifecycle is Lifecycle.DESTROYED:
            return

        def listener(*args: Any) -> None:
            if self.lifecycle is Lifecycle.DESTROYED:
                return
            if on_arrival is not None:
                on_arrival(*args)
            if self.lifecycle is not Lifecycle.READY:
                self._pending.append((handler, args))
                return
            self._dispatch(handler, args)

        self._listeners.register(self.log, topic, listener)

    def _dispatch(self, handler: Callable[..., None], args: Tuple[Any, ...]) -> None:
        try:
            handler(*args)
        except Exception as exc:
            logger.exception("listener %s failed", getattr(handler, "__name__", handler))
            self._emit_update("error", {"error": exc, "message": str(exc)})

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and self.lifecycle is not Lifecycle.DESTROYED:
            logger.error("listener task failed: %s", exc)
            self._emit_update("error", {"error": exc, "message": str(exc)})

    def _register_listeners(self) -> None:
        self._listen("user-update", self._on_user_update)
        self._listen("topic-update", self._on_topic_update)
        self._listen("peer-added", self._on_peer_added)
        self._listen("peer-dropped", self._on_peer_dropped)
        self._listen("archive", self._on_archive)
        self._listen("unarchive", self._on_unarchive)
        self._listen("membership-add", self._on_membership_add)
        self._listen("membership-remove", self._on_membership_remove)
        self._listen("channel-add", self._on_channel_add, on_arrival=self._watch_new_channel)
        self._listen("moderation-update", self._on_moderation_update)
        self._listen("private-message", self._on_message)

    def _watch_new_channel(self, channel: str) -> None:
        if not is_key(channel):
            self._watch_channel(channel)

    def _watch_channel(self, channel: str) -> None:
        if channel in self._watched or self.lifecycle is Lifecycle.DESTROYED:
            return
        self._watched.add(channel)
        self._listen(messages_topic(channel), self._on_message)

    def _ensure_channel(self, channel: str) -> ChannelState:
        details = self.channels.get(channel)
        if details is None:
            if is_key(channel):
                details = PrivateChannel(self.log, channel)
            else:
                details = PersistedChannel(self.log, channel)
            self.channels[channel] = details
        if details.kind is ChannelKind.PERSISTED:
            self._watch_channel(channel)
        return details

    def _ensure_user(self, key: str) -> User:
        user = self.users.get(key)
        if user is None:
            user = User(key=key)
            self.users[key] = user
        return user

    def _on_user_update(self, key: str) -> None:
        self._spawn(self._refresh_user(key))

    async def _refresh_user(self, key: str) -> None:
        profile = await self.log.get_user(key)
        if self.lifecycle is Lifecycle.DESTROYED:
            return
        user = self._ensure_user(key)
        user.update(profile or {})
        self._emit_update("user-updated", {"key": key, "user": user})

    def _on_topic_update(self, message: Message) -> None:
        content = message.get("value", {}).get("content", {})
        channel = content.get("channel")
        if not channel or is_key(channel):
            return
        text = content.get("text") or ""
        self._ensure_channel(channel).topic = text
        self._emit_update("topic", {"channel": channel, "topic": text})

    def _on_peer_added(self, key: str) -> None:
        user = self._ensure_user(key)
        user.online = True
        self._emit_update("started-peering", {"key": key, "name": user.name or key})

    def _on_peer_dropped(self, key: str) -> None:
        user = self._ensure_user(key)
        user.online = False
        self._emit_update("stopped-peering", {"key": key, "name": user.name or key})

    def _archive_allowed(self, channel: str, key: str) -> bool:
        if channel == STATUS_CHANNEL or is_key(channel):
            return False
        if key == self.user.key:
            return True
        user = self.users.get(key)
        return user is not None and user.can_moderate(channel)

    def _on_archive(self, channel: str, reason: str, key: str) -> None:
        if not self._archive_allowed(channel, key):
            logger.debug("ignored archive of %s by %s", channel, key)
            return
        self._ensure_channel(channel).archive()
        is_local = key == self.user.key
        self._emit_update("channel-archive", {"channel": channel, "reason": reason, "key": key, "isLocal": is_local})

    def _on_unarchive(self, channel: str, reason: str, key: str) -> None:
        if not self._archive_allowed(channel, key):
            logger.debug("ignored unarchive of %s by %s", channel, key)
            return
        self._ensure_channel(channel).unarchive()
        is_local = key == self.user.key
        self._emit_update(
            "channel-unarchive", {"channel": channel, "reason": reason, "key": key, "isLocal": is_local}
        )

    def _on_membership_add(self, channel: str, key: str) -> None:
        if is_key(channel):
            return
        self._ensure_channel(channel).add_member(key)
        self._emit_update("channel-join", {"channel": channel, "key": key, "isLocal": key == self.user.key})

    def _on_membership_remove(self, channel: str, key: str) -> None:
        if is_key(channel):
            return
        self._ensure_channel(channel).remove_member(key)
        self._emit_update("channel-leave", {"channel": channel, "key": key, "isLocal": key == self.user.key})

    def _on_channel_add(self, channel: str) -> None:
        if is_key(channel):
            logger.debug("ignored public channel named like a key: %s", channel)
            return
        self._ensure_channel(channel)
        self._emit_update("new-channel", {"channel": channel})

    def _on_moderation_update(self, info: Dict[str, Any]) -> None:
        change = apply_flag_update(self.users, info, self.user.key)
        self._emit_update("user-updated", {"key": change.user.key, "user": change.user})
        if not change.narrate:
            return
        message = change.status_message(self._clock())
        self.add_status_message(message, STATUS_CHANNEL)
        if self.chname != STATUS_CHANNEL:
            self.add_status_message(message)

    def _handle_mention(self, message: Message) -> Optional[Mention]:
        value = message.get("value") or {}
        if value.get("type") != "chat/text":
            return None
        name = self.get_local_name()
        text = (value.get("content") or {}).get("text")
        if not name or not isinstance(text, str):
            return None
        line = text.strip()
        if name not in line:
            return None
        return Mention(message=message, direct=line.startswith(name))

    def _on_message(self, message: Message) -> None:
        value = message.get("value") or {}
        content = value.get("content") or {}
        channel = content.get("channel")
        author_key = message.get("key", "")
        author = self._ensure_user(author_key) if author_key else None

        if value.get("private") in (True, "true"):
            # the conversation is always named after the other party
            if author_key != self.user.key:
                channel = author_key
            if not is_key(channel):
                logger.debug("dropped private message with malformed channel %r", channel)
                return
            if channel not in self.channels:
                self.join_private_message(channel)
            self._emit_update(
                "private-message", {"channel": channel, "author": author, "message": copy.deepcopy(message)}
            )
        elif not isinstance(channel, str) or not channel or is_key(channel):
            logger.debug("dropped public message for channel %r", channel)
            return

        details = self._ensure_channel(channel)
        details.handle_message(message, self._handle_mention(message))
        self._emit_update("new-message", {"channel": channel, "author": author, "message": copy.deepcopy(message)})

    # -- publishing -------------------------------------------------------

    async def publish_message(self, message: Dict[str, Any], opts: Dict[str, Any] | None = None) -> Message:
        """Publish ``message`` to its channel, or the focused channel when it names none.

        A channel named like a public key is treated as a private conversation
        and the message is sent privately instead.
        """

        self._require_ready()
        msg = copy.deepcopy(message)
        content = msg.setdefault("content", {})
        channel = content.get("channel") or self.chname
        content["channel"] = channel
        if channel == STATUS_CHANNEL:
            raise InvalidChannelName(f"not allowed to post to {STATUS_CHANNEL}")
        if not msg.get("type"):
            msg["type"] = "chat/text"
        if self.is_channel_private(channel):
            return await self._redirect_as_private_message(msg)
        published = await self.log.publish(msg, opts)
        if self.lifecycle is Lifecycle.DESTROYED:
            return published
        self._emit_update("publish-message", {"message": msg})
        return published

    async def _redirect_as_private_message(self, message: Dict[str, Any]) -> Message:
        recipient = message["content"]["channel"]
        if message["type"] not in PRIVATE_MESSAGE_TYPES:
            raise UnsupportedMessageType(f"private messages do not support message type {message['type']}")
        return await self.publish_private_message(message, recipient)

    async def publish_private_message(self, message: Dict[str, Any], recipient: str) -> Message:
        """Send a private message, opening and focusing the conversation if it was not joined."""

        self._require_ready()
        if not is_key(recipient):
            raise InvalidChannelName("private message recipient does not match the public key format")
        details = self.channels.get(recipient)
        if details is not None and not details.is_private:
            raise InvalidChannelName("tried to publish a private message to a non-private channel")
        opening = details is None or not details.joined

        msg = copy.deepcopy(message)
        if not msg.get("type"):
            msg["type"] = "chat/text"
        msg.setdefault("content", {})["channel"] = recipient
        published = await self.log.publish_private(msg, recipient)
        if self.lifecycle is Lifecycle.DESTROYED:
            return published

        if opening:
            self.join_private_message(recipient)
            self.focus_channel(recipient)
        self._emit_update("publish-private-message", {"message": msg, "channel": recipient})
        return published

    async def publish_nick(self, nick: str) -> None:
        self._require_ready()
        await self.log.publish_nick(nick)
        if self.lifecycle is Lifecycle.DESTROYED:
            return
        self.user.name = nick
        self._emit_update("publish-nick", {"name": nick})

    async def publish_channel_topic(self, channel: str | None, topic: str) -> None:
        self._require_ready()
        channel = channel or self.chname
        if channel == STATUS_CHANNEL:
            raise InvalidChannelName(f"cannot set a topic on {STATUS_CHANNEL}")
        if self.is_channel_private(channel):
            raise InvalidChannelName("setting topics on private message channels is not supported")
        await self.log.publish_channel_topic(channel, topic)

    # -- channel membership and focus ----------------------------------

    async def join_channel(self, channel: str) -> bool:
        """Join ``channel`` and focus it. Returns False when already joined."""

        self._require_ready()
        if not channel or channel == CABAL_WIDE or channel.startswith("!"):
            raise InvalidChannelName(f"cannot join invalid channel name {channel!r}")
        details = self.channels.get(channel)
        if (details is not None and details.is_private) or is_key(channel):
            if details is None:
                raise InvalidChannelName("tried to join a new private message channel; start a private message instead")
            was_joined = details.joined
            self.join_private_message(channel)
            return not was_joined
        if details is not None and details.joined:
            return False

        await self.log.publish({"type": "channel/join", "content": {"channel": channel}})
        if self.lifecycle is Lifecycle.DESTROYED:
            return False
        details = self._ensure_channel(channel)
        if details.join():
            return False
        self.focus_channel(channel)
        return True

    async def leave_channel(self, channel: str | None = None) -> bool:
        """Leave ``channel`` (default: the focused one). Returns False when it was not joined."""

        self._require_ready()
        channel = channel or self.chname
        if channel == STATUS_CHANNEL:
            raise InvalidChannelName(f"cannot leave the {STATUS_CHANNEL} channel")
        details = self.channels.get(channel)
        if details is None:
            raise NotFound(f"cannot leave non-existent channel {channel!r}")
        if details.is_private:
            was_joined = details.joined
            self.leave_private_message(channel)
            if channel == self.chname:
                self.unfocus_channel(channel, STATUS_CHANNEL)
            return was_joined
        if not details.joined:
            return False

        joined = self.get_joined_channels()
        await self.log.publish({"type": "channel/leave", "content": {"channel": channel}})
        if self.lifecycle is Lifecycle.DESTROYED:
            return False
        if not details.leave():
            return False
        if channel == self.chname:
            index = joined.index(channel) if channel in joined else -1
            if 0 <= index < len(joined) - 1:
                new_channel = joined[index + 1]
            elif index > 0:
                new_channel = joined[index - 1]
            else:
                new_channel = STATUS_CHANNEL
            self.unfocus_channel(channel, new_channel)
        return True

    async def archive_channel(self, channel: str, reason: str = "") -> bool:
        return await self._set_archived(channel, reason, archived=True)

    async def unarchive_channel(self, channel: str, reason: str = "") -> bool:
        return await self._set_archived(channel, reason, archived=False)

    async def _set_archived(self, channel: str, reason: str, *, archived: bool) -> bool:
        self._require_ready()
        verb = "archive" if archived else "unarchive"
        if channel == STATUS_CHANNEL:
            raise InvalidChannelName(f"cannot {verb} the {STATUS_CHANNEL} channel")
        details = self.channels.get(channel)
        if details is None:
            raise NotFound(f"cannot {verb} non-existent channel {channel!r}")
        if details.is_private:
            raise InvalidChannelName("cannot archive or unarchive private message channels")
        if details.archived == archived:
            return False
        await self.log.publish({"type": f"channel/{verb}", "content": {"channel": channel, "reason": reason}})
        if self.lifecycle is Lifecycle.DESTROYED:
            return False
        if archived:
            details.archive()
        else:
            details.unarchive()
        return True

    def is_channel_archived(self, channel: str) -> bool:
        details = self.channels.get(channel)
        return details.archived if details is not None else False

    def focus_channel(self, channel: str | None = None, keep_unread: bool = False) -> None:
        """Focus ``channel``, marking the previous and the new channel read unless ``keep_unread``."""

        self._require_ready()
        channel = channel or self.chname
        details = self.channels.get(channel)
        if details is None:
            raise NotFound(f"no such channel: {channel}")
        if channel == self.chname and details.focused:
            return
        current = self.channels.get(self.chname)
        if current is not None and current is not details:
            if not keep_unread:
                current.mark_as_read()
            current.unfocus()
        self.chname = channel
        if not keep_unread:
            details.mark_as_read()
        details.focus()
        self._emit_update("channel-focus", {"channel": channel})

    def unfocus_channel(self, channel: str | None = None, new_channel: str | None = None) -> None:
        self._require_ready()
        channel = channel or self.chname
        details = self.channels.get(channel)
        if details is None:
            raise NotFound(f"no such channel: {channel}")
        details.unfocus()
        if new_channel:
            self.focus_channel(new_channel)

    def join_private_message(self, channel: str) -> None:
        self._require_alive()
        details = self._ensure_channel(channel)
        details.joined = True
        joined = list(self.settings.get("joined_private_messages", []))
        if channel not in joined:
            joined.append(channel)
        self.settings["joined_private_messages"] = joined
        self._settings_store.write(self.key, self.settings)

    def leave_private_message(self, channel: str) -> None:
        self._require_alive()
        details = self.channels.get(channel)
        if details is not None:
            details.joined = False
        joined = [pm for pm in self.settings.get("joined_private_messages", []) if pm != channel]
        self.settings["joined_private_messages"] = joined
        self._settings_store.write(self.key, self.settings)

    # -- virtual messages -----------------------------------------------

    def add_status_message(self, message: Union[str, Dict[str, Any]], channel: str | None = None) -> Message:
        """Add a message visible to the local user only."""

        self._require_alive()
        channel = channel or self.chname
        details = self.channels.get(channel)
        if details is None:
            raise NotFound(f"no such channel: {channel}")
        if isinstance(message, str):
            message = {"key": channel, "value": {"type": "status", "content": {"text": message}}}
        else:
            message = copy.deepcopy(message)
        value = message.setdefault("value", {})
        value.setdefault("timestamp", self._clock())
        message.setdefault("key", channel)
        details.add_virtual_message(message)
        self._emit_update("status-message", {"channel": channel, "message": message})
        return message

    def clear_virtual_messages(self, channel: str | None = None) -> None:
        self._require_alive()
        channel = channel or self.chname
        details = self.channels.get(channel)
        if details is None:
            raise NotFound(f"no such channel: {channel}")
        details.clear_virtual_messages()

    # -- queries ----------------------------------------------------------

    def get_channel(self, channel: str | None = None) -> Optional[ChannelState]:
        return self.channels.get(channel or self.chname)

    def get_current_channel(self) -> str:
        return self.chname

    def get_current_channel_details(self) -> ChannelState:
        return self.channels[self.chname]

    def get_channels(
        self, include_archived: bool = False, include_pm: bool = False, only_joined: bool = False
    ) -> List[str]:
        """``!status`` first, then joined private conversations (if asked for), then public channels."""

        public = sorted(
            name
            for name, details in self.channels.items()
            if name != STATUS_CHANNEL
            and not details.is_private
            and len(details.members) > 0
            and (include_archived or not details.archived)
            and (not only_joined or details.joined)
        )
        private: List[str] = []
        if include_pm:
            private = sorted(
                name
                for name, details in self.channels.items()
                if details.is_private and details.joined and not self._is_hidden_user(name)
            )
        return [STATUS_CHANNEL] + private + public

    def _is_hidden_user(self, key: str) -> bool:
        user = self.users.get(key)
        return user is not None and user.is_hidden()

    def get_joined_channels(self) -> List[str]:
        return sorted(
            name
            for name, details in self.channels.items()
            if details.joined and not details.is_private and name != STATUS_CHANNEL
        )

    def get_private_message_list(self) -> List[str]:
        return sorted(
            name
            for name, details in self.channels.items()
            if details.is_private and name in self.users and not self.users[name].is_hidden()
        )

    def is_channel_private(self, channel: str) -> bool:
        if is_key(channel):
            return True
        details = self.channels.get(channel)
        return details.is_private if details is not None else False

    def get_topic(self, channel: str | None = None) -> str:
        details = self.channels.get(channel or self.chname)
        return details.topic if details is not None else ""

    def get_channel_members(self, channel: str | None = None) -> List[User]:
        channel = channel or self.chname
        details = self.channels.get(channel)
        if details is None:
            return []
        if channel == STATUS_CHANNEL:
            return list(self.users.values())
        return [self.users[key] for key in details.get_members() if key in self.users]

    def get_users(self) -> Dict[str, User]:
        return dict(self.users)

    def get_local_user(self) -> User:
        return self.user

    def get_local_name(self) -> str:
        return self.user.display_name()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "state": self.lifecycle.value,
            "channel": self.chname,
            "user": self.user.to_dict(),
        }
