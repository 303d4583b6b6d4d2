from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Protocol

logger = logging.getLogger(__name__)

UPDATE = "update"

EVENT_TYPES = frozenset(
    {
        UPDATE,
        "init",
        "info",
        "error",
        "end",
        "user-updated",
        "new-channel",
        "new-message",
        "private-message",
        "publish-message",
        "publish-private-message",
        "publish-nick",
        "status-message",
        "topic",
        "channel-focus",
        "channel-join",
        "channel-leave",
        "channel-archive",
        "channel-unarchive",
        "cabal-focus",
        "started-peering",
        "stopped-peering",
    }
)


@dataclass(frozen=True)
class CabalEvent:
    """A named event emitted by a cabal state object."""

    type: str
    cabal_key: str
    payload: Dict[str, Any] = field(default_factory=dict)


Callback = Callable[[CabalEvent], None]


@dataclass
class Subscription:
    topic: str
    callback: Callback

    def deliver(self, event: CabalEvent) -> None:
        self.callback(event)


class EventHub:
    """Registers subscribers per event type and delivers events to them in order."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, topic: str, callback: Callback) -> Subscription:
        subscription = Subscription(topic=topic, callback=callback)
        self._subscriptions.setdefault(topic, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.topic)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.topic, None)

    def unsubscribe_callback(self, topic: str, callback: Callback) -> None:
        for subscription in list(self._subscriptions.get(topic, [])):
            if subscription.callback == callback:
                self.unsubscribe(subscription)
                return

    def broadcast(self, event: CabalEvent) -> None:
        for subscription in list(self._subscriptions.get(event.type, [])):
            subscription.deliver(event)


class EventSource(Protocol):
    def on(self, topic: str, handler: Callable[..., None]) -> None: ...

    def off(self, topic: str, handler: Callable[..., None]) -> None: ...


@dataclass
class Listener:
    source: EventSource
    topic: str
    handler: Callable[..., None]


class ListenerRegistry:
    """Keeps every (source, topic, handler) registered upstream so teardown can detach them."""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def register(self, source: EventSource, topic: str, handler: Callable[..., None]) -> Listener:
        listener = Listener(source=source, topic=topic, handler=handler)
        self._listeners.append(listener)
        source.on(topic, handler)
        return listener

    def drain(self) -> int:
        """Detach every registered listener exactly once and return how many were removed."""

        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener.source.off(listener.topic, listener.handler)
        logger.debug("detached %d upstream listeners", len(listeners))
        return len(listeners)

    def __len__(self) -> int:
        return len(self._listeners)


class Emitter:
    """Plain topic -> handlers emitter used by in-process log implementations."""

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Callable[..., None]]] = {}

    def on(self, topic: str, handler: Callable[..., None]) -> None:
        self._handlers.setdefault(topic, []).append(handler)

    def off(self, topic: str, handler: Callable[..., None]) -> None:
        handlers = self._handlers.get(topic)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            self._handlers.pop(topic, None)

    def emit(self, topic: str, *args: Any) -> None:
        for handler in list(self._handlers.get(topic, [])):
            handler(*args)

    def listener_count(self, topic: str | None = None) -> int:
        if topic is not None:
            return len(self._handlers.get(topic, []))
        return sum(len(handlers) for handlers in self._handlers.values())
