"""Registry of cabal state objects with a "current cabal" pointer for unqualified calls."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from .cabal import CabalState
from .channels import ChannelState, Mention
from .errors import NotFound
from .events import Callback, Subscription
from .log import CabalLog, InMemoryCabalLog, Message
from .settings import InMemorySettingsStore, SettingsStore
from .user import User
from .util import _now_ms, generate_key, is_key, scrub_key

logger = logging.getLogger(__name__)

CabalRef = Union[str, CabalState, None]


@dataclass
class ClientConfig:
    default_channel: str = "default"
    default_page_size: int = 100


LogFactory = Callable[[str, ClientConfig], CabalLog]


def _in_memory_log_factory(now_func: Callable[[], int]) -> LogFactory:
    def factory(key: str, config: ClientConfig) -> CabalLog:
        return InMemoryCabalLog(key, now_func=now_func)

    return factory


class ClientRegistry:
    """Owns every connected cabal and routes convenience operations to one of them.

    Operations taking a ``cabal`` argument accept a key (scrubbed before
    lookup), a :class:`CabalState`, or ``None`` for the current cabal.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        log_factory: LogFactory | None = None,
        settings: SettingsStore | None = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.config = config or ClientConfig()
        self.settings = settings or InMemorySettingsStore()
        self._log_factory = log_factory or _in_memory_log_factory(now_func)
        self._now = now_func
        self.cabals: Dict[str, CabalState] = {}
        self.current_cabal: Optional[CabalState] = None

    @staticmethod
    def scrub_key(key: str) -> str:
        return scrub_key(key)

    @staticmethod
    def generate_key() -> str:
        return generate_key()

    # -- registry ---------------------------------------------------------

    def _resolve(self, cabal: CabalRef = None) -> CabalState:
        if isinstance(cabal, CabalState):
            return cabal
        if not cabal:
            if self.current_cabal is None:
                raise NotFound("no cabal is currently focused")
            return self.current_cabal
        details = self.cabals.get(scrub_key(cabal))
        if details is None:
            raise NotFound(f"unknown cabal: {cabal}")
        return details

    async def create_cabal(self) -> CabalState:
        return await self.add_cabal(generate_key())

    async def add_cabal(self, key: str, log: CabalLog | None = None) -> CabalState:
        """Open ``key``, bootstrap its state and register it. Adding a known key returns the existing state."""

        key = scrub_key(key)
        if not is_key(key):
            raise ValueError(f"not a cabal key: {key!r}")
        existing = self.cabals.get(key)
        if existing is not None:
            return existing

        details = CabalState(
            log or self._log_factory(key, self.config),
            settings=self.settings,
            default_channel=self.config.default_channel,
            now_func=self._now,
        )
        try:
            await details.initialize()
        except Exception:
            await details.destroy()
            raise
        self.cabals[key] = details
        if self.current_cabal is None:
            self.current_cabal = details
        logger.info("added cabal %s", key[:8])
        return details

    def focus_cabal(self, cabal: CabalRef) -> CabalState:
        details = self._resolve(cabal)
        self.current_cabal = details
        details.emit_cabal_focus()
        return details

    async def remove_cabal(self, cabal: CabalRef = None) -> None:
        details = self._resolve(cabal)
        self.cabals.pop(details.key, None)
        if self.current_cabal is details:
            remaining = self.get_cabal_keys()
            self.current_cabal = self.cabals[remaining[0]] if remaining else None
        await details.destroy()
        logger.info("removed cabal %s", details.key[:8])

    async def close(self) -> None:
        for key in self.get_cabal_keys():
            await self.remove_cabal(key)

    def get_details(self, cabal: CabalRef = None) -> CabalState:
        return self._resolve(cabal)

    def get_cabal_keys(self) -> List[str]:
        return sorted(self.cabals)

    def get_current_cabal(self) -> Optional[CabalState]:
        return self.current_cabal

    def read_cabal_settings(self, key: str) -> Dict[str, Any]:
        return self.settings.get(scrub_key(key))

    def write_cabal_settings(self, key: str, settings: Dict[str, Any]) -> None:
        key = scrub_key(key)
        self.settings.write(key, settings)
        details = self.cabals.get(key)
        if details is not None:
            details.settings = self.settings.get(key)

    # -- update stream --------------------------------------------------

    def subscribe(self, listener: Callback, cabal: CabalRef = None) -> Subscription:
        return self._resolve(cabal).subscribe(listener)

    def unsubscribe(self, listener: Callback, cabal: CabalRef = None) -> None:
        self._resolve(cabal).unsubscribe(listener)

    # -- messages -------------------------------------------------------

    def _channel(self, details: CabalState, channel: str | None) -> ChannelState:
        found = details.get_channel(channel)
        if found is None:
            raise NotFound(f"no such channel: {channel}")
        return found

    async def get_messages(
        self,
        older_than: float | None = None,
        newer_than: float | None = None,
        amount: int | None = None,
        channel: str | None = None,
        cabal: CabalRef = None,
    ) -> List[Message]:
        """Page of ``channel`` (default: focused) oldest first; ``older_than`` and ``newer_than`` are exclusive."""

        found = self._channel(self._resolve(cabal), channel)
        limit = amount if amount is not None else self.config.default_page_size
        return await found.get_page(limit=limit, newer_than=newer_than, older_than=older_than)

    async def search_messages(
        self,
        text: str,
        older_than: float | None = None,
        newer_than: float | None = None,
        amount: int | None = None,
        channel: str | None = None,
        cabal: CabalRef = None,
    ) -> List[Dict[str, Any]]:
        """Find messages in a page containing ``text``; each match lists every offset it occurs at."""

        if not text:
            raise ValueError("search string must be set")
        messages = await self.get_messages(older_than, newer_than, amount, channel, cabal)
        matches = []
        for message in messages:
            body = (message.get("value") or {}).get("content") or {}
            haystack = body.get("text")
            if not isinstance(haystack, str):
                continue
            indexes = []
            start = haystack.find(text)
            while start != -1:
                indexes.append(start)
                start = haystack.find(text, start + 1)
            if indexes:
                matches.append({"message": message, "matchedIndexes": indexes})
        return matches

    def add_status_message(self, message: Union[str, Message], channel: str | None = None, cabal: CabalRef = None) -> Message:
        return self._resolve(cabal).add_status_message(message, channel)

    def clear_status_messages(self, channel: str | None = None, cabal: CabalRef = None) -> None:
        self._resolve(cabal).clear_virtual_messages(channel)

    # -- channels -------------------------------------------------------

    def get_number_unread_messages(self, channel: str | None = None, cabal: CabalRef = None) -> int:
        details = self._resolve(cabal)
        return self._channel(details, channel).get_new_message_count()

    def get_number_mentions(self, channel: str | None = None, cabal: CabalRef = None) -> int:
        return len(self.get_mentions(channel, cabal))

    def get_mentions(self, channel: str | None = None, cabal: CabalRef = None) -> List[Mention]:
        details = self._resolve(cabal)
        return self._channel(details, channel).get_mentions()

    def focus_channel(self, channel: str | None = None, keep_unread: bool = False, cabal: CabalRef = None) -> None:
        self._resolve(cabal).focus_channel(channel, keep_unread)

    def unfocus_channel(self, channel: str | None = None, new_channel: str | None = None, cabal: CabalRef = None) -> None:
        self._resolve(cabal).unfocus_channel(channel, new_channel)

    def get_current_channel(self, cabal: CabalRef = None) -> str:
        return self._resolve(cabal).get_current_channel()

    def mark_channel_read(self, channel: str | None = None, cabal: CabalRef = None) -> None:
        details = self._resolve(cabal)
        self._channel(details, channel).mark_as_read()

    def get_users(self, cabal: CabalRef = None) -> Dict[str, User]:
        return self._resolve(cabal).get_users()

    def get_joined_channels(self, cabal: CabalRef = None) -> List[str]:
        return self._resolve(cabal).get_joined_channels()

    def get_channels(
        self,
        include_archived: bool = False,
        include_pm: bool = False,
        only_joined: bool = False,
        cabal: CabalRef = None,
    ) -> List[str]:
        return self._resolve(cabal).get_channels(include_archived, include_pm, only_joined)
