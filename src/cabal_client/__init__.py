"""Client-side state aggregation for cabal chat logs."""

from .cabal import CabalState, CommandResponse, Lifecycle
from .channels import STATUS_CHANNEL, ChannelState, PersistedChannel, PrivateChannel, VirtualChannel
from .client import ClientConfig, ClientRegistry
from .errors import (
    CabalError,
    InvalidChannelName,
    NotAuthorized,
    NotAvailable,
    NotFound,
    UnsupportedMessageType,
    UpstreamFailure,
)
from .events import CabalEvent
from .log import CabalLog, InMemoryCabalLog
from .moderation import Moderation
from .settings import InMemorySettingsStore, JsonSettingsStore
from .user import User
from .util import generate_key, is_key, scrub_key

__all__ = [
    "CabalState",
    "CommandResponse",
    "Lifecycle",
    "STATUS_CHANNEL",
    "ChannelState",
    "PersistedChannel",
    "PrivateChannel",
    "VirtualChannel",
    "ClientConfig",
    "ClientRegistry",
    "CabalError",
    "InvalidChannelName",
    "NotAuthorized",
    "NotAvailable",
    "NotFound",
    "UnsupportedMessageType",
    "UpstreamFailure",
    "CabalEvent",
    "CabalLog",
    "InMemoryCabalLog",
    "Moderation",
    "InMemorySettingsStore",
    "JsonSettingsStore",
    "User",
    "generate_key",
    "is_key",
    "scrub_key",
]
