from __future__ import annotations


class CabalError(Exception):
    """Base class for errors raised by the cabal state layer."""

    code = "cabal_error"


class InvalidChannelName(CabalError):
    code = "invalid_channel"


class NotFound(CabalError):
    code = "not_found"


class NotAuthorized(CabalError):
    code = "not_authorized"


class NotAvailable(CabalError):
    code = "not_available"


class UnsupportedMessageType(CabalError):
    code = "unsupported_type"


class UpstreamFailure(CabalError):
    """Raised by log adapters when the replication engine reports a failure."""

    code = "upstream_failure"
