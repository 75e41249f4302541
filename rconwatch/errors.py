"""Error types raised and reported by the RCON client."""

from __future__ import annotations


class RconError(Exception):
    """Base class for every error the client reports."""


class ProtocolError(RconError):
    """Malformed, undersized or unrecognized frame. Logged and dropped."""


class AuthError(RconError):
    """The server rejected the RCON password."""


class TransportError(RconError):
    """Socket-level failure (bind, send, ICMP unreachable...)."""


class CommandTimeoutError(RconError):
    """No response to a command within the response window."""
