from __future__ import annotations

from enum import IntEnum, StrEnum


class ConnectionState(StrEnum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


class ReadyState(IntEnum):
    """Raw state of the underlying socket, numbered like the browser WebSocket API."""

    CONNECTING = 0
    OPEN = 1
    CLOSING = 2
    CLOSED = 3


class SubscriptionMode(IntEnum):
    LTP = 1
    QUOTE = 2
    DEPTH = 3


class SessionPhase(StrEnum):
    IDLE = "idle"
    OPENED = "opened"
    AUTH_SENT = "auth_sent"
    AUTHENTICATED = "authenticated"
    SUBSCRIBED = "subscribed"
    AUTH_FAILED = "auth_failed"
