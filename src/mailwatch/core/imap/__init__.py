"""IMAP transport, protocol driver and event types."""

from .constants import IMAPResponse, Timeouts
from .events import (
    ChangeDetected,
    ChangeEvent,
    ChangeKind,
    Closed,
    Credentials,
    Event,
    Heartbeat,
    Session,
    Timeout,
    WatchState,
)
from .protocol import SessionProtocolDriver, parse_exists
from .transport import IMAPTransport, Transport

__all__ = [
    "ChangeDetected",
    "ChangeEvent",
    "ChangeKind",
    "Closed",
    "Credentials",
    "Event",
    "Heartbeat",
    "IMAPResponse",
    "IMAPTransport",
    "Session",
    "SessionProtocolDriver",
    "Timeout",
    "Timeouts",
    "Transport",
    "WatchState",
    "parse_exists",
]
