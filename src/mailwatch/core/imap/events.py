"""Session and event types produced by the protocol driver."""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Deque, Optional, Union

if TYPE_CHECKING:
    from .transport import Transport


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WatchState(Enum):
    """State of a session with respect to IDLE."""

    IDLE = "idle"
    WATCHING = "watching"
    CLOSED = "closed"


class ChangeKind(Enum):
    """What a server notification says about the mailbox."""

    NEW_MESSAGE_COUNT = "new-message-count"
    OTHER = "other"


@dataclass(frozen=True)
class ChangeEvent:
    """One server-reported mailbox mutation."""

    kind: ChangeKind
    value: int
    observed_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ChangeDetected:
    event: ChangeEvent


@dataclass(frozen=True)
class Heartbeat:
    line: str = ""


@dataclass(frozen=True)
class Timeout:
    pass


@dataclass(frozen=True)
class Closed:
    reason: str = ""


Event = Union[ChangeDetected, Heartbeat, Timeout, Closed]


@dataclass(frozen=True)
class Credentials:
    """Login credentials; the password is kept out of ``repr``."""

    username: str
    password: str = field(repr=False)


@dataclass
class Session:
    """An authenticated connection with a selected mailbox."""

    transport: "Transport"
    mailbox: str
    state: WatchState = WatchState.IDLE
    started_at: datetime = field(default_factory=_utcnow)
    exists: int = 0
    watch_started_at: Optional[datetime] = None
    pending: Deque[Event] = field(default_factory=deque)

    @property
    def is_watching(self) -> bool:
        return self.state is WatchState.WATCHING

    @property
    def is_closed(self) -> bool:
        return self.state is WatchState.CLOSED
