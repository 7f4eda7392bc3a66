"""IMAP session driver - login, SELECT, IDLE and push parsing."""

import asyncio
import re
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from mailwatch.utils.errors import (
    ConnectionClosedError,
    InvalidCredentialsError,
    NetworkTimeoutError,
    ProtocolError,
    WatcherError,
)
from mailwatch.utils.logging import get_logger, log_event

from .constants import IMAPResponse, STOP_WAIT_SERVER_PUSH, Timeouts
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
from .transport import Transport

logger = get_logger(__name__)

# Upper bound aioimaplib keeps IDLE open on its own; the supervisor renews
# well before it.
DEFAULT_IDLE_TIMEOUT = 29 * 60

_COUNT_RE = re.compile(r"^(\d+)\s+(EXISTS|EXPUNGE|FETCH|RECENT)\b", re.IGNORECASE)
_STATUS_RE = re.compile(r"^(OK|NO|BAD|BYE)\b\s*(.*)$", re.IGNORECASE)


def _decode(line) -> str:
    if isinstance(line, (bytes, bytearray)):
        return bytes(line).decode("utf-8", errors="replace").strip()
    return str(line).strip()


def parse_exists(lines: Iterable) -> Optional[int]:
    """Return the message count from a SELECT response, if present."""
    for line in lines:
        text = _decode(line)
        if text.startswith("* "):
            text = text[2:]
        match = _COUNT_RE.match(text)
        if match and match.group(2).upper() == "EXISTS":
            return int(match.group(1))
    return None


class SessionProtocolDriver:
    """Speaks the IMAP subset needed to watch one mailbox.

    Every method fails fast; retrying is the supervisor's job.
    """

    def __init__(self, idle_timeout: float = DEFAULT_IDLE_TIMEOUT):
        """Initialise the driver.

        Args:
            idle_timeout: How long aioimaplib may keep one IDLE open before
                it stops waiting for pushes by itself
        """
        self.idle_timeout = idle_timeout

    async def open(
        self, transport: Transport, credentials: Credentials, mailbox: str
    ) -> Session:
        """Connect, authenticate and select ``mailbox``.

        Returns:
            A session in the ``idle`` state

        Raises:
            ConnectError: If the server can't be reached
            InvalidCredentialsError: If the server rejects the login
            ProtocolError: If SELECT fails or its response is malformed
            NetworkTimeoutError: If a command gets no answer in time
        """
        try:
            await transport.connect()

            response = await transport.login(credentials.username, credentials.password)
            if response.result != IMAPResponse.OK:
                raise InvalidCredentialsError(
                    "IMAP authentication failed",
                    details={
                        "username": credentials.username,
                        "response": _decode(response.lines[0]) if response.lines else "",
                    },
                )

            response = await transport.select(mailbox)
            if response.result != IMAPResponse.OK:
                raise ProtocolError(
                    f"Failed to select mailbox: {mailbox}",
                    details={"mailbox": mailbox, "response": response.result},
                )

            exists = parse_exists(response.lines)
            if exists is None:
                raise ProtocolError(
                    "SELECT response carried no EXISTS count",
                    details={"mailbox": mailbox},
                )

        except WatcherError:
            await transport.close()
            raise

        except asyncio.TimeoutError as e:
            await transport.close()
            raise NetworkTimeoutError(
                "IMAP command timed out while opening session",
                details={"mailbox": mailbox},
            ) from e

        except Exception as e:
            await transport.close()
            raise ProtocolError(
                f"IMAP error opening session: {str(e)}",
                details={"mailbox": mailbox},
            ) from e

        session = Session(transport=transport, mailbox=mailbox, exists=exists)
        log_event(
            "session_opened",
            f"Session opened on {mailbox}",
            mailbox=mailbox,
            exists=exists,
        )
        return session

    async def start_watch(self, session: Session) -> None:
        """Enter IDLE. Only valid from the ``idle`` state."""
        if session.state is not WatchState.IDLE:
            raise ProtocolError(
                "Can only start watching an idle session",
                details={"state": session.state.value},
            )

        try:
            await session.transport.start_idle(self.idle_timeout)

        except WatcherError:
            raise

        except asyncio.TimeoutError as e:
            raise ProtocolError(
                "Server did not acknowledge IDLE",
                details={"mailbox": session.mailbox},
            ) from e

        except Exception as e:
            raise ProtocolError(
                f"IMAP error starting IDLE: {str(e)}",
                details={"mailbox": session.mailbox},
            ) from e

        session.state = WatchState.WATCHING
        session.watch_started_at = datetime.now(timezone.utc)
        logger.debug("IDLE started", extra={"mailbox": session.mailbox})

    async def poll_event(self, session: Session, timeout: float) -> Event:
        """Wait up to ``timeout`` seconds for the next server notification.

        Returns:
            ``ChangeDetected``, ``Heartbeat``, ``Timeout`` or ``Closed``

        Raises:
            ProtocolError: If the server reports an untagged NO/BAD
        """
        if session.pending:
            return session.pending.popleft()

        if session.is_closed:
            return Closed("session already closed")

        if not session.is_watching:
            raise ProtocolError(
                "Can only poll a watching session",
                details={"state": session.state.value},
            )

        if not session.transport.idle_active:
            session.state = WatchState.CLOSED
            return Closed("IDLE ended by server")

        try:
            line = await session.transport.read_line(timeout)

        except asyncio.TimeoutError:
            return Timeout()

        except ConnectionClosedError as e:
            session.state = WatchState.CLOSED
            return Closed(e.message)

        event = self.classify(session, line)
        if isinstance(event, Closed):
            session.state = WatchState.CLOSED
        return event

    async def stop_watch(self, session: Session) -> None:
        """Leave IDLE. Only valid from the ``watching`` state.

        Notifications that reached the client before the server confirmed
        DONE are queued on the session and returned by later polls.
        """
        if not session.is_watching:
            raise ProtocolError(
                "Can only stop watching a watching session",
                details={"state": session.state.value},
            )

        try:
            response = await session.transport.end_idle(Timeouts.IMAP_IDLE_DONE)

        except ConnectionClosedError:
            session.state = WatchState.CLOSED
            raise

        except WatcherError:
            raise

        except asyncio.TimeoutError as e:
            raise ProtocolError(
                "Server did not confirm end of IDLE",
                details={"mailbox": session.mailbox},
            ) from e

        except Exception as e:
            raise ProtocolError(
                f"IMAP error ending IDLE: {str(e)}",
                details={"mailbox": session.mailbox},
            ) from e

        session.state = WatchState.IDLE
        session.watch_started_at = None

        trailing: List = list(session.transport.drain())
        trailing.extend(response.lines or [])
        for line in trailing:
            event = self.classify(session, line)
            if isinstance(event, (ChangeDetected, Closed)):
                session.pending.append(event)

        if response.result != IMAPResponse.OK:
            raise ProtocolError(
                "IDLE completed with an error",
                details={"mailbox": session.mailbox, "response": response.result},
            )

        logger.debug("IDLE stopped", extra={"mailbox": session.mailbox})

    async def close(self, session: Session) -> None:
        """Release the session: end IDLE, LOGOUT, close the transport.

        Failures along the way are logged and ignored.
        """
        transport = session.transport

        if session.is_watching and not transport.closed:
            try:
                await transport.end_idle(Timeouts.IMAP_IDLE_DONE)
            except Exception as e:
                logger.debug(f"Error ending IDLE during close: {str(e)}")

        if not transport.closed:
            try:
                await transport.logout()
            except Exception as e:
                logger.debug(f"Error during IMAP logout: {str(e)}")

        await transport.close()

        session.state = WatchState.CLOSED
        session.watch_started_at = None
        log_event(
            "session_closed",
            f"Session on {session.mailbox} closed",
            mailbox=session.mailbox,
        )

    def classify(self, session: Session, line) -> Event:
        """Translate one pushed line into an event.

        Keeps ``session.exists`` current so only a growing message count is
        reported as new mail.
        """
        text = _decode(line)

        if text == STOP_WAIT_SERVER_PUSH:
            return Timeout()

        if text.startswith("+"):
            return Heartbeat(text)

        if text.startswith("* "):
            text = text[2:]

        match = _COUNT_RE.match(text)
        if match:
            number, keyword = int(match.group(1)), match.group(2).upper()

            if keyword == "EXISTS":
                previous, session.exists = session.exists, number
                if number > previous:
                    return ChangeDetected(ChangeEvent(ChangeKind.NEW_MESSAGE_COUNT, number))
                return ChangeDetected(ChangeEvent(ChangeKind.OTHER, number))

            if keyword == "EXPUNGE":
                session.exists = max(0, session.exists - 1)

            return ChangeDetected(ChangeEvent(ChangeKind.OTHER, number))

        match = _STATUS_RE.match(text)
        if match:
            status = match.group(1).upper()
            if status == IMAPResponse.BYE:
                return Closed(match.group(2) or "server said BYE")
            if status in (IMAPResponse.NO, IMAPResponse.BAD):
                raise ProtocolError(
                    f"Server reported {status} while idling",
                    details={"mailbox": session.mailbox, "response": text},
                )
            return Heartbeat(text)

        logger.debug("Ignoring unrecognised server line", extra={"line": text})
        return Heartbeat(text)
