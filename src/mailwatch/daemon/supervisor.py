"""Session supervisor - keeps exactly one watching IMAP session alive.

Owns the session lifecycle on top of ``SessionProtocolDriver``:
- Opens a session and enters IDLE, retrying with capped exponential backoff
- Renews IDLE on the same session before the server's time limit
- Tears the session down and reconnects on protocol or network failures
- Forwards new-mail events to the dispatcher, nothing else
- Stops cleanly when the shutdown event is set

Usage Examples
--------------

    >>> supervisor = SessionSupervisor(
    ...     driver=SessionProtocolDriver(),
    ...     transport_factory=lambda: IMAPTransport(host, port),
    ...     credentials_provider=provider,
    ...     mailbox="INBOX",
    ...     sink=dispatcher.submit,
    ...     shutdown=shutdown,
    ...     timing=config.timing,
    ... )
    >>> await supervisor.run()
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from mailwatch.core.imap.events import (
    ChangeDetected,
    ChangeEvent,
    ChangeKind,
    Closed,
    Credentials,
    Heartbeat,
    Session,
    WatchState,
)
from mailwatch.core.imap.protocol import SessionProtocolDriver
from mailwatch.core.imap.transport import Transport
from mailwatch.utils.config import TimingConfig
from mailwatch.utils.errors import (
    AuthenticationError,
    ConnectionClosedError,
    NetworkError,
    WatcherError,
)
from mailwatch.utils.logging import get_logger, log_event

logger = get_logger(__name__)

# keeps base * 2 ** n inside float range
_MAX_BACKOFF_EXPONENT = 62


@dataclass
class BackoffState:
    """Consecutive failure count and the delay before the next attempt."""

    base: float = 1.0
    cap: float = 60.0
    failures: int = 0
    auth_failures: int = 0
    next_delay: float = 0.0

    def record_failure(self, auth: bool = False) -> float:
        """Count one failed attempt and return the delay to wait."""
        self.failures += 1
        self.auth_failures = self.auth_failures + 1 if auth else 0
        exponent = min(self.failures - 1, _MAX_BACKOFF_EXPONENT)
        self.next_delay = min(self.cap, self.base * 2**exponent)
        return self.next_delay

    def reset(self) -> None:
        self.failures = 0
        self.auth_failures = 0
        self.next_delay = 0.0


class SessionSupervisor:
    """Owns one session at a time and keeps it watching."""

    def __init__(
        self,
        *,
        driver: SessionProtocolDriver,
        transport_factory: Callable[[], Transport],
        credentials_provider: Callable[[], Awaitable[Credentials]],
        mailbox: str,
        sink: Callable[[ChangeEvent], None],
        shutdown: asyncio.Event,
        timing: TimingConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialise the supervisor.

        Args:
            driver: Protocol driver used for every session
            transport_factory: Builds a fresh, unconnected transport
            credentials_provider: Coroutine returning credentials, called
                on every (re)connect
            mailbox: Mailbox to select and watch
            sink: Receives forwarded new-mail events; must not block
            shutdown: Set to stop the supervisor
            timing: Poll, renewal and backoff settings
            clock: Monotonic clock used for the renewal deadline
        """
        self._driver = driver
        self._transport_factory = transport_factory
        self._credentials_provider = credentials_provider
        self.mailbox = mailbox
        self._sink = sink
        self._shutdown = shutdown
        self.timing = timing
        self._clock = clock

        self.backoff = BackoffState(base=timing.backoff_base, cap=timing.backoff_cap)
        self.session: Optional[Session] = None
        self._ever_connected = False
        self._last_exists: Optional[int] = None

        self.sessions_opened = 0
        self.renewals = 0
        self.events_forwarded = 0

    @property
    def state(self) -> WatchState:
        if self.session is None:
            return WatchState.CLOSED
        return self.session.state

    async def run(self) -> None:
        """Supervise sessions until shutdown.

        Raises:
            AuthenticationError: After too many consecutive login failures
            WatcherError: If no session could be established at startup
        """
        logger.info("Session supervisor started", extra={"mailbox": self.mailbox})

        try:
            while not self._shutdown.is_set():
                session = await self._establish()
                if session is None:
                    break

                try:
                    await self._watch(session)

                except NetworkError as e:
                    logger.warning(
                        f"Session failed: {e.message}, reconnecting",
                        extra={"mailbox": self.mailbox, "error_type": type(e).__name__},
                    )
                    await self._discard(session)
                    delay = self.backoff.record_failure()
                    log_event(
                        "reconnect_scheduled",
                        f"Reconnecting in {delay:.1f}s",
                        delay_seconds=delay,
                        failures=self.backoff.failures,
                    )
                    await self._sleep(delay)
                    continue

                await self._stop_session(session)

        finally:
            if self.session is not None:
                await self._stop_session(self.session)

        logger.info("Session supervisor stopped", extra={"mailbox": self.mailbox})

    async def _establish(self) -> Optional[Session]:
        """Open a watching session, retrying until success or shutdown."""
        while not self._shutdown.is_set():
            transport = self._transport_factory()

            try:
                credentials = await self._credentials_provider()
                session = await self._driver.open(transport, credentials, self.mailbox)
                try:
                    await self._driver.start_watch(session)
                except WatcherError:
                    await self._driver.close(session)
                    raise

            except AuthenticationError as e:
                await transport.close()
                delay = self.backoff.record_failure(auth=True)
                logger.error(
                    f"Authentication failed ({self.backoff.auth_failures}/"
                    f"{self.timing.max_auth_failures}): {e.message}",
                    extra={"mailbox": self.mailbox},
                )
                if self.backoff.auth_failures >= self.timing.max_auth_failures:
                    raise AuthenticationError(
                        f"Giving up after {self.backoff.auth_failures} consecutive "
                        "authentication failures",
                        details={"mailbox": self.mailbox},
                    ) from e
                self._check_startup_retries(e)

            except NetworkError as e:
                await transport.close()
                delay = self.backoff.record_failure()
                logger.warning(
                    f"Connection attempt {self.backoff.failures} failed: {e.message}",
                    extra={"mailbox": self.mailbox, "error_type": type(e).__name__},
                )
                self._check_startup_retries(e)

            else:
                self._on_established(session)
                return session

            await self._sleep(delay)

        return None

    def _check_startup_retries(self, error: WatcherError) -> None:
        if self._ever_connected:
            return
        if self.backoff.failures >= self.timing.startup_retries:
            logger.error(
                f"Could not establish a session after {self.backoff.failures} attempts",
                extra={"mailbox": self.mailbox},
            )
            raise error

    def _on_established(self, session: Session) -> None:
        missed = self._last_exists is not None and session.exists > self._last_exists

        self.session = session
        self._last_exists = session.exists
        self._ever_connected = True
        self.backoff.reset()
        self.sessions_opened += 1

        logger.info(
            "Watching mailbox",
            extra={"mailbox": self.mailbox, "exists": session.exists},
        )

        if missed:
            logger.info(
                "Mail arrived while disconnected",
                extra={"mailbox": self.mailbox, "exists": session.exists},
            )
            self._forward(ChangeEvent(ChangeKind.NEW_MESSAGE_COUNT, session.exists))

    async def _watch(self, session: Session) -> None:
        """Poll the session until shutdown, renewing IDLE on schedule.

        Raises:
            NetworkError: On protocol or connection failure
        """
        deadline = self._clock() + self.timing.renew_interval

        while not self._shutdown.is_set():
            now = self._clock()
            if now >= deadline:
                await self._renew(session)
                deadline = self._clock() + self.timing.renew_interval
                continue

            timeout = min(self.timing.poll_timeout, deadline - now)
            event = await self._driver.poll_event(session, timeout)
            self._last_exists = session.exists

            if isinstance(event, ChangeDetected):
                self._forward(event.event)
            elif isinstance(event, Closed):
                raise ConnectionClosedError(
                    f"Server closed the session: {event.reason}",
                    details={"mailbox": self.mailbox},
                )
            elif isinstance(event, Heartbeat):
                logger.debug("Server keepalive", extra={"line": event.line})

    async def _renew(self, session: Session) -> None:
        await self._driver.stop_watch(session)
        await self._driver.start_watch(session)
        self.renewals += 1
        log_event(
            "watch_renewed",
            "IDLE renewed",
            mailbox=self.mailbox,
            renewals=self.renewals,
        )

    def _forward(self, event: ChangeEvent) -> None:
        if event.kind is not ChangeKind.NEW_MESSAGE_COUNT:
            logger.debug(
                "Mailbox changed without new mail",
                extra={"mailbox": self.mailbox, "value": event.value},
            )
            return

        self.events_forwarded += 1
        logger.info(
            "New mail detected",
            extra={"mailbox": self.mailbox, "exists": event.value},
        )
        self._sink(event)

    async def _discard(self, session: Session) -> None:
        await self._driver.close(session)
        self.session = None

    async def _stop_session(self, session: Session) -> None:
        """Leave IDLE and close the session, tolerating failures."""
        if session.is_watching:
            try:
                await self._driver.stop_watch(session)
            except WatcherError as e:
                logger.debug(f"Error stopping IDLE during shutdown: {e.message}")

        await self._discard(session)

    async def _sleep(self, delay: float) -> None:
        """Wait ``delay`` seconds or until shutdown, whichever comes first."""
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
