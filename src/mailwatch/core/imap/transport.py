"""Encrypted IMAP transport built on aioimaplib.

aioimaplib owns line framing and command tagging, so the transport offers
the handful of commands the watcher needs plus a line reader for the
untagged responses the server pushes while IDLE is active.
"""

import asyncio
import ssl
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, List, Optional

import aioimaplib

from mailwatch.utils.errors import ConnectError, ConnectionClosedError, ProtocolError
from mailwatch.utils.logging import async_log_call, get_logger

from .constants import IMAP4_SSL_PORT, LOGOUT_STATE, Timeouts

logger = get_logger(__name__)


class Transport(ABC):
    """Ordered, encrypted channel to one IMAP server."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection and wait for the server greeting.

        Raises:
            ConnectError: If the server can't be reached
        """

    @abstractmethod
    async def login(self, username: str, password: str) -> Any:
        """Send LOGIN and return the aioimaplib response."""

    @abstractmethod
    async def select(self, mailbox: str) -> Any:
        """Send SELECT and return the aioimaplib response."""

    @abstractmethod
    async def start_idle(self, timeout: float) -> None:
        """Send IDLE and wait for the server's continuation."""

    @abstractmethod
    async def end_idle(self, timeout: float) -> Any:
        """Send DONE and return the tagged IDLE completion."""

    @abstractmethod
    async def read_line(self, timeout: float) -> bytes:
        """Return the next pushed line.

        Raises:
            asyncio.TimeoutError: If nothing arrives within ``timeout``
            ConnectionClosedError: If the connection is gone
        """

    @abstractmethod
    def drain(self) -> List[bytes]:
        """Return every line already received without waiting for more."""

    @abstractmethod
    async def logout(self) -> Any:
        """Send LOGOUT."""

    @abstractmethod
    async def close(self) -> None:
        """Drop the connection. Safe to call more than once."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        """True once the connection is lost or closed."""

    @property
    @abstractmethod
    def idle_active(self) -> bool:
        """True while an IDLE command is outstanding."""


class IMAPTransport(Transport):
    """Transport over ``aioimaplib.IMAP4_SSL``."""

    def __init__(
        self,
        host: str,
        port: int = IMAP4_SSL_PORT,
        ssl_context: Optional[ssl.SSLContext] = None,
        timeout: float = Timeouts.IMAP_CONNECT,
    ):
        """Initialise the transport.

        Args:
            host: IMAP server hostname
            port: IMAP over TLS port
            ssl_context: TLS context, defaults to certificate verification
            timeout: Timeout aioimaplib applies to each command
        """
        self.host = host
        self.port = port
        self.ssl_context = ssl_context or ssl.create_default_context()
        self.timeout = timeout
        self._client: Optional[aioimaplib.IMAP4_SSL] = None
        self._idle_task: Optional[asyncio.Future] = None
        self._lines: Deque[bytes] = deque()
        self._lost = asyncio.Event()

    @property
    def closed(self) -> bool:
        if self._client is None or self._lost.is_set():
            return True
        return self._client.protocol.state == LOGOUT_STATE

    @property
    def idle_active(self) -> bool:
        return self._idle_task is not None and not self._idle_task.done()

    def _connection_lost(self, exc: Optional[Exception]) -> None:
        logger.debug(
            "IMAP connection lost",
            extra={"server": self.host, "error": str(exc) if exc else None},
        )
        self._lost.set()

    def _require_client(self) -> aioimaplib.IMAP4_SSL:
        if self._client is None or self._lost.is_set():
            raise ConnectionClosedError(
                "Not connected to IMAP server", details={"server": self.host}
            )
        return self._client

    async def connect(self) -> None:
        logger.info(
            "Connecting to IMAP server",
            extra={"server": self.host, "port": self.port},
        )
        self._lost.clear()
        self._lines.clear()

        try:
            client = aioimaplib.IMAP4_SSL(
                host=self.host,
                port=self.port,
                ssl_context=self.ssl_context,
                timeout=self.timeout,
            )
            client.protocol.conn_lost_cb = self._connection_lost

            await asyncio.wait_for(
                client.wait_hello_from_server(), timeout=Timeouts.IMAP_CONNECT
            )

        except asyncio.TimeoutError as e:
            raise ConnectError(
                "Timed out waiting for IMAP server greeting",
                details={"server": self.host, "port": self.port},
            ) from e

        except Exception as e:
            raise ConnectError(
                f"Failed to connect to IMAP server: {str(e)}",
                details={"server": self.host, "port": self.port},
            ) from e

        self._client = client

    async def login(self, username: str, password: str) -> Any:
        client = self._require_client()
        return await asyncio.wait_for(
            client.login(username, password), timeout=Timeouts.IMAP_LOGIN
        )

    async def select(self, mailbox: str) -> Any:
        client = self._require_client()
        return await asyncio.wait_for(
            client.select(mailbox), timeout=Timeouts.IMAP_SELECT
        )

    async def start_idle(self, timeout: float) -> None:
        client = self._require_client()
        if self.idle_active:
            raise ProtocolError("IDLE already in progress", details={"server": self.host})

        self._idle_task = await asyncio.wait_for(
            client.idle_start(timeout=timeout), timeout=Timeouts.IMAP_IDLE_START
        )

    async def end_idle(self, timeout: float) -> Any:
        client = self._require_client()
        idle_task, self._idle_task = self._idle_task, None
        if idle_task is None:
            raise ProtocolError("No IDLE in progress", details={"server": self.host})

        client.idle_done()
        return await asyncio.wait_for(idle_task, timeout=timeout)

    async def read_line(self, timeout: float) -> bytes:
        if self._lines:
            return self._lines.popleft()

        client = self._require_client()

        push = asyncio.ensure_future(client.wait_server_push(timeout=timeout))
        lost = asyncio.ensure_future(self._lost.wait())
        try:
            done, _ = await asyncio.wait(
                {push, lost}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (push, lost):
                if not task.done():
                    task.cancel()

        if push not in done:
            raise ConnectionClosedError(
                "IMAP connection lost while waiting for server push",
                details={"server": self.host},
            )

        # raises asyncio.TimeoutError when nothing was pushed in time
        pushed = push.result()
        if isinstance(pushed, (bytes, bytearray, str)):
            pushed = [pushed]

        for line in pushed:
            if isinstance(line, str):
                line = line.encode()
            self._lines.append(bytes(line))

        if not self._lines:
            raise asyncio.TimeoutError()

        return self._lines.popleft()

    def drain(self) -> List[bytes]:
        lines = list(self._lines)
        self._lines.clear()

        if self._client is None:
            return lines

        queue = self._client.protocol.idle_queue
        while not queue.empty():
            pushed = queue.get_nowait()
            if isinstance(pushed, (bytes, bytearray, str)):
                pushed = [pushed]
            lines.extend(
                line.encode() if isinstance(line, str) else bytes(line)
                for line in pushed
            )

        return lines

    async def logout(self) -> Any:
        client = self._require_client()
        return await asyncio.wait_for(client.logout(), timeout=Timeouts.IMAP_LOGOUT)

    @async_log_call
    async def close(self) -> None:
        client, self._client = self._client, None
        self._idle_task = None
        self._lines.clear()
        self._lost.set()

        if client is None:
            return

        transport = getattr(client.protocol, "transport", None)
        if transport is not None and not transport.is_closing():
            transport.close()

        logger.debug("IMAP transport closed", extra={"server": self.host})
