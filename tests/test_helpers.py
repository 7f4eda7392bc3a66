"""
Test helper fakes and utilities shared across test modules
"""
import asyncio
from collections import deque, namedtuple
from typing import Iterable, List, Optional
from unittest.mock import AsyncMock, MagicMock

from mailwatch.core.imap.transport import Transport
from mailwatch.pipeline.base import PipelineContext, PipelineStage, StageSkipped
from mailwatch.utils.config import TimingConfig
from mailwatch.utils.errors import ConnectionClosedError, PipelineError

# Same shape as aioimaplib's Response
Response = namedtuple("Response", ["result", "lines"])

# Scripted read_line result meaning "nothing pushed before the timeout"
NO_PUSH = object()


class FakeClock:
    """Monotonic clock that only moves when told to"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport(Transport):
    """Scripted transport recording every command it receives"""

    def __init__(
        self,
        pushes: Iterable = (),
        exists: int = 12,
        login_result: str = "OK",
        select_result: str = "OK",
        select_lines: Optional[List[bytes]] = None,
        connect_error: Optional[Exception] = None,
        done_result: str = "OK",
        done_lines: Iterable[bytes] = (),
        clock: Optional[FakeClock] = None,
    ):
        self.pushes = deque(pushes)
        self.login_result = login_result
        self.select_result = select_result
        self.select_lines = (
            select_lines
            if select_lines is not None
            else [f"{exists} EXISTS".encode(), b"0 RECENT", b"OK [UIDVALIDITY 1] UIDs valid"]
        )
        self.connect_error = connect_error
        self.done_result = done_result
        self.done_lines = list(done_lines)
        self.clock = clock

        self.commands: List[str] = []
        self.read_timeouts: List[float] = []
        self.buffered: List[bytes] = []
        self.close_calls = 0
        self._connected = False
        self._idle = False

    @property
    def closed(self) -> bool:
        return not self._connected

    @property
    def idle_active(self) -> bool:
        return self._idle

    async def connect(self) -> None:
        self.commands.append("CONNECT")
        if self.connect_error is not None:
            raise self.connect_error
        self._connected = True

    async def login(self, username: str, password: str):
        self.commands.append("LOGIN")
        return Response(self.login_result, [b"LOGIN completed"])

    async def select(self, mailbox: str):
        self.commands.append(f"SELECT {mailbox}")
        return Response(self.select_result, list(self.select_lines))

    async def start_idle(self, timeout: float) -> None:
        self.commands.append("IDLE")
        self._idle = True

    async def end_idle(self, timeout: float):
        self.commands.append("DONE")
        if not self._connected:
            raise ConnectionClosedError("connection lost")
        self._idle = False
        lines, self.done_lines = self.done_lines, []
        return Response(self.done_result, lines + [b"IDLE terminated"])

    async def read_line(self, timeout: float) -> bytes:
        self.read_timeouts.append(timeout)
        await asyncio.sleep(0)

        if not self._connected:
            raise ConnectionClosedError("connection lost")

        item = self.pushes.popleft() if self.pushes else NO_PUSH

        if item is NO_PUSH:
            if self.clock is not None:
                self.clock.advance(timeout)
                await asyncio.sleep(0.001)
            else:
                await asyncio.sleep(timeout)
            raise asyncio.TimeoutError()

        if isinstance(item, ConnectionClosedError):
            self._connected = False
            self._idle = False
            raise item

        return item

    def drain(self) -> List[bytes]:
        lines, self.buffered = self.buffered, []
        return lines

    async def logout(self):
        self.commands.append("LOGOUT")
        return Response("OK", [b"BYE logging out"])

    async def close(self) -> None:
        self.close_calls += 1
        self._connected = False
        self._idle = False


class TransportFactory:
    """Hands out prepared transports in order, repeating the last one"""

    def __init__(self, *transports: FakeTransport):
        self.transports = list(transports)
        self.created: List[FakeTransport] = []

    def __call__(self) -> FakeTransport:
        index = min(len(self.created), len(self.transports) - 1)
        transport = self.transports[index]
        if transport in self.created:
            transport = FakeTransport(
                connect_error=transport.connect_error,
                login_result=transport.login_result,
            )
        self.created.append(transport)
        return transport


class RecordingStage(PipelineStage):
    """Pipeline stage that records its calls into a shared list"""

    def __init__(
        self,
        name: str,
        calls: list,
        required: bool = True,
        delay: float = 0.0,
        error: Optional[Exception] = None,
        skip: bool = False,
    ):
        self.name = name
        self.calls = calls
        self.required = required
        self.delay = delay
        self.error = error
        self.skip = skip

    async def run(self, context: PipelineContext) -> None:
        self.calls.append(self.name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.skip:
            raise StageSkipped("nothing to do")
        if self.error is not None:
            raise self.error


class TimingTestHelper:
    """Helper methods for building fast timing settings"""

    @staticmethod
    def fast(**overrides) -> TimingConfig:
        values = {
            "poll_timeout": 0.05,
            "renew_interval": 5.0,
            "backoff_base": 0.01,
            "backoff_cap": 0.04,
            "max_auth_failures": 3,
            "startup_retries": 3,
            "stage_timeout": 1.0,
        }
        values.update(overrides)
        return TimingConfig(**values)


class PipelineTestHelper:
    """Helper methods for pipeline testing"""

    @staticmethod
    def stages(calls: list, failing: Optional[str] = None, delay: float = 0.0):
        """Default-shaped pipeline of recording stages"""
        layout = [
            ("sync", True),
            ("locate", True),
            ("notify", True),
            ("sound", False),
            ("reindex", False),
        ]
        return [
            RecordingStage(
                name,
                calls,
                required=required,
                delay=delay if name == "sync" else 0.0,
                error=PipelineError(f"{name} broke") if name == failing else None,
            )
            for name, required in layout
        ]


class IMAPClientTestHelper:
    """Helper methods for stubbing the aioimaplib client"""

    @staticmethod
    def create_mock_client(exists: int = 12) -> MagicMock:
        """Mock IMAP4_SSL client whose pushes come from a real idle queue

        Must be called with a running event loop.
        """
        client = MagicMock()
        client.protocol.idle_queue = asyncio.Queue()
        client.protocol.state = "SELECTED"
        client.protocol.transport.is_closing.return_value = False

        client.wait_hello_from_server = AsyncMock()
        client.login = AsyncMock(return_value=Response("OK", [b"LOGIN completed"]))
        client.select = AsyncMock(
            return_value=Response("OK", [f"{exists} EXISTS".encode(), b"SELECT completed"])
        )
        client.logout = AsyncMock(return_value=Response("OK", [b"LOGOUT completed"]))

        async def wait_server_push(timeout):
            return await asyncio.wait_for(client.protocol.idle_queue.get(), timeout)

        client.wait_server_push = AsyncMock(side_effect=wait_server_push)

        idle = {}

        async def idle_start(timeout):
            idle["task"] = asyncio.get_running_loop().create_future()
            return idle["task"]

        def idle_done():
            idle["task"].set_result(Response("OK", [b"IDLE terminated"]))

        client.idle_start = AsyncMock(side_effect=idle_start)
        client.idle_done = MagicMock(side_effect=idle_done)
        return client


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll ``predicate`` until it is true or fail after ``timeout``"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
