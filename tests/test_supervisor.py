"""
Tests for the session supervisor

Tests cover:
- Backoff progression and reset
- IDLE renewal on the same session
- Reconnection after connection loss
- Startup and authentication retry limits
- Catch-up after reconnect
- Shutdown while waiting for pushes
"""
import asyncio
from unittest.mock import patch

import pytest

from mailwatch.cli import make_credentials_provider
from mailwatch.core.imap.events import ChangeKind, WatchState
from mailwatch.core.imap.protocol import SessionProtocolDriver
from mailwatch.daemon.supervisor import BackoffState, SessionSupervisor
from mailwatch.utils.config import ServerConfig
from mailwatch.utils.errors import (
    AuthenticationError,
    ConnectError,
    ConnectionClosedError,
    MissingCredentialsError,
)

from .test_helpers import FakeTransport, TimingTestHelper, TransportFactory, wait_until


def make_supervisor(factory, provider, sink, shutdown, timing, **kwargs):
    return SessionSupervisor(
        driver=SessionProtocolDriver(),
        transport_factory=factory,
        credentials_provider=provider,
        mailbox="INBOX",
        sink=sink,
        shutdown=shutdown,
        timing=timing,
        **kwargs,
    )


async def stop(supervisor_task, shutdown):
    shutdown.set()
    await asyncio.wait_for(supervisor_task, timeout=2)


class TestBackoffState:
    """Tests for the exponential backoff bookkeeping"""

    def test_delays_double_until_cap(self):
        backoff = BackoffState(base=1, cap=10)

        delays = [backoff.record_failure() for _ in range(6)]

        assert delays == [1, 2, 4, 8, 10, 10]
        assert backoff.failures == 6

    def test_reset(self):
        backoff = BackoffState(base=1, cap=10)
        backoff.record_failure(auth=True)

        backoff.reset()

        assert backoff.failures == 0
        assert backoff.auth_failures == 0
        assert backoff.next_delay == 0

    def test_auth_failures_count_consecutively(self):
        backoff = BackoffState()

        backoff.record_failure(auth=True)
        backoff.record_failure(auth=True)
        assert backoff.auth_failures == 2

        backoff.record_failure()
        assert backoff.auth_failures == 0
        assert backoff.failures == 3

    def test_huge_failure_count_stays_capped(self):
        backoff = BackoffState(base=1, cap=60, failures=5000)

        assert backoff.record_failure() == 60


class TestRenewal:
    """Tests for keeping IDLE alive on one session"""

    @pytest.mark.asyncio
    async def test_timeouts_renew_without_forwarding(
        self, credentials_provider, sink, shutdown, clock
    ):
        timing = TimingTestHelper.fast(poll_timeout=30, renew_interval=100)
        transport = FakeTransport(clock=clock)
        supervisor = make_supervisor(
            TransportFactory(transport), credentials_provider, sink, shutdown, timing, clock=clock
        )

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: supervisor.renewals >= 3)
        await stop(task, shutdown)

        sink.assert_not_called()
        assert supervisor.sessions_opened == 1
        assert transport.commands.count("CONNECT") == 1
        # 30 + 30 + 30 + 10 per renewal window: polls never overshoot it
        assert max(transport.read_timeouts) <= 30
        assert 10 in transport.read_timeouts

    @pytest.mark.asyncio
    async def test_renewal_reuses_session(self, credentials_provider, sink, shutdown, clock):
        timing = TimingTestHelper.fast(poll_timeout=30, renew_interval=60)
        transport = FakeTransport(clock=clock)
        supervisor = make_supervisor(
            TransportFactory(transport), credentials_provider, sink, shutdown, timing, clock=clock
        )

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: supervisor.renewals >= 1)
        session = supervisor.session
        await wait_until(lambda: supervisor.renewals >= 2)

        assert supervisor.session is session
        assert supervisor.state is WatchState.WATCHING
        await stop(task, shutdown)


class TestForwarding:
    """Tests for which events reach the dispatcher"""

    @pytest.mark.asyncio
    async def test_only_new_mail_is_forwarded(
        self, credentials_provider, sink, shutdown, timing
    ):
        transport = FakeTransport(
            exists=12,
            pushes=[b"* 3 EXPUNGE", b"* 11 EXISTS", b"* 5 FETCH (FLAGS (\\Seen))", b"* 12 EXISTS"],
        )
        supervisor = make_supervisor(
            TransportFactory(transport), credentials_provider, sink, shutdown, timing
        )

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: sink.called)
        await stop(task, shutdown)

        sink.assert_called_once()
        event = sink.call_args.args[0]
        assert event.kind is ChangeKind.NEW_MESSAGE_COUNT
        assert event.value == 12
        assert supervisor.events_forwarded == 1


class TestReconnect:
    """Tests for recovering from failures"""

    @pytest.mark.asyncio
    async def test_connection_loss_reconnects_and_resets_backoff(
        self, credentials_provider, sink, shutdown, timing
    ):
        first = FakeTransport(exists=12, pushes=[ConnectionClosedError("reset by peer")])
        second = FakeTransport(exists=12, pushes=[b"* 13 EXISTS"])
        supervisor = make_supervisor(
            TransportFactory(first, second), credentials_provider, sink, shutdown, timing
        )
        delays = []

        async def recording(delay):
            delays.append(delay)

        with patch.object(supervisor, "_sleep", new=recording):
            task = asyncio.create_task(supervisor.run())
            await wait_until(lambda: sink.called)

            assert first.closed
            assert delays == [timing.backoff_base]
            assert supervisor.sessions_opened == 2
            assert supervisor.backoff.failures == 0
            assert supervisor.state is WatchState.WATCHING
            assert sink.call_args.args[0].value == 13
            await stop(task, shutdown)

    @pytest.mark.asyncio
    async def test_failures_increase_until_success(
        self, credentials_provider, sink, shutdown
    ):
        timing = TimingTestHelper.fast(startup_retries=5)
        refused = ConnectError("connection refused")
        factory = TransportFactory(
            FakeTransport(connect_error=refused),
            FakeTransport(connect_error=refused),
            FakeTransport(),
        )
        supervisor = make_supervisor(factory, credentials_provider, sink, shutdown, timing)
        seen = []

        record = supervisor.backoff.record_failure

        def recording(auth=False):
            delay = record(auth=auth)
            seen.append(supervisor.backoff.failures)
            return delay

        supervisor.backoff.record_failure = recording

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: supervisor.state is WatchState.WATCHING)

        assert seen == [1, 2]
        assert supervisor.backoff.failures == 0
        assert len(factory.created) == 3
        await stop(task, shutdown)

    @pytest.mark.asyncio
    async def test_server_bye_reconnects(self, credentials_provider, sink, shutdown, timing):
        first = FakeTransport(pushes=[b"* BYE Autologout"])
        second = FakeTransport()
        supervisor = make_supervisor(
            TransportFactory(first, second), credentials_provider, sink, shutdown, timing
        )

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: supervisor.sessions_opened == 2)

        assert first.close_calls >= 1
        await stop(task, shutdown)

    @pytest.mark.asyncio
    async def test_mail_during_outage_is_caught_up(
        self, credentials_provider, sink, shutdown, timing
    ):
        first = FakeTransport(exists=12, pushes=[ConnectionClosedError("gone")])
        second = FakeTransport(exists=15)
        supervisor = make_supervisor(
            TransportFactory(first, second), credentials_provider, sink, shutdown, timing
        )

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: sink.called)
        await stop(task, shutdown)

        event = sink.call_args.args[0]
        assert event.kind is ChangeKind.NEW_MESSAGE_COUNT
        assert event.value == 15

    @pytest.mark.asyncio
    async def test_no_catch_up_when_count_unchanged(
        self, credentials_provider, sink, shutdown, timing
    ):
        first = FakeTransport(exists=12, pushes=[ConnectionClosedError("gone")])
        second = FakeTransport(exists=12)
        supervisor = make_supervisor(
            TransportFactory(first, second), credentials_provider, sink, shutdown, timing
        )

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: supervisor.sessions_opened == 2)
        await stop(task, shutdown)

        sink.assert_not_called()


class TestRetryLimits:
    """Tests for giving up"""

    @pytest.mark.asyncio
    async def test_startup_retries_exhausted(self, credentials_provider, sink, shutdown):
        timing = TimingTestHelper.fast(startup_retries=3)
        factory = TransportFactory(FakeTransport(connect_error=ConnectError("unreachable")))
        supervisor = make_supervisor(factory, credentials_provider, sink, shutdown, timing)

        with pytest.raises(ConnectError):
            await asyncio.wait_for(supervisor.run(), timeout=2)

        assert len(factory.created) == 3

    @pytest.mark.asyncio
    async def test_auth_failures_escalate(self, credentials_provider, sink, shutdown):
        timing = TimingTestHelper.fast(max_auth_failures=2, startup_retries=10)
        factory = TransportFactory(FakeTransport(login_result="NO"))
        supervisor = make_supervisor(factory, credentials_provider, sink, shutdown, timing)

        with pytest.raises(AuthenticationError, match="2 consecutive"):
            await asyncio.wait_for(supervisor.run(), timeout=2)

        assert len(factory.created) == 2
        assert all(t.closed for t in factory.created)

    @pytest.mark.asyncio
    async def test_password_command_failure_counts_as_auth_failure(
        self, sink, shutdown
    ):
        timing = TimingTestHelper.fast(max_auth_failures=2, startup_retries=10)

        async def provider():
            raise MissingCredentialsError("pass exited with code 1")

        factory = TransportFactory(FakeTransport())
        supervisor = make_supervisor(factory, provider, sink, shutdown, timing)

        with pytest.raises(AuthenticationError):
            await asyncio.wait_for(supervisor.run(), timeout=2)

        assert supervisor.backoff.auth_failures == 2

    @pytest.mark.asyncio
    async def test_undecodable_password_counts_as_auth_failure(self, sink, shutdown):
        timing = TimingTestHelper.fast(max_auth_failures=2, startup_retries=10)
        server = ServerConfig(host="h", port=993, user="me", pass_cmd="printf '\\377'")
        factory = TransportFactory(FakeTransport())
        supervisor = make_supervisor(
            factory, make_credentials_provider(server), sink, shutdown, timing
        )

        with pytest.raises(AuthenticationError):
            await asyncio.wait_for(supervisor.run(), timeout=5)

        assert supervisor.backoff.auth_failures == 2


class TestShutdown:
    """Tests for the cancellation path"""

    @pytest.mark.asyncio
    async def test_shutdown_while_polling_closes_session(
        self, credentials_provider, sink, shutdown, timing
    ):
        transport = FakeTransport()
        factory = TransportFactory(transport)
        supervisor = make_supervisor(factory, credentials_provider, sink, shutdown, timing)

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: len(transport.read_timeouts) >= 1)
        await stop(task, shutdown)

        assert transport.commands[-2:] == ["DONE", "LOGOUT"]
        assert transport.closed
        assert supervisor.session is None
        assert supervisor.state is WatchState.CLOSED
        assert len(factory.created) == 1

    @pytest.mark.asyncio
    async def test_shutdown_during_backoff(self, credentials_provider, sink, shutdown):
        timing = TimingTestHelper.fast(backoff_base=30, backoff_cap=30, startup_retries=5)
        factory = TransportFactory(FakeTransport(connect_error=ConnectError("down")))
        supervisor = make_supervisor(factory, credentials_provider, sink, shutdown, timing)

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: supervisor.backoff.failures == 1)
        await stop(task, shutdown)

        assert len(factory.created) == 1

    @pytest.mark.asyncio
    async def test_shutdown_before_start(self, credentials_provider, sink, shutdown, timing):
        factory = TransportFactory(FakeTransport())
        supervisor = make_supervisor(factory, credentials_provider, sink, shutdown, timing)
        shutdown.set()

        await asyncio.wait_for(supervisor.run(), timeout=1)

        assert factory.created == []
