"""Command line entry point for the mail watcher daemon."""

import argparse
import asyncio
import signal
import sys
from typing import Awaitable, Callable, Optional

from rich.console import Console
from rich.markup import escape

from mailwatch import __version__
from mailwatch.core.imap import Credentials, IMAPTransport, SessionProtocolDriver
from mailwatch.daemon import EventDispatcher, SessionSupervisor
from mailwatch.pipeline import build_pipeline
from mailwatch.utils.config import ServerConfig, WatcherConfig, load_config
from mailwatch.utils.errors import ConfigurationError, WatcherError, format_error_message
from mailwatch.utils.logging import get_logger, init_logging, log_event

logger = get_logger(__name__)
console = Console(stderr=True)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mailwatch",
        description="Watch an IMAP mailbox with IDLE, sync it with mbsync "
        "and notify about new mail.",
        epilog="The account is configured through IMAP_* environment variables. "
        "No sound is played unless IMAP_SOUND_FILE names a WAV file for aplay.",
    )
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        type=str.upper,
        help="Console log level (overrides IMAP_LOG_LEVEL)",
    )
    parser.add_argument(
        "--log-dir",
        help="Directory for app.log and events.log (overrides IMAP_LOG_DIR)",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    return parser


def make_credentials_provider(
    server: ServerConfig,
) -> Callable[[], Awaitable[Credentials]]:
    """Run the password command off the event loop on every connect."""

    async def provider() -> Credentials:
        password = await asyncio.to_thread(server.get_password)
        return Credentials(username=server.user, password=password)

    return provider


async def watch(config: WatcherConfig, shutdown: Optional[asyncio.Event] = None) -> None:
    """Run the supervisor and dispatcher until shutdown.

    SIGINT and SIGTERM set the shutdown event. A run already executing is
    allowed to finish before this returns.

    Raises:
        WatcherError: If the supervisor gives up
    """
    shutdown = shutdown or asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(signum: int) -> None:
        if not shutdown.is_set():
            logger.info(f"Received {signal.Signals(signum).name}, shutting down")
            shutdown.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, request_shutdown, signum)

    dispatcher = EventDispatcher(
        build_pipeline(config),
        shutdown=shutdown,
        stage_timeout=config.timing.stage_timeout,
    )
    supervisor = SessionSupervisor(
        driver=SessionProtocolDriver(),
        transport_factory=lambda: IMAPTransport(config.server.host, config.server.port),
        credentials_provider=make_credentials_provider(config.server),
        mailbox=config.server.mailbox,
        sink=dispatcher.submit,
        shutdown=shutdown,
        timing=config.timing,
    )

    log_event(
        "watcher_started",
        "Mail watcher started",
        server=config.server.host,
        mailbox=config.server.mailbox,
    )

    dispatcher_task = asyncio.create_task(dispatcher.run())
    try:
        await supervisor.run()
    finally:
        shutdown.set()
        await dispatcher_task
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)

    log_event(
        "watcher_stopped",
        "Mail watcher stopped",
        runs=dispatcher.runs_started,
        sessions=supervisor.sessions_opened,
    )


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config()
        init_logging(
            args.log_level or config.logging.log_level,
            args.log_dir or config.logging.log_dir or None,
        )

    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {escape(format_error_message(e))}[/]")
        return EXIT_CONFIG

    try:
        asyncio.run(watch(config))

    except WatcherError as e:
        logger.error(f"Mail watcher stopped: {format_error_message(e)}")
        return EXIT_FAILURE

    except KeyboardInterrupt:
        logger.info("Mail watcher interrupted by user")

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
