"""Mailbox synchronization through mbsync."""

import asyncio
from pathlib import Path
from typing import List, Optional

import psutil

from mailwatch.utils.config import SyncConfig
from mailwatch.utils.errors import SyncError
from mailwatch.utils.logging import get_logger

from .base import PipelineContext, PipelineStage, run_command

logger = get_logger(__name__)

# seconds between checks for an mbsync run started by someone else
PROCESS_POLL_INTERVAL = 0.25


def running_processes(name: str) -> List[int]:
    """PIDs of processes whose executable is called ``name``."""
    pids = []
    for process in psutil.process_iter(["pid", "name"]):
        try:
            if process.info["name"] == name:
                pids.append(process.info["pid"])
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return pids


class MbsyncStage(PipelineStage):
    """Pull all channels with ``mbsync -a``."""

    name = "sync"
    required = True

    def __init__(self, config: SyncConfig, poll_interval: float = PROCESS_POLL_INTERVAL):
        self.mbsync_path = config.mbsync_path
        self.conf_path: Optional[Path] = config.mbsync_conf_path
        self.poll_interval = poll_interval

    @property
    def command(self) -> List[str]:
        args = [self.mbsync_path, "-a", "-V"]
        if self.conf_path is not None:
            args.extend(["-c", str(self.conf_path)])
        return args

    async def wait_for_running(self) -> None:
        """Wait until no other mbsync process is running.

        Has no deadline of its own; the dispatcher's stage timeout bounds it.
        """
        name = Path(self.mbsync_path).name
        while True:
            pids = await asyncio.to_thread(running_processes, name)
            if not pids:
                return
            logger.debug(f"Waiting for running {name}", extra={"pids": pids})
            await asyncio.sleep(self.poll_interval)

    async def run(self, context: PipelineContext) -> None:
        await self.wait_for_running()

        logger.info("Running mbsync", extra={"argv": self.command})
        try:
            result = await run_command(self.command, capture_output=False)
        except OSError as e:
            raise SyncError(
                f"Could not start mbsync: {str(e)}",
                details={"command": self.mbsync_path},
            ) from e

        if not result.ok:
            raise SyncError(
                f"mbsync exited with status: {result.returncode}",
                details={"returncode": result.returncode, "stderr": result.error_text},
            )

        logger.debug("mbsync finished")
