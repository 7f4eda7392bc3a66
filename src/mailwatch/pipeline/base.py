"""Building blocks shared by the pipeline stages."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from mailwatch.core.imap.events import ChangeEvent
from mailwatch.utils.logging import get_logger

logger = get_logger(__name__)


class StageSkipped(Exception):
    """Raised by a stage that has nothing to do for this run."""


@dataclass(frozen=True)
class MessageMetadata:
    sender: str
    subject: str


@dataclass
class PipelineContext:
    """Data handed from one stage to the next within a single run."""

    trigger: ChangeEvent
    message_path: Optional[Path] = None
    metadata: Optional[MessageMetadata] = None


class PipelineStage(ABC):
    """One step of the reaction to new mail.

    A failing ``required`` stage aborts the rest of the run; failures of
    other stages are logged and the run carries on.
    """

    name: str = "stage"
    required: bool = True

    @abstractmethod
    async def run(self, context: PipelineContext) -> None:
        """Do the work, raising a ``PipelineError`` on failure."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, required={self.required})"


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def error_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace").strip()


async def run_command(
    args: Sequence[str],
    stdin: Optional[bytes] = None,
    timeout: Optional[float] = None,
    capture_output: bool = True,
) -> CommandResult:
    """Run an external command and collect its output.

    With ``capture_output`` False the command writes straight to the
    daemon's stdout; stderr is always collected for error reporting.

    Raises:
        FileNotFoundError: If the executable does not exist
        asyncio.TimeoutError: If ``timeout`` elapses; the process is killed
    """
    logger.debug(f"Running {args[0]}", extra={"argv": list(args)})

    process = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE if capture_output else None,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        stdout, stderr = await asyncio.wait_for(
            process.communicate(input=stdin), timeout=timeout
        )

    except (asyncio.TimeoutError, asyncio.CancelledError):
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise

    return CommandResult(process.returncode, stdout or b"", stderr or b"")
