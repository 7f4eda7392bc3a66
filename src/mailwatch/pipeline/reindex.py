"""Ask the mail client to re-index over the D-Bus session bus."""

from typing import List

from mailwatch.utils.config import NotifyConfig
from mailwatch.utils.errors import NotificationError
from mailwatch.utils.logging import get_logger

from .base import PipelineContext, PipelineStage, StageSkipped, run_command

logger = get_logger(__name__)

REPLY_TIMEOUT_MS = 5000


class ReindexStage(PipelineStage):
    """Call each configured method on the mail client's D-Bus object."""

    name = "reindex"
    required = False

    def __init__(self, config: NotifyConfig, executable: str = "dbus-send"):
        self.enabled = config.reindex_enabled
        self.dest = config.reindex_dest
        self.path = config.reindex_path
        self.interface = config.reindex_interface
        self.methods = config.reindex_methods
        self.executable = executable

    def command(self, method: str) -> List[str]:
        return [
            self.executable,
            "--session",
            "--type=method_call",
            "--print-reply",
            f"--reply-timeout={REPLY_TIMEOUT_MS}",
            f"--dest={self.dest}",
            self.path,
            f"{self.interface}.{method}",
        ]

    async def run(self, context: PipelineContext) -> None:
        if not self.enabled or not self.methods:
            raise StageSkipped("re-index disabled")

        for method in self.methods:
            try:
                result = await run_command(self.command(method))
            except OSError as e:
                raise NotificationError(
                    f"{self.executable} not available: {str(e)}"
                ) from e

            if not result.ok:
                raise NotificationError(
                    f"D-Bus call {method} failed: {result.error_text}",
                    details={"method": method, "returncode": result.returncode},
                )

            logger.debug("D-Bus call succeeded", extra={"method": method})
