"""Desktop notification and audio cue stages."""

from pathlib import Path
from typing import List, Optional

from mailwatch.utils.config import NotifyConfig
from mailwatch.utils.errors import NotificationError
from mailwatch.utils.logging import get_logger

from .base import PipelineContext, PipelineStage, StageSkipped, run_command
from .maildir import UNKNOWN_SENDER, UNKNOWN_SUBJECT

logger = get_logger(__name__)

APP_NAME = "You've got mail!"
ICON = "mail-unread"


class DesktopNotifyStage(PipelineStage):
    """Show sender and subject of the newest message with notify-send."""

    name = "notify"
    required = True

    def __init__(self, config: NotifyConfig, executable: str = "notify-send"):
        self.executable = executable
        self.expire_ms = config.notify_timeout_ms

    def command(self, summary: str, body: str) -> List[str]:
        return [
            self.executable,
            "--app-name", APP_NAME,
            "--icon", ICON,
            "--expire-time", str(self.expire_ms),
            "--",
            summary,
            body,
        ]

    async def run(self, context: PipelineContext) -> None:
        metadata = context.metadata
        sender = metadata.sender if metadata else UNKNOWN_SENDER
        subject = metadata.subject if metadata else UNKNOWN_SUBJECT

        try:
            result = await run_command(self.command(sender, subject))
        except OSError as e:
            raise NotificationError(
                f"{self.executable} not available: {str(e)}"
            ) from e

        if not result.ok:
            raise NotificationError(
                f"{self.executable} exited with status: {result.returncode}",
                details={"returncode": result.returncode, "stderr": result.error_text},
            )

        logger.info("Notification shown", extra={"sender": sender})


class SoundStage(PipelineStage):
    """Pipe a WAV file into ``aplay``."""

    name = "sound"
    required = False

    def __init__(self, config: NotifyConfig, player: str = "aplay"):
        self.sound_path: Optional[Path] = config.sound_path
        self.player = player

    async def run(self, context: PipelineContext) -> None:
        if self.sound_path is None:
            raise StageSkipped("no sound file configured")

        try:
            data = self.sound_path.read_bytes()
        except OSError as e:
            raise NotificationError(
                f"Could not read sound file: {str(e)}",
                details={"path": str(self.sound_path)},
            ) from e

        try:
            result = await run_command([self.player, "-"], stdin=data)
        except OSError as e:
            raise NotificationError(f"{self.player} not available: {str(e)}") from e

        if not result.ok:
            raise NotificationError(
                f"{self.player} exited with status: {result.returncode}",
                details={"returncode": result.returncode},
            )
