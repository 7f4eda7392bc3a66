"""Reactions to new mail, run in order by the dispatcher."""

from typing import List

from mailwatch.utils.config import WatcherConfig

from .base import (
    CommandResult,
    MessageMetadata,
    PipelineContext,
    PipelineStage,
    StageSkipped,
    run_command,
)
from .maildir import NewestMessageStage, find_newest_message, read_metadata
from .notify import DesktopNotifyStage, SoundStage
from .reindex import ReindexStage
from .sync import MbsyncStage


def build_pipeline(config: WatcherConfig) -> List[PipelineStage]:
    """Default stages: sync, locate, notify, then sound and re-index."""
    return [
        MbsyncStage(config.sync),
        NewestMessageStage(config.sync, config.server.mailbox),
        DesktopNotifyStage(config.notify),
        SoundStage(config.notify),
        ReindexStage(config.notify),
    ]


__all__ = [
    "CommandResult",
    "DesktopNotifyStage",
    "MbsyncStage",
    "MessageMetadata",
    "NewestMessageStage",
    "PipelineContext",
    "PipelineStage",
    "ReindexStage",
    "SoundStage",
    "StageSkipped",
    "build_pipeline",
    "find_newest_message",
    "read_metadata",
    "run_command",
]
