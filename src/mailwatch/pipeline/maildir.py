"""Locate the newest message in the local maildir and read its headers."""

import asyncio
import os
import time
from email.errors import MessageError
from email.header import decode_header, make_header
from email.parser import BytesHeaderParser
from pathlib import Path
from typing import Optional

from mailwatch.utils.config import SyncConfig
from mailwatch.utils.errors import MessageNotFoundError
from mailwatch.utils.logging import get_logger

from .base import MessageMetadata, PipelineContext, PipelineStage

logger = get_logger(__name__)

UNKNOWN_SENDER = "Unknown Sender (parse error)"
UNKNOWN_SUBJECT = "Unknown Subject (parse error)"


def find_newest_message(
    root: Path, max_age: float, now: Optional[float] = None
) -> Optional[Path]:
    """Return the most recently modified message under ``root``.

    Hidden files and directories are ignored, as is anything older than
    ``max_age`` seconds. Returns None when nothing qualifies.
    """
    now = time.time() if now is None else now
    cutoff = now - max_age

    newest: Optional[Path] = None
    newest_mtime = cutoff

    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if not d.startswith(".")]

        for filename in filenames:
            if filename.startswith("."):
                continue

            path = Path(dirpath) / filename
            try:
                stat = path.stat()
            except OSError:
                continue

            if not path.is_file():
                continue

            if stat.st_mtime >= newest_mtime:
                newest, newest_mtime = path, stat.st_mtime

    return newest


def decode_email_header(header_value, default: str = "") -> str:
    """Decode an RFC 2047 encoded header into text.

    Returns ``default`` when the header is missing or can't be decoded.
    """
    if not header_value:
        return default

    try:
        return str(make_header(decode_header(str(header_value)))) or default
    except (MessageError, UnicodeDecodeError, LookupError, ValueError):
        logger.debug("Undecodable header", extra={"header": str(header_value)})
        return default


def read_metadata(path: Path) -> MessageMetadata:
    """Read sender and subject from a message file's headers."""
    with open(path, "rb") as f:
        headers = BytesHeaderParser().parse(f)

    sender = decode_email_header(headers.get("From"), UNKNOWN_SENDER)
    subject = decode_email_header(headers.get("Subject"), UNKNOWN_SUBJECT)
    return MessageMetadata(sender=sender, subject=subject)


class NewestMessageStage(PipelineStage):
    """Find the message mbsync just delivered and parse its headers."""

    name = "locate"
    required = True

    def __init__(self, config: SyncConfig, mailbox: str):
        self.root = config.mailbox_path(mailbox)
        self.max_age = config.newest_max_age

    async def run(self, context: PipelineContext) -> None:
        path = await asyncio.to_thread(find_newest_message, self.root, self.max_age)
        if path is None:
            raise MessageNotFoundError(
                "Couldn't find most recent message",
                details={"path": str(self.root), "max_age": self.max_age},
            )

        try:
            metadata = await asyncio.to_thread(read_metadata, path)
        except OSError as e:
            raise MessageNotFoundError(
                f"Couldn't read newest message: {str(e)}",
                details={"path": str(path)},
            ) from e
        except (MessageError, ValueError) as e:
            logger.warning(
                f"Couldn't parse headers of newest message: {str(e)}",
                extra={"path": str(path)},
            )
            metadata = MessageMetadata(sender=UNKNOWN_SENDER, subject=UNKNOWN_SUBJECT)

        context.message_path = path
        context.metadata = metadata
        logger.debug("Newest message located", extra={"path": str(path)})
