"""Centralized path definitions for the mail watcher.

Single source of truth for the directories the daemon writes to.
"""

from pathlib import Path

# Base application directory
MAILWATCH_DIR = Path.home() / ".mailwatch"

# Subdirectories
LOGS_DIR = MAILWATCH_DIR / "logs"

# Maildir root used when IMAP_MAILDIR is not set
DEFAULT_MAILDIR = "~/Maildir"
