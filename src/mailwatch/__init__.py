"""IMAP IDLE mail watcher: sync, notify and re-index on new mail."""

__version__ = "0.1.0"
