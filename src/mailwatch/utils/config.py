"""Configuration loaded once from the environment into immutable models."""

import os
import shlex
import subprocess
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import InvalidConfigError, MissingConfigError, MissingCredentialsError
from .logging import get_logger
from .paths import DEFAULT_MAILDIR

logger = get_logger(__name__)

# Servers drop IDLE sessions after 30 minutes (RFC 2177), renew before that.
MAX_RENEW_INTERVAL = 29 * 60

PASSWORD_COMMAND_TIMEOUT = 30.0


class ServerConfig(BaseModel):
    """Pydantic model for the IMAP account."""

    model_config = ConfigDict(frozen=True)

    host: str = Field(min_length=1)
    port: int = Field(ge=1, le=65535)
    user: str = Field(min_length=1)
    pass_cmd: str = Field(min_length=1, repr=False)
    mailbox: str = Field(default="INBOX", min_length=1)

    def get_password(self) -> str:
        """Run the password command and return its output.

        Raises:
            MissingCredentialsError: If the command can't be run, fails or
                prints something that is not UTF-8
        """
        args = shlex.split(self.pass_cmd)
        if not args:
            raise MissingCredentialsError("Error parsing password command")

        logger.debug("Obtaining password with password command")
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                timeout=PASSWORD_COMMAND_TIMEOUT,
                check=False,
            )

        except (OSError, subprocess.TimeoutExpired) as e:
            raise MissingCredentialsError(
                f"Password command could not be run: {str(e)}",
                details={"command": args[0]},
            ) from e

        if result.returncode != 0:
            raise MissingCredentialsError(
                f"Password command exited with code: {result.returncode}",
                details={"command": args[0], "returncode": result.returncode},
            )

        try:
            password = result.stdout.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MissingCredentialsError(
                "Password command output is not valid UTF-8",
                details={"command": args[0]},
            ) from e

        return password.removesuffix("\n")


class SyncConfig(BaseModel):
    """Pydantic model for local synchronization settings."""

    model_config = ConfigDict(frozen=True)

    maildir: str = DEFAULT_MAILDIR
    mbsync_path: str = Field(default="mbsync", min_length=1)
    mbsync_conf: str = ""
    newest_max_age: float = Field(default=60.0, gt=0)

    def mailbox_path(self, mailbox: str) -> Path:
        """Local maildir folder that mirrors the watched mailbox."""
        return Path(os.path.expanduser(self.maildir)) / mailbox

    @property
    def mbsync_conf_path(self) -> Optional[Path]:
        if not self.mbsync_conf:
            return None
        return Path(os.path.expanduser(self.mbsync_conf))


class TimingConfig(BaseModel):
    """Pydantic model for polling, renewal and backoff timings (seconds)."""

    model_config = ConfigDict(frozen=True)

    poll_timeout: float = Field(default=30.0, gt=0)
    renew_interval: float = Field(default=600.0, gt=0, lt=MAX_RENEW_INTERVAL)
    backoff_base: float = Field(default=1.0, gt=0)
    backoff_cap: float = Field(default=60.0, gt=0)
    max_auth_failures: int = Field(default=5, ge=1)
    startup_retries: int = Field(default=5, ge=1)
    stage_timeout: float = Field(default=120.0, gt=0)

    @model_validator(mode="after")
    def _check_backoff(self) -> "TimingConfig":
        if self.backoff_cap < self.backoff_base:
            raise ValueError("backoff_cap must not be smaller than backoff_base")
        return self


class NotifyConfig(BaseModel):
    """Pydantic model for notification, sound and re-index settings."""

    model_config = ConfigDict(frozen=True)

    notify_timeout_ms: int = Field(default=5000, ge=0)
    sound_file: str = ""
    reindex_enabled: bool = True
    reindex_dest: str = "net.ogbe.emacs"
    reindex_path: str = "/mail"
    reindex_interface: str = "net.ogbe.emacs.mail"
    reindex_methods: Tuple[str, ...] = ("reindex", "refresh")

    @field_validator("reindex_methods", mode="before")
    @classmethod
    def _split_methods(cls, value):
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        return value

    @property
    def sound_path(self) -> Optional[Path]:
        if not self.sound_file:
            return None
        return Path(os.path.expanduser(self.sound_file))


class LoggingConfig(BaseModel):
    """Pydantic model for logging settings."""

    model_config = ConfigDict(frozen=True)

    log_level: str = "INFO"
    log_dir: str = ""

    @field_validator("log_level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {value}")
        return level


class WatcherConfig(BaseModel):
    """Pydantic model for the overall daemon configuration."""

    model_config = ConfigDict(frozen=True)

    server: ServerConfig
    sync: SyncConfig = Field(default_factory=SyncConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    notify: NotifyConfig = Field(default_factory=NotifyConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# (section, field) -> environment variable
ENV_VARS: Dict[Tuple[str, str], str] = {
    ("server", "host"): "IMAP_HOST",
    ("server", "port"): "IMAP_PORT",
    ("server", "user"): "IMAP_USER",
    ("server", "pass_cmd"): "IMAP_PASSCMD",
    ("server", "mailbox"): "IMAP_MAILBOX",
    ("sync", "maildir"): "IMAP_MAILDIR",
    ("sync", "mbsync_path"): "IMAP_MBSYNC_PATH",
    ("sync", "mbsync_conf"): "IMAP_MBSYNC_CONF",
    ("sync", "newest_max_age"): "IMAP_NEWEST_MAX_AGE",
    ("timing", "poll_timeout"): "IMAP_POLL_TIMEOUT",
    ("timing", "renew_interval"): "IMAP_RENEW_INTERVAL",
    ("timing", "backoff_base"): "IMAP_BACKOFF_BASE",
    ("timing", "backoff_cap"): "IMAP_BACKOFF_CAP",
    ("timing", "max_auth_failures"): "IMAP_MAX_AUTH_FAILURES",
    ("timing", "startup_retries"): "IMAP_STARTUP_RETRIES",
    ("timing", "stage_timeout"): "IMAP_STAGE_TIMEOUT",
    ("notify", "notify_timeout_ms"): "IMAP_NOTIFY_TIMEOUT_MS",
    ("notify", "sound_file"): "IMAP_SOUND_FILE",
    ("notify", "reindex_enabled"): "IMAP_REINDEX_ENABLED",
    ("notify", "reindex_dest"): "IMAP_REINDEX_DEST",
    ("notify", "reindex_path"): "IMAP_REINDEX_PATH",
    ("notify", "reindex_interface"): "IMAP_REINDEX_INTERFACE",
    ("notify", "reindex_methods"): "IMAP_REINDEX_METHODS",
    ("logging", "log_level"): "IMAP_LOG_LEVEL",
    ("logging", "log_dir"): "IMAP_LOG_DIR",
}

REQUIRED_VARS = ("IMAP_HOST", "IMAP_PORT", "IMAP_USER", "IMAP_PASSCMD")


def load_config(environ: Optional[Mapping[str, str]] = None) -> WatcherConfig:
    """Build the daemon configuration from environment variables.

    Args:
        environ: Mapping to read from, defaults to ``os.environ``

    Raises:
        MissingConfigError: If a required variable is unset
        InvalidConfigError: If a value fails validation
    """
    env = os.environ if environ is None else environ

    missing = [var for var in REQUIRED_VARS if not env.get(var)]
    if missing:
        raise MissingConfigError(
            f"Missing required environment variables: {', '.join(missing)}",
            details={"missing": missing},
        )

    sections: Dict[str, Dict[str, str]] = {}
    for (section, field), var in ENV_VARS.items():
        if var in env:
            sections.setdefault(section, {})[field] = env[var]

    try:
        config = WatcherConfig(**sections)

    except ValidationError as e:
        raise InvalidConfigError(
            f"Configuration does not match expected schema: {str(e)}"
        ) from e

    logger.debug(
        "Configuration loaded",
        extra={"server": config.server.host, "mailbox": config.server.mailbox},
    )
    return config
