"""Centralized error types and handling for the mail watcher."""

from enum import Enum
from typing import Any, Dict

from mailwatch.utils.logging import get_logger

_logger = None


def _get_logger():
    """Get logger with lazy initialisation."""
    global _logger
    if _logger is None:
        _logger = get_logger(__name__)
    return _logger


## Error Categories


class ErrorCategory(Enum):
    """Categories of errors for better handling."""

    NETWORK = "network"
    PROTOCOL = "protocol"
    AUTHENTICATION = "authentication"
    PIPELINE = "pipeline"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


## Custom Exceptions


class WatcherError(Exception):
    """Base exception for all mail watcher errors."""

    category = ErrorCategory.UNKNOWN
    user_message = "An error occurred"

    def __init__(
        self, message: str | None = None, details: Dict[str, Any] | None = None
    ):
        """Initialise WatcherError with optional message and details."""
        self.message = message or self.user_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error details to a dictionary."""
        return {
            "error_type": self.__class__.__name__,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
        }


## Network Errors


class NetworkError(WatcherError):
    """Base exception for network-related errors."""

    category = ErrorCategory.NETWORK
    user_message = "A network error occurred"


class ConnectError(NetworkError):
    """Exception for failures while connecting to the mail server."""

    user_message = "Failed to connect to mail server"


class ConnectionClosedError(NetworkError):
    """Exception when the server connection is gone."""

    user_message = "The connection to the mail server was closed"


class NetworkTimeoutError(NetworkError):
    """Exception for network timeout errors."""

    user_message = "The connection timed out"


class ProtocolError(NetworkError):
    """Exception for malformed or rejected IMAP responses."""

    category = ErrorCategory.PROTOCOL
    user_message = "The mail server sent an unexpected response"


## Authentication Errors


class AuthenticationError(WatcherError):
    """Base exception for authentication-related errors."""

    category = ErrorCategory.AUTHENTICATION
    user_message = "An authentication error occurred"


class InvalidCredentialsError(AuthenticationError):
    """Exception for rejected login credentials."""

    user_message = "Invalid username or password"


class MissingCredentialsError(AuthenticationError):
    """Exception when no password could be obtained."""

    user_message = "Mail credentials not available"


## Pipeline Errors


class PipelineError(WatcherError):
    """Base exception for failures inside a pipeline stage."""

    category = ErrorCategory.PIPELINE
    user_message = "A pipeline stage failed"


class SyncError(PipelineError):
    """Exception when the synchronization command fails."""

    user_message = "Mail synchronization failed"


class MessageNotFoundError(PipelineError):
    """Exception when no recent message exists in the local maildir."""

    user_message = "Couldn't find the most recent message"


class NotificationError(PipelineError):
    """Exception when a notification could not be delivered."""

    user_message = "Failed to deliver notification"


class StageTimeoutError(PipelineError):
    """Exception when a pipeline stage exceeds its time limit."""

    user_message = "A pipeline stage timed out"


## Configuration Errors


class ConfigurationError(WatcherError):
    """Base exception for configuration-related errors."""

    category = ErrorCategory.CONFIGURATION
    user_message = "A configuration error occurred"


class MissingConfigError(ConfigurationError):
    """Exception for missing configuration settings."""

    user_message = "Missing configuration settings"


class InvalidConfigError(ConfigurationError):
    """Exception for invalid configuration settings."""

    user_message = "Invalid configuration settings"


## Error Handler


class ErrorHandler:
    """Centralized error handling and logging."""

    @staticmethod
    def handle(
        error: BaseException, context: str = "", log_traceback: bool = True
    ) -> Dict[str, Any]:
        """Handle errors with logging and user-friendly message."""
        if isinstance(error, WatcherError):
            _get_logger().error(f"{context}: {error.message}", extra=error.details)
            if log_traceback:
                _get_logger().exception(error)
            return error.to_dict()
        else:
            _get_logger().error(f"{context}: {str(error)}")
            if log_traceback:
                _get_logger().exception(error)
            return {
                "error_type": "UnknownError",
                "category": ErrorCategory.UNKNOWN.value,
                "message": str(error),
                "details": {"context": context},
            }


## Utility Functions


def format_error_message(error: BaseException) -> str:
    """Format an error message for display."""
    if isinstance(error, WatcherError):
        return error.message
    else:
        return "An unexpected error occurred - check logs for details."
