"""IMAP constants and configuration values."""


class IMAPResponse:
    """Standard IMAP response codes."""

    OK = "OK"
    NO = "NO"
    BAD = "BAD"
    BYE = "BYE"


class Timeouts:
    """Timeout values for IMAP operations (in seconds)."""

    IMAP_CONNECT = 30.0  # TCP + TLS handshake and server greeting
    IMAP_LOGIN = 30.0  # LOGIN command
    IMAP_SELECT = 10.0  # SELECT mailbox
    IMAP_IDLE_START = 10.0  # IDLE until continuation
    IMAP_IDLE_DONE = 10.0  # DONE until tagged IDLE completion
    IMAP_LOGOUT = 5.0  # best-effort LOGOUT on close


IMAP4_SSL_PORT = 993

# aioimaplib pushes this marker when its own IDLE timer expires.
STOP_WAIT_SERVER_PUSH = "stop_wait_server_push"

# aioimaplib protocol state once the connection is gone
LOGOUT_STATE = "LOGOUT"
