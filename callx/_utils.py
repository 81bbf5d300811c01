"""Utilities and constants for call signaling."""

import logging
from rich.console import Console
from rich.logging import RichHandler

# Rich Console for pretty printing
console = Console()

# Configure logging with RichHandler
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
)

# Get logger for the package
logger = logging.getLogger("callx")

# Public STUN servers used when the host application configures none
DEFAULT_STUN_SERVERS = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
)

# Default policy windows (seconds)
DEFAULT_RING_TIMEOUT = 30.0
DEFAULT_CONNECT_TIMEOUT = 30.0

# Reason strings carried in decline/end/error payloads
REASON_BUSY = "busy"
REASON_DECLINED = "declined"
REASON_HANGUP = "hangup"
REASON_CANCELLED = "cancelled"
REASON_NO_ANSWER = "no-answer"
REASON_MEDIA_UNAVAILABLE = "media-unavailable"
REASON_NEGOTIATION = "negotiation-error"
REASON_ICE_FAILED = "ice-failed"
REASON_CONNECT_TIMEOUT = "connect-timeout"
REASON_SHUTDOWN = "shutdown"

# Human readable phrases for the reasons above
REASON_PHRASES = {
    REASON_BUSY: "User is busy",
    REASON_DECLINED: "Call declined",
    REASON_HANGUP: "Call ended",
    REASON_CANCELLED: "Call cancelled",
    REASON_NO_ANSWER: "No answer",
    REASON_MEDIA_UNAVAILABLE: "Camera/microphone unavailable",
    REASON_NEGOTIATION: "Session negotiation error",
    REASON_ICE_FAILED: "Connection failed",
    REASON_CONNECT_TIMEOUT: "Connection timed out",
    REASON_SHUTDOWN: "Client shut down",
}


def short_id(value: str, length: int = 8) -> str:
    """Shorten an identifier for log output."""
    return value if len(value) <= length else f"{value[:length]}…"
