"""
Type definitions for call signaling.

This module centralizes the enums, configuration dataclasses and exceptions
used throughout the library, including call states, negotiation roles,
envelope types and the error taxonomy.
"""

from __future__ import annotations

import typing
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from ._utils import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_RING_TIMEOUT,
    DEFAULT_STUN_SERVERS,
)

if typing.TYPE_CHECKING:
    from ._envelope import SignalingEnvelope


# =============================================================================
# Call States and Roles
# =============================================================================


class CallState(str, Enum):
    """
    States of a call session.

    Caller:  IDLE → CALLING → CONNECTING → CONNECTED
    Callee:  IDLE → RINGING → CONNECTING → CONNECTED

    Every live state can end in one of the terminal states
    ENDED, DECLINED, TIMED_OUT or FAILED.
    """

    IDLE = "idle"
    CALLING = "calling"  # initiate sent, waiting for accept
    RINGING = "ringing"  # incoming call, waiting for the local user
    CONNECTING = "connecting"  # SDP/ICE exchange in progress
    CONNECTED = "connected"  # media flowing

    # Terminal states
    ENDED = "ended"
    DECLINED = "declined"
    TIMED_OUT = "timed-out"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if no further transition can leave this state."""
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {CallState.ENDED, CallState.DECLINED, CallState.TIMED_OUT, CallState.FAILED}
)


class CallRole(str, Enum):
    """Which side started the call."""

    INITIATOR = "initiator"
    RESPONDER = "responder"


class NegotiationRole(str, Enum):
    """
    SDP negotiation role, fixed for the lifetime of a session.

    Only the OFFERER generates the initial session description, which keeps
    both peers from offering at the same time (glare).
    """

    OFFERER = "offerer"
    RESPONDER = "responder"


class MediaKind(str, Enum):
    """Kind of a media track."""

    AUDIO = "audio"
    VIDEO = "video"


class EnvelopeType(str, Enum):
    """Message kinds exchanged over the relay."""

    INITIATE = "initiate"
    INCOMING = "incoming"
    ACCEPT = "accept"
    DECLINE = "decline"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    TOGGLE_AUDIO = "toggle-audio"
    TOGGLE_VIDEO = "toggle-video"
    END = "end"
    TIMEOUT = "timeout"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        """Check if this envelope ends the call it refers to."""
        return self in (
            EnvelopeType.DECLINE,
            EnvelopeType.END,
            EnvelopeType.TIMEOUT,
            EnvelopeType.ERROR,
        )


class ErrorKind(str, Enum):
    """Categories reported through the presentation ``on_error`` callback."""

    MEDIA_UNAVAILABLE = "media-unavailable"
    NEGOTIATION = "negotiation"
    NEGOTIATION_FAILED = "negotiation-failed"
    STATE_CONFLICT = "state-conflict"
    CONNECT_TIMEOUT = "connect-timeout"
    REMOTE_ERROR = "remote-error"
    ENVELOPE = "envelope"


# =============================================================================
# Media and Call Configuration
# =============================================================================


@dataclass(frozen=True)
class MediaConstraints:
    """
    Capture request for local devices.

    The ``ideal_*`` and processing flags are hints passed to the device layer;
    only ``audio`` and ``video`` decide which tracks are requested.
    """

    audio: bool = True
    video: bool = True

    # Video hints
    ideal_width: int = 1280
    ideal_height: int = 720
    facing_mode: str = "user"

    # Audio processing hints
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True

    def with_video(self, enabled: bool) -> MediaConstraints:
        """Return a copy with video switched on or off."""
        return replace(self, video=enabled)

    def camera_only(self, facing_mode: Optional[str] = None) -> MediaConstraints:
        """Return a video-only copy, optionally facing the other way."""
        return replace(
            self, audio=False, video=True, facing_mode=facing_mode or self.facing_mode
        )

    def describe(self) -> str:
        """Short form used in log lines, e.g. ``{video:true, audio:true}``."""
        return (
            f"{{video:{str(self.video).lower()}, audio:{str(self.audio).lower()}}}"
        )


@dataclass(frozen=True)
class IceServerConfig:
    """A STUN or TURN server."""

    urls: tuple[str, ...]
    username: Optional[str] = None
    credential: Optional[str] = None

    @property
    def is_turn(self) -> bool:
        """Check if this entry describes a TURN relay."""
        return any(url.startswith(("turn:", "turns:")) for url in self.urls)


def _default_ice_servers() -> tuple[IceServerConfig, ...]:
    return tuple(IceServerConfig(urls=(url,)) for url in DEFAULT_STUN_SERVERS)


@dataclass
class CallConfig:
    """Policy and network configuration for a call controller."""

    # Timeouts (in seconds)
    ring_timeout: float = DEFAULT_RING_TIMEOUT  # Calling without accept/decline
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT  # Connecting without media

    # Busy policy: decline a second incoming call while one is live
    busy_auto_decline: bool = True

    # ICE servers handed to every peer connection
    ice_servers: tuple[IceServerConfig, ...] = field(
        default_factory=_default_ice_servers
    )

    # Default capture request
    constraints: MediaConstraints = field(default_factory=MediaConstraints)


# =============================================================================
# Call Exceptions
# =============================================================================


class CallError(Exception):
    """Base exception for call signaling errors."""

    kind: ErrorKind = ErrorKind.NEGOTIATION

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class MediaUnavailableError(CallError):
    """Raised when no usable capture device (or permission) is available."""

    kind = ErrorKind.MEDIA_UNAVAILABLE


class NegotiationError(CallError):
    """Raised on protocol misuse, e.g. an offer from the wrong role."""

    kind = ErrorKind.NEGOTIATION


class InvalidStateError(NegotiationError):
    """Raised when a negotiation step is invalid for the engine's state."""

    pass


class NegotiationFailedError(CallError):
    """Raised when ICE connectivity fails permanently."""

    kind = ErrorKind.NEGOTIATION_FAILED


class StateConflictError(CallError):
    """Raised when a local operation is invalid for the current call state."""

    kind = ErrorKind.STATE_CONFLICT


class EnvelopeError(CallError, ValueError):
    """Raised when an envelope is malformed."""

    kind = ErrorKind.ENVELOPE


# =============================================================================
# Type Aliases
# =============================================================================

EnvelopeHandler = typing.Callable[["SignalingEnvelope"], None]


__all__ = [
    # States and roles
    "CallState",
    "CallRole",
    "NegotiationRole",
    "MediaKind",
    "EnvelopeType",
    "ErrorKind",
    # Configuration
    "MediaConstraints",
    "IceServerConfig",
    "CallConfig",
    # Exceptions
    "CallError",
    "MediaUnavailableError",
    "NegotiationError",
    "InvalidStateError",
    "NegotiationFailedError",
    "StateConflictError",
    "EnvelopeError",
    # Type aliases
    "EnvelopeHandler",
]
