"""callx - Peer-to-peer call signaling and session negotiation for Python."""

from __future__ import annotations

# Controller
from ._controller import CallSessionController

# Envelope codec
from ._envelope import IceCandidate, SignalingEnvelope

# Event system
from ._events import CallEvents, event_handler

# FSM components
from ._fsm import TRANSITIONS, CallSession, new_call_id

# Media
from ._media import (
    LocalTrack,
    MediaAcquisition,
    MediaDevices,
    MediaStreamHandle,
    PlayerMediaDevices,
    SyntheticMediaDevices,
)

# Negotiation
from ._negotiation import NegotiationPhase, PeerNegotiationEngine

# Policy
from ._policy import CallTimers, MatchSeed, elect_offerer

# Relays
from ._relays import MemoryRelay, MemoryRelayHub, Relay

# SDP helpers
from ._sdp import SessionDescription, iter_candidates, parse_sdp

# Types
from ._types import (
    CallConfig,
    CallError,
    CallRole,
    CallState,
    EnvelopeError,
    EnvelopeType,
    ErrorKind,
    IceServerConfig,
    InvalidStateError,
    MediaConstraints,
    MediaKind,
    MediaUnavailableError,
    NegotiationError,
    NegotiationFailedError,
    NegotiationRole,
    StateConflictError,
)

__version__ = "0.1.0"

__all__ = [
    # Controller
    "CallSessionController",
    # Envelopes
    "IceCandidate",
    "SignalingEnvelope",
    # Events
    "CallEvents",
    "event_handler",
    # FSM
    "TRANSITIONS",
    "CallSession",
    "new_call_id",
    # Media
    "LocalTrack",
    "MediaAcquisition",
    "MediaDevices",
    "MediaStreamHandle",
    "PlayerMediaDevices",
    "SyntheticMediaDevices",
    # Negotiation
    "NegotiationPhase",
    "PeerNegotiationEngine",
    # Policy
    "CallTimers",
    "MatchSeed",
    "elect_offerer",
    # Relays
    "Relay",
    "MemoryRelay",
    "MemoryRelayHub",
    # SDP
    "SessionDescription",
    "iter_candidates",
    "parse_sdp",
    # Types
    "CallConfig",
    "CallRole",
    "CallState",
    "EnvelopeType",
    "ErrorKind",
    "IceServerConfig",
    "MediaConstraints",
    "MediaKind",
    "NegotiationRole",
    # Exceptions
    "CallError",
    "EnvelopeError",
    "InvalidStateError",
    "MediaUnavailableError",
    "NegotiationError",
    "NegotiationFailedError",
    "StateConflictError",
    "__version__",
]
