"""
Finite state machine for a call session.

FSM Overview:
=============

Caller:
  IDLE → CALLING → CONNECTING → CONNECTED
            ↓           ↓            ↓
      DECLINED | TIMED_OUT | ENDED | FAILED

Callee:
  IDLE → RINGING → CONNECTING → CONNECTED

Matchmaking seeds skip initiate/ring and start directly in CONNECTING.
Terminal states accept no further transition.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional

from ._types import (
    CallRole,
    CallState,
    MediaConstraints,
    NegotiationRole,
    StateConflictError,
)

_TERMINALS = frozenset(
    {CallState.ENDED, CallState.DECLINED, CallState.TIMED_OUT, CallState.FAILED}
)

TRANSITIONS: Dict[CallState, FrozenSet[CallState]] = {
    CallState.IDLE: frozenset(
        {CallState.CALLING, CallState.RINGING, CallState.CONNECTING}
    )
    | _TERMINALS,
    CallState.CALLING: frozenset({CallState.CONNECTING}) | _TERMINALS,
    CallState.RINGING: frozenset({CallState.CONNECTING}) | _TERMINALS,
    CallState.CONNECTING: frozenset({CallState.CONNECTED}) | _TERMINALS,
    CallState.CONNECTED: frozenset({CallState.ENDED, CallState.FAILED}),
    CallState.ENDED: frozenset(),
    CallState.DECLINED: frozenset(),
    CallState.TIMED_OUT: frozenset(),
    CallState.FAILED: frozenset(),
}


def new_call_id() -> str:
    """Generate a call id (opaque, unique per call)."""
    return str(uuid.uuid4())


@dataclass
class CallSession:
    """
    Represents one call between the local user and a single remote peer.

    A session is created in IDLE, walks the transition table above and ends
    in exactly one terminal state. It is owned by CallSessionController.
    """

    # Identity
    call_id: str
    local_user_id: str
    remote_user_id: str

    # Roles (fixed for the lifetime of the session)
    role: CallRole
    negotiation_role: NegotiationRole

    # State
    state: CallState = CallState.IDLE
    media_constraints: MediaConstraints = field(default_factory=MediaConstraints)
    room_id: Optional[str] = None  # Set for matchmaking seeds

    # Timing
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    connected_at: Optional[float] = None
    ended_at: Optional[float] = None
    end_reason: Optional[str] = None

    # Metadata
    metadata: Dict[str, Any] = field(default_factory=dict)

    def can_transition_to(self, new_state: CallState) -> bool:
        return new_state in TRANSITIONS[self.state]

    def transition_to(self, new_state: CallState, reason: Optional[str] = None) -> CallState:
        """
        Transition to a new state.

        Args:
            new_state: The new state
            reason: Reason recorded when ``new_state`` is terminal

        Returns:
            The previous state

        Raises:
            StateConflictError: If the transition is not allowed
        """
        if not self.can_transition_to(new_state):
            raise StateConflictError(
                f"Illegal transition {self.state.value} → {new_state.value}"
            )
        old_state = self.state
        self.state = new_state
        self.updated_at = time.time()

        if new_state == CallState.CONNECTED:
            self.connected_at = self.updated_at
        elif new_state.is_terminal:
            self.ended_at = self.updated_at
            self.end_reason = reason
        return old_state

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def is_live(self) -> bool:
        return not self.state.is_terminal

    @property
    def is_offerer(self) -> bool:
        return self.negotiation_role == NegotiationRole.OFFERER

    @property
    def duration(self) -> Optional[float]:
        """Seconds spent connected, or None if the call never connected."""
        if self.connected_at is None:
            return None
        end = self.ended_at if self.ended_at is not None else time.time()
        return max(0.0, end - self.connected_at)

    def __repr__(self) -> str:
        return (
            f"<CallSession({self.call_id[:8]}, {self.local_user_id}→"
            f"{self.remote_user_id}, {self.role.value}, {self.state.value})>"
        )


__all__ = [
    "TRANSITIONS",
    "CallSession",
    "new_call_id",
]
