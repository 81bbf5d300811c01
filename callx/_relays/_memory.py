"""
In-process relay.

MemoryRelayHub connects any number of MemoryRelay endpoints living on the
same event loop. Delivery is scheduled with ``loop.call_soon`` so a sender
never re-enters its own handlers, and the FIFO callback queue keeps every
sender→recipient pair ordered.
"""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from .._envelope import SignalingEnvelope
from .._types import EnvelopeError
from .._utils import logger
from ._base import Relay


class MemoryRelay(Relay):
    """A user's endpoint on a MemoryRelayHub."""

    def __init__(self, hub: MemoryRelayHub, local_user_id: str) -> None:
        super().__init__(local_user_id)
        self._hub = hub
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def send(self, to_user_id: str, envelope: SignalingEnvelope) -> None:
        if self._closed:
            logger.warning(f"Relay for {self.local_user_id} is closed, dropping {envelope!r}")
            return
        self._hub.publish(to_user_id, envelope)

    def close(self) -> None:
        """Take the user offline; later envelopes to it are dropped."""
        if self._closed:
            return
        self._closed = True
        self._hub._detach(self)

    def __enter__(self) -> MemoryRelay:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<MemoryRelay({self.local_user_id}, {'closed' if self._closed else 'online'})>"


class MemoryRelayHub:
    """
    In-process pub/sub relay.

    Example:
        >>> hub = MemoryRelayHub()
        >>> alice = hub.endpoint("alice")
        >>> bob = hub.endpoint("bob")
        >>> bob.on(EnvelopeType.INCOMING, print)
        >>> alice.send("bob", SignalingEnvelope.incoming("c1", "alice", "bob"))

    Args:
        wire: Round-trip every envelope through the JSON codec, as a network
            relay would
    """

    def __init__(self, *, wire: bool = False) -> None:
        self.wire = wire
        self._endpoints: Dict[str, MemoryRelay] = {}
        self.delivered: List[SignalingEnvelope] = []
        self.dropped: List[SignalingEnvelope] = []

    def endpoint(self, user_id: str) -> MemoryRelay:
        """Bring ``user_id`` online and return its relay endpoint."""
        existing = self._endpoints.get(user_id)
        if existing is not None and not existing.is_closed:
            raise ValueError(f"User {user_id!r} is already online")
        relay = MemoryRelay(self, user_id)
        self._endpoints[user_id] = relay
        return relay

    def is_online(self, user_id: str) -> bool:
        return user_id in self._endpoints

    def publish(self, to_user_id: str, envelope: SignalingEnvelope) -> None:
        if self.wire:
            try:
                envelope = SignalingEnvelope.from_json(envelope.to_json())
            except EnvelopeError as e:
                logger.warning(f"Dropping malformed envelope: {e}")
                self.dropped.append(envelope)
                return

        loop = asyncio.get_running_loop()
        loop.call_soon(self._deliver, to_user_id, envelope)

    def _deliver(self, to_user_id: str, envelope: SignalingEnvelope) -> None:
        recipient: Optional[MemoryRelay] = self._endpoints.get(to_user_id)
        if recipient is None:
            logger.debug(f"{to_user_id} is offline, dropping {envelope!r}")
            self.dropped.append(envelope)
            return
        logger.debug(f"Relaying {envelope!r}")
        self.delivered.append(envelope)
        recipient._dispatch(envelope)

    def _detach(self, relay: MemoryRelay) -> None:
        if self._endpoints.get(relay.local_user_id) is relay:
            del self._endpoints[relay.local_user_id]


__all__ = [
    "MemoryRelay",
    "MemoryRelayHub",
]
