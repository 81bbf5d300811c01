"""
Base relay abstraction.

A relay is the already-connected pub/sub channel that carries signaling
envelopes between identified users. The call controller only publishes to
and subscribes on it; connecting and authenticating are the host's job.

Delivery contract assumed by the controller:
- each envelope targets exactly one recipient
- ordered per sender→recipient pair, not across senders
- envelopes to an offline recipient are dropped, not queued
"""

from __future__ import annotations

import abc
from collections import defaultdict
from typing import Dict, List, Union

from .._envelope import SignalingEnvelope
from .._types import EnvelopeHandler, EnvelopeType
from .._utils import logger


class Relay(abc.ABC):
    """
    Abstract base class for signaling relays.

    Subclasses implement ``send``; subscription bookkeeping and inbound
    dispatch are provided here. Implementations call ``_dispatch`` for every
    envelope addressed to ``local_user_id``.
    """

    def __init__(self, local_user_id: str) -> None:
        """
        Initialize relay for a user inbox.

        Args:
            local_user_id: The user whose inbox this relay subscribes to
        """
        self.local_user_id = local_user_id
        self._subscribers: Dict[EnvelopeType, List[EnvelopeHandler]] = defaultdict(list)

    @abc.abstractmethod
    def send(self, to_user_id: str, envelope: SignalingEnvelope) -> None:
        """
        Publish an envelope to a single recipient (fire-and-forget).

        Args:
            to_user_id: Recipient user id
            envelope: Envelope to deliver
        """
        ...

    def on(self, envelope_type: Union[EnvelopeType, str], handler: EnvelopeHandler) -> None:
        """Subscribe ``handler`` to envelopes of ``envelope_type`` in the local inbox."""
        handlers = self._subscribers[EnvelopeType(envelope_type)]
        if handler not in handlers:
            handlers.append(handler)

    def off(self, envelope_type: Union[EnvelopeType, str], handler: EnvelopeHandler) -> None:
        """Remove a subscription; unknown handlers are ignored."""
        handlers = self._subscribers.get(EnvelopeType(envelope_type), [])
        if handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, envelope_type: Union[EnvelopeType, str]) -> int:
        return len(self._subscribers.get(EnvelopeType(envelope_type), []))

    def _dispatch(self, envelope: SignalingEnvelope) -> None:
        """Deliver an inbound envelope to its subscribers."""
        if envelope.to_user_id != self.local_user_id:
            logger.warning(
                f"Relay for {self.local_user_id} got envelope for {envelope.to_user_id}"
            )
            return
        for handler in list(self._subscribers.get(envelope.type, [])):
            try:
                handler(envelope)
            except Exception:
                logger.exception(f"Error in {envelope.type.value} subscriber")


__all__ = ["Relay"]
