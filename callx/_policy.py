"""
Timeout and glare policy.

Timers are bound to the controller's generation counter: a timer armed for
one call never fires into a later one, even if cancellation raced with the
loop's scheduling. Offerer election decides, without any message exchange,
which side of a matchmaking pair creates the offer.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ._types import NegotiationRole
from ._utils import logger

RING_TIMER = "ring"
CONNECT_TIMER = "connect"


@dataclass(frozen=True)
class MatchSeed:
    """
    Pre-formed pairing handed over by matchmaking.

    Attributes:
        room_id: Room identifier, used as the call id
        partner_id: User id of the matched participant
        offerer: User id of the side that creates the offer; when None the
            lower user id is elected
    """

    room_id: str
    partner_id: str
    offerer: Optional[str] = None


def elect_offerer(
    local_user_id: str, remote_user_id: str, explicit: Optional[str] = None
) -> NegotiationRole:
    """
    Decide the local negotiation role for a pre-formed pair.

    Both sides evaluate the same rule with swapped arguments, so exactly one
    of them becomes the offerer.

    Args:
        local_user_id: This participant
        remote_user_id: The matched partner
        explicit: Offerer chosen by matchmaking, if any

    Returns:
        NegotiationRole.OFFERER or NegotiationRole.RESPONDER

    Raises:
        ValueError: If both ids are equal, or ``explicit`` names neither side
    """
    if local_user_id == remote_user_id:
        raise ValueError("Cannot pair a user with itself")
    if explicit is not None:
        if explicit not in (local_user_id, remote_user_id):
            raise ValueError(f"Offerer {explicit!r} is not part of the pair")
        offerer = explicit
    else:
        offerer = min(local_user_id, remote_user_id)
    return NegotiationRole.OFFERER if offerer == local_user_id else NegotiationRole.RESPONDER


class CallTimers:
    """
    Named, cancellable timers tied to a call generation.

    Example:
        >>> timers = CallTimers(lambda: controller.generation)
        >>> timers.start(RING_TIMER, 30.0, on_ring_timeout)
        >>> timers.cancel_all()
    """

    def __init__(self, current_generation: Callable[[], int]) -> None:
        self._current_generation = current_generation
        self._handles: Dict[str, asyncio.TimerHandle] = {}

    def start(self, name: str, delay: float, callback: Callable[[], None]) -> None:
        """
        Arm ``name`` to run ``callback`` after ``delay`` seconds.

        A timer with the same name is replaced. The callback only runs if the
        generation is unchanged when the timer fires.
        """
        self.cancel(name)
        generation = self._current_generation()
        loop = asyncio.get_running_loop()

        def fire() -> None:
            self._handles.pop(name, None)
            if self._current_generation() != generation:
                logger.debug(f"Discarding stale {name} timer")
                return
            logger.debug(f"⏰ {name} timer fired after {delay}s")
            callback()

        self._handles[name] = loop.call_later(delay, fire)

    def cancel(self, name: str) -> bool:
        handle = self._handles.pop(name, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for name in list(self._handles):
            self.cancel(name)

    def is_active(self, name: str) -> bool:
        return name in self._handles

    @property
    def active(self) -> tuple[str, ...]:
        return tuple(self._handles)


__all__ = [
    "RING_TIMER",
    "CONNECT_TIMER",
    "MatchSeed",
    "elect_offerer",
    "CallTimers",
]
