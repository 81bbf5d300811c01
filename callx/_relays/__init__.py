"""
Signaling relay layer.

This package provides the relay abstraction the call controller publishes
to, and an in-process implementation:
- Relay: abstract base with per-type subscriptions
- MemoryRelayHub: loopback hub connecting endpoints on one event loop
"""

from ._base import Relay
from ._memory import MemoryRelay, MemoryRelayHub

__all__ = [
    "Relay",
    "MemoryRelay",
    "MemoryRelayHub",
]
