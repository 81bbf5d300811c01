"""
Event system for the presentation layer.

The controller reports call lifecycle changes through a CallEvents object.
Subclass it and override the ``on_*`` callbacks, or mark methods with
``@event_handler(state)`` to react to specific call states only.
"""

from __future__ import annotations

import inspect
from typing import TYPE_CHECKING, Callable, Optional, Union

from ._types import CallState, ErrorKind, MediaKind
from ._utils import logger

if TYPE_CHECKING:
    from ._fsm import CallSession
    from ._media import MediaStreamHandle


# ============================================================================
# Event Handler Decorator
# ============================================================================


def event_handler(state: Optional[Union[CallState, tuple[CallState, ...]]] = None):
    """
    Decorator for call state handlers.

    Args:
        state: Call state(s) to match. If None, matches every state change.

    Example:
        >>> class MyEvents(CallEvents):
        ...     @event_handler(CallState.CONNECTED)
        ...     def on_connected(self, session):
        ...         print(f"Talking to {session.remote_user_id}")
        ...
        ...     @event_handler((CallState.DECLINED, CallState.TIMED_OUT))
        ...     def on_missed(self, session):
        ...         print("Nobody picked up")
    """

    def decorator(func: Callable) -> Callable:
        if state is None:
            states = None
        elif isinstance(state, CallState):
            states = (state,)
        else:
            states = tuple(CallState(s) for s in state)

        func._event_handler_states = states
        func._is_event_handler = True
        return func

    return decorator


class CallEvents:
    """
    Base class for presentation callbacks.

    Every callback has a no-op default. Exceptions raised by a callback are
    logged and never reach the call controller.

    Example:
        >>> class Ui(CallEvents):
        ...     def on_state_changed(self, state, session):
        ...         print(f"{session.remote_user_id}: {state.value}")
        ...
        ...     def on_error(self, kind, message):
        ...         print(f"Error ({kind.value}): {message}")
    """

    event_handler = staticmethod(event_handler)

    def __init__(self):
        self._handlers: list[tuple[Callable, Optional[tuple]]] = []
        self._discover_handlers()

    def _discover_handlers(self):
        """Discover all methods decorated with @event_handler."""
        # Looked up on the class so instance properties are never evaluated
        for name, func in inspect.getmembers(type(self), inspect.isfunction):
            if name.startswith("_") or not getattr(func, "_is_event_handler", False):
                continue
            self._handlers.append((getattr(self, name), func._event_handler_states))

        logger.debug(
            f"Discovered {len(self._handlers)} event handlers in {self.__class__.__name__}"
        )

    # ------------------------------------------------------------------
    # Overridable callbacks
    # ------------------------------------------------------------------

    def on_state_changed(self, state: CallState, session: CallSession) -> None:
        """Called after every state transition of the current session."""

    def on_local_stream(self, handle: MediaStreamHandle) -> None:
        """Called once local media has been acquired for a call."""

    def on_remote_stream(self, handle: MediaStreamHandle) -> None:
        """Called whenever a remote track is added to the remote stream."""

    def on_error(self, kind: ErrorKind, message: str) -> None:
        """Called once for the error that ended a call."""

    def on_remote_media_toggled(self, kind: MediaKind, value: bool) -> None:
        """
        Called when the peer mutes audio or turns video off (or back on).

        Args:
            kind: MediaKind.AUDIO or MediaKind.VIDEO
            value: ``muted`` for audio, ``videoOff`` for video
        """

    # ------------------------------------------------------------------
    # Dispatch (used by the controller)
    # ------------------------------------------------------------------

    def _safe_call(self, callback: Callable, *args) -> None:
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Error in event handler {callback.__name__}: {e}")

    def _emit_state_changed(self, state: CallState, session: CallSession) -> None:
        self._safe_call(self.on_state_changed, state, session)
        for handler, states in getattr(self, "_handlers", ()):
            if states is None or state in states:
                self._safe_call(handler, session)

    def _emit_local_stream(self, handle: MediaStreamHandle) -> None:
        self._safe_call(self.on_local_stream, handle)

    def _emit_remote_stream(self, handle: MediaStreamHandle) -> None:
        self._safe_call(self.on_remote_stream, handle)

    def _emit_error(self, kind: ErrorKind, message: str) -> None:
        self._safe_call(self.on_error, kind, message)

    def _emit_remote_media_toggled(self, kind: MediaKind, value: bool) -> None:
        self._safe_call(self.on_remote_media_toggled, kind, value)


__all__ = [
    "event_handler",
    "CallEvents",
]
