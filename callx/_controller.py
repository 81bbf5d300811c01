"""
Call session controller.

One controller runs the calls of one local user. It owns the current
CallSession, its local and remote streams and its negotiation engine, and
drives them from three inputs: local API calls, relay envelopes and async
completions (media acquisition, SDP work, timers).

Envelope handlers are synchronous and apply each state transition in one
step. Awaiting work runs in tracked tasks that capture the generation they
started under; the generation is bumped on every call start and terminal
transition, so a completion that arrives after the call ended is discarded.
"""

from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Callable, Coroutine, List, Optional, Set

from aiortc import MediaStreamTrack

from ._envelope import IceCandidate, SignalingEnvelope
from ._events import CallEvents
from ._fsm import CallSession, new_call_id
from ._media import MediaAcquisition, MediaStreamHandle
from ._negotiation import PeerConnectionFactory, PeerNegotiationEngine
from ._policy import CONNECT_TIMER, RING_TIMER, CallTimers, MatchSeed, elect_offerer
from ._relays import Relay
from ._types import (
    CallConfig,
    CallError,
    CallRole,
    CallState,
    EnvelopeType,
    ErrorKind,
    MediaConstraints,
    MediaKind,
    MediaUnavailableError,
    NegotiationError,
    NegotiationFailedError,
    NegotiationRole,
    StateConflictError,
)
from ._utils import (
    REASON_BUSY,
    REASON_CANCELLED,
    REASON_CONNECT_TIMEOUT,
    REASON_DECLINED,
    REASON_HANGUP,
    REASON_ICE_FAILED,
    REASON_MEDIA_UNAVAILABLE,
    REASON_NEGOTIATION,
    REASON_NO_ANSWER,
    REASON_PHRASES,
    REASON_SHUTDOWN,
    logger,
    short_id,
)


class CallSessionController:
    """
    Per-user call state machine.

    Example:
        >>> hub = MemoryRelayHub()
        >>> alice = CallSessionController("alice", hub.endpoint("alice"))
        >>> bob = CallSessionController("bob", hub.endpoint("bob"), events=BobUi())
        >>> await alice.initiate_call("bob")
        >>> # ... BobUi sees RINGING
        >>> await bob.accept_call()
        >>> # ... both sides reach CONNECTED
        >>> await alice.end_call()
    """

    def __init__(
        self,
        local_user_id: str,
        relay: Relay,
        *,
        media: Optional[MediaAcquisition] = None,
        events: Optional[CallEvents] = None,
        config: Optional[CallConfig] = None,
        peer_connection_factory: Optional[PeerConnectionFactory] = None,
    ) -> None:
        """
        Initialize the controller and subscribe to the local inbox.

        Args:
            local_user_id: The local user
            relay: Connected relay (not owned; never closed here)
            media: Local media source (default: synthetic devices)
            events: Presentation callbacks
            config: Timeouts, busy policy, ICE servers, default constraints
            peer_connection_factory: Passed to every PeerNegotiationEngine
        """
        self.local_user_id = local_user_id
        self.relay = relay
        self.media = media or MediaAcquisition()
        self.events = events or CallEvents()
        self.config = config or CallConfig()
        self._pc_factory = peer_connection_factory

        self._session: Optional[CallSession] = None
        self._generation = 0
        self._timers = CallTimers(lambda: self._generation)
        self._tasks: Set[asyncio.Task] = set()
        self._close_task: Optional[asyncio.Task] = None
        self._closed = False
        self._reset_call_state()

        self._envelope_handlers: dict[EnvelopeType, Callable[[SignalingEnvelope], None]] = {
            EnvelopeType.INITIATE: self._handle_incoming,
            EnvelopeType.INCOMING: self._handle_incoming,
            EnvelopeType.ACCEPT: self._handle_accept,
            EnvelopeType.DECLINE: self._handle_decline,
            EnvelopeType.OFFER: self._handle_offer,
            EnvelopeType.ANSWER: self._handle_answer,
            EnvelopeType.ICE_CANDIDATE: self._handle_ice_candidate,
            EnvelopeType.TOGGLE_AUDIO: self._handle_toggle,
            EnvelopeType.TOGGLE_VIDEO: self._handle_toggle,
            EnvelopeType.END: self._handle_end,
            EnvelopeType.TIMEOUT: self._handle_timeout,
            EnvelopeType.ERROR: self._handle_error,
        }
        for envelope_type in EnvelopeType:
            self.relay.on(envelope_type, self._receive)

    def _reset_call_state(self) -> None:
        self._local: Optional[MediaStreamHandle] = None
        self._remote: Optional[MediaStreamHandle] = None
        self._engine: Optional[PeerNegotiationEngine] = None
        self._early_candidates: List[IceCandidate] = []
        self._outgoing_candidates: List[IceCandidate] = []
        self._local_sdp_sent = False
        self._accepting = False
        self._peer_ready = False
        self._accept_echoed = False
        self._offer_started = False
        self._offer_sent = False
        self._remote_offer: Optional[str] = None
        self._remote_answer: Optional[str] = None
        self._sdp_complete = False

    # ========================================================================
    # Properties
    # ========================================================================

    @property
    def session(self) -> Optional[CallSession]:
        """Current session, or the last one once it reached a terminal state."""
        return self._session

    @property
    def state(self) -> CallState:
        return self._session.state if self._session else CallState.IDLE

    @property
    def is_busy(self) -> bool:
        """True while a non-terminal session exists."""
        return self._session is not None and not self._session.is_terminal

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def local_stream(self) -> Optional[MediaStreamHandle]:
        return self._local

    @property
    def remote_stream(self) -> Optional[MediaStreamHandle]:
        return self._remote

    @property
    def engine(self) -> Optional[PeerNegotiationEngine]:
        return self._engine

    @property
    def is_closed(self) -> bool:
        return self._closed

    # ========================================================================
    # Local operations
    # ========================================================================

    async def initiate_call(
        self, remote_user_id: str, constraints: Optional[MediaConstraints] = None
    ) -> CallSession:
        """
        Call ``remote_user_id``.

        Local media is acquired first; if that fails the session goes straight
        to FAILED and nothing is sent.

        Args:
            remote_user_id: User to call
            constraints: Capture request (default: ``config.constraints``)

        Returns:
            The new session (check ``session.state`` for the outcome)

        Raises:
            StateConflictError: If a call is already live or the controller is closed
        """
        self._ensure_can_start()
        if remote_user_id == self.local_user_id:
            raise StateConflictError("Cannot call yourself")

        session = self._start_session(
            call_id=new_call_id(),
            remote_user_id=remote_user_id,
            role=CallRole.INITIATOR,
            negotiation_role=NegotiationRole.OFFERER,
            constraints=constraints or self.config.constraints,
        )
        logger.info(f"Calling {remote_user_id} (call {short_id(session.call_id)})")

        handle = await self._acquire_media(session)
        if handle is None:
            return session

        self._set_local_stream(handle)
        self._transition(CallState.CALLING)
        self._send_to_peer(
            SignalingEnvelope.initiate, audio=handle.has_audio, video=handle.has_video
        )
        self._timers.start(RING_TIMER, self.config.ring_timeout, self._on_ring_timeout)
        return session

    async def accept_call(self) -> CallSession:
        """
        Answer the ringing call.

        Raises:
            StateConflictError: If no call is ringing (or it is already being accepted)
        """
        session = self._require_state(CallState.RINGING)
        if self._accepting:
            raise StateConflictError("Call is already being accepted")
        self._accepting = True

        handle = await self._acquire_media(session, decline_on_failure=True)
        if handle is None:
            return session

        self._set_local_stream(handle)
        self._timers.cancel(RING_TIMER)
        self._transition(CallState.CONNECTING)
        self._timers.start(CONNECT_TIMER, self.config.connect_timeout, self._on_connect_timeout)
        if self._create_engine():
            self._send_to_peer(SignalingEnvelope.accept)
        return session

    def decline_call(self, reason: str = REASON_DECLINED) -> None:
        """
        Reject the ringing call.

        Raises:
            StateConflictError: If no call is ringing
        """
        self._require_state(CallState.RINGING)
        self._send_to_peer(SignalingEnvelope.decline, reason)
        self._terminate(CallState.DECLINED, reason)

    async def end_call(self, reason: str = REASON_HANGUP) -> None:
        """
        Hang up (or cancel) the live call. No-op when there is none.

        Works while an async step is outstanding; its late completion is
        discarded.
        """
        session = self._session
        if session is None or session.is_terminal:
            return

        if session.state == CallState.IDLE:
            # Media still being acquired; the peer has not heard of this call yet
            self._terminate(CallState.ENDED, REASON_CANCELLED)
        elif session.state == CallState.RINGING:
            self._send_to_peer(SignalingEnvelope.decline, reason)
            self._terminate(CallState.DECLINED, reason)
        else:
            self._send_to_peer(SignalingEnvelope.end, reason)
            self._terminate(CallState.ENDED, reason)

        if self._close_task is not None:
            await self._close_task

    async def join_room(self, seed: MatchSeed) -> CallSession:
        """
        Start a call from a matchmaking pairing, skipping initiate/ring.

        The room id becomes the call id. Both participants enter CONNECTING,
        acquire media and send ``accept`` once it is attached; the elected
        offerer sends the offer after it sees the partner's ``accept``.

        Raises:
            StateConflictError: If a call is already live or the controller is closed
            ValueError: If the seed pairs the user with itself or names a
                foreign offerer
        """
        self._ensure_can_start()
        negotiation_role = elect_offerer(self.local_user_id, seed.partner_id, seed.offerer)
        session = self._start_session(
            call_id=seed.room_id,
            remote_user_id=seed.partner_id,
            role=(
                CallRole.INITIATOR
                if negotiation_role == NegotiationRole.OFFERER
                else CallRole.RESPONDER
            ),
            negotiation_role=negotiation_role,
            constraints=self.config.constraints,
            room_id=seed.room_id,
        )
        logger.info(
            f"Joining room {short_id(seed.room_id)} with {seed.partner_id} "
            f"as {negotiation_role.value}"
        )
        self._transition(CallState.CONNECTING)
        self._timers.start(CONNECT_TIMER, self.config.connect_timeout, self._on_connect_timeout)

        handle = await self._acquire_media(session, decline_on_failure=True)
        if handle is None:
            return session

        self._set_local_stream(handle)
        if not self._create_engine():
            return session
        self._send_to_peer(SignalingEnvelope.accept)
        if session.is_offerer and self._peer_ready:
            self._start_offer()
        return session

    def set_audio_enabled(self, enabled: bool) -> bool:
        """
        Mute or unmute the microphone for the live call.

        Returns:
            False if the local stream has no audio track

        Raises:
            StateConflictError: If there is no live call with local media
        """
        handle = self._require_local_stream()
        toggled = self.media.set_audio_enabled(handle, enabled)
        if toggled and self.state in (CallState.CONNECTING, CallState.CONNECTED):
            self._send_to_peer(SignalingEnvelope.toggle_audio, not enabled)
        return toggled

    def set_video_enabled(self, enabled: bool) -> bool:
        """
        Show or hide the camera for the live call.

        Returns:
            False if the local stream has no video track

        Raises:
            StateConflictError: If there is no live call with local media
        """
        handle = self._require_local_stream()
        toggled = self.media.set_video_enabled(handle, enabled)
        if toggled and self.state in (CallState.CONNECTING, CallState.CONNECTED):
            self._send_to_peer(SignalingEnvelope.toggle_video, not enabled)
        return toggled

    async def switch_camera(self) -> Optional[str]:
        """
        Flip between the front and rear camera without renegotiating.

        Returns:
            The new facing mode, or None if the call has no video

        Raises:
            StateConflictError: Outside Connecting/Connected, or while sharing the screen
            MediaUnavailableError: If the other camera cannot be opened (the
                current one keeps running)
        """
        handle = self._require_media_call()
        return await self.media.switch_camera(handle)

    async def start_screen_share(self) -> bool:
        """
        Send the screen instead of the camera.

        Returns:
            False if the call has no video or the screen is already shared

        Raises:
            StateConflictError: Outside Connecting/Connected
            MediaUnavailableError: If screen capture cannot be opened
        """
        handle = self._require_media_call()
        return await self.media.start_screen_share(handle)

    async def stop_screen_share(self) -> bool:
        """
        Go back from the screen to the camera.

        Raises:
            StateConflictError: Outside Connecting/Connected
        """
        handle = self._require_media_call()
        return await self.media.stop_screen_share(handle)

    async def close(self) -> None:
        """End any live call, unsubscribe from the relay and cancel pending work."""
        if self._closed:
            return
        await self.end_call(REASON_SHUTDOWN)
        self._closed = True
        self._timers.cancel_all()
        for envelope_type in EnvelopeType:
            self.relay.off(envelope_type, self._receive)

        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.debug(f"Controller for {self.local_user_id} closed")

    async def __aenter__(self) -> CallSessionController:
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    # ========================================================================
    # Session bookkeeping
    # ========================================================================

    def _ensure_can_start(self) -> None:
        if self._closed:
            raise StateConflictError("Controller is closed")
        if self.is_busy:
            raise StateConflictError(f"A call is already {self.state.value}")

    def _require_state(self, state: CallState) -> CallSession:
        if self._session is None or self._session.state != state:
            raise StateConflictError(
                f"Operation requires state {state.value}, current state is {self.state.value}"
            )
        return self._session

    def _require_local_stream(self) -> MediaStreamHandle:
        if not self.is_busy or self._local is None:
            raise StateConflictError("No live call with local media")
        return self._local

    def _require_media_call(self) -> MediaStreamHandle:
        if self.state not in (CallState.CONNECTING, CallState.CONNECTED) or self._local is None:
            raise StateConflictError(
                f"Video source changes need a connecting or connected call, state is {self.state.value}"
            )
        return self._local

    def _start_session(
        self,
        *,
        call_id: str,
        remote_user_id: str,
        role: CallRole,
        negotiation_role: NegotiationRole,
        constraints: MediaConstraints,
        room_id: Optional[str] = None,
    ) -> CallSession:
        self._generation += 1
        self._timers.cancel_all()
        self._reset_call_state()
        self._session = CallSession(
            call_id=call_id,
            local_user_id=self.local_user_id,
            remote_user_id=remote_user_id,
            role=role,
            negotiation_role=negotiation_role,
            media_constraints=constraints,
            room_id=room_id,
        )
        return self._session

    def _transition(self, state: CallState) -> None:
        session = self._session
        old_state = session.transition_to(state)
        logger.info(
            f"Call {short_id(session.call_id)}: {old_state.value} → {state.value}"
        )
        self.events._emit_state_changed(state, session)

    def _terminate(
        self,
        state: CallState,
        reason: str,
        error_kind: Optional[ErrorKind] = None,
        message: Optional[str] = None,
    ) -> bool:
        """
        Move the session to a terminal state and tear the call down.

        Runs at most once per session: the first caller wins, later calls
        (a racing local hangup and remote end, duplicate envelopes) return False.
        """
        session = self._session
        if session is None or session.is_terminal:
            return False
        if state == CallState.DECLINED and session.state == CallState.CONNECTED:
            state = CallState.ENDED

        self._generation += 1
        self._timers.cancel_all()
        old_state = session.transition_to(state, reason)

        # No-op for calls that never acquired media
        self.media.release(self._local)
        self._local = None
        if self._remote is not None:
            self._remote.release()
            self._remote = None
        if self._engine is not None:
            engine, self._engine = self._engine, None
            self._close_task = self._spawn(engine.close(), "close-engine")
        self._early_candidates.clear()
        self._outgoing_candidates.clear()

        logger.info(
            f"Call {short_id(session.call_id)}: {old_state.value} → {state.value} "
            f"({REASON_PHRASES.get(reason, reason)})"
        )
        if error_kind is not None:
            self.events._emit_error(error_kind, message or REASON_PHRASES.get(reason, reason))
        self.events._emit_state_changed(state, session)
        return True

    def _fail(self, error: Exception, reason: str = REASON_NEGOTIATION) -> None:
        """Report ``error`` to the peer and fail the call."""
        kind = error.kind if isinstance(error, CallError) else ErrorKind.NEGOTIATION
        logger.error(f"Call failed: {error}")
        self._send_to_peer(SignalingEnvelope.error, reason)
        self._terminate(CallState.FAILED, reason, kind, str(error))

    # ========================================================================
    # Media
    # ========================================================================

    async def _acquire_media(
        self, session: CallSession, *, decline_on_failure: bool = False
    ) -> Optional[MediaStreamHandle]:
        """
        Acquire local media for ``session``.

        Returns None when acquisition failed (the session is FAILED) or the
        call ended while it was suspended (the late handle is released).
        """
        generation = self._generation
        try:
            handle = await self.media.acquire(session.media_constraints)
        except MediaUnavailableError as e:
            if generation != self._generation:
                return None
            if decline_on_failure:
                self._send_to_peer(SignalingEnvelope.decline, REASON_MEDIA_UNAVAILABLE)
            self._terminate(
                CallState.FAILED,
                REASON_MEDIA_UNAVAILABLE,
                ErrorKind.MEDIA_UNAVAILABLE,
                e.message,
            )
            return None

        if generation != self._generation:
            logger.debug("Call ended during media acquisition, releasing late stream")
            self.media.release(handle)
            return None
        return handle

    def _set_local_stream(self, handle: MediaStreamHandle) -> None:
        self._local = handle
        self.events._emit_local_stream(handle)

    # ========================================================================
    # Negotiation
    # ========================================================================

    def _create_engine(self) -> bool:
        session = self._session
        generation = self._generation
        try:
            engine = PeerNegotiationEngine(
                session.negotiation_role,
                ice_servers=self.config.ice_servers,
                on_local_ice_candidate=lambda c: self._on_local_candidate(generation, c),
                on_remote_track=lambda t: self._on_remote_track(generation, t),
                on_negotiation_failed=lambda e: self._on_negotiation_failed(generation, e),
                peer_connection_factory=self._pc_factory,
            )
            engine.attach_local_media(self._local)
        except Exception as e:
            logger.exception("Could not create peer connection")
            self._fail(NegotiationError(f"Could not create peer connection: {e}"))
            return False

        self._engine = engine
        for candidate in self._early_candidates:
            self._spawn(engine.add_remote_ice_candidate(candidate), "remote-candidate")
        self._early_candidates.clear()

        if self._remote_offer is not None and not session.is_offerer:
            self._spawn(self._answer_offer(generation, self._remote_offer), "answer")
        return True

    def _start_offer(self) -> None:
        if self._offer_started or self._engine is None:
            return
        self._offer_started = True
        self._spawn(self._create_offer(self._generation), "offer")

    async def _create_offer(self, generation: int) -> None:
        engine = self._engine
        try:
            sdp = await engine.create_offer()
        except Exception as e:
            if generation == self._generation:
                self._fail(e)
            return
        if generation != self._generation:
            logger.debug("Discarding stale offer")
            return
        self._send_to_peer(SignalingEnvelope.offer, sdp)
        self._offer_sent = True
        self._flush_local_candidates()

    async def _answer_offer(self, generation: int, sdp: str) -> None:
        engine = self._engine
        try:
            answer = await engine.accept_offer(sdp)
        except Exception as e:
            if generation == self._generation:
                self._fail(e)
            return
        if generation != self._generation:
            logger.debug("Discarding stale answer")
            return
        self._send_to_peer(SignalingEnvelope.answer, answer)
        self._sdp_complete = True
        self._flush_local_candidates()
        self._check_connected()

    async def _apply_answer(self, generation: int, sdp: str) -> None:
        engine = self._engine
        try:
            await engine.accept_answer(sdp)
        except Exception as e:
            if generation == self._generation:
                self._fail(e)
            return
        if generation != self._generation:
            return
        self._sdp_complete = True
        self._check_connected()

    def _check_connected(self) -> None:
        if (
            self.state == CallState.CONNECTING
            and self._sdp_complete
            and self._remote is not None
            and not self._remote.is_empty
        ):
            self._timers.cancel(CONNECT_TIMER)
            self._transition(CallState.CONNECTED)

    def _on_local_candidate(self, generation: int, candidate: IceCandidate) -> None:
        if generation != self._generation:
            return
        if not self._local_sdp_sent:
            self._outgoing_candidates.append(candidate)
            return
        self._send_to_peer(SignalingEnvelope.ice_candidate, candidate)

    def _flush_local_candidates(self) -> None:
        self._local_sdp_sent = True
        queued, self._outgoing_candidates = self._outgoing_candidates, []
        for candidate in queued:
            self._send_to_peer(SignalingEnvelope.ice_candidate, candidate)

    def _on_remote_track(self, generation: int, track: MediaStreamTrack) -> None:
        if generation != self._generation:
            return
        if self._remote is None:
            self._remote = MediaStreamHandle(label="remote")
        if self._remote.add_track(track):
            self.events._emit_remote_stream(self._remote)
        self._check_connected()

    def _on_negotiation_failed(self, generation: int, error: NegotiationFailedError) -> None:
        if generation != self._generation:
            return
        self._send_to_peer(SignalingEnvelope.error, REASON_ICE_FAILED)
        self._terminate(CallState.FAILED, REASON_ICE_FAILED, error.kind, error.message)

    # ========================================================================
    # Timers
    # ========================================================================

    def _on_ring_timeout(self) -> None:
        if self.state == CallState.CALLING:
            self._send_to_peer(SignalingEnvelope.timeout)
        self._terminate(CallState.TIMED_OUT, REASON_NO_ANSWER)

    def _on_connect_timeout(self) -> None:
        self._send_to_peer(SignalingEnvelope.error, REASON_CONNECT_TIMEOUT)
        self._terminate(
            CallState.FAILED,
            REASON_CONNECT_TIMEOUT,
            ErrorKind.CONNECT_TIMEOUT,
            REASON_PHRASES[REASON_CONNECT_TIMEOUT],
        )

    # ========================================================================
    # Relay I/O
    # ========================================================================

    def _send(self, envelope: SignalingEnvelope) -> None:
        logger.debug(f"→ {envelope!r}")
        try:
            self.relay.send(envelope.to_user_id, envelope)
        except Exception as e:
            logger.warning(f"Relay send failed for {envelope.type.value}: {e}")

    def _send_to_peer(self, factory: Callable[..., SignalingEnvelope], *args, **kwargs) -> None:
        session = self._session
        self._send(
            factory(session.call_id, self.local_user_id, session.remote_user_id, *args, **kwargs)
        )

    def _receive(self, envelope: SignalingEnvelope) -> None:
        if self._closed or envelope.to_user_id != self.local_user_id:
            return
        logger.debug(f"← {envelope!r}")
        self._envelope_handlers[envelope.type](envelope)

    def _current_call(self, envelope: SignalingEnvelope) -> Optional[CallSession]:
        """The live session ``envelope`` belongs to, or None."""
        session = self._session
        if (
            session is None
            or session.is_terminal
            or session.call_id != envelope.call_id
            or session.remote_user_id != envelope.from_user_id
        ):
            logger.debug(f"Ignoring {envelope!r}: no matching live call")
            return None
        return session

    # ========================================================================
    # Envelope handlers
    # ========================================================================

    def _handle_incoming(self, envelope: SignalingEnvelope) -> None:
        session = self._session
        if session is not None and session.call_id == envelope.call_id:
            logger.debug(f"Ignoring duplicate {envelope.type.value} for {short_id(envelope.call_id)}")
            return
        if self._closed:
            return

        if self.is_busy:
            if self.config.busy_auto_decline:
                logger.info(f"Busy, declining call from {envelope.from_user_id}")
                self._send(
                    SignalingEnvelope.decline(
                        envelope.call_id,
                        self.local_user_id,
                        envelope.from_user_id,
                        REASON_BUSY,
                    )
                )
            else:
                logger.info(f"Busy, ignoring call from {envelope.from_user_id}")
            return

        payload = envelope.payload or {}
        constraints = self.config.constraints
        if constraints.video and payload.get("video") is False:
            constraints = constraints.with_video(False)

        session = self._start_session(
            call_id=envelope.call_id,
            remote_user_id=envelope.from_user_id,
            role=CallRole.RESPONDER,
            negotiation_role=NegotiationRole.RESPONDER,
            constraints=constraints,
        )
        # What the caller advertised, for "video call" vs "audio call" displays
        session.metadata["remote_audio"] = payload.get("audio", True)
        session.metadata["remote_video"] = payload.get("video", True)
        logger.info(f"Incoming call from {envelope.from_user_id}")
        self._transition(CallState.RINGING)
        # Gives up on a caller whose timeout envelope never arrives
        self._timers.start(RING_TIMER, self.config.ring_timeout, self._on_ring_timeout)

    def _handle_accept(self, envelope: SignalingEnvelope) -> None:
        session = self._current_call(envelope)
        if session is None:
            return

        if session.state == CallState.CALLING:
            self._timers.cancel(RING_TIMER)
            self._transition(CallState.CONNECTING)
            self._timers.start(
                CONNECT_TIMER, self.config.connect_timeout, self._on_connect_timeout
            )
            if self._create_engine():
                self._start_offer()
            return

        if session.state != CallState.CONNECTING or session.room_id is None:
            logger.debug(f"Ignoring accept in state {session.state.value}")
            return

        # Readiness handshake of matchmaking rooms
        self._peer_ready = True
        if self._engine is None:
            return
        if session.is_offerer:
            self._start_offer()
        elif not self._accept_echoed:
            self._accept_echoed = True
            self._send_to_peer(SignalingEnvelope.accept)

    def _handle_decline(self, envelope: SignalingEnvelope) -> None:
        if self._current_call(envelope) is None:
            return
        self._terminate(CallState.DECLINED, envelope.reason or REASON_DECLINED)

    def _handle_end(self, envelope: SignalingEnvelope) -> None:
        session = self._current_call(envelope)
        if session is None:
            return
        reason = envelope.reason or REASON_HANGUP
        if session.state == CallState.RINGING:
            self._terminate(CallState.DECLINED, reason)
        else:
            self._terminate(CallState.ENDED, reason)

    def _handle_timeout(self, envelope: SignalingEnvelope) -> None:
        session = self._current_call(envelope)
        if session is None:
            return
        if session.state == CallState.CONNECTED:
            self._terminate(CallState.ENDED, REASON_NO_ANSWER)
        else:
            self._terminate(CallState.TIMED_OUT, REASON_NO_ANSWER)

    def _handle_error(self, envelope: SignalingEnvelope) -> None:
        if self._current_call(envelope) is None:
            return
        reason = envelope.reason or "error"
        self._terminate(
            CallState.FAILED,
            reason,
            ErrorKind.REMOTE_ERROR,
            f"Peer reported: {REASON_PHRASES.get(reason, reason)}",
        )

    def _handle_offer(self, envelope: SignalingEnvelope) -> None:
        session = self._current_call(envelope)
        if session is None:
            return
        if self._remote_offer is not None:
            if envelope.sdp == self._remote_offer:
                logger.debug("Ignoring re-delivered offer")
                return
            self._fail(NegotiationError("Second offer received in one session"))
            return
        if session.is_offerer:
            self._fail(NegotiationError("Offer received by the offerer"))
            return
        if session.state != CallState.CONNECTING:
            self._fail(NegotiationError(f"Offer received while {session.state.value}"))
            return

        self._remote_offer = envelope.sdp
        if self._engine is not None:
            self._spawn(self._answer_offer(self._generation, envelope.sdp), "answer")

    def _handle_answer(self, envelope: SignalingEnvelope) -> None:
        session = self._current_call(envelope)
        if session is None:
            return
        if self._remote_answer is not None:
            if envelope.sdp == self._remote_answer:
                logger.debug("Ignoring re-delivered answer")
                return
            self._fail(NegotiationError("Second answer received in one session"))
            return
        if not session.is_offerer:
            self._fail(NegotiationError("Answer received by the responder"))
            return
        if not self._offer_sent or self._engine is None:
            self._fail(NegotiationError("Answer received without an outstanding offer"))
            return

        self._remote_answer = envelope.sdp
        self._spawn(self._apply_answer(self._generation, envelope.sdp), "apply-answer")

    def _handle_ice_candidate(self, envelope: SignalingEnvelope) -> None:
        if self._current_call(envelope) is None:
            return
        candidate = envelope.candidate
        if self._engine is None:
            self._early_candidates.append(candidate)
            return
        self._spawn(self._engine.add_remote_ice_candidate(candidate), "remote-candidate")

    def _handle_toggle(self, envelope: SignalingEnvelope) -> None:
        if self._current_call(envelope) is None:
            return
        kind = MediaKind.AUDIO if envelope.type == EnvelopeType.TOGGLE_AUDIO else MediaKind.VIDEO
        self.events._emit_remote_media_toggled(kind, envelope.toggle_value)

    # ========================================================================
    # Tasks
    # ========================================================================

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=f"callx-{name}")
        self._tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._generation))
        return task

    def _task_done(self, generation: int, task: asyncio.Task) -> None:
        """Log a failed task and fail the call it belongs to, if still live."""
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        logger.error(f"Task {task.get_name()} failed: {error}", exc_info=error)
        if generation == self._generation and self.is_busy and not self._closed:
            self._fail(error)

    def __repr__(self) -> str:
        return f"<CallSessionController({self.local_user_id}, {self.state.value})>"


__all__ = ["CallSessionController"]
