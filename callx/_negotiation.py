"""
Peer negotiation engine.

Owns the RTCPeerConnection of one call and runs the single offer/answer
cycle allowed per session:

    Offerer:    attach_local_media → create_offer → accept_answer
    Responder:  attach_local_media → accept_offer (returns the answer)

Remote ICE candidates that arrive before the remote description is set are
queued and applied in arrival order once it is. Local candidates are emitted
one at a time so the controller can trickle them to the peer.
"""

from __future__ import annotations

from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Optional, Sequence

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from ._envelope import IceCandidate
from ._media import MediaStreamHandle
from ._sdp import iter_candidates
from ._types import (
    IceServerConfig,
    InvalidStateError,
    NegotiationError,
    NegotiationFailedError,
    NegotiationRole,
)
from ._utils import logger

LocalCandidateCallback = Callable[[IceCandidate], None]
RemoteTrackCallback = Callable[[MediaStreamTrack], None]
FailureCallback = Callable[[NegotiationFailedError], None]
PeerConnectionFactory = Callable[..., Any]


class NegotiationPhase(Enum):
    """Progress of the single offer/answer cycle."""

    IDLE = "idle"
    CREATING_OFFER = "creating-offer"
    OFFER_SENT = "offer-sent"
    ANSWERING = "answering"
    APPLYING_ANSWER = "applying-answer"
    COMPLETE = "complete"
    CLOSED = "closed"


def build_rtc_configuration(ice_servers: Sequence[IceServerConfig]) -> RTCConfiguration:
    """Translate ICE server settings into an aiortc configuration."""
    servers = [
        RTCIceServer(
            urls=list(server.urls),
            username=server.username,
            credential=server.credential,
        )
        for server in ice_servers
    ]
    if not any(server.is_turn for server in ice_servers):
        logger.debug("No TURN server configured - relying on STUN only")
    return RTCConfiguration(iceServers=servers)


class PeerNegotiationEngine:
    """
    SDP/ICE negotiation for one call, under a fixed role.

    Example:
        >>> engine = PeerNegotiationEngine(
        ...     NegotiationRole.OFFERER,
        ...     on_local_ice_candidate=send_candidate,
        ...     on_remote_track=remote_stream.add_track,
        ... )
        >>> engine.attach_local_media(local_stream)
        >>> offer_sdp = await engine.create_offer()
        >>> ...
        >>> await engine.accept_answer(answer_sdp)
    """

    def __init__(
        self,
        role: NegotiationRole,
        *,
        ice_servers: Sequence[IceServerConfig] = (),
        on_local_ice_candidate: Optional[LocalCandidateCallback] = None,
        on_remote_track: Optional[RemoteTrackCallback] = None,
        on_negotiation_failed: Optional[FailureCallback] = None,
        peer_connection_factory: Optional[PeerConnectionFactory] = None,
    ) -> None:
        """
        Initialize the engine and its peer connection.

        Args:
            role: Offerer or Responder, fixed for the session
            ice_servers: STUN/TURN servers for the peer connection
            on_local_ice_candidate: Called once per locally gathered candidate
            on_remote_track: Called once per incoming remote track
            on_negotiation_failed: Called when ICE fails permanently
            peer_connection_factory: Builds the peer connection (default:
                aiortc RTCPeerConnection); receives ``configuration=``
        """
        self._role = NegotiationRole(role)
        self.on_local_ice_candidate = on_local_ice_candidate
        self.on_remote_track = on_remote_track
        self.on_negotiation_failed = on_negotiation_failed

        factory = peer_connection_factory or RTCPeerConnection
        self._pc = factory(configuration=build_rtc_configuration(ice_servers))
        self._pc.on("track", self._handle_track)
        self._pc.on("iceconnectionstatechange", self._handle_ice_state)
        self._pc.on("connectionstatechange", self._handle_connection_state)

        self._phase = NegotiationPhase.IDLE
        self._local_media: Optional[MediaStreamHandle] = None
        self._remote_description_set = False
        self._pending_candidates: Deque[IceCandidate] = deque()
        self._draining = False
        self._failed_reported = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def role(self) -> NegotiationRole:
        return self._role

    @property
    def phase(self) -> NegotiationPhase:
        return self._phase

    @property
    def peer_connection(self) -> Any:
        return self._pc

    @property
    def is_closed(self) -> bool:
        return self._phase == NegotiationPhase.CLOSED

    @property
    def has_local_media(self) -> bool:
        return self._local_media is not None

    @property
    def remote_description_set(self) -> bool:
        return self._remote_description_set

    @property
    def pending_candidates(self) -> int:
        """Remote candidates waiting for the remote description."""
        return len(self._pending_candidates)

    @property
    def is_complete(self) -> bool:
        return self._phase == NegotiationPhase.COMPLETE

    # ------------------------------------------------------------------
    # Local media
    # ------------------------------------------------------------------

    def attach_local_media(self, handle: MediaStreamHandle) -> None:
        """
        Add the local tracks to the peer connection.

        Raises:
            InvalidStateError: If media is already attached or the engine is closed
        """
        self._ensure_open()
        if self._local_media is not None:
            raise InvalidStateError("Local media already attached")
        for track in handle.tracks:
            self._pc.addTrack(track)
        self._local_media = handle
        logger.debug(
            f"Attached local media ({', '.join(t.kind for t in handle.tracks)})"
        )

    # ------------------------------------------------------------------
    # Offer/answer cycle
    # ------------------------------------------------------------------

    async def create_offer(self) -> str:
        """
        Create the session's offer and set it as local description.

        Returns:
            Offer SDP

        Raises:
            NegotiationError: If called by the Responder or before local media
            InvalidStateError: If an offer/answer cycle already started
        """
        self._ensure_open()
        if self._role != NegotiationRole.OFFERER:
            raise NegotiationError("Only the offerer may create an offer")
        if self._local_media is None:
            raise NegotiationError("Cannot create an offer before local media is attached")
        if self._phase != NegotiationPhase.IDLE:
            raise InvalidStateError(
                f"Offer/answer cycle already in progress ({self._phase.value})"
            )

        self._phase = NegotiationPhase.CREATING_OFFER
        offer = await self._pc.createOffer()
        self._ensure_open()
        await self._pc.setLocalDescription(offer)
        self._ensure_open()

        self._phase = NegotiationPhase.OFFER_SENT
        sdp = self._pc.localDescription.sdp
        self._emit_local_candidates(sdp)
        logger.info("📤 Offer created")
        return sdp

    async def accept_offer(self, sdp: str) -> str:
        """
        Apply the remote offer and produce the answer.

        Args:
            sdp: Offer SDP from the peer

        Returns:
            Answer SDP

        Raises:
            NegotiationError: If called by the Offerer
            InvalidStateError: If an offer was already accepted
        """
        self._ensure_open()
        if self._role != NegotiationRole.RESPONDER:
            raise NegotiationError("The offerer cannot accept an offer")
        if self._phase != NegotiationPhase.IDLE:
            raise InvalidStateError(
                f"Offer/answer cycle already in progress ({self._phase.value})"
            )

        self._phase = NegotiationPhase.ANSWERING
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="offer"))
        self._ensure_open()
        self._remote_description_set = True
        await self._drain_candidates()

        answer = await self._pc.createAnswer()
        self._ensure_open()
        await self._pc.setLocalDescription(answer)
        self._ensure_open()

        self._phase = NegotiationPhase.COMPLETE
        answer_sdp = self._pc.localDescription.sdp
        self._emit_local_candidates(answer_sdp)
        logger.info("📤 Answer created")
        return answer_sdp

    async def accept_answer(self, sdp: str) -> None:
        """
        Apply the remote answer, completing the initial negotiation.

        Raises:
            NegotiationError: If called by the Responder
            InvalidStateError: If no offer is outstanding
        """
        self._ensure_open()
        if self._role != NegotiationRole.OFFERER:
            raise NegotiationError("The responder cannot accept an answer")
        if self._phase != NegotiationPhase.OFFER_SENT:
            raise InvalidStateError(
                f"No outstanding offer to answer ({self._phase.value})"
            )

        self._phase = NegotiationPhase.APPLYING_ANSWER
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))
        self._ensure_open()
        self._remote_description_set = True
        self._phase = NegotiationPhase.COMPLETE
        logger.info("📥 Answer applied")
        await self._drain_candidates()

    # ------------------------------------------------------------------
    # ICE
    # ------------------------------------------------------------------

    async def add_remote_ice_candidate(self, candidate: IceCandidate) -> None:
        """
        Queue a remote candidate; apply the queue if the remote description is set.

        The candidate is queued synchronously, so calls made in arrival order
        are applied in arrival order.
        """
        if self.is_closed:
            logger.debug("Dropping remote candidate: engine closed")
            return
        self._pending_candidates.append(candidate)
        if not self._remote_description_set:
            logger.debug(
                f"Buffered remote candidate ({len(self._pending_candidates)} pending)"
            )
            return
        await self._drain_candidates()

    async def _drain_candidates(self) -> None:
        # A single drain loop owns the queue; concurrent callers only append.
        if self._draining:
            return
        self._draining = True
        try:
            while self._pending_candidates and not self.is_closed:
                candidate = self._pending_candidates.popleft()
                await self._apply_candidate(candidate)
        finally:
            self._draining = False

    async def _apply_candidate(self, candidate: IceCandidate) -> None:
        if candidate.is_end_of_candidates:
            logger.debug("Remote end-of-candidates")
            return
        line = candidate.candidate
        if line.startswith("candidate:"):
            line = line[len("candidate:") :]
        try:
            rtc_candidate = candidate_from_sdp(line)
            rtc_candidate.sdpMid = candidate.sdp_mid
            rtc_candidate.sdpMLineIndex = candidate.sdp_mline_index
            await self._pc.addIceCandidate(rtc_candidate)
        except Exception as e:
            logger.warning(f"Error adding ICE candidate: {e}")

    def _emit_local_candidates(self, sdp: str) -> None:
        for found in iter_candidates(sdp):
            if self.on_local_ice_candidate:
                self.on_local_ice_candidate(
                    IceCandidate(
                        candidate=found.candidate,
                        sdp_mid=found.sdp_mid,
                        sdp_mline_index=found.sdp_mline_index,
                    )
                )

    # ------------------------------------------------------------------
    # Peer connection events
    # ------------------------------------------------------------------

    def _handle_track(self, track: MediaStreamTrack) -> None:
        if self.is_closed:
            return
        logger.info(f"📥 Remote {track.kind} track received")
        if self.on_remote_track:
            self.on_remote_track(track)

    def _handle_ice_state(self) -> None:
        state = self._pc.iceConnectionState
        logger.debug(f"ICE connection state: {state}")
        if state == "disconnected":
            logger.warning("⚠️ ICE connection disconnected, waiting for recovery")
        elif state == "failed" and not self.is_closed and not self._failed_reported:
            self._failed_reported = True
            logger.error("❌ ICE connection failed")
            if self.on_negotiation_failed:
                self.on_negotiation_failed(NegotiationFailedError("ICE connection failed"))

    def _handle_connection_state(self) -> None:
        logger.debug(f"Connection state: {self._pc.connectionState}")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self.is_closed:
            raise InvalidStateError("Negotiation engine is closed")

    async def close(self) -> None:
        """Close the peer connection. Safe to call more than once."""
        if self.is_closed:
            return
        self._phase = NegotiationPhase.CLOSED
        self._pending_candidates.clear()
        await self._pc.close()
        logger.debug("Peer connection closed")

    def __repr__(self) -> str:
        return (
            f"<PeerNegotiationEngine({self._role.value}, {self._phase.value}, "
            f"{len(self._pending_candidates)} pending candidates)>"
        )


__all__ = [
    "NegotiationPhase",
    "PeerNegotiationEngine",
    "build_rtc_configuration",
]
