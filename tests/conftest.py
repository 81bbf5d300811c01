"""Shared fakes for the call signaling tests."""

from __future__ import annotations

import asyncio
import itertools
from typing import Any, Callable, Dict, List, Optional

import pytest
from aiortc import RTCSessionDescription
from aiortc.mediastreams import AudioStreamTrack

from callx import (
    CallConfig,
    CallEvents,
    CallSession,
    CallSessionController,
    CallState,
    EnvelopeType,
    ErrorKind,
    MediaAcquisition,
    MediaConstraints,
    MediaDevices,
    MediaKind,
    MediaStreamHandle,
    MediaUnavailableError,
    MemoryRelayHub,
    SignalingEnvelope,
    SyntheticMediaDevices,
)

_host_octets = itertools.count(10)


def make_sdp(kind: str = "offer", candidates: bool = True) -> str:
    """SDP body with an audio and a video section, each with one host candidate."""
    octet = next(_host_octets)
    lines = [
        "v=0",
        f"o=- {octet} 1 IN IP4 127.0.0.1",
        f"s=fake-{kind}",
        "t=0 0",
        "m=audio 9 UDP/TLS/RTP/SAVPF 111",
        "c=IN IP4 0.0.0.0",
        "a=mid:0",
        "a=sendrecv",
    ]
    if candidates:
        lines += [
            f"a=candidate:1 1 udp 2130706431 192.168.1.{octet} 5000 typ host",
            "a=end-of-candidates",
        ]
    lines += [
        "m=video 9 UDP/TLS/RTP/SAVPF 96",
        "c=IN IP4 0.0.0.0",
        "a=mid:1",
        "a=sendrecv",
    ]
    if candidates:
        lines += [
            f"a=candidate:2 1 udp 2130706431 192.168.1.{octet} 5002 typ host",
            "a=end-of-candidates",
        ]
    return "\r\n".join(lines) + "\r\n"


class FakePeerConnection:
    """
    Stand-in for RTCPeerConnection.

    Every coroutine yields once to the loop so tests can interleave envelopes
    with suspended SDP work. Setting a remote description emits one remote
    audio track.
    """

    def __init__(self, configuration: Any = None) -> None:
        self.configuration = configuration
        self._listeners: Dict[str, List[Callable]] = {}
        self.local_tracks: List[Any] = []
        self.added_candidates: List[Any] = []
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.iceConnectionState = "new"
        self.connectionState = "new"
        self.closed = False
        self.emit_track = True
        self.offer_gate: Optional[asyncio.Event] = None
        self.answer_gate: Optional[asyncio.Event] = None

    def on(self, event: str, handler: Callable) -> Callable:
        self._listeners.setdefault(event, []).append(handler)
        return handler

    def emit(self, event: str, *args) -> None:
        for handler in list(self._listeners.get(event, [])):
            handler(*args)

    def addTrack(self, track: Any) -> None:
        self.local_tracks.append(track)

    async def createOffer(self) -> RTCSessionDescription:
        if self.offer_gate is not None:
            await self.offer_gate.wait()
        await asyncio.sleep(0)
        return RTCSessionDescription(sdp=make_sdp("offer"), type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        if self.answer_gate is not None:
            await self.answer_gate.wait()
        await asyncio.sleep(0)
        return RTCSessionDescription(sdp=make_sdp("answer"), type="answer")

    async def setLocalDescription(self, description: RTCSessionDescription) -> None:
        await asyncio.sleep(0)
        self.localDescription = description

    async def setRemoteDescription(self, description: RTCSessionDescription) -> None:
        await asyncio.sleep(0)
        self.remoteDescription = description
        if self.emit_track:
            self.emit("track", AudioStreamTrack())

    async def addIceCandidate(self, candidate: Any) -> None:
        self.added_candidates.append(candidate)
        await asyncio.sleep(0)

    def fail_ice(self) -> None:
        self.iceConnectionState = "failed"
        self.emit("iceconnectionstatechange")

    def disconnect_ice(self) -> None:
        self.iceConnectionState = "disconnected"
        self.emit("iceconnectionstatechange")

    async def close(self) -> None:
        self.closed = True
        self.iceConnectionState = "closed"
        self.connectionState = "closed"


class CameraLessDevices(MediaDevices):
    """Fails every request that includes video, like a machine without a camera."""

    def __init__(self) -> None:
        self.requests: List[MediaConstraints] = []
        self._synthetic = SyntheticMediaDevices()

    async def get_user_media(self, constraints: MediaConstraints):
        self.requests.append(constraints)
        if constraints.video:
            raise MediaUnavailableError("NotFoundError: Requested device not found")
        return await self._synthetic.get_user_media(constraints)


class CountingMediaAcquisition(MediaAcquisition):
    """MediaAcquisition that counts calls and can be held open with a gate."""

    def __init__(self, devices: Optional[MediaDevices] = None) -> None:
        super().__init__(devices)
        self.acquired: List[MediaStreamHandle] = []
        self.release_calls = 0
        self.gate: Optional[asyncio.Event] = None

    async def acquire(self, constraints=None) -> MediaStreamHandle:
        if self.gate is not None:
            await self.gate.wait()
        handle = await super().acquire(constraints)
        self.acquired.append(handle)
        return handle

    def release(self, handle) -> bool:
        self.release_calls += 1
        return super().release(handle)


class RecordingEvents(CallEvents):
    """Records every presentation callback."""

    def __init__(self) -> None:
        super().__init__()
        self.states: List[CallState] = []
        self.sessions: List[CallSession] = []
        self.errors: List[tuple[ErrorKind, str]] = []
        self.local_streams: List[MediaStreamHandle] = []
        self.remote_streams: List[MediaStreamHandle] = []
        self.toggles: List[tuple[MediaKind, bool]] = []

    def on_state_changed(self, state: CallState, session: CallSession) -> None:
        self.states.append(state)
        self.sessions.append(session)

    def on_local_stream(self, handle: MediaStreamHandle) -> None:
        self.local_streams.append(handle)

    def on_remote_stream(self, handle: MediaStreamHandle) -> None:
        self.remote_streams.append(handle)

    def on_error(self, kind: ErrorKind, message: str) -> None:
        self.errors.append((kind, message))

    def on_remote_media_toggled(self, kind: MediaKind, value: bool) -> None:
        self.toggles.append((kind, value))

    @property
    def terminal_states(self) -> List[CallState]:
        return [state for state in self.states if state.is_terminal]


class Peer:
    """A controller together with its fakes."""

    def __init__(
        self,
        hub: MemoryRelayHub,
        user_id: str,
        *,
        config: Optional[CallConfig] = None,
        devices: Optional[MediaDevices] = None,
    ) -> None:
        self.user_id = user_id
        self.relay = hub.endpoint(user_id)
        self.media = CountingMediaAcquisition(devices)
        self.events = RecordingEvents()
        self.peer_connections: List[FakePeerConnection] = []
        self.controller = CallSessionController(
            user_id,
            self.relay,
            media=self.media,
            events=self.events,
            config=config or CallConfig(ring_timeout=5.0, connect_timeout=5.0),
            peer_connection_factory=self._make_pc,
        )

    def _make_pc(self, configuration: Any = None) -> FakePeerConnection:
        pc = FakePeerConnection(configuration=configuration)
        self.peer_connections.append(pc)
        return pc

    @property
    def pc(self) -> FakePeerConnection:
        return self.peer_connections[-1]

    @property
    def state(self) -> CallState:
        return self.controller.state


async def settle(rounds: int = 30) -> None:
    """Let queued deliveries and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def hub() -> MemoryRelayHub:
    return MemoryRelayHub()


@pytest.fixture
def alice(hub: MemoryRelayHub) -> Peer:
    return Peer(hub, "alice")


@pytest.fixture
def bob(hub: MemoryRelayHub) -> Peer:
    return Peer(hub, "bob")


@pytest.fixture
def make_peer(hub: MemoryRelayHub):
    def factory(user_id: str, **kwargs) -> Peer:
        return Peer(hub, user_id, **kwargs)

    return factory


class RawPeer:
    """A bare relay endpoint that scripts the remote side envelope by envelope."""

    def __init__(self, hub: MemoryRelayHub, user_id: str) -> None:
        self.user_id = user_id
        self.relay = hub.endpoint(user_id)
        self.inbox: List[SignalingEnvelope] = []
        for envelope_type in EnvelopeType:
            self.relay.on(envelope_type, self.inbox.append)

    def send(self, factory: Callable[..., SignalingEnvelope], call_id: str, to_user_id: str, *args, **kwargs) -> None:
        self.relay.send(to_user_id, factory(call_id, self.user_id, to_user_id, *args, **kwargs))

    def received(self, envelope_type: EnvelopeType) -> List[SignalingEnvelope]:
        return [envelope for envelope in self.inbox if envelope.type == envelope_type]


@pytest.fixture
def raw_peer(hub: MemoryRelayHub):
    def factory(user_id: str = "42") -> RawPeer:
        return RawPeer(hub, user_id)

    return factory
