"""
Signaling envelope codec.

Envelopes are the only messages this library exchanges over the relay. Each
one names its call, its sender and its single recipient, and carries a
payload whose shape depends on the envelope type:

    offer / answer     SDP string
    ice-candidate      IceCandidate record
    toggle-audio       {"muted": bool}
    toggle-video       {"videoOff": bool}
    decline/end/error  {"reason": str}
    initiate/incoming/accept/timeout
                       optional object (initiate advertises {"audio", "video"})

The wire form is a JSON object with the keys ``type``, ``callId``,
``fromUserId``, ``toUserId`` and ``payload``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional, Union

from ._sdp import looks_like_sdp
from ._types import EnvelopeError, EnvelopeType


@dataclass(frozen=True)
class IceCandidate:
    """
    A single ICE candidate as trickled between peers.

    ``candidate`` uses the browser form, ``"candidate:<foundation> ..."``.
    An empty ``candidate`` signals end-of-candidates.
    """

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    @property
    def is_end_of_candidates(self) -> bool:
        return not self.candidate

    def to_dict(self) -> dict:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> IceCandidate:
        if not isinstance(data, Mapping):
            raise EnvelopeError("ICE candidate payload must be an object")
        candidate = data.get("candidate", "")
        if not isinstance(candidate, str):
            raise EnvelopeError("ICE candidate must be a string")
        mline_index = data.get("sdpMLineIndex")
        if mline_index is not None and (
            isinstance(mline_index, bool) or not isinstance(mline_index, int)
        ):
            raise EnvelopeError("sdpMLineIndex must be an integer")
        sdp_mid = data.get("sdpMid")
        if sdp_mid is not None and not isinstance(sdp_mid, str):
            raise EnvelopeError("sdpMid must be a string")
        return cls(candidate=candidate, sdp_mid=sdp_mid, sdp_mline_index=mline_index)


PayloadType = Union[str, IceCandidate, Mapping[str, Any], None]

_SDP_TYPES = (EnvelopeType.OFFER, EnvelopeType.ANSWER)
_REASON_TYPES = (EnvelopeType.DECLINE, EnvelopeType.END, EnvelopeType.ERROR)
_TOGGLE_KEYS = {
    EnvelopeType.TOGGLE_AUDIO: "muted",
    EnvelopeType.TOGGLE_VIDEO: "videoOff",
}


@dataclass(frozen=True)
class SignalingEnvelope:
    """
    Immutable signaling message.

    Envelopes are validated on construction; a malformed one raises
    EnvelopeError. Object payloads are copied into a read-only mapping.
    """

    type: EnvelopeType
    call_id: str
    from_user_id: str
    to_user_id: str
    payload: PayloadType = field(default=None, hash=False)

    def __post_init__(self) -> None:
        try:
            envelope_type = EnvelopeType(self.type)
        except (TypeError, ValueError):
            raise EnvelopeError(f"Unknown envelope type: {self.type!r}") from None
        object.__setattr__(self, "type", envelope_type)

        for name in ("call_id", "from_user_id", "to_user_id"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value:
                raise EnvelopeError(f"{name} must be a non-empty string")

        object.__setattr__(self, "payload", self._validate_payload(self.payload))

    def _validate_payload(self, payload: Any) -> PayloadType:
        """Check the payload shape for this envelope type."""
        if self.type in _SDP_TYPES:
            if not looks_like_sdp(payload):
                raise EnvelopeError(f"{self.type.value} payload must be an SDP string")
            return payload

        if self.type == EnvelopeType.ICE_CANDIDATE:
            if isinstance(payload, IceCandidate):
                return payload
            return IceCandidate.from_dict(payload)

        if payload is None:
            if self.type in _TOGGLE_KEYS:
                raise EnvelopeError(f"{self.type.value} requires a payload")
            return None

        if not isinstance(payload, Mapping):
            raise EnvelopeError(f"{self.type.value} payload must be an object")

        if self.type in _TOGGLE_KEYS:
            key = _TOGGLE_KEYS[self.type]
            if not isinstance(payload.get(key), bool):
                raise EnvelopeError(f"{self.type.value} payload needs boolean {key!r}")

        if self.type in _REASON_TYPES:
            reason = payload.get("reason")
            if reason is not None and not isinstance(reason, str):
                raise EnvelopeError("reason must be a string")

        return MappingProxyType(dict(payload))

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.type.is_terminal

    @property
    def reason(self) -> Optional[str]:
        """Reason carried by decline/end/error envelopes."""
        if isinstance(self.payload, Mapping):
            return self.payload.get("reason")
        return None

    @property
    def sdp(self) -> Optional[str]:
        return self.payload if self.type in _SDP_TYPES else None

    @property
    def candidate(self) -> Optional[IceCandidate]:
        return self.payload if isinstance(self.payload, IceCandidate) else None

    @property
    def toggle_value(self) -> Optional[bool]:
        """``muted`` for toggle-audio, ``videoOff`` for toggle-video."""
        key = _TOGGLE_KEYS.get(self.type)
        if key is None:
            return None
        return self.payload[key]

    # ------------------------------------------------------------------
    # Wire format
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        if isinstance(self.payload, IceCandidate):
            payload: Any = self.payload.to_dict()
        elif isinstance(self.payload, Mapping):
            payload = dict(self.payload)
        else:
            payload = self.payload
        return {
            "type": self.type.value,
            "callId": self.call_id,
            "fromUserId": self.from_user_id,
            "toUserId": self.to_user_id,
            "payload": payload,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SignalingEnvelope:
        if not isinstance(data, Mapping):
            raise EnvelopeError("Envelope must be an object")
        missing = [
            key for key in ("type", "callId", "fromUserId", "toUserId") if key not in data
        ]
        if missing:
            raise EnvelopeError(f"Envelope is missing {', '.join(missing)}")
        return cls(
            type=data["type"],
            call_id=data["callId"],
            from_user_id=data["fromUserId"],
            to_user_id=data["toUserId"],
            payload=data.get("payload"),
        )

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> SignalingEnvelope:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise EnvelopeError(f"Envelope is not valid JSON: {e}") from e
        return cls.from_dict(data)

    # ------------------------------------------------------------------
    # Named constructors
    # ------------------------------------------------------------------

    @classmethod
    def initiate(
        cls, call_id: str, from_user_id: str, to_user_id: str, *, audio: bool = True, video: bool = True
    ) -> SignalingEnvelope:
        return cls(
            EnvelopeType.INITIATE,
            call_id,
            from_user_id,
            to_user_id,
            {"audio": audio, "video": video},
        )

    @classmethod
    def incoming(
        cls, call_id: str, from_user_id: str, to_user_id: str, *, audio: bool = True, video: bool = True
    ) -> SignalingEnvelope:
        return cls(
            EnvelopeType.INCOMING,
            call_id,
            from_user_id,
            to_user_id,
            {"audio": audio, "video": video},
        )

    @classmethod
    def accept(cls, call_id: str, from_user_id: str, to_user_id: str) -> SignalingEnvelope:
        return cls(EnvelopeType.ACCEPT, call_id, from_user_id, to_user_id)

    @classmethod
    def decline(
        cls, call_id: str, from_user_id: str, to_user_id: str, reason: str
    ) -> SignalingEnvelope:
        return cls(EnvelopeType.DECLINE, call_id, from_user_id, to_user_id, {"reason": reason})

    @classmethod
    def offer(cls, call_id: str, from_user_id: str, to_user_id: str, sdp: str) -> SignalingEnvelope:
        return cls(EnvelopeType.OFFER, call_id, from_user_id, to_user_id, sdp)

    @classmethod
    def answer(cls, call_id: str, from_user_id: str, to_user_id: str, sdp: str) -> SignalingEnvelope:
        return cls(EnvelopeType.ANSWER, call_id, from_user_id, to_user_id, sdp)

    @classmethod
    def ice_candidate(
        cls, call_id: str, from_user_id: str, to_user_id: str, candidate: IceCandidate
    ) -> SignalingEnvelope:
        return cls(EnvelopeType.ICE_CANDIDATE, call_id, from_user_id, to_user_id, candidate)

    @classmethod
    def toggle_audio(
        cls, call_id: str, from_user_id: str, to_user_id: str, muted: bool
    ) -> SignalingEnvelope:
        return cls(EnvelopeType.TOGGLE_AUDIO, call_id, from_user_id, to_user_id, {"muted": muted})

    @classmethod
    def toggle_video(
        cls, call_id: str, from_user_id: str, to_user_id: str, video_off: bool
    ) -> SignalingEnvelope:
        return cls(
            EnvelopeType.TOGGLE_VIDEO, call_id, from_user_id, to_user_id, {"videoOff": video_off}
        )

    @classmethod
    def end(cls, call_id: str, from_user_id: str, to_user_id: str, reason: str) -> SignalingEnvelope:
        return cls(EnvelopeType.END, call_id, from_user_id, to_user_id, {"reason": reason})

    @classmethod
    def timeout(cls, call_id: str, from_user_id: str, to_user_id: str) -> SignalingEnvelope:
        return cls(EnvelopeType.TIMEOUT, call_id, from_user_id, to_user_id)

    @classmethod
    def error(cls, call_id: str, from_user_id: str, to_user_id: str, reason: str) -> SignalingEnvelope:
        return cls(EnvelopeType.ERROR, call_id, from_user_id, to_user_id, {"reason": reason})

    def __repr__(self) -> str:
        return (
            f"<SignalingEnvelope({self.type.value}, call={self.call_id[:8]}, "
            f"{self.from_user_id}→{self.to_user_id})>"
        )


__all__ = [
    "IceCandidate",
    "SignalingEnvelope",
    "PayloadType",
]
