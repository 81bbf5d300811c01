from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, List, Optional


@dataclass(slots=True)
class MediaSection:
    """One ``m=`` section of a session description."""

    kind: str
    index: int
    mid: Optional[str] = None
    direction: Optional[str] = None
    candidates: List[str] = field(default_factory=list)
    end_of_candidates: bool = False


@dataclass(slots=True)
class SessionDescription:
    """Minimal SDP representation: enough to find media kinds and candidates."""

    origin: str
    session_name: str
    media: List[MediaSection]
    raw: str

    def media_kinds(self) -> List[str]:
        return [section.kind for section in self.media]

    def has_media(self, kind: str) -> bool:
        return any(section.kind == kind for section in self.media)


@dataclass(frozen=True, slots=True)
class SdpCandidate:
    """A candidate line found in an SDP body, with its section coordinates."""

    candidate: str  # "candidate:..." without the "a=" prefix
    sdp_mid: Optional[str]
    sdp_mline_index: int


def looks_like_sdp(raw: str) -> bool:
    """Cheap sanity check applied to offer/answer payloads."""
    return isinstance(raw, str) and raw.lstrip().startswith("v=0")


def parse_sdp(raw: str) -> SessionDescription:
    lines = [line.strip() for line in raw.splitlines() if line.strip()]
    if not lines:
        raise ValueError("Empty SDP")
    if lines[0] != "v=0":
        raise ValueError(f"SDP must start with v=0, got {lines[0][:20]!r}")

    origin = ""
    session_name = ""
    media: List[MediaSection] = []
    current: Optional[MediaSection] = None

    for line in lines:
        if line.startswith("m="):
            kind = line[2:].split(" ", 1)[0]
            current = MediaSection(kind=kind, index=len(media))
            media.append(current)
        elif current is None:
            if line.startswith("o="):
                origin = line[2:]
            elif line.startswith("s="):
                session_name = line[2:]
        elif line.startswith("a=mid:"):
            current.mid = line[len("a=mid:") :]
        elif line.startswith("a=candidate:"):
            current.candidates.append(line[2:])
        elif line == "a=end-of-candidates":
            current.end_of_candidates = True
        elif line in ("a=sendrecv", "a=sendonly", "a=recvonly", "a=inactive"):
            current.direction = line[2:]

    return SessionDescription(
        origin=origin,
        session_name=session_name,
        media=media,
        raw="\r\n".join(lines) + "\r\n",
    )


def iter_candidates(raw: str) -> Iterator[SdpCandidate]:
    """Yield every candidate of ``raw`` in SDP order."""
    description = parse_sdp(raw)
    for section in description.media:
        for line in section.candidates:
            yield SdpCandidate(
                candidate=line,
                sdp_mid=section.mid,
                sdp_mline_index=section.index,
            )


__all__ = [
    "MediaSection",
    "SessionDescription",
    "SdpCandidate",
    "looks_like_sdp",
    "parse_sdp",
    "iter_candidates",
]
