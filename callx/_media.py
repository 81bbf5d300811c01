"""
Local media acquisition.

This module opens capture devices for a call, degrading from audio+video to
audio-only when the camera cannot be used, and wraps every acquired track so
it can be muted locally without renegotiating the peer connection. The same
wrapper lets a call switch cameras or share the screen by swapping the
track's source.

Fallback ladder:
    {video:true, audio:true} → {video:false, audio:true} → MediaUnavailableError
"""

from __future__ import annotations

import abc
import asyncio
from functools import partial
from typing import Awaitable, Callable, Iterable, List, Optional, Union

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import AudioStreamTrack, MediaStreamError, VideoStreamTrack
from av import AudioFrame, VideoFrame

from ._types import MediaConstraints, MediaKind, MediaUnavailableError, StateConflictError
from ._utils import logger

Frame = Union[AudioFrame, VideoFrame]
SourceFactory = Callable[[], Awaitable[MediaStreamTrack]]


def blank_frame(frame: Frame) -> Frame:
    """Return a silent (audio) or black (video) frame with the timing of ``frame``."""
    if isinstance(frame, AudioFrame):
        blank = AudioFrame(
            format=frame.format.name,
            layout=frame.layout.name,
            samples=frame.samples,
        )
        for plane in blank.planes:
            plane.update(bytes(plane.buffer_size))
        blank.sample_rate = frame.sample_rate
    else:
        blank = VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
        luma, *chroma = blank.planes
        luma.update(bytes(luma.buffer_size))
        for plane in chroma:
            plane.update(b"\x80" * plane.buffer_size)
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class LocalTrack(MediaStreamTrack):
    """
    Capture track with a local ``enabled`` switch and a replaceable source.

    While disabled the track keeps pacing the source and sends blank frames,
    so the peer connection never needs to renegotiate. Swapping the source
    (camera switch, screen share) works the same way: the peer connection
    keeps sending this track and only the frames change.
    """

    def __init__(self, source: MediaStreamTrack, *, facing_mode: Optional[str] = None) -> None:
        super().__init__()
        self.kind = source.kind
        self.enabled = True
        self.facing_mode = facing_mode
        self._source = source
        self._restore: Optional[SourceFactory] = None

    @property
    def source(self) -> MediaStreamTrack:
        return self._source

    @property
    def has_temporary_source(self) -> bool:
        """True while a source installed with a ``restore`` factory is live."""
        return self._restore is not None

    def replace_source(
        self, source: MediaStreamTrack, *, restore: Optional[SourceFactory] = None
    ) -> MediaStreamTrack:
        """
        Send frames from ``source`` from now on and stop the previous source.

        Args:
            source: New frame source of the same kind
            restore: Opens a replacement if ``source`` ends on its own
                (the screen share was stopped from outside the call)

        Returns:
            The previous (now stopped) source
        """
        if source.kind != self.kind:
            raise ValueError(f"Cannot replace a {self.kind} source with {source.kind}")
        previous, self._source = self._source, source
        self._restore = restore
        previous.stop()
        return previous

    async def recv(self) -> Frame:
        if self.readyState != "live":
            raise MediaStreamError
        try:
            frame = await self._source.recv()
        except MediaStreamError:
            if self._restore is None or self.readyState != "live":
                raise
            restore, self._restore = self._restore, None
            logger.info(f"Temporary {self.kind} source ended, restoring")
            try:
                source = await restore()
            except Exception as e:
                logger.warning(f"Could not restore {self.kind} source: {e}")
                raise MediaStreamError from e
            if self.readyState != "live":
                source.stop()
                raise MediaStreamError
            self.replace_source(source)
            frame = await self._source.recv()
        if self.enabled:
            return frame
        return blank_frame(frame)

    def stop(self) -> None:
        super().stop()
        self._restore = None
        self._source.stop()


class MediaStreamHandle:
    """
    A set of tracks owned by one call.

    The local handle is created by MediaAcquisition; the remote handle is
    filled track by track as the peer's media arrives. ``release()`` stops
    every track and is safe to call more than once.
    """

    def __init__(
        self,
        tracks: Iterable[MediaStreamTrack] = (),
        *,
        constraints: Optional[MediaConstraints] = None,
        label: str = "local",
    ) -> None:
        self._tracks: List[MediaStreamTrack] = list(tracks)
        self.constraints = constraints
        self.label = label
        self._released = False

    @property
    def tracks(self) -> tuple[MediaStreamTrack, ...]:
        return tuple(self._tracks)

    @property
    def audio_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == MediaKind.AUDIO.value]

    @property
    def video_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == MediaKind.VIDEO.value]

    @property
    def has_audio(self) -> bool:
        return bool(self.audio_tracks)

    @property
    def has_video(self) -> bool:
        return bool(self.video_tracks)

    @property
    def is_empty(self) -> bool:
        return not self._tracks

    @property
    def released(self) -> bool:
        return self._released

    @property
    def is_screen_sharing(self) -> bool:
        return any(getattr(t, "has_temporary_source", False) for t in self.video_tracks)

    def add_track(self, track: MediaStreamTrack) -> bool:
        """Add a track, ignoring one that is already part of the stream."""
        if self._released:
            raise RuntimeError(f"{self.label} stream already released")
        if any(existing.id == track.id for existing in self._tracks):
            return False
        self._tracks.append(track)
        return True

    def set_enabled(self, kind: MediaKind, enabled: bool) -> int:
        """
        Switch every local track of ``kind`` on or off.

        Returns:
            Number of tracks that support toggling and were updated
        """
        count = 0
        for track in self._tracks:
            if track.kind == kind.value and hasattr(track, "enabled"):
                track.enabled = enabled
                count += 1
        return count

    def is_enabled(self, kind: MediaKind) -> bool:
        tracks = [t for t in self._tracks if t.kind == kind.value]
        return any(getattr(t, "enabled", True) for t in tracks)

    def release(self) -> bool:
        """
        Stop every track.

        Returns:
            True the first time, False when the handle was already released
        """
        if self._released:
            return False
        self._released = True
        for track in self._tracks:
            track.stop()
        return True

    def __repr__(self) -> str:
        kinds = ",".join(t.kind for t in self._tracks) or "empty"
        state = "released" if self._released else "live"
        return f"<MediaStreamHandle({self.label}, {kinds}, {state})>"


# =============================================================================
# Device layer
# =============================================================================


class MediaDevices(abc.ABC):
    """Abstract capture device access (the ``getUserMedia`` of this library)."""

    @abc.abstractmethod
    async def get_user_media(
        self, constraints: MediaConstraints
    ) -> List[MediaStreamTrack]:
        """
        Open the devices requested by ``constraints``.

        Args:
            constraints: Which kinds to capture and capture hints

        Returns:
            One track per requested kind

        Raises:
            MediaUnavailableError: If a requested device is missing or denied
        """
        ...

    async def get_display_media(self) -> List[MediaStreamTrack]:
        """
        Open a screen capture (the ``getDisplayMedia`` of this library).

        Returns:
            One video track

        Raises:
            MediaUnavailableError: If screen capture is unsupported or refused
        """
        raise MediaUnavailableError("Screen capture is not supported")


class SyntheticMediaDevices(MediaDevices):
    """
    Generated media: silence for audio, black frames for video.

    The switches simulate machines without a camera or microphone, a user who
    refused the permission prompt, a single-camera laptop (``facing_modes``)
    or a platform without screen capture.
    """

    def __init__(
        self,
        *,
        has_camera: bool = True,
        has_microphone: bool = True,
        permission_granted: bool = True,
        facing_modes: tuple[str, ...] = ("user", "environment"),
        has_screen: bool = True,
    ) -> None:
        self.has_camera = has_camera
        self.has_microphone = has_microphone
        self.permission_granted = permission_granted
        self.facing_modes = facing_modes
        self.has_screen = has_screen

    async def get_user_media(
        self, constraints: MediaConstraints
    ) -> List[MediaStreamTrack]:
        if not self.permission_granted:
            raise MediaUnavailableError("Camera/microphone permission denied")
        if constraints.video and not self.has_camera:
            raise MediaUnavailableError("No camera found")
        if constraints.video and constraints.facing_mode not in self.facing_modes:
            raise MediaUnavailableError(f"No {constraints.facing_mode}-facing camera")
        if constraints.audio and not self.has_microphone:
            raise MediaUnavailableError("No microphone found")

        tracks: List[MediaStreamTrack] = []
        if constraints.audio:
            tracks.append(AudioStreamTrack())
        if constraints.video:
            tracks.append(VideoStreamTrack())
        return tracks

    async def get_display_media(self) -> List[MediaStreamTrack]:
        if not self.has_screen:
            raise MediaUnavailableError("Screen capture is not supported")
        return [VideoStreamTrack()]


class PlayerMediaDevices(MediaDevices):
    """
    Real capture devices opened through ffmpeg via aiortc's MediaPlayer.

    Defaults target Linux (v4l2 camera, PulseAudio microphone, x11grab screen
    capture). On macOS use ``video_format="avfoundation"``, on Windows
    ``"dshow"`` (and ``display_format="gdigrab"``, ``display_device="desktop"``).
    ``rear_video_device`` is the camera used for ``facing_mode="environment"``;
    without it only the front camera is available.
    """

    def __init__(
        self,
        *,
        video_device: str = "/dev/video0",
        video_format: Optional[str] = "v4l2",
        audio_device: str = "default",
        audio_format: Optional[str] = "pulse",
        rear_video_device: Optional[str] = None,
        display_device: str = ":0.0",
        display_format: Optional[str] = "x11grab",
        framerate: int = 30,
    ) -> None:
        self.video_device = video_device
        self.rear_video_device = rear_video_device
        self.display_device = display_device
        self.display_format = display_format
        self.video_format = video_format
        self.audio_device = audio_device
        self.audio_format = audio_format
        self.framerate = framerate

    def _open_audio(self) -> MediaPlayer:
        return MediaPlayer(self.audio_device, format=self.audio_format)

    def _camera_device(self, facing_mode: str) -> str:
        if facing_mode == "environment":
            if self.rear_video_device is None:
                raise MediaUnavailableError("No environment-facing camera")
            return self.rear_video_device
        return self.video_device

    def _open_video(self, device: str, constraints: MediaConstraints) -> MediaPlayer:
        options = {
            "video_size": f"{constraints.ideal_width}x{constraints.ideal_height}",
            "framerate": str(self.framerate),
        }
        return MediaPlayer(device, format=self.video_format, options=options)

    def _open_display(self) -> MediaPlayer:
        options = {"framerate": str(self.framerate)}
        return MediaPlayer(self.display_device, format=self.display_format, options=options)

    async def get_user_media(
        self, constraints: MediaConstraints
    ) -> List[MediaStreamTrack]:
        loop = asyncio.get_running_loop()
        tracks: List[MediaStreamTrack] = []
        try:
            if constraints.audio:
                player = await loop.run_in_executor(None, self._open_audio)
                if player.audio is None:
                    raise MediaUnavailableError("No microphone found")
                tracks.append(player.audio)
            if constraints.video:
                device = self._camera_device(constraints.facing_mode)
                player = await loop.run_in_executor(
                    None, partial(self._open_video, device, constraints)
                )
                if player.video is None:
                    raise MediaUnavailableError("No camera found")
                tracks.append(player.video)
        except MediaUnavailableError:
            for track in tracks:
                track.stop()
            raise
        except Exception as e:
            for track in tracks:
                track.stop()
            raise MediaUnavailableError(f"Failed to open capture device: {e}") from e
        return tracks

    async def get_display_media(self) -> List[MediaStreamTrack]:
        loop = asyncio.get_running_loop()
        try:
            player = await loop.run_in_executor(None, self._open_display)
        except Exception as e:
            raise MediaUnavailableError(f"Failed to open screen capture: {e}") from e
        if player.video is None:
            raise MediaUnavailableError("Screen capture produced no video")
        return [player.video]


# =============================================================================
# Acquisition
# =============================================================================


class MediaAcquisition:
    """
    Acquires and releases local media for calls.

    Example:
        >>> media = MediaAcquisition(SyntheticMediaDevices(has_camera=False))
        >>> handle = await media.acquire(MediaConstraints())
        >>> handle.has_video
        False
    """

    def __init__(self, devices: Optional[MediaDevices] = None) -> None:
        self.devices = devices or SyntheticMediaDevices()

    @staticmethod
    def fallback_ladder(constraints: MediaConstraints) -> List[MediaConstraints]:
        """Constraint sets tried in order for ``constraints``."""
        ladder = [constraints]
        if constraints.video and constraints.audio:
            ladder.append(constraints.with_video(False))
        return ladder

    async def acquire(
        self, constraints: Optional[MediaConstraints] = None
    ) -> MediaStreamHandle:
        """
        Open local devices, falling back to audio-only once.

        Args:
            constraints: Requested media (default: audio and video)

        Returns:
            Handle owning the wrapped local tracks

        Raises:
            MediaUnavailableError: If every rung of the ladder failed
        """
        constraints = constraints or MediaConstraints()
        if not constraints.audio and not constraints.video:
            raise MediaUnavailableError("No media kind requested")

        last_error: Optional[BaseException] = None
        for attempt in self.fallback_ladder(constraints):
            try:
                tracks = await self.devices.get_user_media(attempt)
            except Exception as e:
                logger.warning(f"getUserMedia {attempt.describe()} failed: {e}")
                last_error = e
                continue

            if not tracks:
                logger.warning(f"getUserMedia {attempt.describe()} returned no tracks")
                last_error = MediaUnavailableError("No tracks returned")
                continue

            handle = MediaStreamHandle(
                [
                    LocalTrack(
                        track,
                        facing_mode=attempt.facing_mode
                        if track.kind == MediaKind.VIDEO.value
                        else None,
                    )
                    for track in tracks
                ],
                constraints=attempt,
            )
            logger.info(f"🎥 Local media acquired {attempt.describe()}")
            return handle

        message = str(last_error) if last_error else "No capture device available"
        raise MediaUnavailableError(message) from last_error

    def release(self, handle: Optional[MediaStreamHandle]) -> bool:
        """Stop every track of ``handle``; a missing or empty handle is a no-op."""
        if handle is None:
            return False
        released = handle.release()
        if released and not handle.is_empty:
            logger.debug(f"Released {handle!r}")
        return released

    def set_audio_enabled(self, handle: MediaStreamHandle, enabled: bool) -> bool:
        """Mute or unmute local audio. Returns False if there is no audio track."""
        toggled = handle.set_enabled(MediaKind.AUDIO, enabled)
        if toggled:
            logger.info(f"🎤 Audio {'enabled' if enabled else 'disabled'}")
        return toggled > 0

    def set_video_enabled(self, handle: MediaStreamHandle, enabled: bool) -> bool:
        """Show or hide local video. Returns False if there is no video track."""
        toggled = handle.set_enabled(MediaKind.VIDEO, enabled)
        if toggled:
            logger.info(f"📹 Video {'enabled' if enabled else 'disabled'}")
        return toggled > 0

    # ------------------------------------------------------------------
    # Video source switching
    # ------------------------------------------------------------------

    @staticmethod
    def _video_track(handle: MediaStreamHandle) -> Optional[LocalTrack]:
        for track in handle.video_tracks:
            if isinstance(track, LocalTrack):
                return track
        return None

    async def _open_camera(
        self, handle: MediaStreamHandle, facing_mode: Optional[str]
    ) -> MediaStreamTrack:
        constraints = (handle.constraints or MediaConstraints()).camera_only(facing_mode)
        try:
            tracks = await self.devices.get_user_media(constraints)
        except MediaUnavailableError:
            raise
        except Exception as e:
            raise MediaUnavailableError(f"Failed to open camera: {e}") from e
        return self._single_video(tracks, "No camera found")

    @staticmethod
    def _single_video(tracks: List[MediaStreamTrack], missing: str) -> MediaStreamTrack:
        video = next((t for t in tracks if t.kind == MediaKind.VIDEO.value), None)
        for track in tracks:
            if track is not video:
                track.stop()
        if video is None:
            raise MediaUnavailableError(missing)
        return video

    async def switch_camera(self, handle: MediaStreamHandle) -> Optional[str]:
        """
        Reopen the camera facing the other way (``user`` ↔ ``environment``).

        The previous camera is stopped once the new one is open; if the new
        one cannot be opened the current camera keeps running.

        Returns:
            The new facing mode, or None if there is no video track or the
            handle was released while the camera was opening

        Raises:
            StateConflictError: While the screen is being shared
            MediaUnavailableError: If the other camera cannot be opened
        """
        track = self._video_track(handle)
        if track is None:
            return None
        if track.has_temporary_source:
            raise StateConflictError("Stop screen sharing before switching camera")

        facing_mode = "environment" if track.facing_mode == "user" else "user"
        source = await self._open_camera(handle, facing_mode)
        if handle.released or track.has_temporary_source:
            source.stop()
            return None

        track.replace_source(source)
        track.facing_mode = facing_mode
        logger.info(f"📷 Switched to {facing_mode} camera")
        return facing_mode

    async def start_screen_share(self, handle: MediaStreamHandle) -> bool:
        """
        Send the screen instead of the camera.

        The camera is stopped while sharing. When the screen capture ends on
        its own the camera is reopened automatically.

        Returns:
            False if there is no video track, sharing is already active or
            the handle was released meanwhile

        Raises:
            MediaUnavailableError: If screen capture cannot be opened
        """
        track = self._video_track(handle)
        if track is None or track.has_temporary_source:
            return False

        try:
            tracks = await self.devices.get_display_media()
        except MediaUnavailableError:
            raise
        except Exception as e:
            raise MediaUnavailableError(f"Failed to open screen capture: {e}") from e
        screen = self._single_video(tracks, "Screen capture produced no video")
        if handle.released or track.has_temporary_source:
            screen.stop()
            return False

        track.replace_source(screen, restore=partial(self._open_camera, handle, track.facing_mode))
        logger.info("🖥️ Screen sharing started")
        return True

    async def stop_screen_share(self, handle: MediaStreamHandle) -> bool:
        """
        Switch back from the screen to the camera.

        Returns:
            False if the screen was not being shared (or stopped meanwhile)

        Raises:
            MediaUnavailableError: If the camera cannot be reopened; sharing
                then continues
        """
        track = self._video_track(handle)
        if track is None or not track.has_temporary_source:
            return False

        camera = await self._open_camera(handle, track.facing_mode)
        if handle.released or not track.has_temporary_source:
            camera.stop()
            return False

        track.replace_source(camera)
        logger.info("🖥️ Screen sharing stopped")
        return True


__all__ = [
    "blank_frame",
    "LocalTrack",
    "MediaStreamHandle",
    "MediaDevices",
    "SyntheticMediaDevices",
    "PlayerMediaDevices",
    "MediaAcquisition",
]
