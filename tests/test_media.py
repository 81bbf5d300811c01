"""Tests for local media acquisition"""

import asyncio
import fractions

import pytest
from aiortc.mediastreams import AudioStreamTrack
from av import AudioFrame, VideoFrame

from callx import (
    LocalTrack,
    MediaAcquisition,
    MediaConstraints,
    MediaKind,
    MediaStreamHandle,
    MediaUnavailableError,
    StateConflictError,
    SyntheticMediaDevices,
)
from callx._media import blank_frame
from conftest import CameraLessDevices


@pytest.mark.asyncio
async def test_acquire_audio_and_video():
    """Test the first rung succeeds with both kinds"""
    media = MediaAcquisition(SyntheticMediaDevices())

    handle = await media.acquire(MediaConstraints())

    assert handle.has_audio and handle.has_video
    assert all(isinstance(track, LocalTrack) for track in handle.tracks)
    assert handle.constraints.video is True
    media.release(handle)


@pytest.mark.asyncio
async def test_fallback_to_audio_only():
    """Test a missing camera degrades to audio-only"""
    devices = CameraLessDevices()
    media = MediaAcquisition(devices)

    handle = await media.acquire(MediaConstraints())

    assert [c.video for c in devices.requests] == [True, False]
    assert handle.has_audio and not handle.has_video
    assert handle.constraints.video is False
    media.release(handle)


@pytest.mark.asyncio
async def test_no_devices_raises_after_two_attempts():
    """Test the ladder stops after audio-only fails"""
    devices = SyntheticMediaDevices(permission_granted=False)
    media = MediaAcquisition(devices)

    with pytest.raises(MediaUnavailableError, match="permission"):
        await media.acquire(MediaConstraints())


@pytest.mark.asyncio
async def test_audio_only_request_single_attempt():
    """Test an audio-only request is not retried"""
    devices = CameraLessDevices()
    media = MediaAcquisition(devices)

    handle = await media.acquire(MediaConstraints(video=False))

    assert len(devices.requests) == 1
    assert not handle.has_video


@pytest.mark.asyncio
async def test_nothing_requested():
    """Test an empty request is rejected"""
    with pytest.raises(MediaUnavailableError):
        await MediaAcquisition().acquire(MediaConstraints(audio=False, video=False))


def test_fallback_ladder():
    """Test ladder rungs"""
    ladder = MediaAcquisition.fallback_ladder(MediaConstraints())
    assert [(c.video, c.audio) for c in ladder] == [(True, True), (False, True)]
    assert len(MediaAcquisition.fallback_ladder(MediaConstraints(video=False))) == 1


@pytest.mark.asyncio
async def test_release_is_idempotent():
    """Test release stops tracks once"""
    media = MediaAcquisition()
    handle = await media.acquire()

    assert media.release(handle) is True
    assert media.release(handle) is False
    assert handle.released
    assert all(track.readyState == "ended" for track in handle.tracks)


def test_release_none_and_empty():
    """Test releasing nothing is a no-op"""
    media = MediaAcquisition()
    assert media.release(None) is False
    assert media.release(MediaStreamHandle()) is True


@pytest.mark.asyncio
async def test_toggle_tracks():
    """Test enabling and disabling local tracks"""
    media = MediaAcquisition()
    handle = await media.acquire()

    assert media.set_audio_enabled(handle, False) is True
    assert not handle.is_enabled(MediaKind.AUDIO)
    assert handle.is_enabled(MediaKind.VIDEO)

    assert media.set_video_enabled(handle, False) is True
    assert not handle.is_enabled(MediaKind.VIDEO)
    media.release(handle)


@pytest.mark.asyncio
async def test_toggle_missing_kind():
    """Test toggling video on an audio-only stream"""
    media = MediaAcquisition()
    handle = await media.acquire(MediaConstraints(video=False))
    assert media.set_video_enabled(handle, False) is False
    media.release(handle)


@pytest.mark.asyncio
async def test_disabled_track_sends_blank_frames():
    """Test a disabled audio track keeps timing but goes silent"""
    media = MediaAcquisition()
    handle = await media.acquire(MediaConstraints(video=False))
    track = handle.audio_tracks[0]

    track.enabled = False
    frame = await track.recv()

    assert isinstance(frame, AudioFrame)
    assert not any(bytes(frame.planes[0]))
    media.release(handle)


def test_blank_video_frame():
    """Test blank video frames are black and keep timing"""
    source = VideoFrame(width=64, height=48, format="yuv420p")
    source.pts = 3000
    source.time_base = fractions.Fraction(1, 90000)

    blank = blank_frame(source)

    assert (blank.width, blank.height) == (64, 48)
    assert blank.pts == 3000
    assert blank.time_base == fractions.Fraction(1, 90000)
    assert not any(bytes(blank.planes[0]))


def test_add_track_deduplicates():
    """Test remote tracks are only added once"""
    handle = MediaStreamHandle(label="remote")
    track = LocalTrack(AudioStreamTrack())

    assert handle.add_track(track) is True
    assert handle.add_track(track) is False
    assert len(handle.tracks) == 1

    handle.release()
    with pytest.raises(RuntimeError):
        handle.add_track(LocalTrack(AudioStreamTrack()))


# ============================================================================
# Camera switching and screen sharing
# ============================================================================


class GatedCameraDevices(SyntheticMediaDevices):
    """Holds camera reopening (video-only requests) until ``gate`` is set."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.gate = asyncio.Event()
        self.opened = []

    async def get_user_media(self, constraints):
        tracks = await super().get_user_media(constraints)
        if not constraints.audio:
            await self.gate.wait()
        self.opened.extend(tracks)
        return tracks


@pytest.mark.asyncio
async def test_switch_camera_flips_facing_mode():
    """Test the camera source is replaced and the old one stopped"""
    media = MediaAcquisition()
    handle = await media.acquire()
    video = handle.video_tracks[0]
    front = video.source

    assert await media.switch_camera(handle) == "environment"
    assert video.source is not front
    assert front.readyState == "ended"
    assert video.readyState == "live"
    assert video.facing_mode == "environment"

    assert await media.switch_camera(handle) == "user"
    media.release(handle)


@pytest.mark.asyncio
async def test_switch_camera_without_rear_camera():
    """Test a failed switch keeps the current camera running"""
    media = MediaAcquisition(SyntheticMediaDevices(facing_modes=("user",)))
    handle = await media.acquire()
    video = handle.video_tracks[0]
    front = video.source

    with pytest.raises(MediaUnavailableError, match="environment"):
        await media.switch_camera(handle)

    assert video.source is front
    assert front.readyState == "live"
    assert video.facing_mode == "user"
    media.release(handle)


@pytest.mark.asyncio
async def test_switch_camera_audio_only():
    """Test switching without a video track does nothing"""
    media = MediaAcquisition()
    handle = await media.acquire(MediaConstraints(video=False))

    assert await media.switch_camera(handle) is None
    assert await media.start_screen_share(handle) is False
    media.release(handle)


@pytest.mark.asyncio
async def test_camera_opened_after_release_is_stopped():
    """Test a camera that opens after the call ended is not leaked"""
    devices = GatedCameraDevices()
    media = MediaAcquisition(devices)
    handle = await media.acquire()

    switching = asyncio.ensure_future(media.switch_camera(handle))
    await asyncio.sleep(0)
    media.release(handle)
    devices.gate.set()

    assert await switching is None
    assert devices.opened[-1].readyState == "ended"


@pytest.mark.asyncio
async def test_screen_share_round_trip():
    """Test sharing replaces the camera and stopping brings it back"""
    media = MediaAcquisition()
    handle = await media.acquire()
    video = handle.video_tracks[0]
    camera = video.source

    assert await media.start_screen_share(handle) is True
    screen = video.source
    assert handle.is_screen_sharing
    assert camera.readyState == "ended"
    assert await media.start_screen_share(handle) is False
    with pytest.raises(StateConflictError):
        await media.switch_camera(handle)

    assert await media.stop_screen_share(handle) is True
    assert not handle.is_screen_sharing
    assert screen.readyState == "ended"
    assert video.source.readyState == "live"
    assert video.facing_mode == "user"
    assert await media.stop_screen_share(handle) is False
    media.release(handle)


@pytest.mark.asyncio
async def test_screen_share_unsupported():
    """Test a platform without screen capture keeps the camera"""
    media = MediaAcquisition(SyntheticMediaDevices(has_screen=False))
    handle = await media.acquire()
    camera = handle.video_tracks[0].source

    with pytest.raises(MediaUnavailableError, match="not supported"):
        await media.start_screen_share(handle)

    assert handle.video_tracks[0].source is camera
    assert camera.readyState == "live"
    media.release(handle)


@pytest.mark.asyncio
async def test_screen_capture_ending_restores_camera():
    """Test the camera comes back when the screen capture stops by itself"""
    media = MediaAcquisition()
    handle = await media.acquire()
    video = handle.video_tracks[0]
    await media.start_screen_share(handle)
    screen = video.source

    screen.stop()
    frame = await video.recv()

    assert isinstance(frame, VideoFrame)
    assert not handle.is_screen_sharing
    assert video.source is not screen
    assert video.source.readyState == "live"
    media.release(handle)


@pytest.mark.asyncio
async def test_release_while_sharing_stops_screen():
    """Test release stops the screen capture source"""
    media = MediaAcquisition()
    handle = await media.acquire()
    await media.start_screen_share(handle)
    screen = handle.video_tracks[0].source

    media.release(handle)

    assert screen.readyState == "ended"
    assert not handle.is_screen_sharing
