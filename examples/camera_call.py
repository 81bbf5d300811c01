"""
Loopback call with real capture devices.

Alice captures from the local camera and microphone through ffmpeg; Bob uses
synthetic media and records what he receives to an MP4 file. Both peers run
in one process and talk over a MemoryRelayHub, so this exercises the whole
signaling path plus a real aiortc ICE/DTLS session.

    python examples/camera_call.py --seconds 10 --output received.mp4
    python examples/camera_call.py --video-format avfoundation --video-device "0:none"
"""

from __future__ import annotations

import argparse
import asyncio
from typing import Optional

from aiortc.contrib.media import MediaRecorder
from rich.console import Console

from callx import (
    CallEvents,
    CallSession,
    CallSessionController,
    CallState,
    MediaAcquisition,
    MediaStreamHandle,
    MemoryRelayHub,
    PlayerMediaDevices,
    event_handler,
)

console = Console()


class Recorder(CallEvents):
    """Answers every call and records the remote tracks."""

    def __init__(self, path: str) -> None:
        super().__init__()
        self.recorder = MediaRecorder(path)
        self.controller: Optional[CallSessionController] = None
        self._recorded: set[str] = set()
        self.connected = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()

    def _run(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._done)

    def _done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            console.print(f"[red]{task.exception()}[/]")

    @event_handler(CallState.RINGING)
    def on_ringing(self, session: CallSession) -> None:
        self._run(self.controller.accept_call())

    @event_handler(CallState.CONNECTED)
    def on_connected(self, session: CallSession) -> None:
        self._run(self.recorder.start())
        self.connected.set()

    def on_remote_stream(self, handle: MediaStreamHandle) -> None:
        for track in handle.tracks:
            if track.id not in self._recorded:
                self._recorded.add(track.id)
                self.recorder.addTrack(track)


async def run(args: argparse.Namespace) -> None:
    hub = MemoryRelayHub()
    devices = PlayerMediaDevices(
        video_device=args.video_device,
        video_format=args.video_format,
        audio_device=args.audio_device,
        audio_format=args.audio_format,
    )
    recorder = Recorder(args.output)

    async with CallSessionController(
        "alice", hub.endpoint("alice"), media=MediaAcquisition(devices)
    ) as alice, CallSessionController(
        "bob", hub.endpoint("bob"), events=recorder
    ) as bob:
        recorder.controller = bob

        session = await alice.initiate_call("bob")
        if session.state != CallState.CALLING:
            console.print(f"[red]Call could not start: {session.state.value}[/]")
            return

        await asyncio.wait_for(recorder.connected.wait(), timeout=30)
        console.print(f"[green]Connected[/], recording {args.seconds}s to {args.output}")
        await asyncio.sleep(args.seconds)
        await alice.end_call()
        await recorder.recorder.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Record a loopback call from real devices")
    parser.add_argument("--video-device", default="/dev/video0")
    parser.add_argument("--video-format", default="v4l2")
    parser.add_argument("--audio-device", default="default")
    parser.add_argument("--audio-format", default="pulse")
    parser.add_argument("--seconds", type=float, default=5.0)
    parser.add_argument("--output", default="received.mp4")
    asyncio.run(run(parser.parse_args()))


if __name__ == "__main__":
    main()
