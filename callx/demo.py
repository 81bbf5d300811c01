"""Command-line demo running two call controllers over an in-process relay.

Alice calls Bob (or both join a matchmaking room), the peers negotiate a real
aiortc session over loopback with synthetic media, stay connected for a few
seconds and hang up. It is intended for manual experimentation rather than
automated testing.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import uuid
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import (
    CallConfig,
    CallEvents,
    CallSession,
    CallSessionController,
    CallState,
    ErrorKind,
    MatchSeed,
    MediaAcquisition,
    MediaKind,
    MediaStreamHandle,
    MemoryRelayHub,
    SyntheticMediaDevices,
    event_handler,
)


CONSOLE = Console()


class DemoEvents(CallEvents):
    """Prints lifecycle events for one participant."""

    def __init__(self, name: str, *, auto_answer: Optional[bool] = None) -> None:
        super().__init__()
        self.name = name
        self.auto_answer = auto_answer
        self.controller: Optional[CallSessionController] = None
        self.connected = asyncio.Event()
        self.finished = asyncio.Event()
        self.final_state: Optional[CallState] = None
        self._tasks: set[asyncio.Task] = set()

    def on_state_changed(self, state: CallState, session: CallSession) -> None:
        logging.info(f"[bold]{self.name}[/]: {state.value}", extra={"markup": True})
        if state.is_terminal:
            self.final_state = state
            self.finished.set()

    @event_handler(CallState.RINGING)
    def on_ringing(self, session: CallSession) -> None:
        kind = "video" if session.metadata.get("remote_video") else "audio"
        CONSOLE.print(f"📞 {self.name}: incoming {kind} call from {session.remote_user_id}")
        if self.controller is None or self.auto_answer is None:
            return
        loop = asyncio.get_running_loop()
        if self.auto_answer:
            task = loop.create_task(self.controller.accept_call())
            self._tasks.add(task)
            task.add_done_callback(self._answer_done)
        else:
            loop.call_soon(self.controller.decline_call)

    def _answer_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logging.error(f"{self.name}: answering failed: {task.exception()}")

    @event_handler(CallState.CONNECTED)
    def on_connected(self, session: CallSession) -> None:
        self.connected.set()

    def on_local_stream(self, handle: MediaStreamHandle) -> None:
        logging.info(f"{self.name}: local stream {handle!r}")

    def on_remote_stream(self, handle: MediaStreamHandle) -> None:
        logging.info(f"{self.name}: remote stream {handle!r}")

    def on_error(self, kind: ErrorKind, message: str) -> None:
        logging.error(f"{self.name}: {kind.value}: {message}")

    def on_remote_media_toggled(self, kind: MediaKind, value: bool) -> None:
        label = "muted" if kind == MediaKind.AUDIO else "video off"
        logging.info(f"{self.name}: peer {label}={value}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a loopback call between two peers")
    parser.add_argument(
        "mode",
        nargs="?",
        choices={"call", "room"},
        default="call",
        help="Direct call with ringing, or a matchmaking room",
    )
    parser.add_argument("--caller", default="alice", help="Caller user id")
    parser.add_argument("--callee", default="bob", help="Callee user id")
    parser.add_argument(
        "--decline",
        action="store_true",
        help="Have the callee decline instead of answering",
    )
    parser.add_argument(
        "--no-answer",
        action="store_true",
        help="Let the call ring until the ring timeout",
    )
    parser.add_argument(
        "--no-camera",
        action="store_true",
        help="Simulate a caller without a camera (audio-only fallback)",
    )
    parser.add_argument(
        "--ring-timeout",
        type=float,
        default=5.0,
        help="Seconds to ring before giving up",
    )
    parser.add_argument(
        "--connect-timeout",
        type=float,
        default=15.0,
        help="Seconds allowed for negotiation",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=3.0,
        help="Seconds to stay connected before hanging up",
    )
    parser.add_argument(
        "--wire",
        action="store_true",
        help="Round-trip every envelope through the JSON codec",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices={"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"},
        help="Logging verbosity",
    )
    return parser


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[
            RichHandler(
                console=CONSOLE,
                rich_tracebacks=True,
                show_path=False,
                show_time=False,
            )
        ],
        force=True,
    )
    # aioice/aiortc are chatty at INFO
    logging.getLogger("aioice").setLevel(logging.WARNING)
    logging.getLogger("aiortc").setLevel(logging.WARNING)


def _summary(
    caller: CallSessionController, callee: CallSessionController
) -> Table:
    table = Table(title="Call summary", show_header=True, header_style="bold cyan")
    table.add_column("Peer")
    table.add_column("Role")
    table.add_column("Final state")
    table.add_column("Reason")
    table.add_column("Connected for")
    for controller in (caller, callee):
        session = controller.session
        if session is None:
            table.add_row(controller.local_user_id, "-", "idle", "-", "-")
            continue
        duration = session.duration
        table.add_row(
            controller.local_user_id,
            session.negotiation_role.value,
            session.state.value,
            session.end_reason or "-",
            f"{duration:.1f}s" if duration is not None else "-",
        )
    return table


async def _run_demo(args: argparse.Namespace) -> int:
    _configure_logging(args.log_level)

    hub = MemoryRelayHub(wire=args.wire)
    config = CallConfig(
        ring_timeout=args.ring_timeout,
        connect_timeout=args.connect_timeout,
    )

    auto_answer: Optional[bool] = None if args.no_answer else not args.decline
    caller_events = DemoEvents(args.caller)
    callee_events = DemoEvents(args.callee, auto_answer=auto_answer)

    caller = CallSessionController(
        args.caller,
        hub.endpoint(args.caller),
        media=MediaAcquisition(SyntheticMediaDevices(has_camera=not args.no_camera)),
        events=caller_events,
        config=config,
    )
    callee = CallSessionController(
        args.callee,
        hub.endpoint(args.callee),
        events=callee_events,
        config=config,
    )
    callee_events.controller = callee

    CONSOLE.print(
        Panel.fit(
            f"{args.caller} → {args.callee} ({args.mode})",
            title="callx loopback demo",
            border_style="cyan",
        )
    )

    async with caller, callee:
        if args.mode == "room":
            seed_id = str(uuid.uuid4())
            await asyncio.gather(
                caller.join_room(MatchSeed(seed_id, args.callee)),
                callee.join_room(MatchSeed(seed_id, args.caller)),
            )
        else:
            await caller.initiate_call(args.callee)

        connected = asyncio.create_task(caller_events.connected.wait())
        finished = asyncio.create_task(caller_events.finished.wait())
        await asyncio.wait(
            {connected, finished},
            timeout=args.ring_timeout + args.connect_timeout + 1.0,
            return_when=asyncio.FIRST_COMPLETED,
        )
        connected.cancel()
        finished.cancel()

        if caller.state == CallState.CONNECTED:
            await asyncio.sleep(args.duration / 2)
            caller.set_audio_enabled(False)
            await asyncio.sleep(args.duration / 2)
            await caller.end_call()
        elif caller.is_busy:
            logging.warning("Call did not settle in time, hanging up")
            await caller.end_call()

        await asyncio.sleep(0.1)

    CONSOLE.print(_summary(caller, callee))
    return 0 if caller_events.final_state == CallState.ENDED else 1


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        return asyncio.run(_run_demo(args))
    except KeyboardInterrupt:
        CONSOLE.print("[yellow]Interrupted[/]")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
