"""Tests for the loopback demo helpers"""

import asyncio
import logging

import pytest

from callx import CallRole, CallSession, CallState, NegotiationRole
from callx.demo import DemoEvents
from conftest import settle


class StubController:
    def __init__(self, fail=False):
        self.gate = asyncio.Event()
        self.fail = fail

    async def accept_call(self):
        await self.gate.wait()
        if self.fail:
            raise RuntimeError("no camera")


def ringing_session():
    session = CallSession(
        call_id="call-1",
        local_user_id="bob",
        remote_user_id="alice",
        role=CallRole.RESPONDER,
        negotiation_role=NegotiationRole.RESPONDER,
        state=CallState.RINGING,
    )
    session.metadata["remote_video"] = True
    return session


@pytest.mark.asyncio
async def test_auto_answer_task_is_kept_until_done():
    """Test the answering task is referenced while it runs"""
    events = DemoEvents("bob", auto_answer=True)
    events.controller = StubController()

    events.on_ringing(ringing_session())
    assert len(events._tasks) == 1

    events.controller.gate.set()
    await settle()
    assert events._tasks == set()


@pytest.mark.asyncio
async def test_auto_answer_failure_is_logged(caplog):
    """Test a failing answer is collected and logged"""
    events = DemoEvents("bob", auto_answer=True)
    events.controller = StubController(fail=True)
    events.controller.gate.set()

    with caplog.at_level(logging.ERROR):
        events.on_ringing(ringing_session())
        await settle()

    assert events._tasks == set()
    assert "answering failed: no camera" in caplog.text
