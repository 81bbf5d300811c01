"""Tests for the presentation event contract"""

from callx import (
    CallEvents,
    CallRole,
    CallSession,
    CallState,
    ErrorKind,
    NegotiationRole,
    event_handler,
)


def make_session():
    return CallSession(
        call_id="call-1",
        local_user_id="alice",
        remote_user_id="bob",
        role=CallRole.INITIATOR,
        negotiation_role=NegotiationRole.OFFERER,
    )


class StateHooks(CallEvents):
    def __init__(self):
        super().__init__()
        self.seen = []

    @event_handler(CallState.CONNECTED)
    def on_connected(self, session):
        self.seen.append(("connected", session.call_id))

    @event_handler((CallState.DECLINED, CallState.TIMED_OUT))
    def on_missed(self, session):
        self.seen.append(("missed", session.call_id))

    @event_handler()
    def on_any(self, session):
        self.seen.append(("any", session.state))


def test_state_handlers_are_filtered():
    """Test decorated handlers only see their states"""
    events = StateHooks()
    session = make_session()

    session.state = CallState.CONNECTED
    events._emit_state_changed(CallState.CONNECTED, session)
    session.state = CallState.TIMED_OUT
    events._emit_state_changed(CallState.TIMED_OUT, session)

    assert ("connected", "call-1") in events.seen
    assert ("missed", "call-1") in events.seen
    assert ("any", CallState.CONNECTED) in events.seen
    assert len(events.seen) == 4


def test_callback_errors_are_contained():
    """Test a raising callback never propagates"""

    class Broken(CallEvents):
        def on_error(self, kind, message):
            raise RuntimeError("ui crashed")

        def on_state_changed(self, state, session):
            raise RuntimeError("ui crashed")

    events = Broken()
    events._emit_error(ErrorKind.MEDIA_UNAVAILABLE, "no camera")
    events._emit_state_changed(CallState.ENDED, make_session())


def test_subclass_without_super_init():
    """Test subclasses that skip CallEvents.__init__ still dispatch"""

    class Bare(CallEvents):
        def __init__(self):
            self.states = []

        def on_state_changed(self, state, session):
            self.states.append(state)

    events = Bare()
    events._emit_state_changed(CallState.RINGING, make_session())
    assert events.states == [CallState.RINGING]


def test_properties_are_not_evaluated_during_discovery():
    """Test a property reading state set after super().__init__() is safe"""

    class WithProperty(CallEvents):
        def __init__(self):
            super().__init__()
            self.states = []

        @property
        def last_state(self):
            return self.states[-1]

        @event_handler(CallState.RINGING)
        def on_ringing(self, session):
            self.states.append(session.state)

    events = WithProperty()
    session = make_session()
    session.state = CallState.RINGING
    events._emit_state_changed(CallState.RINGING, session)

    assert events.last_state == CallState.RINGING
    assert len(events._handlers) == 1
