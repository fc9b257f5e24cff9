"""Tests for SessionProxy logic that does not need a running relay."""

import pytest

from xrwall.client import (
    NotRegisteredError,
    RegistrationTimeout,
    SessionError,
    SessionProxy,
    SessionState,
)
from xrwall.network_utils import find_free_port
from xrwall.protocol import Envelope, MessageType, Role, decode_envelope, encode_envelope
from xrwall.types import ControllerState, DimensionReport


class FakeSocket:
    def __init__(self):
        self.sent: list[bytes] = []

    def send(self, data, flags=0):
        self.sent.append(data)


def frame(message_type: MessageType, **payload) -> bytes:
    return encode_envelope(Envelope.create(message_type, **payload))


@pytest.fixture
def proxy():
    return SessionProxy(auto_dispatch=False)


class TestStateChecks:
    def test_initial_state(self, proxy):
        state = proxy.get_state()
        assert state.state is SessionState.DISCONNECTED
        assert state.role is None
        assert state.session_id is None
        assert state.is_registered is False
        assert proxy.server_address == "tcp://localhost:8080"

    def test_send_requires_registration(self, proxy):
        with pytest.raises(NotRegisteredError):
            proxy.send_game_event({"hello": 1})

    def test_report_dimensions_validates_first(self, proxy):
        with pytest.raises(ValueError):
            proxy.report_dimensions(0, 1080)

    def test_register_requires_connection(self, proxy):
        with pytest.raises(SessionError):
            proxy.register(Role.INPUT)

    def test_disconnect_when_disconnected_is_noop(self, proxy):
        closes = []
        proxy.on(MessageType.CLOSE, closes.append)
        proxy.disconnect()
        assert closes == []

    def test_unknown_role_rejected_locally(self, proxy):
        with pytest.raises(ValueError):
            proxy.connect("ADMIN")


class TestInbound:
    def test_registration_success_updates_state(self, proxy):
        proxy._process_frame(
            FakeSocket(),
            frame(MessageType.REGISTRATION_SUCCESS, role="INPUT", sessionID="s-1", message="ok"),
        )
        assert proxy.state is SessionState.REGISTERED
        assert proxy.role is Role.INPUT
        assert proxy.session_id == "s-1"

    def test_registration_error_leaves_connection_open(self, proxy):
        proxy._state = SessionState.CONNECTING
        proxy._process_frame(
            FakeSocket(),
            frame(MessageType.REGISTRATION_ERROR, message="Display client already registered"),
        )
        assert proxy.state is SessionState.CONNECTED
        assert proxy.role is None

    def test_role_filter(self, proxy):
        proxy._role = Role.INPUT
        states, dimensions = [], []
        proxy.on(MessageType.CONTROLLER_STATE, states.append)
        proxy.on(MessageType.DISPLAY_CALIBRATION, dimensions.append)

        proxy._deliver(
            Envelope.create(MessageType.CONTROLLER_STATE, deviceID="r", onDisplay=False)
        )
        proxy._deliver(
            Envelope.create(MessageType.DISPLAY_CALIBRATION, screenWidth=1920, screenHeight=1080)
        )
        proxy.dispatch_pending_events()

        assert states == []
        assert dimensions == [DimensionReport(1920.0, 1080.0)]

    def test_typed_payload_for_display(self, proxy):
        proxy._role = Role.DISPLAY
        states = []
        proxy.on(MessageType.CONTROLLER_STATE, states.append)

        proxy._deliver(
            Envelope.create(
                MessageType.CONTROLLER_STATE,
                deviceID="r",
                onDisplay=True,
                canvasX=1.0,
                canvasY=2.0,
                ownerSessionID="s-2",
            )
        )
        proxy.dispatch_pending_events()

        assert isinstance(states[0], ControllerState)
        assert states[0].owner_session_id == "s-2"

    def test_no_handler_is_silent(self, proxy):
        proxy._role = Role.DISPLAY
        proxy._deliver(Envelope.create(MessageType.NEW_CLIENT, role="INPUT", sessionID="x"))
        assert proxy.get_stats()["pending_events"] == 0

    def test_malformed_typed_payload_dropped(self, proxy):
        proxy._role = Role.INPUT
        calls = []
        proxy.on(MessageType.DISPLAY_CALIBRATION, calls.append)
        proxy._deliver(Envelope.create(MessageType.DISPLAY_CALIBRATION, screenWidth=-1))
        proxy.dispatch_pending_events()
        assert calls == []

    def test_malformed_frame_answered_with_error(self, proxy):
        sock = FakeSocket()
        proxy._process_frame(sock, b"not json")
        reply = decode_envelope(sock.sent[0])
        assert reply.type is MessageType.ERROR
        assert reply.get("message") == "Invalid JSON format"

    def test_relay_error_delivered(self, proxy):
        errors = []
        proxy.on(MessageType.ERROR, errors.append)
        proxy._process_frame(FakeSocket(), frame(MessageType.ERROR, message="Client is not registered"))
        proxy.dispatch_pending_events()
        assert errors == ["Client is not registered"]
        assert proxy.get_stats()["errors_received"] == 1

    def test_remote_close_acks_and_notifies(self, proxy):
        proxy._state = SessionState.REGISTERED
        proxy._role = Role.INPUT
        closes = []
        proxy.on(MessageType.CLOSE, closes.append)
        sock = FakeSocket()

        proxy._process_frame(sock, frame(MessageType.CLOSE, message="Relay shutting down"))
        proxy.dispatch_pending_events()

        assert decode_envelope(sock.sent[0]).type is MessageType.CLOSE
        assert proxy.state is SessionState.DISCONNECTED
        assert proxy.role is None
        assert closes == ["Relay shutting down"]


class TestDispatch:
    def test_pull_dispatch_respects_max_items(self, proxy):
        seen = []
        proxy.on(MessageType.GAME_EVENT, seen.append)
        for i in range(5):
            proxy._deliver(Envelope.create(MessageType.GAME_EVENT, payload=i))

        assert proxy.dispatch_pending_events(max_items=2) == 2
        assert proxy.dispatch_pending_events() == 3
        assert [event.payload for event in seen] == [0, 1, 2, 3, 4]

    def test_full_event_queue_drops_oldest(self):
        proxy = SessionProxy(auto_dispatch=False, queue_max=2)
        seen = []
        proxy.on(MessageType.GAME_EVENT, seen.append)
        for i in range(3):
            proxy._deliver(Envelope.create(MessageType.GAME_EVENT, payload=i))

        proxy.dispatch_pending_events()
        assert [event.payload for event in seen] == [1, 2]
        assert proxy.get_stats()["dropped_events"] == 1

    def test_auto_dispatch_invokes_immediately(self):
        proxy = SessionProxy(auto_dispatch=True)
        seen = []
        proxy.on(MessageType.GAME_EVENT, seen.append)
        proxy._deliver(Envelope.create(MessageType.GAME_EVENT, payload="now"))
        assert seen[0].payload == "now"
        assert proxy.dispatch_pending_events() == 0

    def test_unsubscribe(self, proxy):
        seen = []
        unsubscribe = proxy.on(MessageType.GAME_EVENT, seen.append)
        unsubscribe()
        proxy._deliver(Envelope.create(MessageType.GAME_EVENT, payload=1))
        proxy.dispatch_pending_events()
        assert seen == []


def test_registration_timeout_closes_connection():
    proxy = SessionProxy(port=find_free_port())
    closes = []
    proxy.on(MessageType.CLOSE, closes.append)

    with pytest.raises(RegistrationTimeout):
        proxy.connect(Role.INPUT, timeout=0.2)

    assert proxy.state is SessionState.DISCONNECTED
    # Timeout is reported by the exception, not by a CLOSE event
    assert closes == []
    with pytest.raises(NotRegisteredError):
        proxy.send_game_event(1)
