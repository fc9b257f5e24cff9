"""
End-to-end relay tests driven through SessionProxy instances and, where a
misbehaving peer is needed, raw DEALER sockets.
"""

import pytest

from xrwall.calibration import CalibrationCoordinator, CalibrationState
from xrwall.client import RegistrationError, SessionState
from xrwall.protocol import MessageType, Role
from xrwall.publisher import ControllerStatePublisher
from xrwall.types import ResolvedHit

from .helpers import RawPeer, wait_until


def test_display_and_input_round_trip(relay, make_proxy):
    display = make_proxy()
    joined, commits, states, events = [], [], [], []
    display.on(MessageType.NEW_CLIENT, joined.append)
    display.on(MessageType.CALIBRATION_COMMIT, commits.append)
    display.on(MessageType.CONTROLLER_STATE, states.append)
    display.on(MessageType.GAME_EVENT, events.append)

    display.connect(Role.DISPLAY)
    display.report_dimensions(1920, 1080)

    player = make_proxy()
    coordinator = CalibrationCoordinator()
    coordinator.attach(player)
    publisher = ControllerStatePublisher(coordinator, player.send)
    result = player.connect(Role.INPUT)

    # Cached dimensions arrive right after registration
    assert wait_until(lambda: coordinator.state is CalibrationState.EDITING)
    assert coordinator.aspect_ratio == pytest.approx(16 / 9)
    assert wait_until(lambda: len(joined) == 1)
    assert joined[0].session_id == result.session_id

    snapshot = coordinator.commit()
    assert wait_until(lambda: len(commits) == 1)
    assert commits[0].owner_session_id == result.session_id
    # Field-for-field equal to what was sent, corners not swapped
    assert commits[0].top_left == snapshot.top_left
    assert commits[0].bottom_right == snapshot.bottom_right
    assert commits[0].width_meters == snapshot.width_meters
    assert commits[0].height_meters == snapshot.height_meters

    publisher.publish("right", ResolvedHit(True, 0.25, 0.75), buttons={"trigger": 1.0})
    assert wait_until(lambda: len(states) == 1)
    assert (states[0].canvas_x, states[0].canvas_y) == (480.0, 270.0)
    assert states[0].owner_session_id == result.session_id

    player.send_game_event({"goal": True})
    assert wait_until(lambda: len(events) == 1)
    assert events[0].payload == {"goal": True}
    assert events[0].sender_session_id == result.session_id

    lost = []
    player.on(MessageType.DISPLAY_DISCONNECTED, lost.append)
    display.disconnect()
    assert wait_until(lambda: lost == ["Display client disconnected"])
    assert coordinator.state is CalibrationState.AWAITING_DIMENSIONS


def test_second_display_refused(relay, make_proxy):
    first = make_proxy()
    first.connect(Role.DISPLAY)

    second = make_proxy()
    with pytest.raises(RegistrationError, match="Display client already registered"):
        second.connect(Role.DISPLAY)

    # Connection stays open; another role can be requested
    assert second.state is SessionState.CONNECTED
    assert second.register(Role.OBSERVER).role is Role.OBSERVER
    assert relay.registry.display.session_id == first.session_id


def test_display_slot_freed_on_disconnect(relay, make_proxy):
    first = make_proxy()
    first.connect(Role.DISPLAY)
    first.disconnect()
    assert wait_until(lambda: relay.registry.display is None)

    second = make_proxy()
    assert second.connect(Role.DISPLAY).role is Role.DISPLAY


def test_silent_connection_expires(relay, make_proxy):
    display = make_proxy()
    left = []
    display.on(MessageType.CLIENT_DISCONNECTED, left.append)
    display.connect(Role.DISPLAY)

    peer = RawPeer(relay.config.port)
    try:
        peer.send(MessageType.REGISTER_CLIENT, role="INPUT")
        reply = peer.recv()
        assert reply.type is MessageType.REGISTRATION_SUCCESS

        # No heartbeats from the raw peer
        assert wait_until(lambda: len(left) == 1, timeout=4.0)
        assert left[0].session_id == reply.get("sessionID")
        assert relay.timeout_count >= 1
    finally:
        peer.close()

    # The proxy kept heartbeating and is still registered
    assert display.is_registered


def test_raw_peer_errors(relay):
    peer = RawPeer(relay.config.port)
    try:
        peer.socket.send(b"{broken")
        assert peer.recv().get("message") == "Invalid JSON format"

        peer.send(MessageType.GAME_EVENT, payload=1)
        assert peer.recv().get("message") == "Client is not registered"
    finally:
        peer.close()


def test_shutdown_drains_connected_proxy(relay, make_proxy):
    player = make_proxy()
    closes = []
    player.on(MessageType.CLOSE, closes.append)
    player.connect(Role.INPUT)

    assert relay.stop() is True
    assert wait_until(lambda: closes == ["Relay shutting down"])
    assert player.state is SessionState.DISCONNECTED


def test_shutdown_reports_unacknowledged_close(relay):
    peer = RawPeer(relay.config.port)
    try:
        peer.send(MessageType.REGISTER_CLIENT, role="OBSERVER")
        assert peer.recv().type is MessageType.REGISTRATION_SUCCESS

        # The raw peer never answers the relay's CLOSE
        assert relay.stop() is False
    finally:
        peer.close()
