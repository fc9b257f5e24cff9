"""
Adapters for converting between snake_case Python types and camelCase wire payloads.

The ``*_from_wire`` functions double as payload validation: anything the relay
or a client cannot interpret raises :class:`~xrwall.protocol.ProtocolError`,
which the relay turns into an ``ERROR`` reply.
"""

import math
from collections.abc import Callable
from typing import Any

from .protocol import Envelope, MessageType, ProtocolError, Role
from .types import (
    CalibrationSnapshot,
    ClientInfo,
    ControllerState,
    DimensionReport,
    GameEvent,
    Vec3,
)


def _number(payload: dict[str, Any], key: str) -> float:
    value = payload.get(key)
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolError(f"'{key}' must be a number")
    try:
        number = float(value)
    except OverflowError:
        raise ProtocolError(f"'{key}' is out of range") from None
    if not math.isfinite(number):
        raise ProtocolError(f"'{key}' must be finite")
    return number


def _text(payload: dict[str, Any], key: str, optional: bool = False) -> str | None:
    value = payload.get(key)
    if value is None and optional:
        return None
    if not isinstance(value, str) or not value:
        raise ProtocolError(f"'{key}' must be a non-empty string")
    return value


def _vec3(payload: dict[str, Any], key: str) -> Vec3:
    value = payload.get(key)
    if not isinstance(value, (list, tuple)) or len(value) != 3:
        raise ProtocolError(f"'{key}' must be a list of 3 numbers")
    for component in value:
        if isinstance(component, bool) or not isinstance(component, (int, float)):
            raise ProtocolError(f"'{key}' must be a list of 3 numbers")
    try:
        vec = Vec3.from_iterable(value)
    except OverflowError:
        raise ProtocolError(f"'{key}' is out of range") from None
    if not vec.is_finite():
        raise ProtocolError(f"'{key}' must hold finite numbers")
    return vec


def _value_map(payload: dict[str, Any], key: str) -> dict[str, float]:
    value = payload.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ProtocolError(f"'{key}' must be an object")
    result: dict[str, float] = {}
    for name in value:
        result[str(name)] = _number(value, name)
    return result


def role_from_wire(value: Any) -> Role:
    """Parse the ``role`` field of ``REGISTER_CLIENT``."""
    if value is None:
        raise ProtocolError("Client role is required")
    try:
        return Role(value)
    except ValueError:
        raise ProtocolError(f"Unknown client role: {value}") from None


def client_info_to_wire(info: ClientInfo) -> dict[str, Any]:
    return {"role": info.role.value, "sessionID": info.session_id}


def client_info_from_wire(payload: dict[str, Any]) -> ClientInfo:
    return ClientInfo(
        role=role_from_wire(payload.get("role")),
        session_id=_text(payload, "sessionID"),
    )


def dimension_report_to_wire(report: DimensionReport) -> dict[str, Any]:
    return {
        "screenWidth": report.screen_width,
        "screenHeight": report.screen_height,
        "aspectRatio": report.aspect_ratio,
    }


def dimension_report_from_wire(payload: dict[str, Any]) -> DimensionReport:
    """Validate a dimension report. ``aspectRatio`` is recomputed, never trusted."""
    width = _number(payload, "screenWidth")
    height = _number(payload, "screenHeight")
    if width <= 0 or height <= 0:
        raise ProtocolError("Screen dimensions must be positive")
    return DimensionReport(screen_width=width, screen_height=height)


def snapshot_to_wire(snapshot: CalibrationSnapshot) -> dict[str, Any]:
    result = {
        "topLeftCorner": snapshot.top_left.as_list(),
        "bottomRightCorner": snapshot.bottom_right.as_list(),
        "widthMeters": snapshot.width_meters,
        "heightMeters": snapshot.height_meters,
    }
    if snapshot.owner_session_id is not None:
        result["ownerSessionID"] = snapshot.owner_session_id
    return result


def snapshot_from_wire(payload: dict[str, Any]) -> CalibrationSnapshot:
    return CalibrationSnapshot(
        top_left=_vec3(payload, "topLeftCorner"),
        bottom_right=_vec3(payload, "bottomRightCorner"),
        width_meters=_number(payload, "widthMeters"),
        height_meters=_number(payload, "heightMeters"),
        owner_session_id=_text(payload, "ownerSessionID", optional=True),
    )


def controller_state_to_wire(state: ControllerState) -> dict[str, Any]:
    """Convert to wire format. Pixel coordinates are omitted when off-display."""
    result: dict[str, Any] = {
        "deviceID": state.device_id,
        "onDisplay": state.on_display,
        "buttons": dict(state.buttons),
        "axes": dict(state.axes),
    }
    if state.on_display:
        result["canvasX"] = state.canvas_x
        result["canvasY"] = state.canvas_y
    if state.owner_session_id is not None:
        result["ownerSessionID"] = state.owner_session_id
    return result


def controller_state_from_wire(payload: dict[str, Any]) -> ControllerState:
    on_display = payload.get("onDisplay")
    if not isinstance(on_display, bool):
        raise ProtocolError("'onDisplay' must be a boolean")

    canvas_x = canvas_y = None
    if on_display:
        canvas_x = _number(payload, "canvasX")
        canvas_y = _number(payload, "canvasY")

    return ControllerState(
        device_id=_text(payload, "deviceID"),
        on_display=on_display,
        canvas_x=canvas_x,
        canvas_y=canvas_y,
        buttons=_value_map(payload, "buttons"),
        axes=_value_map(payload, "axes"),
        owner_session_id=_text(payload, "ownerSessionID", optional=True),
    )


def game_event_to_wire(event: GameEvent) -> dict[str, Any]:
    result: dict[str, Any] = {"payload": event.payload}
    if event.sender_session_id is not None:
        result["senderSessionID"] = event.sender_session_id
    return result


def game_event_from_wire(payload: dict[str, Any]) -> GameEvent:
    return GameEvent(
        payload=payload.get("payload"),
        sender_session_id=_text(payload, "senderSessionID", optional=True),
    )


def message_from_wire(payload: dict[str, Any]) -> str:
    message = payload.get("message", "")
    return message if isinstance(message, str) else str(message)


# Typed view of each message type as delivered to session-proxy handlers.
_PAYLOAD_DECODERS: dict[MessageType, Callable[[dict[str, Any]], Any]] = {
    MessageType.NEW_CLIENT: client_info_from_wire,
    MessageType.CLIENT_DISCONNECTED: client_info_from_wire,
    MessageType.DISPLAY_CALIBRATION: dimension_report_from_wire,
    MessageType.CALIBRATION_COMMIT: snapshot_from_wire,
    MessageType.CONTROLLER_STATE: controller_state_from_wire,
    MessageType.GAME_EVENT: game_event_from_wire,
    MessageType.DISPLAY_DISCONNECTED: message_from_wire,
    MessageType.ERROR: message_from_wire,
    MessageType.CLOSE: message_from_wire,
}


def decode_payload(envelope: Envelope) -> Any:
    """Return the typed payload for an inbound envelope.

    Types without a decoder yield the raw payload dict.
    """
    decoder = _PAYLOAD_DECODERS.get(envelope.type)
    if decoder is None:
        return dict(envelope.payload)
    return decoder(envelope.payload)
