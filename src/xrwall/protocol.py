"""Message envelope and role table for the xrwall relay protocol.

Every frame on the wire is a single UTF-8 JSON object::

    {"type": "<MESSAGE_TYPE>", ...payload fields}

The set of message types is closed. :data:`ROLE_TABLE` records, for every type,
which roles may send it to the relay and which roles accept it from the relay.
The relay enforces the sender side, the session proxy filters on the receiver
side.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

__all__ = [
    "ALL_ROLES",
    "ROLE_TABLE",
    "Envelope",
    "MessageType",
    "ProtocolError",
    "Role",
    "Route",
    "decode_envelope",
    "encode_envelope",
]


class ProtocolError(Exception):
    """Raised for malformed, untyped, unknown or forbidden envelopes.

    The message is what the relay sends back in its ``ERROR`` reply.
    """


class Role(StrEnum):
    DISPLAY = "DISPLAY"
    INPUT = "INPUT"
    OBSERVER = "OBSERVER"


class MessageType(StrEnum):
    REGISTER_CLIENT = "REGISTER_CLIENT"
    REGISTRATION_SUCCESS = "REGISTRATION_SUCCESS"
    REGISTRATION_ERROR = "REGISTRATION_ERROR"
    NEW_CLIENT = "NEW_CLIENT"
    CLIENT_DISCONNECTED = "CLIENT_DISCONNECTED"
    DISPLAY_CALIBRATION = "DISPLAY_CALIBRATION"
    CALIBRATION_COMMIT = "CALIBRATION_COMMIT"
    DISPLAY_DISCONNECTED = "DISPLAY_DISCONNECTED"
    CONTROLLER_STATE = "CONTROLLER_STATE"
    GAME_EVENT = "GAME_EVENT"
    ERROR = "ERROR"
    # Transport control
    HEARTBEAT = "HEARTBEAT"
    CLOSE = "CLOSE"


ALL_ROLES: frozenset[Role] = frozenset(Role)
_NOBODY: frozenset[Role] = frozenset()


@dataclass(frozen=True)
class Route:
    """Direction rules for one message type.

    Attributes:
        senders: Roles allowed to send the type to the relay. Empty means the
            type is relay-only.
        receivers: Roles that accept the type from the relay.
        requires_registration: Whether the sending connection must hold a role.
    """

    senders: frozenset[Role]
    receivers: frozenset[Role]
    requires_registration: bool = True

    @property
    def relay_only(self) -> bool:
        return not self.senders


ROLE_TABLE: dict[MessageType, Route] = {
    MessageType.REGISTER_CLIENT: Route(ALL_ROLES, _NOBODY, requires_registration=False),
    MessageType.REGISTRATION_SUCCESS: Route(_NOBODY, ALL_ROLES),
    MessageType.REGISTRATION_ERROR: Route(_NOBODY, ALL_ROLES),
    MessageType.NEW_CLIENT: Route(_NOBODY, frozenset({Role.DISPLAY})),
    MessageType.CLIENT_DISCONNECTED: Route(_NOBODY, frozenset({Role.DISPLAY})),
    MessageType.DISPLAY_CALIBRATION: Route(
        frozenset({Role.DISPLAY}), frozenset({Role.INPUT})
    ),
    MessageType.CALIBRATION_COMMIT: Route(
        frozenset({Role.INPUT}), frozenset({Role.DISPLAY})
    ),
    MessageType.DISPLAY_DISCONNECTED: Route(_NOBODY, frozenset({Role.INPUT})),
    MessageType.CONTROLLER_STATE: Route(
        frozenset({Role.INPUT}), frozenset({Role.DISPLAY})
    ),
    MessageType.GAME_EVENT: Route(ALL_ROLES, ALL_ROLES),
    MessageType.ERROR: Route(ALL_ROLES, ALL_ROLES, requires_registration=False),
    MessageType.HEARTBEAT: Route(ALL_ROLES, _NOBODY, requires_registration=False),
    MessageType.CLOSE: Route(ALL_ROLES, ALL_ROLES, requires_registration=False),
}


@dataclass(frozen=True)
class Envelope:
    """One wire message: a type tag plus its flat payload fields."""

    type: MessageType
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, message_type: MessageType, **payload: Any) -> Envelope:
        return cls(MessageType(message_type), payload)

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)

    def with_fields(self, **updates: Any) -> Envelope:
        """Return a copy with payload fields added or replaced."""
        return Envelope(self.type, {**self.payload, **updates})


def encode_envelope(envelope: Envelope) -> bytes:
    """Serialize an envelope to a single UTF-8 JSON frame.

    Raises:
        ProtocolError: If the payload holds non-finite floats or values JSON
            cannot represent, or shadows the ``type`` field.
    """
    if "type" in envelope.payload:
        raise ProtocolError("payload must not contain a 'type' field")
    message = {"type": envelope.type.value, **envelope.payload}
    try:
        text = json.dumps(message, allow_nan=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Cannot encode {envelope.type.value}: {e}") from e
    return text.encode("utf-8")


def decode_envelope(data: bytes | str) -> Envelope:
    """Parse one JSON frame into an :class:`Envelope`.

    Raises:
        ProtocolError: On invalid UTF-8/JSON, a non-object frame, or a missing
            or unknown ``type``.
    """
    try:
        text = data.decode("utf-8") if isinstance(data, bytes) else data
        message = json.loads(text)
    except UnicodeDecodeError as e:
        raise ProtocolError(f"Invalid UTF-8 in frame: {e}") from e
    except json.JSONDecodeError as e:
        raise ProtocolError("Invalid JSON format") from e

    if not isinstance(message, dict):
        raise ProtocolError("Envelope must be a JSON object")

    raw_type = message.pop("type", None)
    if raw_type is None:
        raise ProtocolError("No message type specified")
    if not isinstance(raw_type, str):
        raise ProtocolError(f"Message type must be a string, got {raw_type!r}")
    try:
        message_type = MessageType(raw_type)
    except ValueError:
        raise ProtocolError(f"Unknown message type: {raw_type}") from None

    return Envelope(message_type, message)
