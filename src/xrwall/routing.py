"""Relay routing logic, independent of the socket layer.

:class:`MessageRouter` receives decoded envelopes together with the sender's
connection handle, consults the :class:`~xrwall.registry.SessionRegistry` and
emits outbound envelopes through a ``send(connection, envelope)`` callable.
The relay server drives it from a single event-loop thread, so every handler
runs to completion before the next frame is looked at.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from . import adapters
from .protocol import (
    ROLE_TABLE,
    Envelope,
    MessageType,
    ProtocolError,
    Role,
    decode_envelope,
)
from .registry import Client, RegistrationRejected, SessionRegistry

logger = logging.getLogger(__name__)

SendFn = Callable[[bytes, Envelope], None]
Handler = Callable[[bytes, Client | None, Envelope], None]


@dataclass(frozen=True)
class Accepted:
    session_id: str


@dataclass(frozen=True)
class Rejected:
    reason: str


RegistrationOutcome = Accepted | Rejected


class MessageRouter:
    """Applies the role table to inbound envelopes.

    Args:
        registry: The relay's authoritative session registry.
        send: Transport callback used for every outbound envelope.
        game_event_echo: Whether ``GAME_EVENT`` is also delivered back to its
            sender.
        on_close: Called with the connection handle after a client ``CLOSE``
            has been processed.
        clock: Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        registry: SessionRegistry,
        send: SendFn,
        *,
        game_event_echo: bool = True,
        on_close: Callable[[bytes], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self._send = send
        self.game_event_echo = game_event_echo
        self._on_close = on_close
        self._clock = clock

        self._handlers: dict[MessageType, Handler] = {
            MessageType.REGISTER_CLIENT: self._handle_register,
            MessageType.DISPLAY_CALIBRATION: self._handle_display_calibration,
            MessageType.CALIBRATION_COMMIT: self._handle_calibration_commit,
            MessageType.CONTROLLER_STATE: self._handle_controller_state,
            MessageType.GAME_EVENT: self._handle_game_event,
            MessageType.ERROR: self._handle_client_error,
            MessageType.HEARTBEAT: self._handle_heartbeat,
            MessageType.CLOSE: self._handle_close,
            MessageType.REGISTRATION_SUCCESS: self._handle_relay_only,
            MessageType.REGISTRATION_ERROR: self._handle_relay_only,
            MessageType.NEW_CLIENT: self._handle_relay_only,
            MessageType.CLIENT_DISCONNECTED: self._handle_relay_only,
            MessageType.DISPLAY_DISCONNECTED: self._handle_relay_only,
        }
        missing = set(MessageType) - set(self._handlers)
        if missing:
            names = ", ".join(sorted(m.value for m in missing))
            raise RuntimeError(f"No relay handler for message types: {names}")

        # Statistics
        self.message_count = 0
        self.forwarded_count = 0
        self.dropped_count = 0
        self.error_count = 0

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def handle_frame(self, connection: bytes, data: bytes) -> None:
        """Decode and route one raw frame from ``connection``."""
        self.message_count += 1
        try:
            envelope = decode_envelope(data)
        except ProtocolError as e:
            logger.warning(f"Malformed frame from {_short(connection)}: {e}")
            self._reply_error(connection, str(e))
            return
        self.route(envelope, connection)

    def route(self, envelope: Envelope, connection: bytes) -> None:
        """Check permissions and dispatch ``envelope``.

        Per-message failures never escape: they are logged and answered with
        an ``ERROR`` envelope to the sender.
        """
        client = self.registry.get(connection)
        try:
            self._check_sender(envelope.type, client)
            self._handlers[envelope.type](connection, client, envelope)
        except ProtocolError as e:
            logger.warning(
                f"Rejected {envelope.type.value} from {_describe(connection, client)}: {e}"
            )
            self._reply_error(connection, str(e))
        except Exception:
            logger.exception(
                f"Error handling {envelope.type.value} from {_describe(connection, client)}"
            )
            self._reply_error(connection, "Internal relay error")

    def register(self, connection: bytes, role: Role) -> RegistrationOutcome:
        """Grant ``role`` to ``connection`` and announce the membership change."""
        try:
            client = self.registry.add(connection, role, now=self._clock())
        except RegistrationRejected as e:
            reason = str(e)
            logger.info(f"Registration as {role.value} refused: {reason}")
            self._send(
                connection,
                Envelope.create(MessageType.REGISTRATION_ERROR, message=reason),
            )
            return Rejected(reason)

        self._send(
            connection,
            Envelope.create(
                MessageType.REGISTRATION_SUCCESS,
                role=role.value,
                sessionID=client.session_id,
                message=f"Successfully registered as {role.value} client",
            ),
        )
        logger.info(f"{role.value} client registered (session {client.session_id})")

        if role is Role.DISPLAY:
            # Catch a late-joining display up on everyone already present
            for other in self.registry.snapshot(exclude=connection):
                self._send(connection, _membership(MessageType.NEW_CLIENT, other))
        else:
            display = self.registry.display
            if display is not None:
                self._send(
                    display.connection, _membership(MessageType.NEW_CLIENT, client)
                )
                if role is Role.INPUT and display.dimensions is not None:
                    self._send(connection, _dimension_envelope(display))

        return Accepted(client.session_id)

    def on_disconnect(self, connection: bytes) -> Client | None:
        """Remove the client behind ``connection`` and notify dependents."""
        client = self.registry.remove(connection)
        if client is None:
            return None

        if client.role is Role.DISPLAY:
            notice = Envelope.create(
                MessageType.DISPLAY_DISCONNECTED, message="Display client disconnected"
            )
            for other in self.registry.snapshot(role=Role.INPUT):
                self._send(other.connection, notice)
            logger.info("Display slot released")
        else:
            display = self.registry.display
            if display is not None:
                self._send(
                    display.connection,
                    _membership(MessageType.CLIENT_DISCONNECTED, client),
                )

        logger.info(f"{client.role.value} client disconnected (session {client.session_id})")
        return client

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _check_sender(self, message_type: MessageType, client: Client | None) -> None:
        route = ROLE_TABLE[message_type]
        if route.relay_only:
            raise ProtocolError(f"{message_type.value} cannot be sent to the relay")
        if client is None:
            if route.requires_registration:
                raise ProtocolError("Client is not registered")
            return
        if client.role not in route.senders:
            raise ProtocolError(
                f"{message_type.value} is not permitted for {client.role.value} clients"
            )

    def _handle_register(
        self, connection: bytes, client: Client | None, envelope: Envelope
    ) -> None:
        role = adapters.role_from_wire(envelope.get("role"))
        self.register(connection, role)

    def _handle_display_calibration(
        self, connection: bytes, client: Client | None, envelope: Envelope
    ) -> None:
        client.dimensions = adapters.dimension_report_from_wire(envelope.payload)
        logger.info(
            f"Display reported {client.dimensions.screen_width:g}x"
            f"{client.dimensions.screen_height:g} px"
        )
        outbound = _dimension_envelope(client)
        for other in self.registry.snapshot(role=Role.INPUT):
            self._forward(other.connection, outbound)

    def _handle_calibration_commit(
        self, connection: bytes, client: Client | None, envelope: Envelope
    ) -> None:
        snapshot = adapters.snapshot_from_wire(envelope.payload)
        payload = adapters.snapshot_to_wire(snapshot)
        payload["ownerSessionID"] = client.session_id
        logger.info(f"Calibration committed by session {client.session_id}")
        self._to_display(Envelope(MessageType.CALIBRATION_COMMIT, payload))

    def _handle_controller_state(
        self, connection: bytes, client: Client | None, envelope: Envelope
    ) -> None:
        state = adapters.controller_state_from_wire(envelope.payload)
        payload = adapters.controller_state_to_wire(state)
        payload["ownerSessionID"] = client.session_id
        self._to_display(Envelope(MessageType.CONTROLLER_STATE, payload))

    def _handle_game_event(
        self, connection: bytes, client: Client | None, envelope: Envelope
    ) -> None:
        outbound = Envelope.create(
            MessageType.GAME_EVENT,
            payload=envelope.get("payload"),
            senderSessionID=client.session_id,
        )
        for other in self.registry.snapshot():
            if other.connection == connection and not self.game_event_echo:
                continue
            self._forward(other.connection, outbound)

    def _handle_client_error(
        self, connection: bytes, client: Client | None, envelope: Envelope
    ) -> None:
        # Never answered, so two peers cannot ping-pong errors
        logger.warning(
            f"Client {_describe(connection, client)} sent error: "
            f"{adapters.message_from_wire(envelope.payload)}"
        )

    def _handle_heartbeat(
        self, connection: bytes, client: Client | None, envelope: Envelope
    ) -> None:
        pass

    def _handle_close(
        self, connection: bytes, client: Client | None, envelope: Envelope
    ) -> None:
        self.on_disconnect(connection)
        self._send(connection, Envelope.create(MessageType.CLOSE))
        if self._on_close is not None:
            self._on_close(connection)

    def _handle_relay_only(
        self, connection: bytes, client: Client | None, envelope: Envelope
    ) -> None:
        # Unreachable: _check_sender rejects relay-only types first
        raise ProtocolError(f"{envelope.type.value} cannot be sent to the relay")

    # ------------------------------------------------------------------
    # Delivery helpers
    # ------------------------------------------------------------------

    def _to_display(self, envelope: Envelope) -> None:
        display = self.registry.display
        if display is None:
            # Not buffered: state without a display is simply dropped
            self.dropped_count += 1
            logger.debug(f"Dropped {envelope.type.value}: no display registered")
            return
        self._forward(display.connection, envelope)

    def _forward(self, connection: bytes, envelope: Envelope) -> None:
        self.forwarded_count += 1
        self._send(connection, envelope)

    def _reply_error(self, connection: bytes, message: str) -> None:
        self.error_count += 1
        self._send(connection, Envelope.create(MessageType.ERROR, message=message))


def _membership(message_type: MessageType, client: Client) -> Envelope:
    return Envelope(message_type, adapters.client_info_to_wire(client.info))


def _dimension_envelope(display: Client) -> Envelope:
    return Envelope(
        MessageType.DISPLAY_CALIBRATION,
        adapters.dimension_report_to_wire(display.dimensions),
    )


def _short(connection: bytes) -> str:
    return connection.hex()[:8]


def _describe(connection: bytes, client: Client | None) -> str:
    if client is None:
        return f"unregistered connection {_short(connection)}"
    return f"{client.role.value} {client.session_id[:8]}..."
