"""
Session proxy: one client's connection to the xrwall relay.

The proxy owns a single DEALER socket on a background I/O thread. Callers
register handlers per message type, send typed envelopes and read the current
connection state; they never touch the socket themselves.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from queue import Empty, Full, Queue
from typing import Any

import zmq

from . import adapters
from .events import EventHandler
from .protocol import (
    ALL_ROLES,
    ROLE_TABLE,
    Envelope,
    MessageType,
    ProtocolError,
    Role,
    decode_envelope,
    encode_envelope,
)
from .types import DimensionReport

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """Raised for invalid use of a session proxy (wrong state, closed connection)."""


class RegistrationError(SessionError):
    """The relay refused the registration. The connection stays open."""


class RegistrationTimeout(SessionError):
    """No registration reply arrived in time. The connection has been closed."""


class NotRegisteredError(SessionError):
    """A send was attempted while the session is not registered."""


class SessionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    REGISTERED = "registered"


@dataclass(frozen=True)
class RegistrationResult:
    role: Role
    session_id: str
    message: str = ""


@dataclass(frozen=True)
class ConnectionState:
    state: SessionState
    role: Role | None
    session_id: str | None
    is_registered: bool


class SessionProxy:
    """
    Client side of one relay connection.

    Handlers fire on the I/O thread when ``auto_dispatch`` is true. Otherwise
    inbound events are queued until the host calls
    :meth:`dispatch_pending_events`, typically once per rendered frame.
    """

    # Socket poll interval on the I/O thread (ms)
    POLL_INTERVAL_MS = 10
    # How long close() keeps trying to flush the final frames (ms)
    SOCKET_LINGER = 200

    def __init__(
        self,
        server: str = "tcp://localhost",
        port: int = 8080,
        auto_dispatch: bool = True,
        heartbeat_interval: float = 2.0,
        registration_timeout: float = 5.0,
        queue_max: int = 10000,
    ):
        """
        Initialize a session proxy.

        Args:
            server: ZeroMQ base address (e.g., "tcp://localhost")
            port: Relay ROUTER port
            auto_dispatch: If True, handlers fire on the I/O thread
            heartbeat_interval: Seconds between HEARTBEAT frames
            registration_timeout: Default bound for connect()/register()
            queue_max: Max queued outbound frames and pending events
        """
        self._server = server
        self._port = port
        self._auto_dispatch = auto_dispatch
        self._heartbeat_interval = heartbeat_interval
        self._registration_timeout = registration_timeout
        self._queue_max = queue_max

        # ZeroMQ (owned by the I/O thread once started)
        self._context: zmq.Context | None = None
        self._socket: zmq.Socket | None = None

        # Threading (a fresh stop event per connection)
        self._stop = threading.Event()
        self._stop.set()
        self._io_thread: threading.Thread | None = None
        self._lock = threading.RLock()

        # Session state
        self._state = SessionState.DISCONNECTED
        self._role: Role | None = None
        self._session_id: str | None = None
        self._closing = False

        # Pending registration handshake
        self._registration_pending = False
        self._registration_reply: Envelope | None = None
        self._registration_done = threading.Event()

        # Outbox (encoded frames) and inbound events for pull dispatch
        self._outbox: Queue = Queue(maxsize=queue_max)
        self._event_queue: Queue = Queue(maxsize=queue_max)

        # One listener list per message type
        self._handlers: dict[MessageType, EventHandler] = {
            message_type: EventHandler(message_type.value) for message_type in MessageType
        }

        # Statistics
        self._stats = {
            "messages_received": 0,
            "messages_sent": 0,
            "dropped_outbound": 0,
            "dropped_events": 0,
            "errors_received": 0,
        }

    # Properties
    @property
    def server_address(self) -> str:
        """Relay endpoint."""
        return f"{self._server}:{self._port}"

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def role(self) -> Role | None:
        return self._role

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def is_registered(self) -> bool:
        return self._state is SessionState.REGISTERED

    def get_state(self) -> ConnectionState:
        """Snapshot of the connection state for the host application."""
        with self._lock:
            return ConnectionState(
                state=self._state,
                role=self._role,
                session_id=self._session_id,
                is_registered=self._state is SessionState.REGISTERED,
            )

    # Handlers
    def on(self, message_type: MessageType | str, handler: Callable[[Any], None]) -> Callable[[], None]:
        """Register ``handler`` for one message type. Returns unsubscribe function.

        The handler receives the typed payload from :func:`adapters.decode_payload`.
        """
        return self._handlers[MessageType(message_type)].add_listener(handler)

    # Lifecycle
    def connect(self, role: Role | str, timeout: float | None = None) -> RegistrationResult:
        """Open the connection and register as ``role``.

        Blocks until the relay answers or ``timeout`` elapses.

        Raises:
            SessionError: A connection attempt is in progress or already open.
            RegistrationError: The relay refused the role. The connection stays
                open; :meth:`register` may retry.
            RegistrationTimeout: No reply in time. The connection is closed.
        """
        role = Role(role)
        with self._lock:
            if self._state is SessionState.CONNECTING:
                raise SessionError("Connection attempt already in progress")
            if self._state is not SessionState.DISCONNECTED:
                raise SessionError(
                    f"Already {self._state.value}; call disconnect() first"
                )
            self._state = SessionState.CONNECTING
            try:
                self._open()
            except Exception as e:
                self._state = SessionState.DISCONNECTED
                raise SessionError(f"Failed to connect to {self.server_address}: {e}") from e

        logger.info(f"Connecting to {self.server_address} as {role.value}")
        return self._register(role, timeout)

    def register(self, role: Role | str, timeout: float | None = None) -> RegistrationResult:
        """Retry registration on an open, unregistered connection.

        Raises:
            SessionError: Not connected, already registered, or a registration
                is already pending.
            RegistrationError: The relay refused the role.
            RegistrationTimeout: No reply in time. The connection is closed.
        """
        role = Role(role)
        with self._lock:
            if self._state is SessionState.REGISTERED:
                raise SessionError(f"Already registered as {self._role.value}")
            if self._state is not SessionState.CONNECTED:
                raise SessionError(f"Cannot register while {self._state.value}")
        return self._register(role, timeout)

    def _register(self, role: Role, timeout: float | None) -> RegistrationResult:
        timeout = self._registration_timeout if timeout is None else timeout
        with self._lock:
            if self._registration_pending:
                raise SessionError("Registration already in progress")
            self._registration_pending = True
            self._registration_reply = None
            self._registration_done.clear()

        self._enqueue(Envelope.create(MessageType.REGISTER_CLIENT, role=role.value))

        if not self._registration_done.wait(timeout):
            with self._lock:
                self._registration_pending = False
            logger.warning(f"No registration reply from {self.server_address} within {timeout}s")
            self._closing = True
            try:
                self._enqueue(Envelope.create(MessageType.CLOSE))
            except SessionError:
                pass
            self._close(notify=False)
            raise RegistrationTimeout(f"No registration reply within {timeout}s")

        with self._lock:
            reply = self._registration_reply
            self._registration_pending = False

        if reply is None:
            raise SessionError("Connection closed during registration")
        if reply.type is MessageType.REGISTRATION_ERROR:
            reason = adapters.message_from_wire(reply.payload)
            logger.warning(f"Registration as {role.value} refused: {reason}")
            raise RegistrationError(reason)

        result = RegistrationResult(
            role=Role(reply.get("role", role.value)),
            session_id=reply.get("sessionID"),
            message=adapters.message_from_wire(reply.payload),
        )
        logger.info(f"Registered as {result.role.value} (session {result.session_id})")
        return result

    def disconnect(self) -> None:
        """Send the close frame, stop the I/O thread and fire CLOSE handlers."""
        with self._lock:
            if self._state is SessionState.DISCONNECTED:
                return
            self._closing = True
        try:
            self._enqueue(Envelope.create(MessageType.CLOSE))
        except SessionError:
            pass
        self._close(notify=True, message="Disconnected by client")

    def close(self) -> None:
        """Alias for disconnect()."""
        self.disconnect()

    # Sending API
    def send(self, envelope: Envelope) -> None:
        """Queue ``envelope`` for the relay.

        Raises:
            NotRegisteredError: The session is not registered.
            ProtocolError: The envelope cannot be encoded.
        """
        if self._state is not SessionState.REGISTERED:
            raise NotRegisteredError(
                f"Cannot send {envelope.type.value} while {self._state.value}"
            )
        self._enqueue(envelope)

    def report_dimensions(self, width: float, height: float) -> None:
        """Send the display's pixel size (DISPLAY role)."""
        if width <= 0 or height <= 0:
            raise ValueError("Screen dimensions must be positive")
        report = DimensionReport(screen_width=float(width), screen_height=float(height))
        self.send(
            Envelope(MessageType.DISPLAY_CALIBRATION, adapters.dimension_report_to_wire(report))
        )

    def send_game_event(self, payload: Any) -> None:
        """Fan an application payload out to every registered client."""
        self.send(Envelope.create(MessageType.GAME_EVENT, payload=payload))

    # Event dispatch control
    def dispatch_pending_events(self, max_items: int = 100) -> int:
        """Process queued handlers on caller's thread."""
        if self._auto_dispatch:
            return 0

        dispatched = 0
        while dispatched < max_items:
            try:
                message_type, payload = self._event_queue.get_nowait()
            except Empty:
                break
            self._handlers[message_type].invoke(payload)
            dispatched += 1
        return dispatched

    # Diagnostics
    def get_stats(self) -> dict[str, Any]:
        """Get diagnostic statistics."""
        stats = self._stats.copy()
        stats["outbox_size"] = self._outbox.qsize()
        stats["pending_events"] = self._event_queue.qsize()
        return stats

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _open(self) -> None:
        self._context = zmq.Context()
        sock = self._context.socket(zmq.DEALER)
        sock.setsockopt(zmq.LINGER, self.SOCKET_LINGER)
        sock.connect(self.server_address)
        self._socket = sock
        self._closing = False
        # Fresh per connection so a finishing I/O thread never sees new frames
        self._outbox = Queue(maxsize=self._queue_max)
        self._stop = threading.Event()
        self._io_thread = threading.Thread(
            target=self._io_loop,
            args=(sock, self._context, self._outbox, self._stop),
            name="SessionIO",
            daemon=True,
        )
        self._io_thread.start()

    def _close(self, notify: bool, message: str = "") -> None:
        """Stop the I/O thread, reset the session and wake a pending registration."""
        self._stop.set()
        thread = self._io_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        self._io_thread = None

        with self._lock:
            was_connected = self._state is not SessionState.DISCONNECTED
            self._state = SessionState.DISCONNECTED
            self._role = None
            self._session_id = None
            if self._registration_pending:
                self._registration_reply = None
                self._registration_done.set()

        if was_connected:
            logger.info(f"Disconnected from {self.server_address}")
        if notify and was_connected:
            self._dispatch(MessageType.CLOSE, message)

    def _enqueue(self, envelope: Envelope) -> None:
        """Encode and queue one frame for the I/O thread (drop oldest when full)."""
        if self._stop.is_set():
            raise SessionError("Not connected")
        frame = encode_envelope(envelope)
        outbox = self._outbox
        try:
            outbox.put_nowait(frame)
        except Full:
            self._stats["dropped_outbound"] += 1
            try:
                outbox.get_nowait()
                outbox.put_nowait(frame)
            except (Empty, Full):
                pass

    def _io_loop(
        self,
        sock: zmq.Socket,
        context: zmq.Context,
        outbox: Queue,
        stop: threading.Event,
    ) -> None:
        """Owns the socket: flush outbox, heartbeat, receive."""
        poller = zmq.Poller()
        poller.register(sock, zmq.POLLIN)
        heartbeat = encode_envelope(Envelope.create(MessageType.HEARTBEAT))
        last_heartbeat = 0.0

        try:
            while not stop.is_set():
                try:
                    self._flush_outbox(sock, outbox)

                    now = time.monotonic()
                    if now - last_heartbeat >= self._heartbeat_interval:
                        sock.send(heartbeat, zmq.NOBLOCK)
                        last_heartbeat = now

                    if poller.poll(self.POLL_INTERVAL_MS):
                        self._receive_all(sock, stop)
                except zmq.Again:
                    continue
                except zmq.ZMQError as e:
                    if not stop.is_set():
                        logger.error(f"Socket error in session I/O loop: {e}")
                except Exception:
                    logger.exception("Error in session I/O loop")

            # Final frames (CLOSE) queued before the stop
            self._flush_outbox(sock, outbox)
        finally:
            sock.close()
            context.term()
            if self._socket is sock:
                self._socket = None
                self._context = None

    def _flush_outbox(self, sock: zmq.Socket, outbox: Queue) -> None:
        while True:
            try:
                frame = outbox.get_nowait()
            except Empty:
                return
            try:
                sock.send(frame, zmq.NOBLOCK)
                self._stats["messages_sent"] += 1
            except zmq.Again:
                self._stats["dropped_outbound"] += 1
                logger.warning("Relay send buffer full; dropping frame")
                return

    def _receive_all(self, sock: zmq.Socket, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                data = sock.recv(zmq.NOBLOCK)
            except zmq.Again:
                return
            self._process_frame(sock, data)

    def _process_frame(self, sock: zmq.Socket, data: bytes) -> None:
        try:
            envelope = decode_envelope(data)
        except ProtocolError as e:
            logger.warning(f"Malformed frame from relay: {e}")
            error = Envelope.create(MessageType.ERROR, message=str(e))
            sock.send(encode_envelope(error), zmq.NOBLOCK)
            return

        self._stats["messages_received"] += 1
        message_type = envelope.type

        if message_type in (MessageType.REGISTRATION_SUCCESS, MessageType.REGISTRATION_ERROR):
            self._on_registration_reply(envelope)
        elif message_type is MessageType.CLOSE:
            self._on_remote_close(sock, envelope)
            return
        elif message_type is MessageType.ERROR:
            self._stats["errors_received"] += 1
            logger.warning(f"Relay error: {adapters.message_from_wire(envelope.payload)}")

        self._deliver(envelope)

    def _on_registration_reply(self, envelope: Envelope) -> None:
        with self._lock:
            if envelope.type is MessageType.REGISTRATION_SUCCESS:
                try:
                    self._role = Role(envelope.get("role"))
                except ValueError:
                    logger.error(f"Registration reply with unknown role: {envelope.get('role')}")
                self._session_id = envelope.get("sessionID")
                self._state = SessionState.REGISTERED
            elif self._state is SessionState.CONNECTING:
                self._state = SessionState.CONNECTED
            if self._registration_pending:
                self._registration_reply = envelope
                self._registration_done.set()

    def _on_remote_close(self, sock: zmq.Socket, envelope: Envelope) -> None:
        if self._closing:
            # Echo of our own close frame
            return
        logger.info(f"Relay closed the connection: {adapters.message_from_wire(envelope.payload)}")
        sock.send(encode_envelope(Envelope.create(MessageType.CLOSE)), zmq.NOBLOCK)
        self._closing = True
        self._close(notify=True, message=adapters.message_from_wire(envelope.payload))

    def _deliver(self, envelope: Envelope) -> None:
        """Role filter, typed decode and dispatch of one inbound envelope."""
        receivers = ROLE_TABLE[envelope.type].receivers
        if receivers != ALL_ROLES and self._role not in receivers:
            return
        if not len(self._handlers[envelope.type]):
            return
        try:
            payload = adapters.decode_payload(envelope)
        except ProtocolError as e:
            logger.warning(f"Dropping malformed {envelope.type.value}: {e}")
            return
        self._dispatch(envelope.type, payload)

    def _dispatch(self, message_type: MessageType, payload: Any) -> None:
        if self._auto_dispatch:
            self._handlers[message_type].invoke(payload)
            return
        event = (message_type, payload)
        try:
            self._event_queue.put_nowait(event)
        except Full:
            # Drop oldest and add new
            self._stats["dropped_events"] += 1
            try:
                self._event_queue.get_nowait()
                self._event_queue.put_nowait(event)
            except (Empty, Full):
                pass
