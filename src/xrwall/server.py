# server.py
import sys

# ruff: noqa: E402, I001

# Python version check - must be at the very beginning
MIN_PY = (3, 11)
if sys.version_info < MIN_PY:
    sys.stderr.write(
        f"ERROR: xrwall relay requires Python {MIN_PY[0]}.{MIN_PY[1]}+ "
        f"(current: {sys.version.split()[0]}).\n"
    )
    sys.exit(1)

import argparse
import platform
import signal
import threading
import time
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Any

import zmq
from loguru import logger

from . import network_utils
from .config import (
    ConfigurationError,
    DefaultConfigError,
    ServerConfig,
    create_config_from_args,
    load_default_config,
)
from .logging_utils import configure_logging
from .protocol import Envelope, MessageType, ProtocolError, decode_envelope, encode_envelope
from .registry import SessionRegistry
from .routing import MessageRouter

DISTRIBUTION_NAME = "xrwall-relay"


@lru_cache(maxsize=1)
def get_version() -> str:
    """
    Return the relay version.
    Priority:
      1) importlib.metadata for 'xrwall-relay' (when installed)
      2) parse nearest pyproject.toml (when running from source)
      3) 'unknown'
    """
    import importlib.metadata as im

    try:
        return im.version(DISTRIBUTION_NAME)
    except im.PackageNotFoundError:
        for dist in im.packages_distributions().get("xrwall", []):
            try:
                return im.version(dist)
            except im.PackageNotFoundError:
                pass

    for parent in Path(__file__).resolve().parents:
        toml_path = parent / "pyproject.toml"
        if toml_path.exists():
            data = tomllib.loads(toml_path.read_text(encoding="utf-8"))
            v = (data.get("project") or {}).get("version")
            if v:
                return v
            break

    return "unknown"


class RelayServer:
    """Single-socket relay between VR clients and one shared display.

    One event-loop thread owns the ROUTER socket: it receives frames, runs
    them through :class:`MessageRouter`, expires silent connections and, on
    stop, drains every open connection with a ``CLOSE`` handshake.
    """

    # Frames handled per poll wake-up before timers get a turn
    MAX_FRAMES_PER_POLL = 1000
    # ROUTER linger on close (ms); lets the last CLOSE frames reach the wire
    SOCKET_LINGER = 500

    def __init__(self, config: ServerConfig | None = None):
        self.config = config if config is not None else load_default_config()
        self.context = zmq.Context()
        self.router: zmq.Socket | None = None

        self.registry = SessionRegistry()
        self.routing = MessageRouter(
            self.registry,
            self._send_envelope,
            game_event_echo=self.config.game_event_echo,
            on_close=self._forget_connection,
        )

        # connection handle -> monotonic time of the last inbound frame
        self._last_seen: dict[bytes, float] = {}

        # Threading
        self.running = False
        self._loop_thread: threading.Thread | None = None
        self._drained: bool | None = None
        self._closed = False

        # Optional REST bridge (uvicorn server, bridge session)
        self._rest_server: Any = None
        self._rest_session: Any = None

        # Statistics
        self.timeout_count = 0
        self.send_failures = 0

    @property
    def connection_count(self) -> int:
        return len(self._last_seen)

    def start(self):
        """Bind the ROUTER socket and start the event loop.

        Raises:
            SystemExit: If the port is already in use.
        """
        endpoint = self.config.endpoint
        logger.info(f"Starting relay on {endpoint}")

        try:
            self.router = self.context.socket(zmq.ROUTER)
            self.router.setsockopt(zmq.LINGER, self.SOCKET_LINGER)
            self.router.bind(endpoint)
            logger.info(f"ROUTER socket bound to port {self.config.port}")
        except zmq.error.ZMQError as e:
            self._close_socket()
            if e.errno == zmq.EADDRINUSE or "Address already in use" in str(e):
                self._log_port_in_use()
                raise SystemExit(1) from e
            logger.error(f"ZMQ Error: {e}")
            raise

        self.running = True
        self._loop_thread = threading.Thread(
            target=self._event_loop, name="RelayLoop", daemon=True
        )
        self._loop_thread.start()

        if self.config.enable_rest_bridge:
            self._start_rest_bridge()

        logger.info("Relay is ready and waiting for connections...")

    def stop(self) -> bool:
        """Stop the relay and drain open connections.

        Returns:
            True if every connection acknowledged the close handshake within
            ``shutdown_timeout`` (or there was nothing to drain).
        """
        if self._closed:
            return self._drained is not False
        logger.info("Stopping relay...")
        self._stop_rest_bridge()

        self.running = False
        if self._loop_thread is not None:
            self._loop_thread.join(timeout=self.config.shutdown_timeout + 5.0)
            if self._loop_thread.is_alive():
                logger.error("Relay loop did not stop in time")
                self._drained = False
            self._loop_thread = None

        self._close_socket()

        logger.info(
            f"Relay stopped. Total messages processed: {self.routing.message_count}, "
            f"Forwarded: {self.routing.forwarded_count}, "
            f"Dropped: {self.routing.dropped_count}, Errors: {self.routing.error_count}"
        )
        return self._drained is not False

    def _close_socket(self):
        if self.router is not None:
            self.router.close()
            self.router = None
        if not self._closed:
            self.context.term()
            self._closed = True

    def _log_port_in_use(self):
        port = self.config.port
        logger.error(f"Error: Another relay instance is already running on port {port}")
        logger.error("Please stop the existing relay before starting a new one.")
        if platform.system() == "Windows":
            logger.error(f"You can find the process using: netstat -ano | findstr :{port}")
            logger.error("And stop it using: taskkill /PID <PID> /F")
        else:
            logger.error(f"You can find the process using: lsof -i :{port}")
            logger.error("And stop it using: kill <PID>")

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------

    def _event_loop(self):
        """Receive, route, expire and log until stopped, then drain."""
        logger.info("Relay loop started")
        poller = zmq.Poller()
        poller.register(self.router, zmq.POLLIN)
        last_cleanup = last_log = time.monotonic()

        while self.running:
            try:
                events = dict(poller.poll(self.config.poll_timeout))
                if self.router in events:
                    self._receive_pending()

                current_time = time.monotonic()
                if current_time - last_cleanup >= self.config.cleanup_interval:
                    self._expire_silent_connections(current_time)
                    last_cleanup = current_time

                if current_time - last_log >= self.config.status_log_interval:
                    self._log_status()
                    last_log = current_time
            except Exception:
                logger.exception("Unrecoverable error in relay loop; shutting down")
                self.running = False

        try:
            self._drained = self._drain()
        except Exception:
            logger.exception("Error while draining connections")
            self._drained = False
        logger.info("Relay loop ended")

    def _receive_pending(self):
        for _ in range(self.MAX_FRAMES_PER_POLL):
            try:
                parts = self.router.recv_multipart(zmq.NOBLOCK)
            except zmq.Again:
                return
            if len(parts) != 2:
                logger.warning(f"Received message with {len(parts)} parts, expected 2")
                continue
            connection, frame = parts
            self._last_seen[connection] = time.monotonic()
            self.routing.handle_frame(connection, frame)

    def _send_envelope(self, connection: bytes, envelope: Envelope) -> None:
        data = encode_envelope(envelope)
        if self.router is None:
            return
        try:
            self.router.send_multipart([connection, data], zmq.NOBLOCK)
        except zmq.Again:
            self.send_failures += 1
            logger.warning(
                f"Send buffer full; dropped {envelope.type.value} to {connection.hex()[:8]}"
            )

    def _forget_connection(self, connection: bytes) -> None:
        self._last_seen.pop(connection, None)

    def _expire_silent_connections(self, current_time: float):
        """Treat connections silent for longer than client_timeout as closed."""
        timeout = self.config.client_timeout
        expired = [
            connection
            for connection, seen in self._last_seen.items()
            if current_time - seen > timeout
        ]
        for connection in expired:
            del self._last_seen[connection]
            self.timeout_count += 1
            client = self.routing.on_disconnect(connection)
            if client is not None:
                logger.info(
                    f"{client.role.value} client {client.session_id[:8]}... removed (timeout)"
                )
            else:
                logger.debug(f"Unregistered connection {connection.hex()[:8]} timed out")

    def _log_status(self):
        counts = self.registry.counts()
        roles = ", ".join(f"{role.value}: {n}" for role, n in counts.items())
        unregistered = len(self._last_seen) - len(self.registry)
        logger.info(
            f"Status: {len(self.registry)} clients ({roles}), "
            f"{max(unregistered, 0)} unregistered connections, "
            f"messages: {self.routing.message_count}, "
            f"forwarded: {self.routing.forwarded_count}, "
            f"dropped: {self.routing.dropped_count}, errors: {self.routing.error_count}"
        )

    def _drain(self) -> bool:
        """Send CLOSE to every open connection and wait for each CLOSE reply."""
        pending = set(self._last_seen)
        if pending:
            logger.info(f"Closing {len(pending)} connection(s)...")
        notice = Envelope.create(MessageType.CLOSE, message="Relay shutting down")
        for connection in pending:
            self._send_envelope(connection, notice)

        deadline = time.monotonic() + self.config.shutdown_timeout
        while pending:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            if not self.router.poll(min(50, int(remaining * 1000) + 1), zmq.POLLIN):
                continue
            while True:
                try:
                    parts = self.router.recv_multipart(zmq.NOBLOCK)
                except zmq.Again:
                    break
                if len(parts) != 2 or parts[0] not in pending:
                    continue
                try:
                    envelope = decode_envelope(parts[1])
                except ProtocolError:
                    continue
                if envelope.type is MessageType.CLOSE:
                    pending.discard(parts[0])

        self.registry.clear()
        self._last_seen.clear()
        if pending:
            logger.warning(
                f"Shutdown drain timed out; {len(pending)} connection(s) did not "
                f"acknowledge within {self.config.shutdown_timeout}s"
            )
            return False
        logger.info("All connections closed cleanly")
        return True

    # ------------------------------------------------------------------
    # REST bridge
    # ------------------------------------------------------------------

    def _start_rest_bridge(self):
        from .rest_bridge import BridgeSession, create_app, run_uvicorn_in_thread

        self._rest_session = BridgeSession(
            "tcp://localhost",
            self.config.port,
            registration_timeout=self.config.registration_timeout,
        )
        self._rest_session.start()
        app = create_app(self._rest_session)
        _, self._rest_server = run_uvicorn_in_thread(app, port=self.config.rest_port)
        logger.info(f"REST bridge listening on port {self.config.rest_port}")

    def _stop_rest_bridge(self):
        if self._rest_server is not None:
            self._rest_server.should_exit = True
            self._rest_server = None
        if self._rest_session is not None:
            self._rest_session.stop()
            self._rest_session = None


def display_logo():
    logo = r"""
 __  __ ____  __        __    _    _     _
 \ \/ /|  _ \ \ \      / /   / \  | |   | |
  \  / | |_) | \ \ /\ / /   / _ \ | |   | |
  /  \ |  _ <   \ V  V /   / ___ \| |___| |___
 /_/\_\|_| \_\   \_/\_/   /_/   \_\_____|_____|
"""
    sys.stdout.write(logo + "\n")
    sys.stdout.flush()


def _parse_log_rule(value: str | None) -> str | int | None:
    """Bare integers mean bytes (rotation) or file count (retention) to loguru."""
    if value is None:
        return None
    stripped = value.strip()
    return int(stripped) if stripped.isdigit() else stripped


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="xrwall relay server")
    parser.add_argument(
        "--config", type=Path, help="Path to a TOML configuration file"
    )
    parser.add_argument(
        "--port", type=int, help="Port for the ROUTER socket (default: 8080)"
    )
    parser.add_argument(
        "--bind-address", help="Interface to bind (default: * for all interfaces)"
    )
    parser.add_argument(
        "--no-game-event-echo",
        action="store_true",
        help="Do not deliver GAME_EVENT back to its sender",
    )
    parser.add_argument(
        "--rest-bridge", action="store_true", help="Enable the HTTP REST bridge"
    )
    parser.add_argument(
        "--rest-port", type=int, help="Port for the REST bridge (default: 8800)"
    )
    parser.add_argument("--log-dir", type=Path, help="Directory for rotated log files")
    parser.add_argument(
        "--log-level-console",
        choices=["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
        help="Console log level (default: INFO)",
    )
    parser.add_argument(
        "--log-json-console", action="store_true", help="Emit console logs as JSON"
    )
    parser.add_argument(
        "--log-rotation", help="loguru rotation rule for the log file (e.g. '10 MB')"
    )
    parser.add_argument(
        "--log-retention", help="loguru retention rule for log files (e.g. '7 days')"
    )
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {get_version()}",
        help="Show version and exit",
    )
    return parser


def main(argv: list[str] | None = None):
    args = build_parser().parse_args(argv)

    try:
        config, overrides = create_config_from_args(args)
    except (
        ConfigurationError,
        DefaultConfigError,
        FileNotFoundError,
        tomllib.TOMLDecodeError,
    ) as e:
        sys.stderr.write(f"ERROR: {e}\n")
        raise SystemExit(1) from e

    configure_logging(
        log_dir=Path(config.log_dir) if config.log_dir else None,
        console_level=config.log_level_console,
        console_json=config.log_json_console,
        rotation=_parse_log_rule(config.log_rotation),
        retention=_parse_log_rule(config.log_retention),
    )

    display_logo()

    logger.info("=" * 80)
    logger.info("xrwall Relay Starting")
    logger.info("=" * 80)
    logger.info(f"  Version: {get_version()}")
    logger.info(f"  Port: {config.port}")
    for url in network_utils.relay_urls(config.port):
        logger.info(f"  Connect: {url}")
    logger.info(f"  Client timeout: {config.client_timeout}s")
    logger.info(f"  GAME_EVENT echo: {'on' if config.game_event_echo else 'off'}")
    if config.enable_rest_bridge:
        logger.info(f"  REST bridge port: {config.rest_port}")
    for override in overrides:
        logger.info(
            f"  Override: {override.key} = {override.new_value!r} "
            f"(was {override.default_value!r})"
        )
    logger.info("=" * 80)

    server = RelayServer(config=config)

    # SIGTERM takes the same path as Ctrl+C
    previous_sigterm = None
    if threading.current_thread() is threading.main_thread():
        previous_sigterm = signal.signal(signal.SIGTERM, signal.default_int_handler)

    startup_failed = False
    drained: bool | None = True
    try:
        server.start()

        logger.info("Relay started successfully. Press Ctrl+C to stop.")

        while server.running:
            try:
                time.sleep(1)
            except KeyboardInterrupt:
                logger.info("Received interrupt signal...")
                break

    except SystemExit:
        logger.info("Relay startup failed. Exiting...")
        startup_failed = True
    except KeyboardInterrupt:
        logger.info("Received interrupt signal during startup...")
    except Exception:
        logger.exception("Unexpected error")
        startup_failed = True
    finally:
        try:
            drained = server.stop()
        except Exception as e:
            logger.error(f"Error during relay shutdown: {e}")
            drained = False
        if previous_sigterm is not None:
            signal.signal(signal.SIGTERM, previous_sigterm)
        logger.info("Relay shutdown complete.")

    if startup_failed or drained is False:
        raise SystemExit(1)
