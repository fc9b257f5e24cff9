"""
xrwall relay package

Relays messages between VR clients and a single shared display. The relay
enforces a role model (one DISPLAY, any number of INPUT and OBSERVER clients)
over ZeroMQ with JSON envelopes; the VR side calibrates a 3D rectangle onto the
display and streams controller pointer states to it.

Main Classes:
    RelayServer: The relay, binding one ROUTER socket
    SessionProxy: A client's connection to the relay
    CalibrationCoordinator: Calibration rectangle editing for INPUT clients
    ControllerStatePublisher: Per-frame controller state publishing

Examples:
    # Run relay via CLI (after installation)
    xrwall-relay --port 8080
    xrwall-simulator --inputs 2

    # Use relay programmatically
    from xrwall import RelayServer
    server = RelayServer()
    server.start()

    # Connect as an input client
    from xrwall import Role, SessionProxy
    proxy = SessionProxy(server="tcp://localhost", port=8080)
    proxy.connect(Role.INPUT)
"""

from importlib.metadata import PackageNotFoundError, version

from .calibration import CalibrationCoordinator, CalibrationError, CalibrationState, PointerFrame
from .client import (
    NotRegisteredError,
    RegistrationError,
    RegistrationTimeout,
    SessionError,
    SessionProxy,
    SessionState,
)
from .protocol import Envelope, MessageType, ProtocolError, Role
from .publisher import ControllerStatePublisher, to_canvas
from .server import RelayServer, get_version
from .types import (
    CalibrationSnapshot,
    ClientInfo,
    ControllerState,
    DimensionReport,
    GameEvent,
    ResolvedHit,
    Vec3,
)

# Export public API
__all__ = [
    # Relay API
    "RelayServer",
    "get_version",
    # Client API
    "SessionProxy",
    "SessionState",
    "SessionError",
    "RegistrationError",
    "RegistrationTimeout",
    "NotRegisteredError",
    # VR side
    "CalibrationCoordinator",
    "CalibrationError",
    "CalibrationState",
    "PointerFrame",
    "ControllerStatePublisher",
    "to_canvas",
    # Protocol
    "Envelope",
    "MessageType",
    "ProtocolError",
    "Role",
    # Data types
    "CalibrationSnapshot",
    "ClientInfo",
    "ControllerState",
    "DimensionReport",
    "GameEvent",
    "ResolvedHit",
    "Vec3",
]

try:
    __version__ = version("xrwall-relay")
except PackageNotFoundError:
    __version__ = "unknown"
