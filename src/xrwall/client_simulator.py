#!/usr/bin/env python3
"""
xrwall Client Simulator - end-to-end exercise and load tool for the relay.

Starts one simulated DISPLAY client and any number of simulated INPUT clients
against a running relay. Each INPUT client walks through the full VR-side
flow: it waits for the display's dimension report, confirms the default
calibration rectangle, then streams controller pointer states at a fixed rate.

Architecture:
    - Pointer patterns: Pluggable hit generators in rectangle (u, v) space
    - Simulated display: Tracks members, calibrations and pointer states
    - Simulated inputs: CalibrationCoordinator + ControllerStatePublisher
    - Thread pool: One thread per simulated INPUT client
"""

import argparse
import logging
import math
import random
import signal
import sys
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

from xrwall.calibration import CalibrationCoordinator, CalibrationState, PointerFrame
from xrwall.client import SessionError, SessionProxy
from xrwall.protocol import MessageType, Role
from xrwall.publisher import ControllerStatePublisher
from xrwall.types import (
    CalibrationSnapshot,
    ClientInfo,
    ControllerState,
    DimensionReport,
    GameEvent,
    ResolvedHit,
)


# ============================================================================
# Data Structures and Enums
# ============================================================================

class PointerPattern(Enum):
    """Available pointer patterns for simulated controllers."""
    CIRCLE = "circle"
    RANDOM_WALK = "random_walk"
    SWEEP = "sweep"


@dataclass
class SimulationConfig:
    """Configuration for a simulated INPUT client."""
    device_id: str
    pointer_pattern: PointerPattern
    update_rate: float = 10.0  # Hz
    off_display_chance: float = 0.05
    game_event_interval: float = 5.0  # seconds; 0 disables


# ============================================================================
# Pointer Patterns
# ============================================================================

class PointerStrategy(ABC):
    """Base class for pointer hit generators."""

    def __init__(self, config: SimulationConfig):
        self.config = config
        self.phase = random.uniform(0, 2 * math.pi)

    @abstractmethod
    def next_uv(self, elapsed_time: float) -> tuple[float, float]:
        """Return the rectangle-relative hit for this frame."""


class CirclePointer(PointerStrategy):
    """Circles around the centre of the display."""

    RADIUS = 0.3
    SPEED = 0.8  # rad/s

    def next_uv(self, elapsed_time: float) -> tuple[float, float]:
        angle = self.phase + elapsed_time * self.SPEED
        return 0.5 + self.RADIUS * math.cos(angle), 0.5 + self.RADIUS * math.sin(angle)


class RandomWalkPointer(PointerStrategy):
    """Small random steps, reflected at the edges."""

    STEP = 0.02

    def __init__(self, config: SimulationConfig):
        super().__init__(config)
        self.u = random.random()
        self.v = random.random()

    def next_uv(self, elapsed_time: float) -> tuple[float, float]:
        self.u = _reflect(self.u + random.uniform(-self.STEP, self.STEP))
        self.v = _reflect(self.v + random.uniform(-self.STEP, self.STEP))
        return self.u, self.v


class SweepPointer(PointerStrategy):
    """Sweeps left to right and back at a fixed height."""

    PERIOD = 4.0  # seconds

    def __init__(self, config: SimulationConfig):
        super().__init__(config)
        self.v = random.uniform(0.2, 0.8)

    def next_uv(self, elapsed_time: float) -> tuple[float, float]:
        t = (elapsed_time / self.PERIOD + self.phase) % 2.0
        u = t if t <= 1.0 else 2.0 - t
        return u, self.v


def _reflect(value: float) -> float:
    if value < 0.0:
        return -value
    if value > 1.0:
        return 2.0 - value
    return value


class PointerStrategyFactory:
    """Factory for creating pointer strategies."""

    _strategies = {
        PointerPattern.CIRCLE: CirclePointer,
        PointerPattern.RANDOM_WALK: RandomWalkPointer,
        PointerPattern.SWEEP: SweepPointer,
    }

    @classmethod
    def create(cls, pattern: PointerPattern, config: SimulationConfig) -> PointerStrategy:
        """Create a pointer strategy for the given pattern."""
        strategy_class = cls._strategies.get(pattern)
        if not strategy_class:
            raise ValueError(f"Unknown pointer pattern: {pattern}")
        return strategy_class(config)


# ============================================================================
# Simulated Display
# ============================================================================

class SimulatedDisplay:
    """The single DISPLAY client: reports its size and tracks what arrives."""

    def __init__(self, server_addr: str, port: int, width: float, height: float):
        self.width = width
        self.height = height
        self.proxy = SessionProxy(server=server_addr, port=port)
        self.logger = logging.getLogger("Display")

        self._lock = threading.Lock()
        self.members: dict[str, Role] = {}
        self.calibrations: dict[str, CalibrationSnapshot] = {}
        # owner session id -> device id -> latest state
        self.pointers: dict[str, dict[str, ControllerState]] = {}
        self.state_count = 0
        self.game_event_count = 0

        self.proxy.on(MessageType.NEW_CLIENT, self._on_new_client)
        self.proxy.on(MessageType.CLIENT_DISCONNECTED, self._on_client_disconnected)
        self.proxy.on(MessageType.CALIBRATION_COMMIT, self._on_calibration)
        self.proxy.on(MessageType.CONTROLLER_STATE, self._on_controller_state)
        self.proxy.on(MessageType.GAME_EVENT, self._on_game_event)

    def start(self) -> bool:
        try:
            result = self.proxy.connect(Role.DISPLAY)
        except SessionError as e:
            self.logger.error(f"Display registration failed: {e}")
            return False
        self.logger.info(f"Registered as display (session {result.session_id})")
        self.proxy.report_dimensions(self.width, self.height)
        return True

    def stop(self):
        self.proxy.disconnect()

    def summary(self) -> str:
        with self._lock:
            pointers = sum(len(devices) for devices in self.pointers.values())
            return (
                f"members={len(self.members)}, calibrations={len(self.calibrations)}, "
                f"pointers={pointers}, states={self.state_count}, "
                f"game_events={self.game_event_count}"
            )

    def _on_new_client(self, info: ClientInfo):
        with self._lock:
            self.members[info.session_id] = info.role
        self.logger.info(f"{info.role.value} joined: {info.session_id[:8]}...")

    def _on_client_disconnected(self, info: ClientInfo):
        with self._lock:
            self.members.pop(info.session_id, None)
            self.calibrations.pop(info.session_id, None)
            self.pointers.pop(info.session_id, None)
        self.logger.info(f"{info.role.value} left: {info.session_id[:8]}...")

    def _on_calibration(self, snapshot: CalibrationSnapshot):
        with self._lock:
            self.calibrations[snapshot.owner_session_id] = snapshot
        self.logger.info(
            f"Calibration from {snapshot.owner_session_id[:8]}...: "
            f"{snapshot.width_meters:.2f} m x {snapshot.height_meters:.2f} m"
        )

    def _on_controller_state(self, state: ControllerState):
        with self._lock:
            self.state_count += 1
            devices = self.pointers.setdefault(state.owner_session_id, {})
            devices[state.device_id] = state

    def _on_game_event(self, event: GameEvent):
        with self._lock:
            self.game_event_count += 1


# ============================================================================
# Simulated Input
# ============================================================================

class SimulatedInput:
    """Represents a single simulated INPUT client (one headset, one controller)."""

    def __init__(self, config: SimulationConfig, server_addr: str, port: int):
        self.config = config
        self.proxy = SessionProxy(server=server_addr, port=port)
        self.coordinator = CalibrationCoordinator()
        self.coordinator.attach(self.proxy)
        self.publisher = ControllerStatePublisher(self.coordinator, self.proxy.send)
        self.pointer = PointerStrategyFactory.create(config.pointer_pattern, config)
        self.logger = logging.getLogger(f"Input-{config.device_id[-8:]}")
        self.running = False

    def run(self, stop_event: threading.Event):
        """Run the input simulation loop."""
        try:
            self.proxy.connect(Role.INPUT)
        except SessionError as e:
            self.logger.error(f"Failed to register: {e}")
            return

        self.running = True
        interval = 1.0 / self.config.update_rate
        start_time = time.monotonic()
        last_game_event = start_time
        trigger = False

        try:
            while self.running and not stop_event.is_set():
                now = time.monotonic()
                state = self.coordinator.state

                rect = self.coordinator.rectangle
                if state is CalibrationState.EDITING and rect is not None:
                    # Accept the default rectangle: hover confirm, then press
                    self.coordinator.update(
                        PointerFrame(position=rect.center, hovered="confirm", trigger=trigger)
                    )
                    trigger = not trigger
                elif state is CalibrationState.COMMITTED:
                    trigger = False
                    self.publisher.publish(
                        self.config.device_id,
                        self._next_hit(now - start_time),
                        buttons={"trigger": random.random()},
                        axes={"thumbstickX": random.uniform(-1, 1)},
                    )

                if (
                    self.config.game_event_interval > 0
                    and now - last_game_event >= self.config.game_event_interval
                    and self.proxy.is_registered
                ):
                    self.proxy.send_game_event({"kind": "ping", "device": self.config.device_id})
                    last_game_event = now

                time.sleep(interval)
        except SessionError as e:
            self.logger.error(f"Session error in simulation loop: {e}")
        finally:
            self.running = False
            self.proxy.disconnect()
            self.logger.info(
                f"Input stopped: published={self.publisher.published_count}, "
                f"skipped={self.publisher.skipped_count}"
            )

    def _next_hit(self, elapsed_time: float) -> ResolvedHit:
        if random.random() < self.config.off_display_chance:
            return ResolvedHit.miss()
        u, v = self.pointer.next_uv(elapsed_time)
        return ResolvedHit(on_display=True, u=u, v=v)


# ============================================================================
# Main Simulator Orchestrator
# ============================================================================

class ClientSimulator:
    """Main orchestrator for the simulation."""

    def __init__(
        self,
        server_addr: str,
        port: int,
        num_inputs: int,
        with_display: bool = True,
        display_width: float = 1920,
        display_height: float = 1080,
        update_rate: float = 10.0,
    ):
        self.server_addr = server_addr
        self.port = port
        self.num_inputs = num_inputs
        self.with_display = with_display
        self.display_width = display_width
        self.display_height = display_height
        self.update_rate = update_rate

        self.display: SimulatedDisplay | None = None
        self.inputs: list[SimulatedInput] = []
        self.threads: list[threading.Thread] = []
        self.stop_event = threading.Event()
        self.running = False
        self.logger = logging.getLogger(self.__class__.__name__)

    def _signal_handler(self, signum, frame):
        """Handle interrupt signals."""
        self.logger.info(f"Received signal {signum}, stopping simulation...")
        self.running = False

    def start(self):
        """Start the simulation and run until interrupted."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)
        self.running = True

        self.logger.info(f"Relay: {self.server_addr}:{self.port}")
        if self.with_display:
            self.display = SimulatedDisplay(
                self.server_addr, self.port, self.display_width, self.display_height
            )
            if not self.display.start():
                self.display = None

        for _ in range(self.num_inputs):
            config = SimulationConfig(
                device_id=str(uuid.uuid4()),
                pointer_pattern=random.choice(list(PointerPattern)),
                update_rate=self.update_rate,
            )
            client = SimulatedInput(config, self.server_addr, self.port)
            thread = threading.Thread(target=client.run, args=(self.stop_event,), daemon=True)
            thread.start()
            self.inputs.append(client)
            self.threads.append(thread)
            self.logger.info(
                f"Started input {config.device_id[-8:]} "
                f"with pattern {config.pointer_pattern.value}"
            )

        try:
            while self.running:
                if self.threads and not any(t.is_alive() for t in self.threads):
                    self.logger.info("All inputs stopped")
                    break
                time.sleep(1)
                if self.display is not None:
                    self.logger.info(f"Display: {self.display.summary()}")
        finally:
            self.stop()

    def stop(self):
        """Stop the simulation."""
        self.running = False
        self.logger.info("Stopping simulation...")
        self.stop_event.set()
        for i, thread in enumerate(self.threads):
            thread.join(timeout=2.0)
            if thread.is_alive():
                self.logger.warning(f"Input thread {i} did not stop within timeout")
        self.threads.clear()
        if self.display is not None:
            self.display.stop()
        self.logger.info("Simulation stopped")


# ============================================================================
# CLI Entry Point
# ============================================================================

def main():
    """Main entry point for the client simulator."""
    parser = argparse.ArgumentParser(
        description="xrwall Client Simulator - one display plus N input clients",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --inputs 4
  %(prog)s --inputs 20 --server tcp://192.168.1.100 --port 8080
  %(prog)s --inputs 2 --no-display --log-level DEBUG
        """,
    )
    parser.add_argument(
        "--inputs", type=int, default=2, help="Number of INPUT clients to simulate (default: 2)"
    )
    parser.add_argument(
        "--server", type=str, default="tcp://localhost", help="Relay address (default: tcp://localhost)"
    )
    parser.add_argument("--port", type=int, default=8080, help="Relay port (default: 8080)")
    parser.add_argument(
        "--no-display", action="store_true", help="Do not start a simulated DISPLAY client"
    )
    parser.add_argument("--width", type=float, default=1920, help="Display width in px (default: 1920)")
    parser.add_argument("--height", type=float, default=1080, help="Display height in px (default: 1080)")
    parser.add_argument(
        "--rate", type=float, default=10.0, help="Controller updates per second (default: 10)"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    logger = logging.getLogger("main")
    logger.info("=" * 60)
    logger.info("xrwall Client Simulator")
    logger.info("=" * 60)

    simulator = ClientSimulator(
        server_addr=args.server,
        port=args.port,
        num_inputs=args.inputs,
        with_display=not args.no_display,
        display_width=args.width,
        display_height=args.height,
        update_rate=args.rate,
    )

    try:
        simulator.start()
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
