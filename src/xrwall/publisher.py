"""
Controller-state publisher for INPUT clients.

Called once per device per frame with the ray hit resolved by the 3D layer.
Rectangle-relative ``(u, v)`` are mapped to display pixels and sent to the
relay, which forwards them to the display (or drops them when there is none).
"""

import logging
import math
from collections.abc import Callable, Mapping

from . import adapters
from .calibration import CalibrationCoordinator, CalibrationState
from .client import NotRegisteredError
from .protocol import Envelope, MessageType, ProtocolError
from .types import ControllerState, ResolvedHit

logger = logging.getLogger(__name__)


def to_canvas(u: float, v: float, width: float, height: float) -> tuple[float, float]:
    """Map rectangle-relative coordinates to display pixels.

    ``v`` grows away from the top edge, so Y is flipped.

    Example:
        >>> to_canvas(0.25, 0.75, 1920, 1080)
        (480.0, 270.0)
    """
    return u * width, (1.0 - v) * height


def _clamped(values: Mapping[str, float] | None, low: float, high: float) -> dict[str, float]:
    result: dict[str, float] = {}
    for name, value in (values or {}).items():
        value = float(value)
        if not math.isfinite(value):
            continue
        result[str(name)] = min(max(value, low), high)
    return result


class ControllerStatePublisher:
    """Publishes ``CONTROLLER_STATE`` once calibration has been committed.

    Args:
        coordinator: Source of the calibration state and display size.
        send: Transport for the envelope, normally :meth:`SessionProxy.send`.
    """

    def __init__(
        self,
        coordinator: CalibrationCoordinator,
        send: Callable[[Envelope], None],
    ):
        self._coordinator = coordinator
        self._send = send
        self.published_count = 0
        self.skipped_count = 0

    def publish(
        self,
        device_id: str,
        hit: ResolvedHit,
        buttons: Mapping[str, float] | None = None,
        axes: Mapping[str, float] | None = None,
    ) -> ControllerState | None:
        """Publish one device's state for this frame.

        Returns:
            The state that was sent, or None when nothing was published
            (not calibrated, invalid hit, or not registered).
        """
        if self._coordinator.state is not CalibrationState.COMMITTED:
            self.skipped_count += 1
            return None

        state = self.build_state(device_id, hit, buttons, axes)
        if state is None:
            self.skipped_count += 1
            return None

        envelope = Envelope(MessageType.CONTROLLER_STATE, adapters.controller_state_to_wire(state))
        try:
            self._send(envelope)
        except NotRegisteredError as e:
            # Per-frame and fire-and-forget: the next frame tries again
            logger.debug(f"Controller state for {device_id} not sent: {e}")
            self.skipped_count += 1
            return None
        except ProtocolError as e:
            logger.warning(f"Controller state for {device_id} not encodable: {e}")
            self.skipped_count += 1
            return None

        self.published_count += 1
        return state

    def build_state(
        self,
        device_id: str,
        hit: ResolvedHit,
        buttons: Mapping[str, float] | None = None,
        axes: Mapping[str, float] | None = None,
    ) -> ControllerState | None:
        """Build the wire state, or None if the hit maps to no finite pixel."""
        buttons = _clamped(buttons, 0.0, 1.0)
        axes = _clamped(axes, -1.0, 1.0)

        if not hit.on_display:
            return ControllerState(device_id=device_id, on_display=False, buttons=buttons, axes=axes)

        dimensions = self._coordinator.dimensions
        if dimensions is None or hit.u is None or hit.v is None:
            logger.debug(f"Rejected hit for {device_id}: missing coordinates or dimensions")
            return None

        canvas_x, canvas_y = to_canvas(
            hit.u, hit.v, dimensions.screen_width, dimensions.screen_height
        )
        if not (math.isfinite(canvas_x) and math.isfinite(canvas_y)):
            logger.debug(f"Rejected hit for {device_id}: non-finite canvas coordinates")
            return None

        return ControllerState(
            device_id=device_id,
            on_display=True,
            canvas_x=canvas_x,
            canvas_y=canvas_y,
            buttons=buttons,
            axes=axes,
        )
