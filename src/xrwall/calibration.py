"""
Calibration coordinator for INPUT clients.

The coordinator turns per-frame pointer input into edits of a 3D rectangle
that represents the shared display, then freezes and commits it. It is driven
from the host's frame loop and never blocks: commits go out fire-and-forget
through an injected ``send`` callable (normally :meth:`SessionProxy.send`).

State machine::

    AWAITING_DIMENSIONS --dimension report--> EDITING --confirm--> COMMITTED
                                                 ^                     |
                                                 +----recalibrate------+

Losing the display from any state returns to AWAITING_DIMENSIONS.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from . import adapters
from .protocol import Envelope, MessageType
from .types import CalibrationSnapshot, DimensionReport, Vec3

logger = logging.getLogger(__name__)

# Gain k of the exponential scale mapping exp(k * projectedDelta / initialDistance)
SCALE_GAIN = 1.0
# Default rectangle: 1 m wide, centred at eye height 2 m in front of the origin
DEFAULT_CENTER = Vec3(0.0, 1.6, -2.0)
DEFAULT_WIDTH_METERS = 1.0
# Distances below this are treated as zero
EPSILON = 1e-9


class CalibrationError(Exception):
    """Raised for operations that are illegal in the current calibration state."""


class CalibrationState(StrEnum):
    AWAITING_DIMENSIONS = "awaiting_dimensions"
    EDITING = "editing"
    COMMITTED = "committed"


class AffordanceState(StrEnum):
    IDLE = "idle"
    HOVERED = "hovered"
    GRABBED = "grabbed"


class AffordanceKind(StrEnum):
    TRANSLATE = "translate"
    ROTATE = "rotate"
    SCALE = "scale"
    CONFIRM = "confirm"
    RECALIBRATE = "recalibrate"


MANIPULATORS = frozenset({AffordanceKind.TRANSLATE, AffordanceKind.ROTATE, AffordanceKind.SCALE})


@dataclass
class Affordance:
    """One manipulable handle, addressed by id in the coordinator's arena.

    Attributes:
        id: Stable identifier the 3D layer reports as hovered.
        kind: Transform or action bound to the handle.
        axis: Unit axis for TRANSLATE handles.
        corner: ``"top_left"`` or ``"bottom_right"`` for SCALE handles.
        state: Hover/grab state, only non-IDLE while visible.
        visible: Whether the 3D layer should draw and hit-test the handle.
    """

    id: str
    kind: AffordanceKind
    axis: Vec3 | None = None
    corner: str | None = None
    state: AffordanceState = AffordanceState.IDLE
    visible: bool = False


def _default_affordances() -> dict[str, Affordance]:
    handles = [
        Affordance("translate_x", AffordanceKind.TRANSLATE, axis=Vec3(1.0, 0.0, 0.0)),
        Affordance("translate_y", AffordanceKind.TRANSLATE, axis=Vec3(0.0, 1.0, 0.0)),
        Affordance("translate_z", AffordanceKind.TRANSLATE, axis=Vec3(0.0, 0.0, 1.0)),
        Affordance("rotate_yaw", AffordanceKind.ROTATE),
        Affordance("scale_top_left", AffordanceKind.SCALE, corner="top_left"),
        Affordance("scale_bottom_right", AffordanceKind.SCALE, corner="bottom_right"),
        Affordance("confirm", AffordanceKind.CONFIRM),
        Affordance("recalibrate", AffordanceKind.RECALIBRATE),
    ]
    return {handle.id: handle for handle in handles}


EDITING_AFFORDANCES = (
    "translate_x",
    "translate_y",
    "translate_z",
    "rotate_yaw",
    "scale_top_left",
    "scale_bottom_right",
    "confirm",
)
COMMITTED_AFFORDANCES = ("recalibrate",)


@dataclass(frozen=True)
class PointerFrame:
    """One frame of pointer input, as resolved by the 3D layer.

    Attributes:
        position: Manipulator position in world space.
        hovered: Id of the affordance under the pointer, if any.
        trigger: Current state of the manipulation trigger.
    """

    position: Vec3
    hovered: str | None = None
    trigger: bool = False


@dataclass
class CalibrationRectangle:
    """Mutable working copy of the rectangle being edited."""

    top_left: Vec3
    bottom_right: Vec3
    width_meters: float
    height_meters: float

    @property
    def center(self) -> Vec3:
        return self.top_left.midpoint(self.bottom_right)

    def freeze(self) -> CalibrationSnapshot:
        return CalibrationSnapshot(
            top_left=self.top_left,
            bottom_right=self.bottom_right,
            width_meters=self.width_meters,
            height_meters=self.height_meters,
        )


@dataclass(frozen=True)
class _Grab:
    affordance_id: str
    start_pointer: Vec3
    start_top_left: Vec3
    start_bottom_right: Vec3
    start_center: Vec3


@dataclass
class _Stats:
    edits: int = 0
    commits: int = 0
    failed_sends: int = 0
    ignored_grabs: int = 0


def default_rectangle(aspect_ratio: float) -> CalibrationRectangle:
    """Seed rectangle for a display with the given pixel aspect ratio."""
    width = DEFAULT_WIDTH_METERS
    height = width / aspect_ratio
    c = DEFAULT_CENTER
    return CalibrationRectangle(
        top_left=Vec3(c.x - width / 2, c.y + height / 2, c.z),
        bottom_right=Vec3(c.x + width / 2, c.y - height / 2, c.z),
        width_meters=width,
        height_meters=height,
    )


class CalibrationCoordinator:
    """Owns the calibration rectangle of one INPUT client.

    Args:
        send: Fire-and-forget transport for the ``CALIBRATION_COMMIT``
            envelope. :meth:`attach` fills it in from a session proxy when
            not given.
    """

    def __init__(self, send: Callable[[Envelope], None] | None = None):
        self._send = send
        self._state = CalibrationState.AWAITING_DIMENSIONS
        self._dimensions: DimensionReport | None = None
        self._rectangle: CalibrationRectangle | None = None
        self._snapshot: CalibrationSnapshot | None = None
        self._affordances = _default_affordances()
        self._grab: _Grab | None = None
        self._trigger_was_down = False
        self._stats = _Stats()

    # Properties
    @property
    def state(self) -> CalibrationState:
        return self._state

    @property
    def dimensions(self) -> DimensionReport | None:
        return self._dimensions

    @property
    def aspect_ratio(self) -> float | None:
        return self._dimensions.aspect_ratio if self._dimensions else None

    @property
    def rectangle(self) -> CalibrationRectangle | None:
        return self._rectangle

    @property
    def snapshot(self) -> CalibrationSnapshot | None:
        """Last committed snapshot, kept until the display is lost."""
        return self._snapshot

    @property
    def grabbed(self) -> str | None:
        return self._grab.affordance_id if self._grab else None

    def affordance(self, affordance_id: str) -> Affordance:
        try:
            return self._affordances[affordance_id]
        except KeyError:
            raise CalibrationError(f"Unknown affordance: {affordance_id}") from None

    def affordances(self) -> list[Affordance]:
        return list(self._affordances.values())

    def visible_affordances(self) -> list[str]:
        return [a.id for a in self._affordances.values() if a.visible]

    def get_stats(self) -> dict[str, int]:
        return {
            "edits": self._stats.edits,
            "commits": self._stats.commits,
            "failed_sends": self._stats.failed_sends,
            "ignored_grabs": self._stats.ignored_grabs,
        }

    # Session wiring
    def attach(self, session: Any) -> Callable[[], None]:
        """Subscribe to a session proxy's display events. Returns unsubscribe function."""
        if self._send is None:
            self._send = session.send
        unsubscribers = [
            session.on(MessageType.DISPLAY_CALIBRATION, self.on_dimensions),
            session.on(MessageType.DISPLAY_DISCONNECTED, lambda _message: self.on_display_lost()),
        ]

        def detach():
            for unsubscribe in unsubscribers:
                unsubscribe()

        return detach

    # Relay events
    def on_dimensions(self, report: DimensionReport) -> None:
        """Seed the default rectangle from the display's first dimension report."""
        if self._state is not CalibrationState.AWAITING_DIMENSIONS:
            logger.debug("Ignoring dimension report; aspect ratio already pinned")
            return
        self._dimensions = report
        self._rectangle = default_rectangle(report.aspect_ratio)
        self._state = CalibrationState.EDITING
        self._show(EDITING_AFFORDANCES)
        logger.info(
            f"Display is {report.screen_width:g}x{report.screen_height:g} px "
            f"(aspect {report.aspect_ratio:.3f}); calibration editing started"
        )

    def on_display_lost(self) -> None:
        """Discard rectangle, aspect ratio and snapshot."""
        if self._state is not CalibrationState.AWAITING_DIMENSIONS:
            logger.info("Display lost; calibration reset")
        self._state = CalibrationState.AWAITING_DIMENSIONS
        self._dimensions = None
        self._rectangle = None
        self._snapshot = None
        self._grab = None
        self._show(())

    # Frame input
    def update(self, frame: PointerFrame) -> None:
        """Process one frame of pointer input.

        Press and release are the trigger's false->true and true->false edges
        relative to the previous frame.
        """
        pressed = frame.trigger and not self._trigger_was_down
        released = not frame.trigger and self._trigger_was_down
        self._trigger_was_down = frame.trigger

        if self._state is CalibrationState.AWAITING_DIMENSIONS:
            return

        if self._grab is not None:
            if released:
                self.release()
            else:
                self.drag(frame.position)
            return

        hovered = frame.hovered
        if hovered not in self._affordances or not self._affordances[hovered].visible:
            hovered = None
        for handle in self._affordances.values():
            if handle.visible:
                handle.state = (
                    AffordanceState.HOVERED if handle.id == hovered else AffordanceState.IDLE
                )

        if not pressed or hovered is None:
            return
        kind = self._affordances[hovered].kind
        if kind is AffordanceKind.CONFIRM:
            self.commit()
        elif kind is AffordanceKind.RECALIBRATE:
            self.recalibrate()
        else:
            self.grab(hovered, frame.position)

    def grab(self, affordance_id: str, pointer: Vec3) -> bool:
        """Start manipulating an affordance.

        Returns:
            False if another affordance is already grabbed (request ignored).

        Raises:
            CalibrationError: Not editing, or the id is unknown, hidden or not
                a manipulation handle.
        """
        if self._state is not CalibrationState.EDITING:
            raise CalibrationError(f"Cannot grab while {self._state.value}")
        handle = self.affordance(affordance_id)
        if handle.kind not in MANIPULATORS:
            raise CalibrationError(f"Affordance {affordance_id} cannot be grabbed")
        if not handle.visible:
            raise CalibrationError(f"Affordance {affordance_id} is not visible")
        if self._grab is not None:
            self._stats.ignored_grabs += 1
            logger.debug(f"Ignoring grab of {affordance_id}; {self._grab.affordance_id} is held")
            return False

        rect = self._rectangle
        self._grab = _Grab(
            affordance_id=affordance_id,
            start_pointer=pointer,
            start_top_left=rect.top_left,
            start_bottom_right=rect.bottom_right,
            start_center=rect.center,
        )
        handle.state = AffordanceState.GRABBED
        return True

    def drag(self, pointer: Vec3) -> None:
        """Apply the held affordance's transform for the current pointer."""
        grab = self._grab
        if grab is None:
            return
        handle = self._affordances[grab.affordance_id]

        if handle.kind is AffordanceKind.TRANSLATE:
            corners = _translate(grab, handle.axis, pointer)
        elif handle.kind is AffordanceKind.ROTATE:
            corners = _rotate(grab, pointer)
        else:
            corners = _scale(grab, handle.corner, pointer)

        if corners is not None:
            self._set_corners(*corners)

    def release(self) -> None:
        """Drop the held affordance; hover behaviour resumes next frame."""
        if self._grab is None:
            return
        self._affordances[self._grab.affordance_id].state = AffordanceState.IDLE
        self._grab = None

    # Actions
    def commit(self) -> CalibrationSnapshot:
        """Freeze the rectangle and send it to the display.

        Raises:
            CalibrationError: Not editing.
        """
        if self._state is not CalibrationState.EDITING:
            raise CalibrationError(f"Cannot commit while {self._state.value}")
        self.release()

        snapshot = self._rectangle.freeze()
        self._snapshot = snapshot
        self._state = CalibrationState.COMMITTED
        self._show(COMMITTED_AFFORDANCES)
        self._stats.commits += 1
        logger.info(
            f"Calibration committed: {snapshot.width_meters:.3f} m x "
            f"{snapshot.height_meters:.3f} m"
        )

        if self._send is None:
            logger.warning("Calibration committed without a transport; not sent")
            return snapshot
        envelope = Envelope(MessageType.CALIBRATION_COMMIT, adapters.snapshot_to_wire(snapshot))
        try:
            self._send(envelope)
        except Exception as e:
            self._stats.failed_sends += 1
            logger.warning(f"Failed to send calibration commit: {e}")
        return snapshot

    def recalibrate(self) -> None:
        """Reopen editing from the last committed snapshot.

        Raises:
            CalibrationError: Not committed.
        """
        if self._state is not CalibrationState.COMMITTED:
            raise CalibrationError(f"Cannot recalibrate while {self._state.value}")
        self._show(())
        snap = self._snapshot
        self._rectangle = CalibrationRectangle(
            top_left=snap.top_left,
            bottom_right=snap.bottom_right,
            width_meters=snap.width_meters,
            height_meters=snap.height_meters,
        )
        self._state = CalibrationState.EDITING
        self._show(EDITING_AFFORDANCES)
        logger.info("Recalibrating")

    # Internals
    def _show(self, ids: tuple[str, ...]) -> None:
        for handle in self._affordances.values():
            handle.visible = handle.id in ids
            handle.state = AffordanceState.IDLE

    def _set_corners(self, top_left: Vec3, bottom_right: Vec3) -> None:
        width = top_left.horizontal_distance_to(bottom_right)
        rect = self._rectangle
        rect.top_left = top_left
        rect.bottom_right = bottom_right
        rect.width_meters = width
        # Aspect stays pinned to the display's pixel ratio
        rect.height_meters = width / self._dimensions.aspect_ratio
        self._stats.edits += 1


def _translate(grab: _Grab, axis: Vec3, pointer: Vec3) -> tuple[Vec3, Vec3]:
    distance = (pointer - grab.start_pointer).dot(axis)
    offset = axis.scaled(distance)
    return grab.start_top_left + offset, grab.start_bottom_right + offset


def _rotate(grab: _Grab, pointer: Vec3) -> tuple[Vec3, Vec3] | None:
    center = grab.start_center
    if (
        center.horizontal_distance_to(pointer) < EPSILON
        or center.horizontal_distance_to(grab.start_pointer) < EPSILON
    ):
        # Bearing undefined at the pivot
        return None
    start = math.atan2(grab.start_pointer.z - center.z, grab.start_pointer.x - center.x)
    current = math.atan2(pointer.z - center.z, pointer.x - center.x)
    angle = current - start
    return (
        grab.start_top_left.rotated_about_y(center, angle),
        grab.start_bottom_right.rotated_about_y(center, angle),
    )


def _scale(grab: _Grab, corner: str, pointer: Vec3) -> tuple[Vec3, Vec3] | None:
    if corner == "top_left":
        moved, anchor = grab.start_top_left, grab.start_bottom_right
    else:
        moved, anchor = grab.start_bottom_right, grab.start_top_left

    span = moved - anchor
    initial = span.length()
    if initial < EPSILON:
        return None

    direction = span.scaled(1.0 / initial)
    projected = (pointer - grab.start_pointer).dot(direction)
    factor = math.exp(SCALE_GAIN * projected / initial)
    new_corner = anchor + span.scaled(factor)

    if corner == "top_left":
        return new_corner, anchor
    return anchor, new_corner
