"""
Data types shared by the relay, the session proxy and the VR-side components.

All types use snake_case naming; :mod:`xrwall.adapters` converts them to and
from the camelCase wire payloads.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .protocol import Role


@dataclass(frozen=True)
class Vec3:
    """Immutable 3D vector in metres (Y up, -Z forward)."""

    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    @classmethod
    def from_iterable(cls, values: Iterable[float]) -> Vec3:
        x, y, z = values
        return cls(float(x), float(y), float(z))

    def __add__(self, other: Vec3) -> Vec3:
        return Vec3(self.x + other.x, self.y + other.y, self.z + other.z)

    def __sub__(self, other: Vec3) -> Vec3:
        return Vec3(self.x - other.x, self.y - other.y, self.z - other.z)

    def scaled(self, factor: float) -> Vec3:
        return Vec3(self.x * factor, self.y * factor, self.z * factor)

    def dot(self, other: Vec3) -> float:
        return self.x * other.x + self.y * other.y + self.z * other.z

    def length(self) -> float:
        return math.sqrt(self.dot(self))

    def distance_to(self, other: Vec3) -> float:
        return (self - other).length()

    def horizontal_distance_to(self, other: Vec3) -> float:
        """Distance projected onto the XZ (floor) plane."""
        return math.hypot(other.x - self.x, other.z - self.z)

    def midpoint(self, other: Vec3) -> Vec3:
        return Vec3(
            (self.x + other.x) / 2, (self.y + other.y) / 2, (self.z + other.z) / 2
        )

    def rotated_about_y(self, pivot: Vec3, angle: float) -> Vec3:
        """Yaw this point about the vertical axis through ``pivot``.

        Positive angles increase the XZ bearing ``atan2(dz, dx)``.
        """
        dx = self.x - pivot.x
        dz = self.z - pivot.z
        cos_a = math.cos(angle)
        sin_a = math.sin(angle)
        return Vec3(
            pivot.x + dx * cos_a - dz * sin_a,
            self.y,
            pivot.z + dx * sin_a + dz * cos_a,
        )

    def is_finite(self) -> bool:
        return all(math.isfinite(c) for c in (self.x, self.y, self.z))

    def as_list(self) -> list[float]:
        return [self.x, self.y, self.z]


@dataclass(frozen=True)
class ClientInfo:
    """Public projection of a registered client."""

    role: Role
    session_id: str


@dataclass(frozen=True)
class DimensionReport:
    """Pixel size of the shared display."""

    screen_width: float
    screen_height: float

    @property
    def aspect_ratio(self) -> float:
        return self.screen_width / self.screen_height


@dataclass(frozen=True)
class CalibrationSnapshot:
    """Frozen calibration rectangle as committed by an INPUT client."""

    top_left: Vec3
    bottom_right: Vec3
    width_meters: float
    height_meters: float
    owner_session_id: str | None = None


@dataclass(frozen=True)
class ResolvedHit:
    """Ray hit on the calibration rectangle, resolved by the 3D layer.

    ``u`` and ``v`` are rectangle-relative in [0, 1] and only meaningful when
    ``on_display`` is true.
    """

    on_display: bool
    u: float | None = None
    v: float | None = None

    @classmethod
    def miss(cls) -> ResolvedHit:
        return cls(on_display=False)


@dataclass(frozen=True)
class ControllerState:
    """Per-device, per-frame pointer state sent to the display."""

    device_id: str
    on_display: bool
    canvas_x: float | None = None
    canvas_y: float | None = None
    buttons: dict[str, float] = field(default_factory=dict)
    axes: dict[str, float] = field(default_factory=dict)
    owner_session_id: str | None = None


@dataclass(frozen=True)
class GameEvent:
    """Opaque application payload fanned out by the relay."""

    payload: Any
    sender_session_id: str | None = None
