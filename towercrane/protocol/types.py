"""
Type definitions for the towercrane protocol.

Defines enums and structs shared by the motion core and the message codec.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

import msgspec
import numpy as np
from numpy.typing import ArrayLike, NDArray


class Mode(str, Enum):
    """Operating mode of the crane. IDLE accepts manual control."""

    IDLE = "IDLE"
    MOVING_TO_A = "MOVING_TO_A"
    GRIPPING = "GRIPPING"
    MOVING_TO_B = "MOVING_TO_B"
    RELEASING = "RELEASING"
    RETURNING = "RETURNING"


# Coarse phase names reported in cycle progress
CyclePhase = Literal["moving_to_a", "at_a", "moving_to_b", "at_b", "idle"]

# Gripper jog literals
GripperAction = Literal["open", "close", "stop"]

# Error codes carried by error notifications
ErrorCode = Literal["INVALID_MESSAGE", "UNKNOWN_TYPE"]


class Point3D(msgspec.Struct, frozen=True):
    """Cartesian point, Y up. Encoded as {"x", "y", "z"}."""

    x: float
    y: float
    z: float

    def to_array(self) -> NDArray[np.float64]:
        return np.array([self.x, self.y, self.z], dtype=np.float64)

    @classmethod
    def from_array(cls, values: ArrayLike) -> Point3D:
        arr = np.asarray(values, dtype=np.float64)
        return cls(float(arr[0]), float(arr[1]), float(arr[2]))


class CycleProgress(msgspec.Struct, rename="camel"):
    """Progress of the active pick-and-place cycle (checkpoint percentages)."""

    is_active: bool
    current_phase: CyclePhase
    progress_percent: int
    estimated_time_remaining: float = 0.0
