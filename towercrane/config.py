"""
Central configuration for towercrane tunables and shared constants.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

TRACE: int = 5
logging.addLevelName(TRACE, "TRACE")

TRACE_ENABLED = str(os.getenv("TOWERCRANE_TRACE", "0")).lower() in (
    "1",
    "true",
    "yes",
    "on",
)

# Tick rate of the control loop (Hz). 60 Hz ~= 16 ms per snapshot.
TICK_RATE_HZ: float = float(os.getenv("TOWERCRANE_TICK_RATE_HZ", "60"))

# Centralized loop interval (seconds).
INTERVAL_S: float = max(1e-6, 1.0 / max(TICK_RATE_HZ, 1.0))

# Time before a deadline where the loop timer stops sleeping and spins (ms)
BUSY_THRESHOLD_MS: float = float(os.getenv("TOWERCRANE_BUSY_THRESHOLD_MS", "2.0"))

# Commands drained from the inbox per tick
MAX_POLL_COUNT: int = int(os.getenv("TOWERCRANE_MAX_POLL_COUNT", "64"))

LOG_LEVEL_DEFAULT: str = "INFO"

# Path resampling: every planned path has PATH_STEPS + 1 waypoints
PATH_STEPS: int = int(os.getenv("TOWERCRANE_PATH_STEPS", "100"))

# Default cycle speed (length units per second)
DEFAULT_SPEED: float = float(os.getenv("TOWERCRANE_DEFAULT_SPEED", "10"))

# Gripper aperture change per tick while gripping/releasing or jogging
GRIPPER_STEP: float = 0.02

# Manual jog displacement per command per unit input
MANUAL_STEP: float = 0.2

# Radius of a pick target; approach/lift-off clear two stacked targets
TARGET_RADIUS: float = 0.5

# Intersections this close to a segment end are treated as tangent touches
INTERSECTION_EPS: float = 0.001


# -----------------------------------------------------------------------------
# Crane geometry
# -----------------------------------------------------------------------------
#
# Usage:
#   CRANE.arm.upper_length     -> shoulder-to-elbow link length
#   CRANE.arm.max_reach        -> upper + lower length (horizontal reach)
#   CRANE.lift.min / .max      -> carriage travel along the tower
#   CRANE.obstacle.radius      -> keep-out cylinder around the tower base
#   CRANE.workspace.xz_bound   -> symmetric jog bound for X and Z


@dataclass(frozen=True, slots=True)
class ArmGeometry:
    """Two-link arm plus the vertical wrist extension."""

    upper_length: float
    lower_length: float
    wrist_ext_length: float

    @property
    def max_reach(self) -> float:
        return self.upper_length + self.lower_length


@dataclass(frozen=True, slots=True)
class LiftRange:
    """Carriage travel along the tower."""

    min: float
    max: float
    # lift = target_y + wrist_ext_length + offset
    offset: float = 1.0


@dataclass(frozen=True, slots=True)
class KeepOut:
    """Vertical exclusion cylinder centered at the world origin."""

    radius: float


@dataclass(frozen=True, slots=True)
class JogWorkspace:
    """Bounds applied to manual jog targets."""

    xz_bound: float
    y_min: float
    y_max: float


@dataclass(frozen=True, slots=True)
class CraneGeometry:
    """Unified crane geometry namespace."""

    arm: ArmGeometry
    lift: LiftRange
    obstacle: KeepOut
    workspace: JogWorkspace


CRANE: CraneGeometry = CraneGeometry(
    arm=ArmGeometry(upper_length=6.0, lower_length=5.0, wrist_ext_length=3.0),
    lift=LiftRange(min=2.0, max=14.0),
    obstacle=KeepOut(
        radius=float(os.getenv("TOWERCRANE_OBSTACLE_RADIUS", "3.0")),
    ),
    workspace=JogWorkspace(xz_bound=15.0, y_min=2.0, y_max=25.0),
)

# Validate geometry at module load
if CRANE.arm.upper_length <= 0 or CRANE.arm.lower_length <= 0:
    raise ValueError("Arm link lengths must be positive.")
if CRANE.obstacle.radius < 0:
    raise ValueError("Obstacle radius must be non-negative.")

# Home position: arm fully extended along swing = 0 with the carriage at 12
HOME_POSITION: NDArray[np.float64] = np.array(
    [CRANE.arm.max_reach, 12.0 - CRANE.arm.wrist_ext_length - CRANE.lift.offset, 0.0],
    dtype=np.float64,
)
HOME_POSITION.setflags(write=False)

# Gripper aperture at startup (half open)
INITIAL_GRIPPER: float = 0.5
