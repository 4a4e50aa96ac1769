"""
Closed-form kinematics for the tower crane.

The manipulator is a swing joint on the tower, a lift carriage, a planar
two-link arm (upper + lower) and a vertical wrist extension carrying the
gripper. Solving is total over R^3: unreachable targets fall back to a fully
extended arm and degenerate geometry keeps the previous elbow/wrist values.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np
from numpy.typing import ArrayLike, NDArray

from towercrane.config import CRANE, TRACE, CraneGeometry

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class JointAngles:
    """Joint values for one Cartesian target. Angles in radians."""

    swing: float
    lift: float
    elbow: float
    wrist: float


class KinematicsSolver:
    """Inverse/forward kinematics and reach queries for one crane geometry."""

    def __init__(self, geometry: CraneGeometry = CRANE):
        self.geometry = geometry
        self._l1 = geometry.arm.upper_length
        self._l2 = geometry.arm.lower_length
        self._max_reach = geometry.arm.max_reach

    @property
    def max_reach(self) -> float:
        return self._max_reach

    def solve(
        self, target: ArrayLike, previous: JointAngles | None = None
    ) -> JointAngles:
        """
        Solve joint values that place the end effector at ``target``.

        Args:
            target: Cartesian point [x, y, z]
            previous: Last applied solution; its elbow/wrist are kept when the
                planar solution is undefined (target on the tower axis or
                inside the inner reach circle)

        Returns:
            JointAngles; never contains NaN
        """
        x, y, z = np.asarray(target, dtype=np.float64)[:3]
        lift_cfg = self.geometry.lift

        swing = float(np.arctan2(x, z) - np.pi / 2)
        lift = float(
            np.clip(
                y + self.geometry.arm.wrist_ext_length + lift_cfg.offset,
                lift_cfg.min,
                lift_cfg.max,
            )
        )

        l1, l2 = self._l1, self._l2
        dist = np.hypot(x, z)
        dist_sq = dist * dist

        if dist > l1 + l2:
            return JointAngles(swing, lift, 0.0, 0.0)

        with np.errstate(divide="ignore", invalid="ignore"):
            elbow = -np.arccos((dist_sq - l1 * l1 - l2 * l2) / (2.0 * l1 * l2))
            shoulder = np.arctan2(0.0, dist) + np.arccos(
                (dist_sq + l1 * l1 - l2 * l2) / (2.0 * dist * l1)
            )

        if np.isnan(elbow) or np.isnan(shoulder):
            prev_elbow = previous.elbow if previous is not None else 0.0
            prev_wrist = previous.wrist if previous is not None else 0.0
            logger.log(
                TRACE,
                "ik_degenerate dist=%.4f keeping elbow=%.4f wrist=%.4f",
                dist,
                prev_elbow,
                prev_wrist,
            )
            return JointAngles(swing, lift, prev_elbow, prev_wrist)

        return JointAngles(swing, lift, float(elbow), float(-shoulder - elbow))

    def forward(self, angles: JointAngles) -> NDArray[np.float64]:
        """End-effector position for the given joint values."""
        l1, l2 = self._l1, self._l2
        shoulder = -angles.wrist - angles.elbow
        # Planar arm in the swing frame: axial points away from the tower
        axial = l1 * math.cos(shoulder) + l2 * math.cos(shoulder + angles.elbow)
        lateral = l1 * math.sin(shoulder) + l2 * math.sin(shoulder + angles.elbow)

        heading = angles.swing + math.pi / 2
        sin_h, cos_h = math.sin(heading), math.cos(heading)
        x = axial * sin_h + lateral * cos_h
        z = axial * cos_h - lateral * sin_h
        y = angles.lift - self.geometry.arm.wrist_ext_length - self.geometry.lift.offset
        return np.array([x, y, z], dtype=np.float64)

    def is_reachable(self, point: ArrayLike) -> bool:
        """True when the horizontal distance from the tower is within reach."""
        p = np.asarray(point, dtype=np.float64)
        return bool(np.hypot(p[0], p[2]) <= self._max_reach)

    def find_max_reachable_point(self, path: ArrayLike) -> NDArray[np.float64]:
        """
        Last reachable waypoint of ``path``.

        Falls back to the first waypoint when none is reachable, and to the
        origin for an empty path.
        """
        pts = np.asarray(path, dtype=np.float64).reshape(-1, 3)
        if len(pts) == 0:
            return np.zeros(3, dtype=np.float64)
        reachable = np.flatnonzero(np.hypot(pts[:, 0], pts[:, 2]) <= self._max_reach)
        if reachable.size:
            return pts[reachable[-1]].copy()
        return pts[0].copy()
