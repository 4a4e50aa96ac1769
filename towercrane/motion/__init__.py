"""
Motion core: kinematics, obstacle-avoiding path planning and easing.

Paths are planned once per phase as resampled waypoint arrays; the cycle
state machine indexes them with eased progress and solves kinematics for
each interpolated point.
"""

from towercrane.motion.easing import ease_in_out_cubic
from towercrane.motion.kinematics import JointAngles, KinematicsSolver
from towercrane.motion.path_planner import (
    ArcSegment,
    LineSegment,
    PathSegment,
    calculate_path,
    concat_paths,
    path_length,
    plan_segments,
)

__all__ = [
    # Kinematics
    "JointAngles",
    "KinematicsSolver",
    # Path planning
    "ArcSegment",
    "LineSegment",
    "PathSegment",
    "calculate_path",
    "concat_paths",
    "path_length",
    "plan_segments",
    # Timing
    "ease_in_out_cubic",
]
