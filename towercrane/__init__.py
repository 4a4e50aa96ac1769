"""
Tower crane motion core.

Inverse kinematics, obstacle-avoiding path planning and the pick-and-place
cycle state machine, driven by a fixed-rate controller that emits ordered
state snapshots.

Key components:
- Controller: owns one crane and publishes state_update / cycle_complete
- KinematicsSolver: joint angles for a Cartesian target
- calculate_path: resampled waypoints around the tower
- EventQueue / JsonLinesSink: outbound sinks
"""

from ._version import __version__
from .motion import KinematicsSolver, calculate_path, ease_in_out_cubic
from .protocol.types import Mode, Point3D
from .server.controller import Controller, ControllerConfig
from .server.status_broadcast import EventQueue, JsonLinesSink

__all__ = [
    "__version__",
    "Controller",
    "ControllerConfig",
    "EventQueue",
    "JsonLinesSink",
    "KinematicsSolver",
    "Mode",
    "Point3D",
    "calculate_path",
    "ease_in_out_cubic",
]
