from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar, TypeAlias

import numpy as np
from numpy.typing import NDArray

from towercrane.config import HOME_POSITION, INITIAL_GRIPPER
from towercrane.motion.kinematics import JointAngles
from towercrane.protocol.types import CycleProgress, Mode

# Joint values of the home pose (arm straight out along swing = 0)
INITIAL_LIFT: float = 12.0


@dataclass(frozen=True, slots=True)
class CycleConfig:
    """Pick point, place point and travel speed of one cycle."""

    point_a: NDArray[np.float64]
    point_b: NDArray[np.float64]
    speed: float


@dataclass(frozen=True, slots=True)
class ActiveCycle:
    """A running cycle and the time start_cycle accepted it."""

    config: CycleConfig
    started_at: float


@dataclass(frozen=True, slots=True)
class PhasePath:
    """Waypoints planned for a moving phase plus its timing."""

    points: NDArray[np.float64]
    started_at: float
    duration: float

    def progress(self, now: float) -> float:
        """Linear fraction of the phase elapsed, in [0, 1]."""
        if self.duration <= 0.0:
            return 1.0
        elapsed = max(0.0, now - self.started_at)
        return min(elapsed / self.duration, 1.0)

    def remaining(self, now: float) -> float:
        return max(0.0, self.duration - max(0.0, now - self.started_at))


# -----------------------------------------------------------------------------
# Phase variants: one per Mode, each carrying only what that phase needs
# -----------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class IdlePhase:
    mode: ClassVar[Mode] = Mode.IDLE


@dataclass(frozen=True, slots=True)
class MovingToAPhase:
    mode: ClassVar[Mode] = Mode.MOVING_TO_A

    cycle: ActiveCycle
    path: PhasePath | None = None


@dataclass(frozen=True, slots=True)
class GrippingPhase:
    mode: ClassVar[Mode] = Mode.GRIPPING

    cycle: ActiveCycle


@dataclass(frozen=True, slots=True)
class MovingToBPhase:
    mode: ClassVar[Mode] = Mode.MOVING_TO_B

    cycle: ActiveCycle
    path: PhasePath | None = None


@dataclass(frozen=True, slots=True)
class ReleasingPhase:
    mode: ClassVar[Mode] = Mode.RELEASING

    cycle: ActiveCycle


@dataclass(frozen=True, slots=True)
class ReturningPhase:
    mode: ClassVar[Mode] = Mode.RETURNING

    cycle: ActiveCycle
    path: PhasePath | None = None


Phase: TypeAlias = (
    IdlePhase
    | MovingToAPhase
    | GrippingPhase
    | MovingToBPhase
    | ReleasingPhase
    | ReturningPhase
)


def _home() -> NDArray[np.float64]:
    return HOME_POSITION.copy()


@dataclass
class CraneState:
    """
    Mutable crane state owned by a single controller.

    Joint angles are radians, lift and positions are world units (Y up),
    gripper aperture is 0 (closed) .. 1 (open).
    """

    # Joints
    swing: float = 0.0
    lift: float = INITIAL_LIFT
    elbow: float = 0.0
    wrist: float = 0.0
    gripper: float = INITIAL_GRIPPER

    # Tool and payload
    end_effector: NDArray[np.float64] = field(default_factory=_home)
    payload_position: NDArray[np.float64] = field(
        default_factory=lambda: np.zeros(3, dtype=np.float64)
    )
    payload_attached: bool = False

    is_moving: bool = False
    has_target: bool = False

    # Emission ordering
    sequence: int = 0
    timestamp: int = 0  # ms, non-decreasing

    phase: Phase = field(default_factory=IdlePhase)
    cycle_progress: CycleProgress | None = None
    cycles_completed: int = 0

    @property
    def mode(self) -> Mode:
        return self.phase.mode

    @property
    def cycle_config(self) -> CycleConfig | None:
        """Configuration of the running cycle, None when idle."""
        if isinstance(self.phase, IdlePhase):
            return None
        return self.phase.cycle.config

    @property
    def joints(self) -> JointAngles:
        return JointAngles(self.swing, self.lift, self.elbow, self.wrist)

    @property
    def is_gripper_open(self) -> bool:
        return self.gripper > 0.5

    def apply_joints(self, angles: JointAngles) -> None:
        self.swing = angles.swing
        self.lift = angles.lift
        self.elbow = angles.elbow
        self.wrist = angles.wrist

    def next_sequence(self) -> int:
        self.sequence += 1
        return self.sequence

    def stamp(self, now_s: float) -> int:
        """Advance the millisecond timestamp, never backwards."""
        self.timestamp = max(self.timestamp, int(now_s * 1000.0))
        return self.timestamp
