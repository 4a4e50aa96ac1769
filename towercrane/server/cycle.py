"""
Pick-and-place cycle sequencing.

IDLE -> MOVING_TO_A -> GRIPPING -> MOVING_TO_B -> RELEASING -> RETURNING -> IDLE

Moving phases plan their path lazily on the first tick they run, then index
it with eased progress; gripper phases step the aperture once per tick.
Every operation here is total: commands issued in the wrong mode are logged
and ignored.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np
from numpy.typing import ArrayLike, NDArray

from towercrane import config as cfg
from towercrane.motion.easing import ease_in_out_cubic
from towercrane.motion.kinematics import KinematicsSolver
from towercrane.motion.path_planner import calculate_path, concat_paths, path_length
from towercrane.protocol.types import CycleProgress, GripperAction, Mode
from towercrane.server.state import (
    ActiveCycle,
    CraneState,
    CycleConfig,
    GrippingPhase,
    IdlePhase,
    MovingToAPhase,
    MovingToBPhase,
    PhasePath,
    ReleasingPhase,
    ReturningPhase,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CycleCompletion:
    """Result of the tick that brought a cycle back home."""

    total_time: float
    cycle_count: int
    final_position: NDArray[np.float64]


class CycleStateMachine:
    """Drives CraneState through cycles and manual jogs."""

    def __init__(self, solver: KinematicsSolver | None = None):
        self.solver = solver or KinematicsSolver()
        geometry = self.solver.geometry
        self._home = cfg.HOME_POSITION.copy()
        self._workspace = geometry.workspace

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def start_cycle(
        self,
        state: CraneState,
        point_a: ArrayLike,
        point_b: ArrayLike,
        speed: float | None,
        now: float,
    ) -> bool:
        """Begin a cycle from IDLE. Returns False (no-op) in any other mode."""
        if state.mode is not Mode.IDLE:
            logger.info("Cycle start ignored - crane is in %s", state.mode.value)
            return False

        if speed is None or not math.isfinite(speed) or speed <= 0.0:
            speed = cfg.DEFAULT_SPEED

        config = CycleConfig(
            point_a=np.asarray(point_a, dtype=np.float64).copy(),
            point_b=np.asarray(point_b, dtype=np.float64).copy(),
            speed=float(speed),
        )
        state.payload_position = config.point_a.copy()
        state.payload_attached = False
        state.phase = MovingToAPhase(cycle=ActiveCycle(config, now))
        state.cycle_progress = CycleProgress(True, "moving_to_a", 0)
        logger.info(
            "Started cycle from %s to %s speed=%.2f",
            config.point_a.tolist(),
            config.point_b.tolist(),
            config.speed,
        )
        return True

    def stop_cycle(self, state: CraneState) -> None:
        """Return home from a running cycle, or halt outright when idle/returning."""
        phase = state.phase
        if isinstance(phase, (IdlePhase, ReturningPhase)):
            state.phase = IdlePhase()
            state.cycle_progress = None
            state.is_moving = False
            state.has_target = False
            logger.info("Cycle stopped")
            return

        state.phase = ReturningPhase(cycle=phase.cycle)
        state.cycle_progress = CycleProgress(False, "idle", 90)
        state.payload_attached = False
        logger.info("Cycle stopped - returning to home")

    def emergency_stop(self, state: CraneState) -> None:
        logger.warning("Emergency stop activated in %s", state.mode.value)
        self.stop_cycle(state)

    def apply_manual_control(
        self,
        state: CraneState,
        end_actuator_x: float = 0.0,
        end_actuator_y: float = 0.0,
        lift_direction: float = 0.0,
        gripper_action: GripperAction | None = None,
    ) -> bool:
        """Jog the end effector. Returns False (no-op) outside IDLE."""
        if state.mode is not Mode.IDLE:
            logger.info("Manual control ignored - crane is in %s", state.mode.value)
            return False

        ws = self._workspace
        delta = np.array([end_actuator_x, lift_direction, end_actuator_y]) * cfg.MANUAL_STEP
        target = state.end_effector + delta
        target[0] = np.clip(target[0], -ws.xz_bound, ws.xz_bound)
        target[1] = np.clip(target[1], ws.y_min, ws.y_max)
        target[2] = np.clip(target[2], -ws.xz_bound, ws.xz_bound)

        if gripper_action == "open":
            state.gripper = min(1.0, state.gripper + cfg.GRIPPER_STEP)
        elif gripper_action == "close":
            state.gripper = max(0.0, state.gripper - cfg.GRIPPER_STEP)

        state.apply_joints(self.solver.solve(target, previous=state.joints))
        state.end_effector = target
        state.is_moving = True
        state.has_target = True
        return True

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def step(self, state: CraneState, now: float) -> CycleCompletion | None:
        """Advance one tick. Returns a CycleCompletion on the tick the cycle ends."""
        match state.phase:
            case IdlePhase():
                state.is_moving = False
                state.has_target = False
            case MovingToAPhase(cycle=cycle, path=path):
                if path is None:
                    path = self._plan(state, self._path_to_a(state, cycle.config), cycle, now)
                    state.phase = MovingToAPhase(cycle, path)
                if self._advance(state, path, now):
                    state.phase = GrippingPhase(cycle)
                    state.cycle_progress = CycleProgress(True, "at_a", 25)
            case GrippingPhase(cycle=cycle):
                state.gripper = max(0.0, state.gripper - cfg.GRIPPER_STEP)
                if state.gripper <= 0.0:
                    state.payload_attached = True
                    state.phase = MovingToBPhase(cycle)
                    state.cycle_progress = CycleProgress(True, "moving_to_b", 50)
            case MovingToBPhase(cycle=cycle, path=path):
                if path is None:
                    path = self._plan(state, self._path_to_b(state, cycle.config), cycle, now)
                    state.phase = MovingToBPhase(cycle, path)
                if self._advance(state, path, now):
                    state.phase = ReleasingPhase(cycle)
                    state.cycle_progress = CycleProgress(True, "at_b", 75)
            case ReleasingPhase(cycle=cycle):
                state.gripper = min(1.0, state.gripper + cfg.GRIPPER_STEP)
                if state.gripper >= 1.0:
                    state.payload_attached = False
                    state.payload_position = state.end_effector.copy()
                    state.phase = ReturningPhase(cycle)
                    state.cycle_progress = CycleProgress(False, "idle", 90)
            case ReturningPhase(cycle=cycle, path=path):
                if path is None:
                    path = self._plan(state, self._path_home(state, cycle.config), cycle, now)
                    state.phase = ReturningPhase(cycle, path)
                if self._advance(state, path, now):
                    return self._complete(state, cycle, now)
        return None

    def _complete(
        self, state: CraneState, cycle: ActiveCycle, now: float
    ) -> CycleCompletion:
        self.stop_cycle(state)
        state.cycles_completed += 1
        state.cycle_progress = CycleProgress(False, "idle", 100)
        completion = CycleCompletion(
            total_time=max(0.0, now - cycle.started_at),
            cycle_count=state.cycles_completed,
            final_position=state.end_effector.copy(),
        )
        logger.info(
            "Cycle %d complete in %.2fs", completion.cycle_count, completion.total_time
        )
        return completion

    # ------------------------------------------------------------------
    # Path construction
    # ------------------------------------------------------------------

    def _path_to_a(self, state: CraneState, config: CycleConfig) -> NDArray[np.float64]:
        start = state.end_effector
        target = config.point_a
        # Approach from above so the descent clears two stacked targets
        approach = np.array(
            [target[0], max(start[1], target[1] + 2.0 * cfg.TARGET_RADIUS), target[2]]
        )
        if not self.solver.is_reachable(approach):
            limit = self.solver.find_max_reachable_point(calculate_path(start, approach))
            approach[0] = limit[0]
            approach[2] = limit[2]
        return concat_paths(calculate_path(start, approach), calculate_path(approach, target))

    def _path_to_b(self, state: CraneState, config: CycleConfig) -> NDArray[np.float64]:
        start = state.end_effector
        target = config.point_b
        if not self.solver.is_reachable(target):
            target = self.solver.find_max_reachable_point(calculate_path(start, target))
        return calculate_path(start, target)

    def _path_home(self, state: CraneState, config: CycleConfig) -> NDArray[np.float64]:
        start = state.end_effector
        lift_off = np.array(
            [start[0], config.point_b[1] + 2.0 * cfg.TARGET_RADIUS, start[2]]
        )
        return concat_paths(
            calculate_path(start, lift_off), calculate_path(lift_off, self._home)
        )

    def _plan(
        self,
        state: CraneState,
        points: NDArray[np.float64],
        cycle: ActiveCycle,
        now: float,
    ) -> PhasePath:
        duration = path_length(points) / cycle.config.speed
        logger.debug(
            "Planned %s path points=%d duration=%.3fs",
            state.mode.value,
            len(points),
            duration,
        )
        return PhasePath(points=points, started_at=now, duration=duration)

    def _advance(self, state: CraneState, path: PhasePath, now: float) -> bool:
        """Move along ``path``; True once the phase is complete."""
        progress = path.progress(now)
        if progress >= 1.0:
            logger.log(cfg.TRACE, "%s complete", state.mode.value)
            return True

        points = path.points
        last = len(points) - 1
        index = ease_in_out_cubic(progress) * last
        lower = int(math.floor(index))
        upper = min(lower + 1, last)
        t = index - lower
        target = points[lower] + (points[upper] - points[lower]) * t

        state.apply_joints(self.solver.solve(target, previous=state.joints))
        state.end_effector = target
        state.is_moving = True
        state.has_target = True
        if state.cycle_progress is not None:
            state.cycle_progress.estimated_time_remaining = path.remaining(now)
        return False
