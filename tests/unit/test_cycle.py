"""
Unit tests for the pick-and-place cycle state machine.

These drive CycleStateMachine.step() directly with explicit timestamps.
"""

import numpy as np
import pytest

from towercrane.config import DEFAULT_SPEED, HOME_POSITION
from towercrane.protocol.types import Mode
from towercrane.server.state import (
    CraneState,
    GrippingPhase,
    IdlePhase,
    MovingToAPhase,
    MovingToBPhase,
    PhasePath,
    ReturningPhase,
)

A = np.array([-5.0, 2.0, -2.0])
B = np.array([5.0, 3.0, 3.0])
T0 = 100.0


def _advance_to(machine, state, mode, now=T0, dt=1 / 60, max_ticks=5000):
    """Step until ``state.mode`` equals ``mode``; returns the time reached."""
    for _ in range(max_ticks):
        if state.mode is mode:
            return now
        now += dt
        machine.step(state, now)
    raise AssertionError(f"never reached {mode}")


class TestStartCycle:
    """Tests for start_cycle."""

    def test_start_from_idle(self, machine, state):
        assert machine.start_cycle(state, A, B, 10.0, T0) is True

        assert state.mode is Mode.MOVING_TO_A
        assert state.cycle_progress.is_active is True
        assert state.cycle_progress.current_phase == "moving_to_a"
        assert state.cycle_progress.progress_percent == 0
        np.testing.assert_array_equal(state.payload_position, A)
        assert state.payload_attached is False

    def test_second_start_is_noop(self, machine, state):
        machine.start_cycle(state, A, B, 10.0, T0)
        phase = state.phase

        assert machine.start_cycle(state, B, A, 3.0, T0 + 1) is False
        assert state.phase is phase
        np.testing.assert_array_equal(state.cycle_config.point_a, A)

    @pytest.mark.parametrize("speed", [None, 0.0, -4.0, float("nan")])
    def test_invalid_speed_uses_default(self, machine, state, speed):
        machine.start_cycle(state, A, B, speed, T0)
        assert state.cycle_config.speed == DEFAULT_SPEED


class TestStopCycle:
    """Tests for stop_cycle / emergency_stop."""

    def test_stop_when_idle_stays_idle(self, machine, state):
        machine.stop_cycle(state)
        assert state.mode is Mode.IDLE
        assert state.cycle_progress is None
        assert state.cycle_config is None

    def test_stop_mid_cycle_returns_home(self, machine, state):
        machine.start_cycle(state, A, B, 10.0, T0)
        machine.step(state, T0)

        machine.stop_cycle(state)

        assert isinstance(state.phase, ReturningPhase)
        assert state.phase.path is None
        assert state.cycle_progress.is_active is False
        assert state.cycle_progress.current_phase == "idle"
        assert state.cycle_progress.progress_percent == 90
        assert state.payload_attached is False

    def test_stop_while_returning_halts(self, machine, state):
        machine.start_cycle(state, A, B, 10.0, T0)
        machine.stop_cycle(state)
        state.is_moving = True

        machine.stop_cycle(state)

        assert isinstance(state.phase, IdlePhase)
        assert state.cycle_progress is None
        assert state.is_moving is False
        assert state.has_target is False

    def test_emergency_stop_logs_warning(self, machine, state, caplog):
        machine.start_cycle(state, A, B, 10.0, T0)
        with caplog.at_level("WARNING", logger="towercrane.server.cycle"):
            machine.emergency_stop(state)
        assert state.mode is Mode.RETURNING
        assert any("Emergency stop" in r.message for r in caplog.records)


class TestManualControl:
    """Tests for apply_manual_control."""

    def test_jog_moves_end_effector(self, machine, state):
        assert machine.apply_manual_control(state, -1.0, 1.0, 1.0) is True

        np.testing.assert_allclose(state.end_effector, HOME_POSITION + [-0.2, 0.2, 0.2])
        assert state.lift == pytest.approx(12.2)
        assert state.is_moving is True
        assert state.has_target is True

    def test_jog_is_clamped_to_workspace(self, machine, state):
        state.end_effector = np.array([14.9, 24.9, -14.9])
        machine.apply_manual_control(state, 1.0, -1.0, 1.0)
        np.testing.assert_allclose(state.end_effector, [15.0, 25.0, -15.0])

    def test_gripper_actions(self, machine, state):
        machine.apply_manual_control(state, gripper_action="open")
        assert state.gripper == pytest.approx(0.52)
        machine.apply_manual_control(state, gripper_action="close")
        machine.apply_manual_control(state, gripper_action="close")
        assert state.gripper == pytest.approx(0.48)
        machine.apply_manual_control(state, gripper_action="stop")
        assert state.gripper == pytest.approx(0.48)

    def test_ignored_outside_idle(self, machine, state):
        machine.start_cycle(state, A, B, 10.0, T0)
        before = (state.end_effector.copy(), state.joints, state.gripper)

        assert machine.apply_manual_control(state, 1.0, 1.0, 1.0, "open") is False

        np.testing.assert_array_equal(state.end_effector, before[0])
        assert state.joints == before[1]
        assert state.gripper == before[2]


class TestStep:
    """Tests for per-tick phase behaviour."""

    def test_idle_tick_clears_motion_flags(self, machine, state):
        state.is_moving = True
        state.has_target = True
        assert machine.step(state, T0) is None
        assert state.is_moving is False
        assert state.has_target is False

    def test_moving_phase_plans_path_lazily(self, machine, state):
        machine.start_cycle(state, A, B, 10.0, T0)
        assert state.phase.path is None

        machine.step(state, T0)

        path = state.phase.path
        assert isinstance(path, PhasePath)
        assert path.started_at == T0
        assert path.duration > 0
        # Two planned stages, each PATH_STEPS + 1 waypoints
        assert len(path.points) == 202
        np.testing.assert_allclose(path.points[-1], A)
        np.testing.assert_allclose(state.end_effector, HOME_POSITION)

    def test_approach_point_is_above_target(self, machine, state):
        machine.start_cycle(state, A, B, 10.0, T0)
        machine.step(state, T0)

        approach = state.phase.path.points[100]
        np.testing.assert_allclose(approach, [A[0], HOME_POSITION[1], A[2]])

    def test_phase_completion_moves_to_gripping(self, machine, state):
        machine.start_cycle(state, A, B, 10.0, T0)
        machine.step(state, T0)
        duration = state.phase.path.duration

        machine.step(state, T0 + duration + 1e-6)

        assert isinstance(state.phase, GrippingPhase)
        assert state.cycle_progress.current_phase == "at_a"
        assert state.cycle_progress.progress_percent == 25

    def test_estimated_time_remaining_counts_down(self, machine, state):
        machine.start_cycle(state, A, B, 10.0, T0)
        machine.step(state, T0)
        duration = state.phase.path.duration

        machine.step(state, T0 + duration / 4)

        assert state.cycle_progress.estimated_time_remaining == pytest.approx(
            duration * 0.75
        )

    def test_gripping_closes_then_attaches(self, machine, state):
        machine.start_cycle(state, A, B, 10.0, T0)
        now = _advance_to(machine, state, Mode.GRIPPING)
        assert state.payload_attached is False

        ticks = 0
        while isinstance(state.phase, GrippingPhase):
            now += 1 / 60
            machine.step(state, now)
            ticks += 1
            assert ticks <= 30

        assert state.gripper == 0.0
        assert state.payload_attached is True
        assert isinstance(state.phase, MovingToBPhase)
        assert state.cycle_progress.progress_percent == 50

    def test_releasing_detaches_at_end_effector(self, machine, state):
        machine.start_cycle(state, A, B, 10.0, T0)
        _advance_to(machine, state, Mode.RETURNING)

        assert state.gripper == 1.0
        assert state.payload_attached is False
        np.testing.assert_allclose(state.payload_position, state.end_effector)
        np.testing.assert_allclose(state.payload_position, B, atol=0.05)
        assert state.cycle_progress.progress_percent == 90

    def test_full_cycle_returns_completion_once(self, machine, state):
        machine.start_cycle(state, A, B, 10.0, T0)
        now = T0
        completions = []
        for _ in range(5000):
            now += 1 / 60
            result = machine.step(state, now)
            if result is not None:
                completions.append(result)
            if state.mode is Mode.IDLE:
                break

        assert len(completions) == 1
        done = completions[0]
        assert done.cycle_count == 1
        assert done.total_time == pytest.approx(now - T0)
        np.testing.assert_allclose(done.final_position, HOME_POSITION, atol=0.05)
        assert state.cycle_progress.progress_percent == 100
        assert state.cycles_completed == 1

    def test_zero_length_stage_collapses(self, machine, state):
        """An approach point equal to the start contributes a single waypoint."""
        below = state.end_effector - [0.0, 1.0, 0.0]
        machine.start_cycle(state, below, B, 10.0, T0)

        machine.step(state, T0)

        assert len(state.phase.path.points) == 102
        assert state.phase.path.duration == pytest.approx(0.1)

    def test_phase_variant_carries_cycle(self, machine, state):
        machine.start_cycle(state, A, B, 10.0, T0)
        assert isinstance(state.phase, MovingToAPhase)
        assert state.phase.cycle.started_at == T0


class TestCraneState:
    def test_sequence_is_monotonic(self):
        state = CraneState()
        assert [state.next_sequence() for _ in range(3)] == [1, 2, 3]

    def test_timestamp_never_goes_back(self):
        state = CraneState()
        assert state.stamp(10.0) == 10000
        assert state.stamp(9.0) == 10000
        assert state.stamp(10.5) == 10500

    def test_phase_path_progress_edges(self):
        path = PhasePath(points=np.zeros((1, 3)), started_at=5.0, duration=0.0)
        assert path.progress(4.0) == 1.0
        path = PhasePath(points=np.zeros((2, 3)), started_at=5.0, duration=2.0)
        assert path.progress(4.0) == 0.0
        assert path.progress(6.0) == pytest.approx(0.5)
        assert path.progress(9.0) == 1.0
