"""
Unit tests for the Controller tick, command handling and loop lifecycle.

Ticks are driven with an injected fake clock; only the background-loop test
uses real time.
"""

import time
from unittest.mock import MagicMock

import numpy as np
import pytest

from towercrane.config import HOME_POSITION
from towercrane.protocol.types import Mode, Point3D
from towercrane.protocol.wire import (
    CycleComplete,
    ErrorNotification,
    StartCycleCmd,
    StartCycleParams,
    StateRequestCmd,
    StateUpdate,
    StopCycleCmd,
)
from towercrane.server.controller import Controller, ControllerConfig

START_CYCLE_JSON = (
    b'{"type":"start_cycle","clientId":"ui-1","command":'
    b'{"pointA":{"x":-5,"y":2,"z":-2},"pointB":{"x":5,"y":3,"z":3},"speed":10}}'
)


def _run_to_mode(controller, clock, mode, dt=1 / 60, max_ticks=5000):
    out = []
    for _ in range(max_ticks):
        if controller.state.mode is mode:
            return out
        clock.advance(dt)
        out.extend(controller.tick())
    raise AssertionError(f"never reached {mode}")


class TestTick:
    """Tests for Controller.tick."""

    def test_idle_tick_emits_one_snapshot(self, controller, events):
        out = controller.tick()

        assert len(out) == 1
        msg = out[0]
        assert isinstance(msg, StateUpdate)
        assert msg.state.mode is Mode.IDLE
        assert msg.state.is_gripper_open is False
        assert msg.state.end_effector_position == Point3D.from_array(HOME_POSITION)
        assert events.drain() == out

    def test_sink_receives_messages_in_order(self, clock):
        sink = MagicMock()
        ctrl = Controller(ControllerConfig(high_priority=False), sink=sink, clock=clock)

        first = ctrl.tick()[0]
        second = ctrl.request_state()

        assert [c.args[0] for c in sink.call_args_list] == [first, second]
        assert ctrl.broadcaster.sent_count == 2

    def test_timestamps_non_decreasing_with_clock_going_back(self, controller, clock):
        a = controller.tick()[0]
        clock.advance(-5.0)
        b = controller.tick()[0]
        assert b.timestamp >= a.timestamp
        assert b.sequence == a.sequence + 1


class TestEndToEndCycle:
    """Full pick-and-place through the controller."""

    def test_full_cycle(self, controller, point_a, point_b, run_until_idle):
        assert controller.start_cycle(point_a, point_b, speed=10.0)

        out = run_until_idle()

        completes = [m for m in out if isinstance(m, CycleComplete)]
        updates = [m for m in out if isinstance(m, StateUpdate)]
        assert len(completes) == 1
        assert controller.state.mode is Mode.IDLE

        # Every emission takes the next sequence number
        seqs = [m.sequence for m in out]
        assert all(b > a for a, b in zip(seqs, seqs[1:]))
        stamps = [m.timestamp for m in out]
        assert all(b >= a for a, b in zip(stamps, stamps[1:]))

        # CycleComplete precedes the final snapshot of the same tick
        assert out[-2] is completes[0]
        final = updates[-1]
        assert final.cycle_progress.progress_percent == 100
        assert final.cycle_progress.is_active is False
        assert completes[0].details.cycle_count == 1
        assert completes[0].details.total_time > 0

        # Payload is attached only between gripping and releasing
        for m in updates:
            attached = m.state.payload_attached
            if m.state.mode in (Mode.MOVING_TO_A, Mode.GRIPPING, Mode.RETURNING, Mode.IDLE):
                assert attached is False
            else:
                assert attached is True
                assert m.state.payload_position == m.state.end_effector_position

        modes = [m.state.mode for m in updates]
        for mode in Mode:
            assert mode in modes

    def test_payload_left_at_b(self, controller, point_a, point_b, run_until_idle):
        controller.start_cycle(point_a, point_b, speed=10.0)
        run_until_idle()

        np.testing.assert_allclose(
            controller.state.payload_position, point_b.to_array(), atol=0.05
        )

    def test_second_start_is_ignored(self, controller, clock, point_a, point_b):
        controller.start_cycle(point_a, point_b)
        clock.advance(0.1)
        controller.tick()

        assert controller.start_cycle(point_b, point_a) is False
        np.testing.assert_array_equal(
            controller.state.cycle_config.point_a, point_a.to_array()
        )

    def test_stop_during_moving_to_b(self, controller, clock, point_a, point_b):
        controller.start_cycle(point_a, point_b, speed=10.0)
        _run_to_mode(controller, clock, Mode.MOVING_TO_B)
        assert controller.state.payload_attached is True

        controller.stop_cycle()
        clock.advance(1 / 60)
        snapshot = controller.tick()[-1]

        assert snapshot.state.mode is Mode.RETURNING
        assert snapshot.state.payload_attached is False
        assert snapshot.cycle_progress.progress_percent == 90

    def test_emergency_stop_then_stop_is_idle(self, controller, clock, point_a, point_b):
        controller.start_cycle(point_a, point_b)
        controller.tick()
        controller.emergency_stop()
        assert controller.state.mode is Mode.RETURNING
        controller.stop_cycle()
        assert controller.state.mode is Mode.IDLE
        assert controller.tick()[-1].cycle_progress is None


class TestManualControl:
    def test_manual_control_in_idle(self, controller):
        assert controller.manual_control(end_actuator_x=-1.0)
        snap = controller.tick()[-1]
        # Idle tick clears the motion flags after the jog is applied
        assert snap.state.is_moving is False
        assert snap.state.end_effector_position.x == pytest.approx(10.8)

    def test_manual_control_ignored_while_cycling(
        self, controller, clock, point_a, point_b
    ):
        controller.start_cycle(point_a, point_b)
        clock.advance(0.2)
        controller.tick()
        before = controller.request_state()

        assert controller.manual_control(1.0, 1.0, 1.0, "open") is False
        after = controller.request_state()

        assert after.state.end_effector_position == before.state.end_effector_position
        assert after.state.gripper == before.state.gripper
        assert (after.state.swing, after.state.lift, after.state.elbow, after.state.wrist) == (
            before.state.swing,
            before.state.lift,
            before.state.elbow,
            before.state.wrist,
        )


class TestCommands:
    """Tests for raw and typed command handling."""

    def test_raw_start_cycle(self, controller):
        out = controller.handle_raw(START_CYCLE_JSON)
        assert out == []
        assert controller.state.mode is Mode.MOVING_TO_A

    def test_malformed_json_yields_error(self, controller, events):
        out = controller.handle_raw(b"{not json")

        assert len(out) == 1
        err = out[0]
        assert isinstance(err, ErrorNotification)
        assert err.error.code == "INVALID_MESSAGE"
        assert controller.state.mode is Mode.IDLE
        assert events.drain() == out

    def test_unknown_type_yields_error(self, controller):
        err = controller.handle_raw(b'{"type":"fly_to_moon"}')[0]
        assert err.error.code == "UNKNOWN_TYPE"

    def test_out_of_range_jog_is_invalid(self, controller):
        err = controller.handle_raw(
            b'{"type":"manual_control","command":{"endActuatorX":5}}'
        )[0]
        assert err.error.code == "INVALID_MESSAGE"
        np.testing.assert_array_equal(controller.state.end_effector, HOME_POSITION)

    def test_state_request_replies_immediately(self, controller):
        out = controller.handle_command(StateRequestCmd())
        assert len(out) == 1
        assert isinstance(out[0], StateUpdate)

    def test_submitted_commands_run_on_next_tick(self, controller, point_a, point_b):
        controller.submit(
            StartCycleCmd(command=StartCycleParams(point_a=point_a, point_b=point_b))
        )
        controller.submit(StateRequestCmd())
        controller.submit(b"garbage")
        assert controller.state.mode is Mode.IDLE

        out = controller.tick()

        assert [type(m) for m in out] == [StateUpdate, ErrorNotification, StateUpdate]
        assert controller.state.mode is Mode.MOVING_TO_A

    def test_typed_stop(self, controller, point_a, point_b):
        controller.start_cycle(point_a, point_b)
        controller.handle_command(StopCycleCmd())
        assert controller.state.mode is Mode.RETURNING

    def test_direct_stop_applies_after_submitted_start(
        self, controller, clock, point_a, point_b
    ):
        controller.submit(
            StartCycleCmd(command=StartCycleParams(point_a=point_a, point_b=point_b))
        )
        controller.stop_cycle()

        # The queued start ran first, so the stop sends the crane home
        assert controller.state.mode is Mode.RETURNING
        clock.advance(1 / 60)
        assert controller.tick()[-1].state.mode is Mode.RETURNING

    def test_direct_calls_drain_inbox_in_order(self, controller, events):
        controller.submit(b"garbage")
        controller.submit(StateRequestCmd())

        reply = controller.request_state()

        emitted = events.drain()
        assert [type(m) for m in emitted] == [
            ErrorNotification,
            StateUpdate,
            StateUpdate,
        ]
        assert emitted[-1] is reply
        assert controller.tick()[0].sequence == reply.sequence + 1

    def test_handle_raw_returns_drained_emissions_first(self, controller):
        controller.submit(StateRequestCmd())

        out = controller.handle_raw(b'{"type":"teleport"}')

        assert [type(m) for m in out] == [StateUpdate, ErrorNotification]
        assert out[1].error.code == "UNKNOWN_TYPE"


class TestLifecycle:
    """Tests for start/stop of the control loop."""

    def test_tick_after_stop_emits_nothing(self, controller, events):
        controller.stop()
        assert controller.tick() == []
        assert controller.request_state() is None
        assert controller.handle_raw(b"{bad") == []
        assert len(events) == 0

    def test_background_loop_stops_cleanly(self, clock, events):
        ctrl = Controller(
            ControllerConfig(loop_interval=0.005, high_priority=False),
            sink=events,
            clock=clock,
        )
        ctrl.start_background()
        try:
            deadline = time.monotonic() + 5.0
            while len(events) < 3 and time.monotonic() < deadline:
                time.sleep(0.01)
            assert len(events) >= 3
        finally:
            ctrl.stop()

        events.drain()
        time.sleep(0.05)
        assert len(events) == 0
        assert ctrl.running is False
        assert ctrl.closed is True
