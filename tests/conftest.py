"""Shared fixtures for towercrane unit tests."""

import pytest

from towercrane.protocol.types import Point3D
from towercrane.server.controller import Controller, ControllerConfig
from towercrane.server.cycle import CycleStateMachine
from towercrane.server.state import CraneState
from towercrane.server.status_broadcast import EventQueue


class FakeClock:
    """Manually advanced clock in seconds."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, dt: float) -> float:
        self.now += dt
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def events() -> EventQueue:
    return EventQueue()


@pytest.fixture
def controller(clock, events) -> Controller:
    ctrl = Controller(ControllerConfig(high_priority=False), sink=events, clock=clock)
    yield ctrl
    ctrl.stop()


@pytest.fixture
def state() -> CraneState:
    return CraneState()


@pytest.fixture
def machine() -> CycleStateMachine:
    return CycleStateMachine()


@pytest.fixture
def point_a() -> Point3D:
    return Point3D(-5.0, 2.0, -2.0)


@pytest.fixture
def point_b() -> Point3D:
    return Point3D(5.0, 3.0, 3.0)


@pytest.fixture
def run_until_idle(controller, clock):
    """Tick with the fake clock until the cycle ends; returns every emission."""

    def run(dt: float = 1 / 60, max_ticks: int = 20000):
        out = []
        for _ in range(max_ticks):
            clock.advance(dt)
            out.extend(controller.tick())
            if controller.state.cycle_config is None:
                return out
        raise AssertionError("cycle did not finish within %d ticks" % max_ticks)

    return run
