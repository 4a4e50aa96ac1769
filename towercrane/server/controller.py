"""
Main controller for the towercrane motion server.
"""

import logging
import queue
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import psutil  # type: ignore[import-untyped]

from towercrane.config import INTERVAL_S, MAX_POLL_COUNT, TRACE
from towercrane.motion.kinematics import KinematicsSolver
from towercrane.protocol.wire import (
    Command,
    EmergencyStopCmd,
    ManualControlCmd,
    ManualControlParams,
    OutboundMessage,
    StartCycleCmd,
    StartCycleParams,
    StateRequestCmd,
    StateUpdate,
    StopCycleCmd,
    create_command,
)
from towercrane.protocol.types import GripperAction, Point3D
from towercrane.server.async_logging import AsyncLogHandler
from towercrane.server.cycle import CycleStateMachine
from towercrane.server.loop_timer import LoopTimer, format_hz_summary
from towercrane.server.state import CraneState
from towercrane.server.status_broadcast import Sink, StatusBroadcaster

logger = logging.getLogger("towercrane.server.controller")


@dataclass
class ControllerConfig:
    """Configuration for the controller."""

    loop_interval: float = INTERVAL_S
    high_priority: bool = True
    join_timeout: float = 2.0


class Controller:
    """
    Owns one crane: its state, the cycle state machine and the outbound stream.

    All state mutation happens under a single re-entrant lock, so command
    handlers and ticks never interleave. Callers on other threads should
    prefer submit(), which queues the command for the next tick.

    Usage:
        events = EventQueue()
        ctrl = Controller(sink=events)
        ctrl.start_cycle(Point3D(-5, 2, -2), Point3D(5, 3, 3), speed=10)
        ctrl.tick()          # or ctrl.start_background() for a 60 Hz loop
    """

    def __init__(
        self,
        config: ControllerConfig | None = None,
        sink: Sink | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or ControllerConfig()
        self.state = CraneState()
        self.cycle = CycleStateMachine(KinematicsSolver())
        self.broadcaster = StatusBroadcaster(sink)
        self.running = False

        self._clock = clock
        self._inbox: queue.SimpleQueue[Command | bytes | str] = queue.SimpleQueue()
        self._lock = threading.RLock()
        self._closed = False
        self._thread: threading.Thread | None = None

        self._timer = LoopTimer(self.config.loop_interval)
        self._async_log = AsyncLogHandler()

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def tick(self, now: float | None = None) -> list[OutboundMessage]:
        """Drain queued commands, advance one step and publish the state.

        Returns every message emitted during the tick, in emission order.
        """
        with self._lock:
            if self._closed:
                return []
            now = self._clock() if now is None else now
            out = self._poll_commands(now)

            completion = self.cycle.step(self.state, now)
            if completion is not None:
                out.append(
                    self.broadcaster.publish_cycle_complete(self.state, completion, now)
                )
            out.append(self.broadcaster.publish_state(self.state, now))
            return out

    def _poll_commands(
        self, now: float, limit: int | None = MAX_POLL_COUNT
    ) -> list[OutboundMessage]:
        """Apply queued commands in arrival order. Caller holds the lock."""
        out: list[OutboundMessage] = []
        count = 0
        while limit is None or count < limit:
            try:
                item = self._inbox.get_nowait()
            except queue.Empty:
                break
            count += 1
            if isinstance(item, (bytes, str)):
                out.extend(self._apply_raw(item, now))
            else:
                out.extend(self._apply(item, now))
        return out

    def _catch_up(
        self, now: float | None = None
    ) -> tuple[float, list[OutboundMessage]] | None:
        """Apply everything submitted before a direct call. Caller holds the lock.

        Returns the resolved time and the drained emissions, or None once the
        controller is closed.
        """
        if self._closed:
            return None
        now = self._clock() if now is None else now
        return now, self._poll_commands(now, limit=None)

    def submit(self, command: Command | bytes | str) -> None:
        """Queue a typed command or raw JSON for the next tick. Thread-safe."""
        self._inbox.put(command)

    # ------------------------------------------------------------------
    # Command handlers
    # ------------------------------------------------------------------
    # Direct handlers drain the inbox first, so a submitted command is never
    # overtaken by one issued later on another path.

    def handle_raw(
        self, data: bytes | str, now: float | None = None
    ) -> list[OutboundMessage]:
        """Decode an operator message and dispatch it, answering bad input."""
        with self._lock:
            caught = self._catch_up(now)
            if caught is None:
                return []
            now, out = caught
            out.extend(self._apply_raw(data, now))
            return out

    def handle_command(
        self, command: Command, now: float | None = None
    ) -> list[OutboundMessage]:
        """Apply one typed command. Returns the messages emitted meanwhile."""
        with self._lock:
            caught = self._catch_up(now)
            if caught is None:
                return []
            now, out = caught
            out.extend(self._apply(command, now))
            return out

    def _apply_raw(self, data: bytes | str, now: float) -> list[OutboundMessage]:
        command, code, error = create_command(data)
        if command is None:
            assert code is not None
            logger.warning("Command validation failed: %s", error)
            return [
                self.broadcaster.publish_error(
                    self.state, code, error or "Invalid message", now
                )
            ]
        return self._apply(command, now)

    def _apply(self, command: Command, now: float) -> list[OutboundMessage]:
        logger.log(TRACE, "cmd_received name=%s", type(command).__name__)
        match command:
            case ManualControlCmd(command=ManualControlParams() as p):
                self.cycle.apply_manual_control(
                    self.state,
                    p.end_actuator_x,
                    p.end_actuator_y,
                    p.lift_direction,
                    p.gripper_action,
                )
            case StartCycleCmd(command=StartCycleParams() as p):
                self.cycle.start_cycle(
                    self.state, p.point_a.to_array(), p.point_b.to_array(), p.speed, now
                )
            case StopCycleCmd():
                self.cycle.stop_cycle(self.state)
            case EmergencyStopCmd():
                self.cycle.emergency_stop(self.state)
            case StateRequestCmd():
                return [self.broadcaster.publish_state(self.state, now)]
        return []

    def manual_control(
        self,
        end_actuator_x: float = 0.0,
        end_actuator_y: float = 0.0,
        lift_direction: float = 0.0,
        gripper_action: GripperAction | None = None,
    ) -> bool:
        with self._lock:
            if self._catch_up() is None:
                return False
            return self.cycle.apply_manual_control(
                self.state, end_actuator_x, end_actuator_y, lift_direction, gripper_action
            )

    def start_cycle(
        self,
        point_a: Point3D,
        point_b: Point3D,
        speed: float | None = None,
        now: float | None = None,
    ) -> bool:
        with self._lock:
            caught = self._catch_up(now)
            if caught is None:
                return False
            return self.cycle.start_cycle(
                self.state, point_a.to_array(), point_b.to_array(), speed, caught[0]
            )

    def stop_cycle(self) -> None:
        with self._lock:
            if self._catch_up() is not None:
                self.cycle.stop_cycle(self.state)

    def emergency_stop(self) -> None:
        with self._lock:
            if self._catch_up() is not None:
                self.cycle.emergency_stop(self.state)

    def request_state(self, now: float | None = None) -> StateUpdate | None:
        """Publish a snapshot immediately, outside the tick cadence."""
        with self._lock:
            caught = self._catch_up(now)
            if caught is None:
                return None
            return self.broadcaster.publish_state(self.state, caught[0])

    # ------------------------------------------------------------------
    # Loop lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Run the control loop on the calling thread until stop()."""
        with self._lock:
            if self.running:
                logger.warning("Controller already running")
                return
            if self._closed:
                logger.warning("Controller is stopped; create a new one to restart")
                return
            self.running = True

        if self.config.high_priority:
            self._set_high_priority()

        # Move log I/O off the loop thread
        self._async_log.start()

        logger.info(
            "Starting main control loop at %.1f Hz", 1.0 / self.config.loop_interval
        )
        self._main_control_loop()

    def start_background(self) -> threading.Thread:
        """Run the control loop on a daemon thread."""
        thread = threading.Thread(
            target=self.start, name="towercrane-control", daemon=True
        )
        self._thread = thread
        thread.start()
        return thread

    def stop(self) -> None:
        """Halt the loop. Once this returns nothing further is emitted."""
        logger.info("Stopping controller...")
        with self._lock:
            self._closed = True
            self.running = False

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.config.join_timeout)
            if thread.is_alive():
                logger.warning("Control thread did not exit within %.1fs", self.config.join_timeout)
        self._thread = None

        # Flushes queued records
        self._async_log.stop()
        logger.info("Controller stopped")

    def _main_control_loop(self) -> None:
        self._timer.start()
        while self.running:
            try:
                self.tick()
            except KeyboardInterrupt:
                logger.info("Keyboard interrupt received")
                self.stop()
                break
            except Exception as e:
                logger.error("Error in main control loop: %s", e, exc_info=True)

            self._log_periodic_status()
            self._timer.wait_for_next_tick()

    def _log_periodic_status(self) -> None:
        """Overbudget warnings and a 3 s debug summary of loop timing."""
        now = time.perf_counter()
        m = self._timer.metrics

        should_warn, pct = m.check_degraded(now, 0.25, 3.0)
        if should_warn:
            logger.warning(
                "loop overbudget by +%.0f%% (%s)", pct, format_hz_summary(m)
            )

        if not m.should_log(now, 3.0):
            return

        logger.debug(
            "loop: %s ov=%d mode=%s seq=%d",
            format_hz_summary(m),
            m.overrun_count,
            self.state.mode.value,
            self.state.sequence,
        )

    def _set_high_priority(self) -> None:
        """Raise process priority as far as allowed without privileges."""
        try:
            p = psutil.Process()
            if sys.platform == "win32":
                p.nice(psutil.HIGH_PRIORITY_CLASS)
                logger.info("Set process priority to HIGH_PRIORITY_CLASS")
            else:
                try:
                    p.nice(-10)
                    logger.info("Set process nice value to -10")
                except psutil.AccessDenied:
                    logger.debug("Cannot set negative nice value without privileges")
        except Exception as e:
            logger.warning("Failed to set process priority: %s", e)
