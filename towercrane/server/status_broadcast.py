from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable
from typing import IO

from towercrane.protocol.types import CycleProgress, ErrorCode, Point3D
from towercrane.protocol.wire import (
    CycleComplete,
    CycleCompleteDetails,
    ErrorInfo,
    ErrorNotification,
    OutboundMessage,
    StateSnapshot,
    StateUpdate,
    encode,
)
from towercrane.server.cycle import CycleCompletion
from towercrane.server.state import CraneState

Sink = Callable[[OutboundMessage], None]


class StatusBroadcaster:
    """
    Builds outbound messages from CraneState and hands them to a sink.

    Every message takes the next sequence number and a non-decreasing
    millisecond timestamp from the state, so the stream seen by the sink is
    strictly ordered. The sink owns delivery (websocket fan-out, stdout, a
    test queue); exceptions it raises propagate to the caller.
    """

    def __init__(self, sink: Sink | None = None) -> None:
        self._sink = sink
        self.sent_count = 0

    def _emit(self, msg: OutboundMessage) -> OutboundMessage:
        if self._sink is not None:
            self._sink(msg)
        self.sent_count += 1
        return msg

    def publish_state(self, state: CraneState, now: float) -> StateUpdate:
        # The payload rides with the gripper while attached
        if state.payload_attached:
            state.payload_position = state.end_effector.copy()

        ts = state.stamp(now)
        seq = state.next_sequence()
        progress = state.cycle_progress
        snapshot = StateSnapshot(
            swing=state.swing,
            lift=state.lift,
            elbow=state.elbow,
            wrist=state.wrist,
            gripper=state.gripper,
            timestamp=ts,
            sequence=seq,
            is_moving=state.is_moving,
            has_target=state.has_target,
            end_effector_position=Point3D.from_array(state.end_effector),
            is_gripper_open=state.is_gripper_open,
            payload_position=Point3D.from_array(state.payload_position),
            payload_attached=state.payload_attached,
            mode=state.mode,
        )
        msg = StateUpdate(
            timestamp=ts,
            sequence=seq,
            state=snapshot,
            cycle_progress=(
                None
                if progress is None
                else CycleProgress(
                    progress.is_active,
                    progress.current_phase,
                    progress.progress_percent,
                    progress.estimated_time_remaining,
                )
            ),
        )
        self._emit(msg)
        return msg

    def publish_cycle_complete(
        self, state: CraneState, completion: CycleCompletion, now: float
    ) -> CycleComplete:
        msg = CycleComplete(
            timestamp=state.stamp(now),
            sequence=state.next_sequence(),
            details=CycleCompleteDetails(
                total_time=completion.total_time,
                cycle_count=completion.cycle_count,
                final_position=Point3D.from_array(completion.final_position),
            ),
        )
        self._emit(msg)
        return msg

    def publish_error(
        self, state: CraneState, code: ErrorCode, message: str, now: float
    ) -> ErrorNotification:
        msg = ErrorNotification(
            timestamp=state.stamp(now),
            sequence=state.next_sequence(),
            error=ErrorInfo(code=code, message=message),
        )
        self._emit(msg)
        return msg


class EventQueue:
    """Thread-safe outbound buffer; use as a sink and drain from elsewhere."""

    def __init__(self, maxlen: int | None = None) -> None:
        self._events: deque[OutboundMessage] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def __call__(self, msg: OutboundMessage) -> None:
        with self._lock:
            self._events.append(msg)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def drain(self) -> list[OutboundMessage]:
        with self._lock:
            out = list(self._events)
            self._events.clear()
        return out


class JsonLinesSink:
    """Writes each message as one JSON document per line."""

    def __init__(self, stream: IO[bytes]) -> None:
        self._stream = stream
        self._lock = threading.Lock()

    def __call__(self, msg: OutboundMessage) -> None:
        line = encode(msg) + b"\n"
        with self._lock:
            self._stream.write(line)
            self._stream.flush()
