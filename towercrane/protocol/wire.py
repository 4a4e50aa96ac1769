"""
Wire protocol for towercrane operator communication.

Messages are JSON objects tagged by a ``type`` field, with camelCase keys:

- Inbound:  manual_control, start_cycle, stop_cycle, emergency_stop, state_request
- Outbound: state_update, cycle_complete, error

Inbound decoding is single-pass into a tagged union of msgspec structs, so
field constraints are checked by the decoder before anything reaches the
controller.
"""

import logging
from enum import Enum
from typing import Annotated, Any, TypeAlias, Union

import msgspec
import numpy as np

from towercrane.config import TRACE
from towercrane.protocol.types import (
    CycleProgress,
    ErrorCode,
    GripperAction,
    Mode,
    Point3D,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Numpy encoding hooks
# =============================================================================


def _enc_hook(obj: object) -> object:
    """Custom encoder hook for numpy types."""
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, (np.integer, np.floating, np.bool_)):
        return obj.item()
    raise NotImplementedError(f"Cannot encode {type(obj)}")


_encoder = msgspec.json.Encoder(enc_hook=_enc_hook)

# Generic decoder, used to classify messages the typed decoder rejects
_decoder = msgspec.json.Decoder()


class MessageType(str, Enum):
    """Values of the ``type`` tag."""

    STATE_UPDATE = "state_update"
    MANUAL_CONTROL = "manual_control"
    START_CYCLE = "start_cycle"
    STOP_CYCLE = "stop_cycle"
    EMERGENCY_STOP = "emergency_stop"
    STATE_REQUEST = "state_request"
    CYCLE_COMPLETE = "cycle_complete"
    ERROR = "error"


# =============================================================================
# Inbound command structs - tagged union for single-pass decode
# =============================================================================

JogInput = Annotated[float, msgspec.Meta(ge=-1.0, le=1.0)]


class _Inbound(
    msgspec.Struct, tag_field="type", rename="camel", frozen=True, kw_only=True
):
    """Envelope fields every operator message may carry."""

    timestamp: float = 0.0
    sequence: int = 0
    client_id: str | None = None


class ManualControlParams(msgspec.Struct, rename="camel", frozen=True):
    """Jog inputs; each axis in [-1, 1], missing axes are 0."""

    end_actuator_x: JogInput = 0.0
    end_actuator_y: JogInput = 0.0
    lift_direction: JogInput = 0.0
    gripper_action: GripperAction | None = None


class StartCycleParams(msgspec.Struct, rename="camel", frozen=True):
    """Pick point, place point and optional speed; non-positive speeds use the default."""

    point_a: Point3D
    point_b: Point3D
    speed: float | None = None


class ManualControlCmd(_Inbound, tag=MessageType.MANUAL_CONTROL.value):
    """manual_control: {"type", "command": {endActuatorX, endActuatorY, liftDirection, gripperAction}}"""

    command: ManualControlParams = msgspec.field(default_factory=ManualControlParams)


class StartCycleCmd(_Inbound, tag=MessageType.START_CYCLE.value):
    """start_cycle: {"type", "command": {pointA, pointB, speed?}}"""

    command: StartCycleParams


class StopCycleCmd(_Inbound, tag=MessageType.STOP_CYCLE.value):
    """stop_cycle: {"type"}"""


class EmergencyStopCmd(_Inbound, tag=MessageType.EMERGENCY_STOP.value):
    """emergency_stop: {"type"}"""


class StateRequestCmd(_Inbound, tag=MessageType.STATE_REQUEST.value):
    """state_request: {"type"} - answered with an immediate state_update."""


Command: TypeAlias = Union[
    ManualControlCmd,
    StartCycleCmd,
    StopCycleCmd,
    EmergencyStopCmd,
    StateRequestCmd,
]

_INBOUND_TYPES: frozenset[str] = frozenset(
    {
        MessageType.MANUAL_CONTROL.value,
        MessageType.START_CYCLE.value,
        MessageType.STOP_CYCLE.value,
        MessageType.EMERGENCY_STOP.value,
        MessageType.STATE_REQUEST.value,
    }
)

_command_decoder = msgspec.json.Decoder(Command)


def decode_command(data: bytes | str) -> Command:
    """Decode raw JSON to a typed command struct.

    Raises:
        msgspec.ValidationError: If the message doesn't match any command type
        msgspec.DecodeError: If the data is not valid JSON
    """
    return _command_decoder.decode(data)


def encode_command(cmd: Command) -> bytes:
    """Encode a typed command struct to JSON bytes."""
    return _encoder.encode(cmd)


def create_command(
    data: bytes | str,
) -> tuple[Command | None, ErrorCode | None, str | None]:
    """
    Decode an operator message, classifying failures.

    Returns:
        A tuple of (command, error_code, error_message):
        - (command, None, None) if successful
        - (None, "UNKNOWN_TYPE", message) if the ``type`` tag names no command
        - (None, "INVALID_MESSAGE", message) for malformed JSON or bad fields
    """
    try:
        return decode_command(data), None, None
    except msgspec.ValidationError as e:
        logger.log(TRACE, "decode_error err=%s", e)
        msg_type = _message_type(data)
        if isinstance(msg_type, str) and msg_type not in _INBOUND_TYPES:
            return None, "UNKNOWN_TYPE", f"Unknown message type: {msg_type}"
        return None, "INVALID_MESSAGE", str(e)
    except msgspec.DecodeError as e:
        logger.log(TRACE, "decode_error exc=%s", e)
        return None, "INVALID_MESSAGE", f"Decode error: {e}"


def _message_type(data: bytes | str) -> Any:
    try:
        raw = _decoder.decode(data)
    except msgspec.DecodeError:
        return None
    return raw.get("type") if isinstance(raw, dict) else None


# =============================================================================
# Outbound structs
# =============================================================================


class StateSnapshot(msgspec.Struct, rename="camel", frozen=True):
    """Joint values, tool and payload positions as of one tick."""

    swing: float
    lift: float
    elbow: float
    wrist: float
    gripper: float
    timestamp: int
    sequence: int
    is_moving: bool
    has_target: bool
    end_effector_position: Point3D
    is_gripper_open: bool
    payload_position: Point3D
    payload_attached: bool
    mode: Mode


class CycleCompleteDetails(msgspec.Struct, rename="camel", frozen=True):
    total_time: float
    cycle_count: int
    final_position: Point3D


class ErrorInfo(msgspec.Struct, frozen=True):
    code: ErrorCode
    message: str


class _Outbound(msgspec.Struct, tag_field="type", rename="camel", frozen=True):
    timestamp: int
    sequence: int


class StateUpdate(_Outbound, tag=MessageType.STATE_UPDATE.value, omit_defaults=True):
    """cycleProgress is omitted, not null, when there is no cycle progress."""

    state: StateSnapshot
    cycle_progress: CycleProgress | None = None


class CycleComplete(_Outbound, tag=MessageType.CYCLE_COMPLETE.value):
    details: CycleCompleteDetails


class ErrorNotification(_Outbound, tag=MessageType.ERROR.value):
    error: ErrorInfo


OutboundMessage: TypeAlias = Union[StateUpdate, CycleComplete, ErrorNotification]

_outbound_decoder = msgspec.json.Decoder(OutboundMessage)


def encode(msg: object) -> bytes:
    """Encode any message struct (or plain object) to JSON bytes."""
    return _encoder.encode(msg)


def decode_outbound(data: bytes | str) -> OutboundMessage:
    """Decode a controller message; used by clients and tests."""
    return _outbound_decoder.decode(data)
