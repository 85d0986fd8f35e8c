"""
Line protocol shared by the RC car client and the reference car server.

Defines the wire vocabulary and encodes/decodes every line that crosses
the link. All functions here are pure.

Wire format (newline-terminated ASCII):
    HANDSHAKE                  client -> server, echoed back as acknowledgment
    CLOSE                      either side, request to terminate the session
    T:<THROTTLE> S:<ANGLE>     client -> server, state update / keepalive
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

HANDSHAKE = "HANDSHAKE"
CLOSE = "CLOSE"

# Client-enforced timing
HEARTBEAT_PERIOD_MS = 1000
HANDSHAKE_TIMEOUT_MS = 5000

LINE_TERMINATOR = "\n"

# Lines with more tokens than this are never valid
MAX_TOKENS = 2

NEUTRAL_ANGLE = 90
MIN_ANGLE = 0
MAX_ANGLE = 180


class Throttle(Enum):
    """Throttle direction of the car."""
    NEUTRAL = "NEUTRAL"
    FORWARD = "FORWARD"
    REVERSE = "REVERSE"


class Steer(Enum):
    """Steering direction of the car."""
    LEFT = "LEFT"
    NEUTRAL = "NEUTRAL"
    RIGHT = "RIGHT"


class ControlToken(Enum):
    """Control lines the client reacts to."""
    HANDSHAKE = HANDSHAKE
    CLOSE = CLOSE


_STEER_DEGREES = {
    Steer.LEFT: MIN_ANGLE,
    Steer.NEUTRAL: NEUTRAL_ANGLE,
    Steer.RIGHT: MAX_ANGLE,
}


@dataclass(frozen=True)
class StateUpdate:
    """Decoded state-update line."""
    throttle: Throttle
    angle: int


def steer_to_degrees(direction: Steer) -> int:
    """
    Map a steering direction to a wheel angle in degrees.

    Unknown directions map to the neutral angle.
    """
    return _STEER_DEGREES.get(direction, NEUTRAL_ANGLE)


def encode_state(throttle: Throttle, angle: int) -> str:
    """
    Encode a state update.

    Args:
        throttle: Desired throttle direction
        angle: Desired steering angle in degrees

    Returns:
        Line without terminator, e.g. "T:FORWARD S:90"
    """
    return f"T:{throttle.value} S:{int(angle)}"


def decode_state(line: str) -> Optional[StateUpdate]:
    """
    Decode a state-update line.

    Returns:
        StateUpdate, or None if the line is not a well-formed state update
    """
    parts = line.split()
    if len(parts) != 2:
        return None

    throttle_part, steer_part = parts
    if not throttle_part.startswith("T:") or not steer_part.startswith("S:"):
        return None

    try:
        throttle = Throttle(throttle_part[2:])
        angle = int(steer_part[2:])
    except ValueError:
        return None

    if not MIN_ANGLE <= angle <= MAX_ANGLE:
        return None

    return StateUpdate(throttle=throttle, angle=angle)


def parse_control(line: str) -> Optional[ControlToken]:
    """
    Recognize a control line.

    Lines with too many tokens, unknown tokens and state updates all
    return None; the receiver ignores them.
    """
    if len(line.split()) > MAX_TOKENS:
        return None

    try:
        return ControlToken(line.strip())
    except ValueError:
        return None


def encode_line(text: str) -> str:
    """Append the line terminator."""
    return text + LINE_TERMINATOR
