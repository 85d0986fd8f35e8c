"""
RC Car Client - keyboard remote control for an RC car.

Keeps a validated TCP line-protocol link to the car, streams the desired
throttle/steering state with a heartbeat and reports link loss.
"""

from .errors import ConnectionFailedError, HandshakeTimeoutError, LinkWriteError, RcCarError
from .events import LossEvent, SteerChangeEvent, ThrottleChangeEvent
from .protocol import Steer, Throttle
from .session import Session, SessionState
from .vehicle import VehicleState

__version__ = "1.0.0"

__all__ = [
    "ConnectionFailedError",
    "HandshakeTimeoutError",
    "LinkWriteError",
    "LossEvent",
    "RcCarError",
    "Session",
    "SessionState",
    "Steer",
    "SteerChangeEvent",
    "Throttle",
    "ThrottleChangeEvent",
    "VehicleState",
]
