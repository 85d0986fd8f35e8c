"""
Keyboard driving logic.

Maps arrow-key presses and releases onto the desired vehicle state.
Holding both keys of a pair and releasing one falls back to the other.
"""

import logging
from enum import Enum
from typing import Dict, Optional

from .protocol import Steer, Throttle
from .vehicle import VehicleState

logger = logging.getLogger(__name__)


class DriveKey(Enum):
    """Keys that drive the car."""
    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"


_OPPOSITE = {
    DriveKey.UP: DriveKey.DOWN,
    DriveKey.DOWN: DriveKey.UP,
    DriveKey.LEFT: DriveKey.RIGHT,
    DriveKey.RIGHT: DriveKey.LEFT,
}

_THROTTLE = {
    DriveKey.UP: Throttle.FORWARD,
    DriveKey.DOWN: Throttle.REVERSE,
}

_STEER = {
    DriveKey.LEFT: Steer.LEFT,
    DriveKey.RIGHT: Steer.RIGHT,
}


class KeyboardDriver:
    """
    Translates key events into VehicleState changes.

    Input is ignored while disabled (no active link).
    """

    def __init__(self, vehicle: VehicleState):
        self.vehicle = vehicle
        self.enabled = False
        self._pressed: Dict[DriveKey, bool] = {key: False for key in DriveKey}

    def enable(self) -> None:
        logger.debug("Keyboard driving enabled")
        self.enabled = True

    def disable(self) -> None:
        """Stop reacting to keys and forget held keys."""
        logger.debug("Keyboard driving disabled")
        self.enabled = False
        for key in DriveKey:
            self._pressed[key] = False

    def is_pressed(self, key: DriveKey) -> bool:
        return self._pressed[key]

    def press(self, key: DriveKey) -> None:
        if not self.enabled:
            return
        self._pressed[key] = True
        self._apply(key)

    def release(self, key: DriveKey) -> None:
        if not self.enabled:
            return
        self._pressed[key] = False

        opposite = _OPPOSITE[key]
        if self._pressed[opposite]:
            self._apply(opposite)
        elif key in _THROTTLE:
            self.vehicle.set_throttle(Throttle.NEUTRAL)
        else:
            self.vehicle.set_steer(Steer.NEUTRAL)

    def release_all(self) -> None:
        """Release every held key and neutralize the car."""
        for key in DriveKey:
            self._pressed[key] = False
        self.vehicle.reset()

    def _apply(self, key: DriveKey) -> None:
        throttle: Optional[Throttle] = _THROTTLE.get(key)
        if throttle is not None:
            self.vehicle.set_throttle(throttle)
        else:
            self.vehicle.set_steer(_STEER[key])
