"""
Desired vehicle state.

Holds the throttle direction and steering angle the operator wants the car
to have. Setters only notify listeners when the value actually changes.
"""

import logging
import threading
from typing import Callable

from .events import Listeners, SteerChangeEvent, ThrottleChangeEvent
from .protocol import MAX_ANGLE, MIN_ANGLE, NEUTRAL_ANGLE, Steer, Throttle, steer_to_degrees

logger = logging.getLogger(__name__)


class VehicleState:
    """
    Desired throttle/steering state of the remote car.

    Owned by the front-end; a Session observes it while its link is active.
    """

    def __init__(self):
        self._lock = threading.Lock()
        # Serializes change + notification so listeners see changes in order
        self._update_lock = threading.RLock()
        self._throttle = Throttle.NEUTRAL
        self._steer_angle = NEUTRAL_ANGLE

        self._throttle_listeners: Listeners[ThrottleChangeEvent] = Listeners("throttle change")
        self._steer_listeners: Listeners[SteerChangeEvent] = Listeners("steer change")

    @property
    def throttle(self) -> Throttle:
        """Current desired throttle direction."""
        with self._lock:
            return self._throttle

    @property
    def steer_angle(self) -> int:
        """Current desired steering angle in degrees."""
        with self._lock:
            return self._steer_angle

    def set_throttle(self, direction: Throttle) -> bool:
        """
        Throttle in the given direction.

        Args:
            direction: NEUTRAL, FORWARD or REVERSE

        Returns:
            True if the value changed and listeners were notified
        """
        with self._update_lock:
            with self._lock:
                if self._throttle == direction:
                    return False
                self._throttle = direction

            logger.debug(f"Throttle -> {direction.value}")
            self._throttle_listeners.emit(ThrottleChangeEvent(source=self, direction=direction))
        return True

    def set_steer(self, direction: Steer) -> bool:
        """Steer towards LEFT, NEUTRAL or RIGHT."""
        return self.set_steer_angle(steer_to_degrees(direction))

    def set_steer_angle(self, angle: int) -> bool:
        """
        Put the wheels at the given angle.

        Args:
            angle: Angle in degrees, between 0 and 180

        Returns:
            True if the value changed and listeners were notified
        """
        if not MIN_ANGLE <= angle <= MAX_ANGLE:
            raise ValueError(f"Steering angle {angle} outside [{MIN_ANGLE}, {MAX_ANGLE}]")

        with self._update_lock:
            with self._lock:
                if self._steer_angle == angle:
                    return False
                self._steer_angle = angle

            logger.debug(f"Steer -> {angle}")
            self._steer_listeners.emit(SteerChangeEvent(source=self, angle=angle))
        return True

    def reset(self) -> None:
        """Return throttle and steering to neutral."""
        self.set_throttle(Throttle.NEUTRAL)
        self.set_steer(Steer.NEUTRAL)

    def add_throttle_listener(self, callback: Callable[[ThrottleChangeEvent], None]) -> None:
        self._throttle_listeners.add(callback)

    def remove_throttle_listener(self, callback: Callable[[ThrottleChangeEvent], None]) -> None:
        self._throttle_listeners.remove(callback)

    def add_steer_listener(self, callback: Callable[[SteerChangeEvent], None]) -> None:
        self._steer_listeners.add(callback)

    def remove_steer_listener(self, callback: Callable[[SteerChangeEvent], None]) -> None:
        self._steer_listeners.remove(callback)
