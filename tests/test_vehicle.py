"""Test VehicleState change detection and notification."""

import threading
from unittest.mock import MagicMock

import pytest

from rc_car_client.events import SteerChangeEvent, ThrottleChangeEvent
from rc_car_client.protocol import Steer, Throttle
from rc_car_client.vehicle import VehicleState


def test_initial_state_is_neutral(vehicle):
    assert vehicle.throttle is Throttle.NEUTRAL
    assert vehicle.steer_angle == 90


def test_set_throttle_notifies_on_change(vehicle):
    listener = MagicMock()
    vehicle.add_throttle_listener(listener)

    assert vehicle.set_throttle(Throttle.FORWARD) is True

    listener.assert_called_once_with(ThrottleChangeEvent(source=vehicle, direction=Throttle.FORWARD))
    assert vehicle.throttle is Throttle.FORWARD


def test_set_throttle_same_value_is_silent(vehicle):
    listener = MagicMock()
    vehicle.add_throttle_listener(listener)

    assert vehicle.set_throttle(Throttle.NEUTRAL) is False
    listener.assert_not_called()


def test_set_steer_maps_direction(vehicle):
    listener = MagicMock()
    vehicle.add_steer_listener(listener)

    vehicle.set_steer(Steer.LEFT)
    vehicle.set_steer(Steer.LEFT)
    vehicle.set_steer(Steer.RIGHT)

    assert [c.args[0] for c in listener.call_args_list] == [
        SteerChangeEvent(source=vehicle, angle=0),
        SteerChangeEvent(source=vehicle, angle=180),
    ]
    assert vehicle.steer_angle == 180


def test_set_steer_angle_rejects_out_of_range(vehicle):
    with pytest.raises(ValueError):
        vehicle.set_steer_angle(181)
    with pytest.raises(ValueError):
        vehicle.set_steer_angle(-1)
    assert vehicle.steer_angle == 90


def test_reset_returns_to_neutral(vehicle):
    throttle_listener = MagicMock()
    steer_listener = MagicMock()
    vehicle.set_throttle(Throttle.REVERSE)
    vehicle.set_steer(Steer.LEFT)
    vehicle.add_throttle_listener(throttle_listener)
    vehicle.add_steer_listener(steer_listener)

    vehicle.reset()

    assert vehicle.throttle is Throttle.NEUTRAL
    assert vehicle.steer_angle == 90
    throttle_listener.assert_called_once()
    steer_listener.assert_called_once()


def test_reset_when_neutral_is_silent(vehicle):
    listener = MagicMock()
    vehicle.add_throttle_listener(listener)
    vehicle.add_steer_listener(listener)

    vehicle.reset()

    listener.assert_not_called()


def test_removed_listener_is_not_called(vehicle):
    listener = MagicMock()
    vehicle.add_throttle_listener(listener)
    vehicle.remove_throttle_listener(listener)

    vehicle.set_throttle(Throttle.FORWARD)

    listener.assert_not_called()


def test_independent_vehicles():
    first = VehicleState()
    second = VehicleState()

    first.set_throttle(Throttle.FORWARD)

    assert second.throttle is Throttle.NEUTRAL


def test_concurrent_setters_notify_in_change_order(vehicle):
    seen = []
    vehicle.add_steer_listener(lambda event: seen.append(event.angle))
    start = threading.Barrier(2)

    def steer(angles):
        start.wait()
        for angle in angles:
            vehicle.set_steer_angle(angle)

    threads = [
        threading.Thread(target=steer, args=([0, 45] * 500,)),
        threading.Thread(target=steer, args=([180, 135] * 500,)),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10.0)

    # The last notification always matches the stored value
    assert seen[-1] == vehicle.steer_angle
