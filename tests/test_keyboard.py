"""Test keyboard driving logic."""

import pytest

from rc_car_client.keyboard import DriveKey, KeyboardDriver
from rc_car_client.protocol import Throttle


@pytest.fixture
def driver(vehicle):
    driver = KeyboardDriver(vehicle)
    driver.enable()
    return driver


def test_disabled_driver_ignores_keys(vehicle):
    driver = KeyboardDriver(vehicle)

    driver.press(DriveKey.UP)

    assert vehicle.throttle is Throttle.NEUTRAL


def test_press_and_release_throttle(driver, vehicle):
    driver.press(DriveKey.UP)
    assert vehicle.throttle is Throttle.FORWARD

    driver.release(DriveKey.UP)
    assert vehicle.throttle is Throttle.NEUTRAL


def test_press_and_release_steer(driver, vehicle):
    driver.press(DriveKey.LEFT)
    assert vehicle.steer_angle == 0

    driver.release(DriveKey.LEFT)
    assert vehicle.steer_angle == 90


def test_release_falls_back_to_held_opposite(driver, vehicle):
    driver.press(DriveKey.UP)
    driver.press(DriveKey.DOWN)
    assert vehicle.throttle is Throttle.REVERSE

    driver.release(DriveKey.DOWN)
    assert vehicle.throttle is Throttle.FORWARD

    driver.press(DriveKey.RIGHT)
    driver.press(DriveKey.LEFT)
    driver.release(DriveKey.LEFT)
    assert vehicle.steer_angle == 180


def test_throttle_and_steer_are_independent(driver, vehicle):
    driver.press(DriveKey.DOWN)
    driver.press(DriveKey.RIGHT)
    driver.release(DriveKey.RIGHT)

    assert vehicle.throttle is Throttle.REVERSE
    assert vehicle.steer_angle == 90


def test_disable_forgets_held_keys(driver, vehicle):
    driver.press(DriveKey.UP)
    driver.disable()

    assert not driver.is_pressed(DriveKey.UP)
    driver.press(DriveKey.DOWN)
    assert vehicle.throttle is Throttle.FORWARD


def test_release_all_neutralizes(driver, vehicle):
    driver.press(DriveKey.UP)
    driver.press(DriveKey.LEFT)

    driver.release_all()

    assert vehicle.throttle is Throttle.NEUTRAL
    assert vehicle.steer_angle == 90
    assert not any(driver.is_pressed(key) for key in DriveKey)
