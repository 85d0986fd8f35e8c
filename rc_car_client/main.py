#!/usr/bin/env python3
"""
RC Car Client - Main Entry Point

Opens a small OpenCV window, connects to the car over the line protocol and
drives it with the keyboard.

Keys:
    Arrow keys / WASD   throttle and steer (held keys repeat)
    R                   reconnect after the link was lost
    Q / Esc             disconnect and quit

Usage:
    python -m rc_car_client.main --host 192.168.4.1 --port 65432
"""

import argparse
import logging
import sys
import threading
import time
from typing import Dict, Optional

import cv2
import numpy as np

from .errors import ConnectionFailedError
from .events import LossEvent
from .keyboard import DriveKey, KeyboardDriver
from .protocol import HANDSHAKE_TIMEOUT_MS, HEARTBEAT_PERIOD_MS
from .session import Session, is_valid_port_number, is_valid_server_address
from .vehicle import VehicleState

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

WINDOW_NAME = "RC Car Client"

# cv2.waitKeyEx codes (GTK, Windows) plus WASD
KEY_MAP = {
    65362: DriveKey.UP, 2490368: DriveKey.UP, ord('w'): DriveKey.UP, ord('W'): DriveKey.UP,
    65364: DriveKey.DOWN, 2621440: DriveKey.DOWN, ord('s'): DriveKey.DOWN, ord('S'): DriveKey.DOWN,
    65361: DriveKey.LEFT, 2424832: DriveKey.LEFT, ord('a'): DriveKey.LEFT, ord('A'): DriveKey.LEFT,
    65363: DriveKey.RIGHT, 2555904: DriveKey.RIGHT, ord('d'): DriveKey.RIGHT, ord('D'): DriveKey.RIGHT,
}
QUIT_KEYS = (27, ord('q'), ord('Q'))
RECONNECT_KEYS = (ord('r'), ord('R'))


class RcCarClient:
    """
    Keyboard front-end for one car.

    Owns the VehicleState and the Session built around it.
    """

    def __init__(
        self,
        host: str,
        port: int,
        connect_timeout: float = 5.0,
        handshake_timeout_ms: int = HANDSHAKE_TIMEOUT_MS,
        heartbeat_period_ms: int = HEARTBEAT_PERIOD_MS,
        key_release_ms: int = 500,
        rate: float = 30.0,
    ):
        """
        Initialize the client.

        Args:
            host: Car host name or IP address
            port: Car TCP port
            connect_timeout: TCP connect timeout (s)
            handshake_timeout_ms: Time allowed for the handshake
            heartbeat_period_ms: Maximum time between state updates
            key_release_ms: A held key is released after this long without
                a key repeat
            rate: UI loop rate (Hz)
        """
        self.host = host
        self.port = port
        self.key_release = key_release_ms / 1000.0
        self.rate = rate

        self.vehicle = VehicleState()
        self.session = Session(
            self.vehicle,
            handshake_timeout_ms=handshake_timeout_ms,
            heartbeat_period_ms=heartbeat_period_ms,
            connect_timeout=connect_timeout,
        )
        self.session.add_loss_listener(self._on_connection_loss)
        self.driver = KeyboardDriver(self.vehicle)

        self._running = False
        self._loss_pending = threading.Event()
        self._last_error: Optional[str] = None
        self._key_last_seen: Dict[DriveKey, float] = {}

        self.font = cv2.FONT_HERSHEY_SIMPLEX

    def connect(self) -> bool:
        """Connect to the car and enable keyboard driving on success."""
        try:
            self.session.connect(self.host, self.port)
        except ConnectionFailedError as e:
            self._last_error = str(e)
            self.driver.disable()
            return False

        self._last_error = None
        self._loss_pending.clear()
        self.driver.enable()
        return True

    def stop(self) -> None:
        """Disconnect and close the window."""
        logger.info("Stopping RC Car Client...")
        self._running = False
        self.driver.disable()
        self.session.disconnect()
        cv2.destroyAllWindows()
        logger.info("RC Car Client stopped")

    def run(self) -> None:
        """Main UI loop."""
        self._running = True
        cv2.namedWindow(WINDOW_NAME)
        self.connect()

        delay_ms = max(1, int(1000 / self.rate))
        while self._running:
            if self._loss_pending.is_set():
                self._loss_pending.clear()
                self.driver.disable()
                self._key_last_seen.clear()

            key = cv2.waitKeyEx(delay_ms)
            now = time.monotonic()

            if key in QUIT_KEYS:
                logger.info("Quit requested")
                self._running = False
                break
            if key in RECONNECT_KEYS and not self.session.is_active:
                self.connect()
            elif key in KEY_MAP:
                self._handle_drive_key(KEY_MAP[key], now)

            self._release_stale_keys(now)
            cv2.imshow(WINDOW_NAME, self._draw_status())

    def _handle_drive_key(self, key: DriveKey, now: float) -> None:
        if not self.driver.is_pressed(key):
            self.driver.press(key)
        self._key_last_seen[key] = now

    def _release_stale_keys(self, now: float) -> None:
        """Release keys whose key repeats stopped arriving."""
        for key, seen in list(self._key_last_seen.items()):
            if now - seen > self.key_release:
                del self._key_last_seen[key]
                self.driver.release(key)

    def _on_connection_loss(self, event: LossEvent) -> None:
        # Runs on a link worker thread; the UI loop picks it up
        logger.warning(f"Connection to car lost: {event.reason}")
        self._last_error = event.reason
        self._loss_pending.set()

    def _draw_status(self) -> np.ndarray:
        """Render link and vehicle state."""
        frame = np.zeros((200, 460, 3), dtype=np.uint8)

        active = self.session.is_active
        conn_status = f"Car: {self.host}:{self.port} {'CONNECTED' if active else 'DISCONNECTED'}"
        conn_color = (0, 255, 0) if active else (0, 0, 255)
        cv2.putText(frame, conn_status, (15, 35), self.font, 0.55, conn_color, 1)

        cv2.putText(
            frame,
            f"Throttle: {self.vehicle.throttle.value}",
            (15, 80),
            self.font, 0.7, (255, 0, 0), 2
        )
        cv2.putText(
            frame,
            f"Steer: {self.vehicle.steer_angle} deg",
            (15, 115),
            self.font, 0.7, (0, 255, 255), 2
        )

        if not active:
            hint = "Press R to reconnect, Q to quit"
            cv2.putText(frame, hint, (15, 155), self.font, 0.5, (0, 165, 255), 1)
            if self._last_error:
                cv2.putText(frame, self._last_error[:60], (15, 180), self.font, 0.4, (0, 0, 255), 1)

        return frame


def _server_address(value: str) -> str:
    if not is_valid_server_address(value):
        raise argparse.ArgumentTypeError(f"invalid server address: {value}")
    return value


def _port_number(value: str) -> int:
    if not is_valid_port_number(value):
        raise argparse.ArgumentTypeError(f"invalid port number: {value}")
    return int(value)


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="RC Car Client",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--host",
        type=_server_address,
        default="127.0.0.1",
        help="Car host name or IP address",
    )
    parser.add_argument(
        "--port",
        type=_port_number,
        default=65432,
        help="Car TCP port",
    )
    parser.add_argument(
        "--connect-timeout",
        type=float,
        default=5.0,
        help="TCP connect timeout (s)",
    )
    parser.add_argument(
        "--handshake-timeout",
        type=int,
        default=HANDSHAKE_TIMEOUT_MS,
        help="Handshake timeout (ms)",
    )
    parser.add_argument(
        "--key-release-ms",
        type=int,
        default=500,
        help="Release a held key after this long without a key repeat (ms)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    client = RcCarClient(
        host=args.host,
        port=args.port,
        connect_timeout=args.connect_timeout,
        handshake_timeout_ms=args.handshake_timeout,
        key_release_ms=args.key_release_ms,
    )

    exit_code = 0
    try:
        client.run()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Client error: {e}")
        exit_code = 1
    finally:
        client.stop()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
