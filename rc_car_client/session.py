"""
Session with a remote RC car.

Handles:
- Opening the TCP link and validating it with a handshake
- Wiring desired vehicle state to the heartbeat once validated
- Detecting link loss and notifying listeners exactly once
- Idempotent teardown that is safe from any thread

States:
    IDLE -> CONNECTING -> AWAITING_VALIDATION -> ACTIVE -> CLOSED
Any non-terminal state reaches CLOSED through disconnect() or a link loss.
"""

import logging
import socket
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from .errors import ConnectionFailedError, HandshakeTimeoutError, LinkWriteError
from .events import Listeners, LossEvent, SteerChangeEvent, ThrottleChangeEvent
from .link import LinkReader, LinkWriter
from .protocol import HANDSHAKE_TIMEOUT_MS, HEARTBEAT_PERIOD_MS
from .vehicle import VehicleState

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_SECONDS = 5.0


class SessionState(Enum):
    """Lifecycle state of a Session."""
    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_VALIDATION = "awaiting_validation"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class SessionStats:
    """Statistics about a Session."""
    connect_attempts: int = 0
    connect_failures: int = 0
    losses: int = 0
    connect_time: Optional[float] = None
    disconnect_time: Optional[float] = None


def is_valid_server_address(value: str) -> bool:
    """Check whether the value resolves to a network address."""
    if not value:
        return False
    try:
        socket.getaddrinfo(value, None)
        result = True
    except (socket.gaierror, UnicodeError):
        result = False
    logger.debug(f"Server address {value!r} considered valid: {result}")
    return result


def is_valid_port_number(value: Union[str, int]) -> bool:
    """Check whether the value is a port number (0-65535)."""
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return 0 <= value <= 65535
    value = str(value)
    if not value.isdigit() or len(value) > 5:
        return False
    return int(value) <= 65535


class Session:
    """
    One link to a remote car.

    The front-end owns the Session and the VehicleState it observes.
    connect() blocks until the car acknowledged the handshake; failures
    after that point are only reported to loss listeners.
    """

    def __init__(
        self,
        vehicle: VehicleState,
        handshake_timeout_ms: int = HANDSHAKE_TIMEOUT_MS,
        heartbeat_period_ms: int = HEARTBEAT_PERIOD_MS,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
    ):
        """
        Initialize the session.

        Args:
            vehicle: Desired vehicle state to keep the car in sync with
            handshake_timeout_ms: Time allowed for the car to acknowledge
                the handshake
            heartbeat_period_ms: Maximum time between two state updates
            connect_timeout: TCP connect timeout in seconds
        """
        self._vehicle = vehicle
        self.handshake_timeout = handshake_timeout_ms / 1000.0
        self.heartbeat_period_ms = heartbeat_period_ms
        self.connect_timeout = connect_timeout

        self._lock = threading.RLock()
        self._validated_cond = threading.Condition(self._lock)

        self._state = SessionState.IDLE
        self._validated = False
        self._connect_in_progress = False
        self._loss_reported = False
        self._close_reason: Optional[str] = None

        self._socket: Optional[socket.socket] = None
        self._reader: Optional[LinkReader] = None
        self._writer: Optional[LinkWriter] = None
        self._remote: Optional[str] = None

        self._loss_listeners: Listeners[LossEvent] = Listeners("connection loss")
        self.stats = SessionStats()

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def is_active(self) -> bool:
        """True while the link is validated and the heartbeat runs."""
        return self.state is SessionState.ACTIVE

    @property
    def vehicle(self) -> VehicleState:
        return self._vehicle

    def add_loss_listener(self, callback: Callable[[LossEvent], None]) -> None:
        """
        Register a callback for link loss.

        Callbacks run on the worker thread that detected the loss and must
        not call connect() synchronously.
        """
        self._loss_listeners.add(callback)

    def remove_loss_listener(self, callback: Callable[[LossEvent], None]) -> None:
        self._loss_listeners.remove(callback)

    def connect(self, address: str, port: Union[str, int]) -> None:
        """
        Connect to the car and wait for it to acknowledge the handshake.

        Args:
            address: Host name or IP address of the car
            port: TCP port of the car

        Raises:
            HandshakeTimeoutError: If the car did not acknowledge in time
            ConnectionFailedError: If the link could not be set up
        """
        with self._lock:
            if self._connect_in_progress or self._state not in (SessionState.IDLE, SessionState.CLOSED):
                raise ConnectionFailedError(f"Session is already {self._state.value}")
            self._connect_in_progress = True
            self._validated = False
            self._loss_reported = False
            self._close_reason = None

        self.stats.connect_attempts += 1
        logger.info(f"Trying to connect to car at {address}:{port}")

        try:
            self._establish(address, port)
        except ConnectionFailedError as e:
            self.stats.connect_failures += 1
            logger.error(f"Connection to {address}:{port} failed: {e}")
            raise
        finally:
            with self._lock:
                self._connect_in_progress = False

    def _establish(self, address: str, port: Union[str, int]) -> None:
        sock = self._open_socket(address, port)
        logger.info(f"Connected to car at {address}:{port}")

        with self._lock:
            self._socket = sock
            self._remote = f"{address}:{port}"
            self._state = SessionState.CONNECTING

        try:
            reader = LinkReader(
                sock,
                on_handshake=self._validate_connection,
                on_loss=self.lost_connection,
            )
            writer = LinkWriter(
                sock,
                on_loss=self.lost_connection,
                heartbeat_period_ms=self.heartbeat_period_ms,
            )
        except OSError as e:
            self._teardown(notify_peer=False)
            raise ConnectionFailedError(
                f"Exception while trying to set up the socket streams: {e}"
            ) from e

        with self._lock:
            self._reader = reader
            self._writer = writer
            self._state = SessionState.AWAITING_VALIDATION
            deadline = time.monotonic() + self.handshake_timeout

        reader.start()

        try:
            writer.handshake()
        except LinkWriteError as e:
            self._teardown(notify_peer=False)
            raise ConnectionFailedError(f"Could not send handshake: {e}") from e

        logger.info("Waiting for car to acknowledge the handshake")
        with self._validated_cond:
            while not self._validated and self._state in (
                SessionState.AWAITING_VALIDATION,
                SessionState.ACTIVE,
            ):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._validated_cond.wait(remaining)
            validated = self._validated
            state = self._state
            close_reason = self._close_reason

        if validated:
            self.stats.connect_time = time.time()
            return

        if state is SessionState.CLOSED:
            raise ConnectionFailedError(close_reason or "Connection closed during handshake")

        logger.warning("Timeout while waiting for the handshake; disconnecting")
        self._teardown(notify_peer=False)
        raise HandshakeTimeoutError(
            f"Timeout while waiting for handshake from {address}:{port}"
        )

    def _open_socket(self, address: str, port: Union[str, int]) -> socket.socket:
        """Resolve the address and open a TCP connection with a timeout."""
        if not is_valid_port_number(port):
            raise ConnectionFailedError(f"Invalid port number: {port}")

        try:
            infos = socket.getaddrinfo(address, int(port), type=socket.SOCK_STREAM)
        except (socket.gaierror, UnicodeError) as e:
            raise ConnectionFailedError(f"Exception while trying to get host {address}: {e}") from e

        family, socktype, proto, _, sockaddr = infos[0]
        sock = socket.socket(family, socktype, proto)
        sock.settimeout(self.connect_timeout)
        try:
            sock.connect(sockaddr)
            # No read/write deadline once connected
            sock.settimeout(None)
        except socket.timeout as e:
            sock.close()
            raise ConnectionFailedError(
                f"Timeout while trying to connect to {address}:{port}"
            ) from e
        except OSError as e:
            sock.close()
            raise ConnectionFailedError(
                f"Exception while trying to set up a socket connection to {address}:{port}: {e}"
            ) from e

        return sock

    def _validate_connection(self) -> None:
        """Called by the reader when the car echoed the handshake."""
        with self._validated_cond:
            if self._state is not SessionState.AWAITING_VALIDATION:
                logger.debug(f"Ignoring handshake while {self._state.value}")
                return

            logger.info("Car successfully validated itself")
            self._state = SessionState.ACTIVE
            writer = self._writer

            self._vehicle.add_throttle_listener(self._on_throttle_change)
            self._vehicle.add_steer_listener(self._on_steer_change)

        # Vehicle listeners run without the session lock held
        self._vehicle.reset()

        logger.info("Starting heartbeat")
        writer.start_heartbeat()

        with self._validated_cond:
            if self._state is SessionState.ACTIVE:
                self._validated = True
            self._validated_cond.notify_all()

    def lost_connection(self, reason: str = "Connection lost") -> None:
        """
        Handle an unrecoverable link failure or a CLOSE from the car.

        Listeners are notified once, and only if the session was active.
        """
        with self._lock:
            fire = (
                self._state is SessionState.ACTIVE
                and self._validated
                and not self._loss_reported
            )
            if fire:
                self._loss_reported = True
            elif self._state is not SessionState.CLOSED:
                # connect() is still waiting and reports this reason
                self._close_reason = reason

        if fire:
            logger.warning(f"Lost connection to the car: {reason}")
            self.stats.losses += 1
            self._loss_listeners.emit(LossEvent(source=self, reason=reason))

        self._teardown(notify_peer=False)

    def disconnect(self) -> None:
        """Close the link. Safe to call repeatedly and from any thread."""
        self._teardown(notify_peer=True)

    def _teardown(self, notify_peer: bool) -> bool:
        """
        Move to CLOSED and release the link.

        Only the caller that performs the transition closes the workers
        and the socket.

        Returns:
            True if this call closed the link
        """
        with self._validated_cond:
            if self._state in (SessionState.IDLE, SessionState.CLOSED):
                return False
            was_active = self._state is SessionState.ACTIVE
            self._state = SessionState.CLOSED
            if self._close_reason is None:
                self._close_reason = "Disconnected"

            reader, writer, sock = self._reader, self._writer, self._socket
            self._reader = None
            self._writer = None
            self._socket = None
            self._validated_cond.notify_all()

        logger.info(f"Disconnecting from {self._remote}")
        self._vehicle.remove_throttle_listener(self._on_throttle_change)
        self._vehicle.remove_steer_listener(self._on_steer_change)

        # Writer first so the heartbeat stops before the streams go away
        if writer is not None:
            writer.close(notify_peer=notify_peer and was_active)
        if reader is not None:
            reader.close()
        if sock is not None:
            try:
                sock.close()
            except OSError as e:
                logger.warning(f"Error while closing socket: {e}")

        self.stats.disconnect_time = time.time()
        logger.info("Disconnected")
        return True

    def _on_throttle_change(self, event: ThrottleChangeEvent) -> None:
        with self._lock:
            writer = self._writer if self._state is SessionState.ACTIVE else None
        if writer is not None:
            writer.set_throttle(event.direction)

    def _on_steer_change(self, event: SteerChangeEvent) -> None:
        with self._lock:
            writer = self._writer if self._state is SessionState.ACTIVE else None
        if writer is not None:
            writer.set_steer(event.angle)

    def get_stats(self) -> dict:
        """Get session statistics."""
        with self._lock:
            reader, writer = self._reader, self._writer
            state = self._state
            remote = self._remote
        return {
            "state": state.value,
            "remote": remote,
            "connect_attempts": self.stats.connect_attempts,
            "connect_failures": self.stats.connect_failures,
            "losses": self.stats.losses,
            "connect_time": self.stats.connect_time,
            "disconnect_time": self.stats.disconnect_time,
            "reader": reader.get_stats() if reader else {},
            "writer": writer.get_stats() if writer else {},
        }
