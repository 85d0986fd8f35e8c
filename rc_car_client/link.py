"""
Link workers for the car connection.

Handles:
- LinkWriter: handshake, heartbeat loop that keeps the car in sync with the
  desired state, final CLOSE notice
- LinkReader: blocking read loop that dispatches control lines
- Shutdown driven by closing the streams (no separate cancellation signal)
"""

import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import LinkWriteError
from .protocol import (
    CLOSE,
    HANDSHAKE,
    HEARTBEAT_PERIOD_MS,
    NEUTRAL_ANGLE,
    ControlToken,
    Throttle,
    encode_line,
    encode_state,
    parse_control,
)

logger = logging.getLogger(__name__)

# Upper bound for waiting on a worker thread during close()
JOIN_TIMEOUT_SECONDS = 2.0

# A write still blocked after this long is treated as stalled
WRITE_STALL_SECONDS = 0.5


@dataclass
class LinkStats:
    """Statistics about one direction of the link."""
    lines_sent: int = 0
    lines_failed: int = 0
    lines_received: int = 0
    lines_ignored: int = 0
    last_send_time: Optional[float] = None
    last_receive_time: Optional[float] = None


class LinkWriter:
    """
    Outbound side of the link.

    Keeps the pending desired state (throttle, steering angle, dirty flag)
    and, once the heartbeat is started, sends it whenever it changes and at
    least once per heartbeat period.
    """

    def __init__(
        self,
        sock: socket.socket,
        on_loss: Callable[[str], None],
        heartbeat_period_ms: int = HEARTBEAT_PERIOD_MS,
    ):
        """
        Initialize the writer.

        Args:
            sock: Connected socket; the writer owns its output stream and
                may shut down the output side to fail a stalled write
            on_loss: Called with a reason when a heartbeat send fails
            heartbeat_period_ms: Maximum time between two state updates
        """
        self._socket = sock
        self._stream = sock.makefile("w", encoding="ascii", newline="\n")
        self._on_loss = on_loss
        self.heartbeat_period = heartbeat_period_ms / 1000.0

        self._cond = threading.Condition()
        self._write_lock = threading.Lock()

        # Pending outbound state
        self._throttle = Throttle.NEUTRAL
        self._steer_angle = NEUTRAL_ANGLE
        self._dirty = True

        self._heartbeat = False
        self._closed = False
        self._thread: Optional[threading.Thread] = None

        self.stats = LinkStats()

    @property
    def heartbeat_running(self) -> bool:
        with self._cond:
            return self._heartbeat

    def handshake(self) -> None:
        """
        Send the handshake token.

        Raises:
            LinkWriteError: If the write failed
        """
        logger.debug("Sending handshake")
        self._write(HANDSHAKE)

    def send_close(self) -> bool:
        """
        Tell the car the session is ending. Best effort.

        A peer that stopped reading cannot hold this call: the output side
        is shut down if the write stalls.

        Returns:
            True if the CLOSE line was written
        """
        watchdog = threading.Timer(WRITE_STALL_SECONDS, self._shutdown_output)
        watchdog.daemon = True
        watchdog.start()
        try:
            self._write(CLOSE)
            logger.info("Sent CLOSE to car")
            return True
        except LinkWriteError as e:
            logger.warning(f"Failed to send CLOSE: {e}")
            return False
        finally:
            watchdog.cancel()

    def set_throttle(self, direction: Throttle) -> None:
        with self._cond:
            self._throttle = direction
            self._dirty = True
            self._cond.notify_all()

    def set_steer(self, angle: int) -> None:
        with self._cond:
            self._steer_angle = angle
            self._dirty = True
            self._cond.notify_all()

    def start_heartbeat(self) -> None:
        """Start the heartbeat loop in a background thread."""
        with self._cond:
            if self._heartbeat or self._closed:
                return
            self._heartbeat = True

        self._thread = threading.Thread(
            target=self._heartbeat_loop,
            name="link-writer-heartbeat",
            daemon=True,
        )
        self._thread.start()

    def close(self, notify_peer: bool = False) -> None:
        """
        Stop the heartbeat loop and close the output stream.

        Args:
            notify_peer: Send a final CLOSE line once the heartbeat stopped
        """
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._heartbeat = False
            self._cond.notify_all()

        stalled = False
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=WRITE_STALL_SECONDS)
            if thread.is_alive():
                # Blocked in a write to a peer that stopped reading
                logger.warning("Heartbeat write stalled; shutting down the output side")
                stalled = True
                self._shutdown_output()
                thread.join(timeout=JOIN_TIMEOUT_SECONDS)

        if notify_peer and not stalled:
            self.send_close()

        logger.debug("Closing output stream")
        if not self._write_lock.acquire(timeout=JOIN_TIMEOUT_SECONDS):
            logger.warning("Output stream still busy; leaving it to the socket close")
            return
        try:
            self._stream.close()
        except (OSError, ValueError) as e:
            logger.debug(f"Output stream close error: {e}")
        finally:
            self._write_lock.release()

    def _shutdown_output(self) -> None:
        """Fail any write blocked on the socket."""
        try:
            self._socket.shutdown(socket.SHUT_WR)
        except OSError as e:
            # Already disconnected
            logger.debug(f"Socket shutdown: {e}")

    def _write(self, line: str) -> None:
        """Write one line and flush it to the socket."""
        with self._write_lock:
            try:
                self._stream.write(encode_line(line))
                self._stream.flush()
            except (OSError, ValueError) as e:
                self.stats.lines_failed += 1
                raise LinkWriteError(f"Error while writing to the output stream: {e}") from e

            self.stats.lines_sent += 1
            self.stats.last_send_time = time.time()
        logger.debug(f"Sent: {line}")

    def _heartbeat_loop(self) -> None:
        """Send the pending state on change, or at least once per period."""
        logger.info("Heartbeat started")

        while True:
            with self._cond:
                if self._heartbeat and not self._dirty:
                    self._cond.wait(self.heartbeat_period)
                if not self._heartbeat:
                    break
                throttle = self._throttle
                angle = self._steer_angle

            try:
                self._write(encode_state(throttle, angle))
            except LinkWriteError as e:
                with self._cond:
                    closing = self._closed
                if closing:
                    break
                logger.warning(f"State update failed: {e}")
                self._on_loss(str(e))
                # Pace retries until close() stops the loop
                with self._cond:
                    if self._heartbeat:
                        self._cond.wait(self.heartbeat_period)
                continue

            with self._cond:
                # Newer values that arrived during the write stay dirty
                if self._throttle == throttle and self._steer_angle == angle:
                    self._dirty = False

        logger.info("Heartbeat stopped")

    def get_stats(self) -> dict:
        """Get writer statistics."""
        with self._cond:
            throttle = self._throttle
            angle = self._steer_angle
            dirty = self._dirty
        return {
            "heartbeat_running": self.heartbeat_running,
            "pending_throttle": throttle.value,
            "pending_steer_angle": angle,
            "dirty": dirty,
            "lines_sent": self.stats.lines_sent,
            "lines_failed": self.stats.lines_failed,
            "last_send_time": self.stats.last_send_time,
        }


class LinkReader:
    """
    Inbound side of the link.

    Runs a dedicated read loop. Control lines are dispatched to the
    callbacks; everything else is ignored.
    """

    def __init__(
        self,
        sock: socket.socket,
        on_handshake: Callable[[], None],
        on_loss: Callable[[str], None],
    ):
        """
        Initialize the reader.

        Args:
            sock: Connected socket; the reader owns its input stream
            on_handshake: Called when the car acknowledges the handshake
            on_loss: Called with a reason on read failure, end of stream
                or a CLOSE from the car
        """
        self._socket = sock
        self._stream = sock.makefile("r", encoding="ascii", errors="replace", newline="\n")
        self._on_handshake = on_handshake
        self._on_loss = on_loss

        self._lock = threading.Lock()
        self._active = True
        self._closed = False
        self._thread: Optional[threading.Thread] = None

        self.stats = LinkStats()

    @property
    def active(self) -> bool:
        with self._lock:
            return self._active

    def start(self) -> None:
        """Start the read loop in a background thread."""
        self._thread = threading.Thread(
            target=self._read_loop,
            name="link-reader",
            daemon=True,
        )
        self._thread.start()

    def close(self) -> None:
        """
        Close the input stream.

        Shutting the socket down is what makes a blocked readline() return
        so the loop can exit.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._active = False

        logger.debug("Closing input stream")
        try:
            self._socket.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            # Already disconnected
            logger.debug(f"Socket shutdown: {e}")

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=JOIN_TIMEOUT_SECONDS)

        try:
            self._stream.close()
        except (OSError, ValueError) as e:
            logger.debug(f"Input stream close error: {e}")

    def _read_loop(self) -> None:
        logger.debug("Read loop started")

        while self.active:
            try:
                line = self._stream.readline()
            except (OSError, ValueError) as e:
                self._fail(f"Error while reading from the car: {e}")
                break

            if not line:
                self._fail("Connection closed by car (end of stream)")
                break

            self._handle_line(line.rstrip("\r\n"))

        logger.debug("Read loop stopped")

    def _handle_line(self, line: str) -> None:
        """Dispatch one received line."""
        self.stats.lines_received += 1
        self.stats.last_receive_time = time.time()

        token = parse_control(line)
        if token is None:
            self.stats.lines_ignored += 1
            logger.debug(f"Ignoring line: {line!r}")
            return

        if token is ControlToken.HANDSHAKE:
            logger.debug("Received handshake from car")
            self._on_handshake()
        elif token is ControlToken.CLOSE:
            with self._lock:
                self._active = False
            logger.info("Car requested to close the connection")
            self._on_loss("Connection closed by car")

    def _fail(self, reason: str) -> None:
        """Report a read failure unless the reader was closed on purpose."""
        with self._lock:
            if not self._active:
                return
            self._active = False

        logger.warning(reason)
        self._on_loss(reason)

    def get_stats(self) -> dict:
        """Get reader statistics."""
        return {
            "active": self.active,
            "lines_received": self.stats.lines_received,
            "lines_ignored": self.stats.lines_ignored,
            "last_receive_time": self.stats.last_receive_time,
        }
