"""Pytest configuration and fixtures for rc_car_client and car_server tests."""

import asyncio
import queue
import socket
import threading
import time
from typing import List, Optional

import pytest

from car_server.tcp_server import CarServer
from rc_car_client.protocol import HANDSHAKE
from rc_car_client.session import Session
from rc_car_client.vehicle import VehicleState

# Short timings so the suite stays fast
TEST_HANDSHAKE_TIMEOUT_MS = 300
TEST_HEARTBEAT_PERIOD_MS = 200


class FakeCar:
    """
    Threaded TCP peer speaking the line protocol.

    Records every received line with its arrival time and, unless told
    otherwise, acknowledges the handshake.
    """

    def __init__(self, ack_handshake: bool = True):
        self.ack_handshake = ack_handshake

        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._listener.bind(("127.0.0.1", 0))
        self._listener.listen(1)
        self.port = self._listener.getsockname()[1]

        self.conn: Optional[socket.socket] = None
        self.received: "queue.Queue[tuple]" = queue.Queue()
        self.connected = threading.Event()
        self.eof = threading.Event()

        self._thread = threading.Thread(target=self._serve, name="fake-car", daemon=True)
        self._thread.start()

    def _serve(self) -> None:
        try:
            conn, _ = self._listener.accept()
        except OSError:
            return
        self.conn = conn
        self.connected.set()

        stream = conn.makefile("r", encoding="ascii", newline="\n")
        try:
            for raw in stream:
                line = raw.rstrip("\r\n")
                self.received.put((time.monotonic(), line))
                if line == HANDSHAKE and self.ack_handshake:
                    self.send(HANDSHAKE)
        except (OSError, ValueError):
            pass
        finally:
            self.eof.set()

    def send(self, line: str) -> None:
        self.conn.sendall((line + "\n").encode("ascii"))

    def next_line(self, timeout: float = 2.0) -> str:
        return self.received.get(timeout=timeout)[1]

    def next_timed_line(self, timeout: float = 2.0) -> tuple:
        return self.received.get(timeout=timeout)

    def lines_for(self, duration: float) -> List[tuple]:
        """Collect (time, line) pairs received during the given duration."""
        end = time.monotonic() + duration
        lines = []
        while True:
            remaining = end - time.monotonic()
            if remaining <= 0:
                return lines
            try:
                lines.append(self.received.get(timeout=remaining))
            except queue.Empty:
                return lines

    def drop_connection(self) -> None:
        """Close the accepted connection from the car side."""
        if self.conn is not None:
            self.conn.shutdown(socket.SHUT_RDWR)
            self.conn.close()

    def close(self) -> None:
        self._listener.close()
        if self.conn is not None:
            try:
                self.conn.close()
            except OSError:
                pass


class ThreadedCarServer:
    """Runs a CarServer on its own event loop in a background thread."""

    def __init__(self, **kwargs):
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="car-server-loop", daemon=True)
        self._thread.start()
        self.server = CarServer(host="127.0.0.1", port=0, **kwargs)
        self.call(self.server.start())

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def call(self, coro, timeout: float = 5.0):
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout=timeout)

    @property
    def port(self) -> int:
        return self.server.port

    def close(self) -> None:
        self.call(self.server.stop())
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5.0)
        self.loop.close()


@pytest.fixture
def vehicle() -> VehicleState:
    return VehicleState()


@pytest.fixture
def fake_car():
    car = FakeCar()
    yield car
    car.close()


@pytest.fixture
def silent_car():
    """A peer that never acknowledges the handshake."""
    car = FakeCar(ack_handshake=False)
    yield car
    car.close()


@pytest.fixture
def make_session(vehicle):
    """Create sessions with short timings; all are disconnected afterwards."""
    sessions = []

    def _make(**kwargs) -> Session:
        kwargs.setdefault("handshake_timeout_ms", TEST_HANDSHAKE_TIMEOUT_MS)
        kwargs.setdefault("heartbeat_period_ms", TEST_HEARTBEAT_PERIOD_MS)
        kwargs.setdefault("connect_timeout", 2.0)
        session = Session(vehicle, **kwargs)
        sessions.append(session)
        return session

    yield _make

    for session in sessions:
        session.disconnect()


@pytest.fixture
def socket_pair():
    """Connected (local, remote) socket pair; both closed afterwards."""
    local, remote = socket.socketpair()
    yield local, remote
    for sock in (local, remote):
        try:
            sock.close()
        except OSError:
            pass


def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll until predicate() is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
