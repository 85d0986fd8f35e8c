"""
TCP line-protocol server for the RC car.

Handles:
- Handshake validation (first line must be HANDSHAKE, echoed back)
- Echoing every line after the handshake
- Read timeout: a client that stays silent longer than the timeout is dropped
- Single-controller lock (one validated client at a time)
- Decoding state updates and forwarding them to a callback
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from rc_car_client.protocol import CLOSE, HANDSHAKE, StateUpdate, decode_state, encode_line

logger = logging.getLogger(__name__)

DEFAULT_PORT = 65432
DEFAULT_READ_TIMEOUT_MS = 1100


@dataclass
class ControllerState:
    """State of the active controller."""
    client_id: str
    connected_at: float
    last_message_at: float
    message_count: int = 0


class CarServer:
    """
    Reference peer for the RC car client.

    Features:
    - Line-protocol handshake and echo
    - Read timeout as deadman detection
    - Single-controller lock
    - State update forwarding callback
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = DEFAULT_PORT,
        read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS,
        on_state: Optional[Callable[[StateUpdate], Awaitable[None]]] = None,
        on_controller_connected: Optional[Callable[[str], Awaitable[None]]] = None,
        on_controller_disconnected: Optional[Callable[[str], Awaitable[None]]] = None,
    ):
        """
        Initialize the server.

        Args:
            host: Bind address
            port: Bind port (0 picks a free port)
            read_timeout_ms: Drop a client after this long without a line
            on_state: Callback for decoded state updates
            on_controller_connected: Callback when a client completes the handshake
            on_controller_disconnected: Callback when the controlling client leaves
        """
        self.host = host
        self.port = port
        self.read_timeout = read_timeout_ms / 1000.0
        self.on_state = on_state
        self.on_controller_connected = on_controller_connected
        self.on_controller_disconnected = on_controller_disconnected

        # Controller state
        self._active_controller: Optional[ControllerState] = None
        self._controller_lock = asyncio.Lock()

        # Connected clients (for monitoring)
        self._connected_clients: Dict[str, asyncio.StreamWriter] = {}
        self._client_counter = 0

        # Statistics
        self._total_messages = 0
        self._invalid_messages = 0
        self._state_updates = 0
        self._last_state: Optional[StateUpdate] = None

        self._server: Optional[asyncio.AbstractServer] = None

    async def start(self) -> None:
        """Start listening."""
        self._server = await asyncio.start_server(self._handle_client, self.host, self.port)
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info(f"Car server listening on {self.host}:{self.port}")

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        async with self._server:
            await self._server.serve_forever()

    async def stop(self) -> None:
        """Stop listening and drop all clients."""
        if self._server is None:
            return

        logger.info("Stopping car server...")
        self._server.close()

        for writer in list(self._connected_clients.values()):
            writer.close()

        await self._server.wait_closed()
        self._server = None
        logger.info("Car server stopped")

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Handle one client connection."""
        self._client_counter += 1
        client_id = f"client_{self._client_counter}"
        self._connected_clients[client_id] = writer

        peer = writer.get_extra_info("peername")
        logger.info(f"Client connected: {client_id} from {peer}")

        try:
            await self._receive_lines(reader, writer, client_id)
        except (ConnectionError, OSError) as e:
            logger.info(f"Connection to {client_id} lost: {e}")
        except Exception as e:
            logger.error(f"Error handling client {client_id}: {e}")
        finally:
            self._connected_clients.pop(client_id, None)
            await self._release_control(client_id)

            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError) as e:
                logger.debug(f"Close error for {client_id}: {e}")
            logger.info(f"Client disconnected: {client_id}")

    async def _receive_lines(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        client_id: str,
    ) -> None:
        """Run the protocol for one client until it leaves or times out."""
        handshaken = False

        while True:
            try:
                raw = await asyncio.wait_for(reader.readline(), timeout=self.read_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Connection to {client_id} lost: no line within {self.read_timeout:.2f}s")
                return
            except ValueError as e:
                # Line longer than the stream limit
                self._invalid_messages += 1
                logger.warning(f"Invalid line from {client_id}: {e}")
                return

            if not raw:
                logger.info(f"{client_id} closed the connection")
                return

            line = raw.decode("ascii", errors="replace").rstrip("\r\n")
            self._total_messages += 1
            logger.debug(f"Received from {client_id}: {line}")

            if not handshaken:
                if line != HANDSHAKE:
                    self._invalid_messages += 1
                    logger.warning(f"Received invalid command from {client_id} before handshake; closing connection")
                    await self._send(writer, CLOSE)
                    return

                if not await self._acquire_control(client_id):
                    logger.warning(f"Rejecting {client_id}, controller is {self.get_active_controller()}")
                    await self._send(writer, CLOSE)
                    return

                handshaken = True
                logger.info(f"Handshake with {client_id} complete")
                await self._send(writer, line)
                continue

            if line == CLOSE:
                logger.info(f"{client_id} requested to close the connection")
                return

            await self._send(writer, line)
            await self._handle_state(line, client_id)

    async def _handle_state(self, line: str, client_id: str) -> None:
        """Decode a state update and forward it."""
        state = decode_state(line)
        if state is None:
            self._invalid_messages += 1
            logger.debug(f"Ignoring line from {client_id}: {line!r}")
            return

        self._state_updates += 1
        self._last_state = state

        if self._active_controller and self._active_controller.client_id == client_id:
            self._active_controller.last_message_at = time.time()
            self._active_controller.message_count += 1

        if self.on_state:
            try:
                await self.on_state(state)
            except Exception as e:
                logger.error(f"Error in state callback: {e}")

    async def _acquire_control(self, client_id: str) -> bool:
        async with self._controller_lock:
            if self._active_controller is not None:
                return False
            now = time.time()
            self._active_controller = ControllerState(
                client_id=client_id,
                connected_at=now,
                last_message_at=now,
            )
            logger.info(f"Controller lock granted to {client_id}")

        if self.on_controller_connected:
            await self.on_controller_connected(client_id)
        return True

    async def _release_control(self, client_id: str) -> None:
        async with self._controller_lock:
            if not self._active_controller or self._active_controller.client_id != client_id:
                return
            logger.info(f"Controller {client_id} disconnected, releasing lock")
            self._active_controller = None

        if self.on_controller_disconnected:
            try:
                await self.on_controller_disconnected(client_id)
            except Exception as e:
                logger.error(f"Error in disconnect callback: {e}")

    async def _send(self, writer: asyncio.StreamWriter, line: str) -> None:
        writer.write(encode_line(line).encode("ascii"))
        await writer.drain()

    def get_active_controller(self) -> Optional[str]:
        """Get the ID of the active controller."""
        return self._active_controller.client_id if self._active_controller else None

    def get_last_state(self) -> Optional[StateUpdate]:
        """Get the most recent state update from the active controller."""
        return self._last_state

    def get_stats(self) -> dict:
        """Get server statistics."""
        return {
            "connected_clients": len(self._connected_clients),
            "active_controller": self.get_active_controller(),
            "total_messages": self._total_messages,
            "invalid_messages": self._invalid_messages,
            "state_updates": self._state_updates,
        }
