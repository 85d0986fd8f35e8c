#!/usr/bin/env python3
"""
Car Server - Main Entry Point

Reference peer for the RC car client. Accepts one controlling client at a
time over the line protocol and optionally forwards its state updates to
the motor controller over MQTT.

Environment Variables:
    SERVER_HOST: Bind address (default: 0.0.0.0)
    SERVER_PORT: Bind port (default: 65432)
    READ_TIMEOUT_MS: Drop a silent client after this long (default: 1100)
    MQTT_ENABLED: "1" to enable the MQTT bridge (default: 0)
    MQTT_HOST: MQTT broker host (default: localhost)
    MQTT_PORT: MQTT broker port (default: 1883)

Usage:
    SERVER_PORT=65432 python -m car_server.main
"""

import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from rc_car_client.protocol import StateUpdate

from .mqtt_bridge import AsyncMQTTBridge
from .tcp_server import DEFAULT_PORT, DEFAULT_READ_TIMEOUT_MS, CarServer

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class CarGateway:
    """
    Car server integrating the TCP line protocol and MQTT.

    Architecture:
        Client -> TCP -> CarGateway -> MQTT (rc_car/cmd)
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = DEFAULT_PORT,
        read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS,
        mqtt_host: str = "localhost",
        mqtt_port: int = 1883,
        enable_mqtt: bool = False,
    ):
        """
        Initialize the gateway.

        Args:
            host: Server bind address
            port: Server port
            read_timeout_ms: Client read timeout in milliseconds
            mqtt_host: MQTT broker host
            mqtt_port: MQTT broker port
            enable_mqtt: Whether to enable the MQTT bridge
        """
        self.host = host
        self.port = port
        self.read_timeout_ms = read_timeout_ms
        self.mqtt_host = mqtt_host
        self.mqtt_port = mqtt_port
        self.enable_mqtt = enable_mqtt

        # Components
        self.car_server: Optional[CarServer] = None
        self.mqtt_bridge: Optional[AsyncMQTTBridge] = None

    async def start(self) -> None:
        """Start all server components."""
        logger.info("Starting Car Server...")

        if self.enable_mqtt:
            try:
                self.mqtt_bridge = AsyncMQTTBridge(
                    host=self.mqtt_host,
                    port=self.mqtt_port,
                    on_telemetry=self._on_telemetry,
                )
                success = await self.mqtt_bridge.start()
                if success:
                    logger.info("MQTT bridge started")
                else:
                    logger.warning("MQTT bridge failed to connect")
            except Exception as e:
                logger.error(f"Failed to start MQTT bridge: {e}")
                logger.warning("Continuing without MQTT bridge")
                self.mqtt_bridge = None

        self.car_server = CarServer(
            host=self.host,
            port=self.port,
            read_timeout_ms=self.read_timeout_ms,
            on_state=self._on_state,
            on_controller_connected=self._on_controller_connected,
            on_controller_disconnected=self._on_controller_disconnected,
        )
        await self.car_server.start()

        logger.info(f"Car Server started on {self.host}:{self.car_server.port}")

    async def stop(self) -> None:
        """Stop all server components."""
        logger.info("Stopping Car Server...")

        if self.car_server:
            await self.car_server.stop()

        if self.mqtt_bridge:
            await self.mqtt_bridge.stop()
            logger.info("MQTT bridge stopped")

        logger.info("Car Server stopped")

    async def _on_state(self, state: StateUpdate) -> None:
        """Forward a state update from the controlling client."""
        logger.debug(f"State: throttle={state.throttle.value}, steer={state.angle}")

        if self.mqtt_bridge and self.mqtt_bridge.connected:
            await self.mqtt_bridge.publish_state(state.throttle, state.angle)

    async def _on_controller_connected(self, client_id: str) -> None:
        logger.info(f"Controller connected: {client_id}")

    async def _on_controller_disconnected(self, client_id: str) -> None:
        """Handle controller disconnection - force neutral."""
        logger.info(f"Controller disconnected: {client_id}")

        if self.mqtt_bridge and self.mqtt_bridge.connected:
            await self.mqtt_bridge.publish_neutral()

    def _on_telemetry(self, data: dict) -> None:
        """Handle telemetry from the car."""
        logger.debug(f"Telemetry: {data}")

    def get_stats(self) -> dict:
        """Get server statistics."""
        return {
            "car_server": self.car_server.get_stats() if self.car_server else {},
            "mqtt_bridge": self.mqtt_bridge.get_stats() if self.mqtt_bridge else {},
        }


async def main_async() -> None:
    """Async main entry point."""
    # Load configuration from environment
    host = os.environ.get("SERVER_HOST", "0.0.0.0")
    port = int(os.environ.get("SERVER_PORT", str(DEFAULT_PORT)))
    read_timeout_ms = int(os.environ.get("READ_TIMEOUT_MS", str(DEFAULT_READ_TIMEOUT_MS)))
    enable_mqtt = os.environ.get("MQTT_ENABLED", "0").lower() in ("1", "true", "yes")
    mqtt_host = os.environ.get("MQTT_HOST", "localhost")
    mqtt_port = int(os.environ.get("MQTT_PORT", "1883"))

    gateway = CarGateway(
        host=host,
        port=port,
        read_timeout_ms=read_timeout_ms,
        mqtt_host=mqtt_host,
        mqtt_port=mqtt_port,
        enable_mqtt=enable_mqtt,
    )

    # Setup signal handlers
    loop = asyncio.get_event_loop()

    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("Shutdown signal received")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await gateway.start()

        # Run server until shutdown
        server_task = asyncio.create_task(gateway.car_server.serve_forever())
        shutdown_task = asyncio.create_task(shutdown_event.wait())

        done, pending = await asyncio.wait(
            [server_task, shutdown_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    except Exception as e:
        logger.error(f"Server error: {e}")
    finally:
        await gateway.stop()


def main() -> None:
    """Main entry point."""
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
