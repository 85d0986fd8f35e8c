"""
MQTT Bridge for the car's motor controller.

Handles:
- Publishing desired throttle/steering to rc_car/cmd
- Subscribing to rc_car/telemetry for logging
- Neutral command on stop (deadman)
"""

import asyncio
import json
import logging
import time
from typing import Callable, Optional

import paho.mqtt.client as mqtt

from rc_car_client.protocol import NEUTRAL_ANGLE, Throttle

logger = logging.getLogger(__name__)


class MQTTBridge:
    """
    MQTT bridge for the car's motor controller.

    Publishes the state received from the active client as JSON:
        {"throttle": "FORWARD", "steer": 90, "ts": 1700000000000}
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 1883,
        cmd_topic: str = "rc_car/cmd",
        telemetry_topic: str = "rc_car/telemetry",
        on_telemetry: Optional[Callable[[dict], None]] = None,
    ):
        """
        Initialize MQTT bridge.

        Args:
            host: MQTT broker host
            port: MQTT broker port
            cmd_topic: Topic for motor commands
            telemetry_topic: Topic for telemetry data
            on_telemetry: Callback for telemetry messages
        """
        self.host = host
        self.port = port
        self.cmd_topic = cmd_topic
        self.telemetry_topic = telemetry_topic
        self.on_telemetry = on_telemetry

        # MQTT client
        self._client: Optional[mqtt.Client] = None
        self._connected = False
        self._running = False

        # Statistics
        self._messages_sent = 0
        self._messages_received = 0
        self._last_send_time: Optional[float] = None

    def start(self) -> bool:
        """
        Start the MQTT bridge.

        Returns:
            True if connection successful, False otherwise
        """
        if self._running:
            return True

        try:
            client_id = f"rc_car_server_{int(time.time())}"
            self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)

            self._client.on_connect = self._on_connect
            self._client.on_disconnect = self._on_disconnect
            self._client.on_message = self._on_message

            logger.info(f"Connecting to MQTT broker at {self.host}:{self.port}")
            self._client.connect(self.host, self.port, keepalive=60)

            # Network loop in background thread
            self._running = True
            self._client.loop_start()

            for _ in range(50):  # 5 second timeout
                if self._connected:
                    break
                time.sleep(0.1)

            if not self._connected:
                logger.warning("MQTT connection timeout - continuing without MQTT")
                return False

            return True

        except Exception as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            return False

    def stop(self) -> None:
        """Stop the MQTT bridge."""
        if not self._running:
            return

        self._running = False

        if self._connected:
            self.publish_neutral()

        if self._client:
            self._client.loop_stop()
            self._client.disconnect()
            self._client = None

        self._connected = False
        logger.info("MQTT bridge stopped")

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        """MQTT connection callback."""
        if not reason_code.is_failure:
            self._connected = True
            logger.info("Connected to MQTT broker")

            client.subscribe(self.telemetry_topic)
            logger.info(f"Subscribed to {self.telemetry_topic}")
        else:
            logger.error(f"MQTT connection failed: {reason_code}")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        """MQTT disconnection callback."""
        self._connected = False
        if reason_code.is_failure:
            logger.warning(f"Unexpected MQTT disconnection: {reason_code}")
        else:
            logger.info("Disconnected from MQTT broker")

    def _on_message(self, client, userdata, msg):
        """MQTT message callback."""
        self._messages_received += 1

        try:
            payload = json.loads(msg.payload.decode())
            logger.debug(f"Telemetry received: {payload}")

            if self.on_telemetry:
                self.on_telemetry(payload)

        except json.JSONDecodeError as e:
            logger.warning(f"Invalid telemetry JSON: {e}")
        except Exception as e:
            logger.error(f"Error processing telemetry: {e}")

    def publish_state(self, throttle: Throttle, angle: int) -> bool:
        """
        Publish the desired throttle and steering angle.

        Args:
            throttle: Throttle direction
            angle: Steering angle in degrees (0-180)

        Returns:
            True if published successfully
        """
        if not self._connected or not self._client:
            return False

        payload = {
            "throttle": throttle.value,
            "steer": int(angle),
            "ts": int(time.time() * 1000),
        }

        try:
            self._client.publish(
                self.cmd_topic,
                json.dumps(payload),
                qos=0,  # Fire and forget for low latency
            )
            self._messages_sent += 1
            self._last_send_time = time.time()

            logger.debug(f"Published motor command: {payload}")
            return True

        except Exception as e:
            logger.error(f"Failed to publish motor command: {e}")
            return False

    def publish_neutral(self) -> bool:
        """Publish a stop: neutral throttle, wheels straight."""
        return self.publish_state(Throttle.NEUTRAL, NEUTRAL_ANGLE)

    @property
    def connected(self) -> bool:
        """Check if connected to MQTT broker."""
        return self._connected

    def get_stats(self) -> dict:
        """Get bridge statistics."""
        return {
            "connected": self._connected,
            "messages_sent": self._messages_sent,
            "messages_received": self._messages_received,
            "last_send_time": self._last_send_time,
        }


class AsyncMQTTBridge:
    """
    Async wrapper for MQTTBridge.

    Provides async-compatible methods for use with asyncio.
    """

    def __init__(self, **kwargs):
        """Initialize with same arguments as MQTTBridge."""
        self._bridge = MQTTBridge(**kwargs)

    async def start(self) -> bool:
        """Start the MQTT bridge."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._bridge.start)

    async def stop(self) -> None:
        """Stop the MQTT bridge."""
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._bridge.stop)

    async def publish_state(self, throttle: Throttle, angle: int) -> bool:
        """Publish the desired state."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._bridge.publish_state, throttle, angle)

    async def publish_neutral(self) -> bool:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._bridge.publish_neutral)

    @property
    def connected(self) -> bool:
        """Check if connected."""
        return self._bridge.connected

    def get_stats(self) -> dict:
        """Get statistics."""
        return self._bridge.get_stats()
