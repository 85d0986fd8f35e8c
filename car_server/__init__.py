"""
Car Server - reference peer for the RC car client.

This package runs on the car (or a test machine) and:
- Accepts one controlling client over the TCP line protocol
- Echoes the handshake and state updates back to the client
- Bridges state updates to MQTT for the motor controller
"""

__version__ = "1.0.0"
