"""Marquee — relays viewer messages to a display over OSC.

Components:
  - Queue: shared in-memory message queue
  - Device: per-address OSC sessions with liveness probing
  - Hub: WebSocket viewers, snapshot broadcast, transmit and expiry
  - Server: FastAPI app exposing the viewer channel
"""

__version__ = "1.0.0"
