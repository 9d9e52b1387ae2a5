from __future__ import annotations

from enum import Enum


class Direction(str, Enum):
    """Flow a log line or counter belongs to."""
    WIRE_TO_BUS = "wire->bus"
    BUS_TO_WIRE = "bus->wire"


class ReceiveState(str, Enum):
    """Wire-to-bus state machine: IDLE -> RECEIVING -> PROCESSING -> RECEIVING ...

    STOPPED is terminal, entered on a socket receive error or shutdown.
    """
    IDLE = "idle"
    RECEIVING = "receiving"
    PROCESSING = "processing"
    STOPPED = "stopped"
