"""
Enums for Tunnel Management

Defines session states and the fleet-level client status shared by agents
and the control plane.
"""

from enum import Enum


class SessionState(Enum):
    """State of one tunnel session."""
    IDLE = "Idle"
    CONNECTING = "Connecting"
    ACTIVE = "Active"
    DEGRADED = "Degraded"
    TERMINATED = "Terminated"


class ClientStatus(str, Enum):
    """Status of an agent as reported to the control plane."""
    REGISTERED = "Registered"
    CONNECTED = "Connected"
    DISCONNECTED = "Disconnected"
    ERROR = "Error"
    RECONNECTING = "Reconnecting"


# Sessions in these states own (or are about to own) a live process
LIVE_STATES = frozenset(
    {SessionState.CONNECTING, SessionState.ACTIVE, SessionState.DEGRADED}
)
