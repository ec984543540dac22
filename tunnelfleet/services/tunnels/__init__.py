"""
Tunnel Management Package

Reverse-tunnel sessions, their transport, and the lifecycle manager that
keeps them alive on the agent side.
"""

from .enums import ClientStatus, SessionState
from .lifecycle import RestartPolicy, TunnelLifecycleManager
from .reporter import ControlPlaneReporter
from .schemas import SessionSnapshot, TunnelSpec, session_identity
from .session import SessionManager, TunnelSession
from .transport import SSHTransport, TransportProcess, TunnelTransport

__all__ = [
    'ClientStatus',
    'SessionState',
    'RestartPolicy',
    'TunnelLifecycleManager',
    'ControlPlaneReporter',
    'SessionSnapshot',
    'TunnelSpec',
    'session_identity',
    'SessionManager',
    'TunnelSession',
    'SSHTransport',
    'TransportProcess',
    'TunnelTransport',
]
