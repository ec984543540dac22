"""
Schemas for Tunnel Management

Desired-state records and point-in-time snapshots of tunnel sessions.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from .enums import SessionState


@dataclass(frozen=True)
class TunnelSpec:
    """
    Desired reverse tunnel: expose local_port on the server's remote_port.

    ``server`` pins the tunnel to ``host[:port]``; when empty the server is
    chosen by discovery. ``credential`` is the identity file to use instead
    of the configured default.
    """
    service: str
    local_port: int
    remote_port: int
    server: Optional[str] = None
    credential: Optional[str] = None

    def __post_init__(self):
        for name in ("local_port", "remote_port"):
            port = getattr(self, name)
            if not 0 < port < 65536:
                raise ValueError(f"{name} must be between 1 and 65535, got {port}")
        if not self.service:
            raise ValueError("service name must not be empty")

    @property
    def key(self) -> str:
        return f"{self.service}:{self.local_port}:{self.remote_port}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TunnelSpec":
        """Build from config dicts; camelCase keys are accepted too."""
        local_port = data.get("local_port", data.get("localPort"))
        remote_port = data.get("remote_port", data.get("remotePort"))
        if local_port is None or remote_port is None:
            raise ValueError(f"Tunnel {data!r} needs both a local and a remote port")
        try:
            local_port, remote_port = int(local_port), int(remote_port)
        except (TypeError, ValueError):
            raise ValueError(f"Tunnel {data!r} has a non-numeric port") from None
        return cls(
            service=data.get("service") or data.get("name") or "ssh",
            local_port=local_port,
            remote_port=remote_port,
            server=data.get("server"),
            credential=data.get("credential"),
        )

    @classmethod
    def parse(cls, value: str) -> "TunnelSpec":
        """Parse ``service:local_port:remote_port[@host[:port]]``."""
        definition, _, server = value.partition("@")
        parts = definition.split(":")
        if len(parts) != 3:
            raise ValueError(
                f"Tunnel '{value}' must look like service:local_port:remote_port"
            )
        service, local_port, remote_port = parts
        return cls(
            service=service,
            local_port=int(local_port),
            remote_port=int(remote_port),
            server=server or None,
        )


def session_identity(server_host: str, server_port: int, remote_port: int, local_port: int) -> str:
    """Stable identity of a tunnel: the same triple always maps to the same id."""
    return f"{server_host.lower()}:{server_port}/R{remote_port}/L{local_port}"


@dataclass
class SessionSnapshot:
    """Point-in-time view of a tunnel session."""
    identity: str
    service: str
    local_port: int
    remote_port: int
    server: str
    state: SessionState
    pid: Optional[int] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
