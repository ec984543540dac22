from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from tunnelfleet.services.registry import ClientSnapshot
from tunnelfleet.services.statistics import FleetStatistics
from tunnelfleet.services.tunnels.enums import ClientStatus


class CamelModel(BaseModel):
    """Wire models use camelCase; snake_case is accepted on input too."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class TunnelInfo(CamelModel):
    service: str = Field(..., description="Name of the forwarded service")
    local_port: int = Field(..., ge=1, le=65535, description="Port on the agent")
    remote_port: int = Field(..., ge=1, le=65535, description="Bind port on the server")


class ClientInfo(CamelModel):
    client_id: Optional[str] = None
    host_name: str = Field(..., min_length=1)
    platform: Optional[str] = None
    agent_version: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "allow"


class RegisterResponse(CamelModel):
    client_id: str
    success: bool = True


class StatusUpdate(CamelModel):
    client_id: str
    status: ClientStatus
    tunnel_info: List[TunnelInfo] = []


class SuccessResponse(CamelModel):
    success: bool
    error: Optional[str] = None


class ClientRecordResponse(CamelModel):
    client_id: str
    host_name: str
    registered_at: datetime
    last_seen: datetime
    status: ClientStatus
    active_tunnels: List[TunnelInfo]
    tunnel_count: int
    connection_count: int
    first_connected: Optional[datetime] = None
    last_connected: Optional[datetime] = None
    minutes_since_last_seen: float
    uptime_seconds: float
    metadata: Dict[str, Any] = {}

    @classmethod
    def from_snapshot(cls, snapshot: ClientSnapshot) -> "ClientRecordResponse":
        record = snapshot.record
        return cls(
            client_id=record.client_id,
            host_name=record.host_name,
            registered_at=record.registered_at,
            last_seen=record.last_seen,
            status=record.status,
            active_tunnels=[
                TunnelInfo(
                    service=t.service,
                    local_port=t.local_port,
                    remote_port=t.remote_port,
                )
                for t in record.active_tunnels
            ],
            tunnel_count=len(record.active_tunnels),
            connection_count=record.connection_count,
            first_connected=record.first_connected,
            last_connected=record.last_connected,
            minutes_since_last_seen=snapshot.minutes_since_last_seen,
            uptime_seconds=snapshot.uptime_seconds,
            metadata=record.metadata,
        )


class TunnelListing(CamelModel):
    client_id: str
    host: str
    service: str
    local_port: int
    remote_port: int
    status: ClientStatus


class FleetStatisticsResponse(CamelModel):
    total_clients: int
    connected_clients: int
    disconnected_clients: int
    registered_clients: int
    error_clients: int
    reconnecting_clients: int
    status_counts: Dict[str, int]
    total_tunnels: int
    port_usage: Dict[int, int]
    server_uptime: float
    generated_at: datetime

    @classmethod
    def from_statistics(cls, stats: FleetStatistics) -> "FleetStatisticsResponse":
        return cls(
            total_clients=stats.total_clients,
            connected_clients=stats.count(ClientStatus.CONNECTED),
            disconnected_clients=stats.count(ClientStatus.DISCONNECTED),
            registered_clients=stats.count(ClientStatus.REGISTERED),
            error_clients=stats.count(ClientStatus.ERROR),
            reconnecting_clients=stats.count(ClientStatus.RECONNECTING),
            status_counts=stats.status_counts,
            total_tunnels=stats.total_tunnels,
            port_usage=stats.port_usage,
            server_uptime=round(stats.server_uptime_seconds, 1),
            generated_at=stats.generated_at,
        )


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str
    uptime: float
