"""
Fleet statistics derived from one registry snapshot. Nothing is cached.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, Optional

from tunnelfleet.services.registry import ClientRecord, ClientRegistry
from tunnelfleet.services.tunnels.enums import ClientStatus


@dataclass
class FleetStatistics:
    total_clients: int
    status_counts: Dict[str, int]
    total_tunnels: int
    port_usage: Dict[int, int]
    server_uptime_seconds: float
    generated_at: datetime = field(default_factory=datetime.utcnow)

    def count(self, status: ClientStatus) -> int:
        return self.status_counts.get(status.value, 0)


def compute_fleet_statistics(
    records: Iterable[ClientRecord],
    started_at: datetime,
    now: Optional[datetime] = None
) -> FleetStatistics:
    now = now or datetime.utcnow()
    status_counts = {status.value: 0 for status in ClientStatus}
    port_usage: Counter = Counter()
    total_clients = 0
    total_tunnels = 0

    for record in records:
        total_clients += 1
        status_counts[record.status.value] += 1
        total_tunnels += len(record.active_tunnels)
        for tunnel in record.active_tunnels:
            port_usage[tunnel.remote_port] += 1

    return FleetStatistics(
        total_clients=total_clients,
        status_counts=status_counts,
        total_tunnels=total_tunnels,
        port_usage=dict(sorted(port_usage.items())),
        server_uptime_seconds=max((now - started_at).total_seconds(), 0.0),
        generated_at=now,
    )


class StatisticsAggregator:
    """Read-only view over the registry."""

    def __init__(self, registry: ClientRegistry, started_at: Optional[datetime] = None):
        self.registry = registry
        self.started_at = started_at or datetime.utcnow()

    def collect(self) -> FleetStatistics:
        # A single snapshot keeps counts and histogram consistent with each other
        return compute_fleet_statistics(self.registry.snapshot(), self.started_at)
