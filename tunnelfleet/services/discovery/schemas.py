"""
Schemas for Server Discovery

Candidate coordination servers and the merge/rank rules applied to them.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

DEFAULT_SSH_PORT = 22

# Priority bands per discovery source (lower is preferred)
STATIC_PRIORITY = 10
SUBNET_PRIORITY = 50
BROADCAST_PRIORITY = 100


@dataclass
class ServerCandidate:
    """A discovered, not-yet-committed coordination server endpoint."""
    host: str
    port: int = DEFAULT_SSH_PORT
    priority: int = STATIC_PRIORITY
    weight: int = 0
    source: str = "static"
    last_validated: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, int]:
        return (self.host.lower(), self.port)

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @classmethod
    def parse(cls, value: str, source: str = "static") -> "ServerCandidate":
        """
        Parse ``host[:port[:priority[:weight]]]``.

        Bracketed IPv6 hosts are accepted (``[::1]:2222``).
        """
        value = value.strip()
        if not value:
            raise ValueError("Empty server address")

        if value.startswith("["):
            host, _, rest = value[1:].partition("]")
            parts = rest.lstrip(":").split(":") if rest else []
        else:
            host, *parts = value.split(":")

        if not host:
            raise ValueError(f"Missing host in server address '{value}'")

        numbers = [int(p) for p in parts if p != ""]
        port = numbers[0] if len(numbers) > 0 else DEFAULT_SSH_PORT
        priority = numbers[1] if len(numbers) > 1 else STATIC_PRIORITY
        weight = numbers[2] if len(numbers) > 2 else 0

        if not 0 < port < 65536:
            raise ValueError(f"Invalid port {port} in server address '{value}'")

        return cls(host=host, port=port, priority=priority, weight=weight, source=source)


def merge_candidates(candidates: Iterable[ServerCandidate]) -> List[ServerCandidate]:
    """
    Deduplicate candidates by (host, port).

    On conflict the entry with the lowest priority value wins, but the
    endpoint keeps the position of its first sighting so discovery order
    remains the final tie-break.
    """
    merged: Dict[Tuple[str, int], ServerCandidate] = {}
    for candidate in candidates:
        existing = merged.get(candidate.key)
        if existing is None:
            merged[candidate.key] = replace(candidate)
        elif candidate.priority < existing.priority:
            merged[candidate.key] = replace(candidate)
    return list(merged.values())


def rank_candidates(candidates: Iterable[ServerCandidate]) -> List[ServerCandidate]:
    """Ascending priority, descending weight, then input order."""
    return sorted(candidates, key=lambda c: (c.priority, -c.weight))
