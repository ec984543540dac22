"""
Client Registry

Authoritative server-side record of every agent and its reported tunnels.
All mutations go through ClientRegistry, are serialized by one lock and are
written to the JSON store before the call returns; readers only ever get
copies.
"""

import copy
import json
import os
import tempfile
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from tenacity import RetryError, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from tunnelfleet.core.logging import log_registry_operation, registry_logger
from tunnelfleet.services.tunnels.enums import ClientStatus

STORE_VERSION = 1


class RegistryStoreError(Exception):
    """The registry store cannot be read or written."""


@dataclass
class ClientTunnel:
    service: str
    local_port: int
    remote_port: int


@dataclass
class ClientRecord:
    client_id: str
    host_name: str
    registered_at: datetime
    last_seen: datetime
    status: ClientStatus = ClientStatus.REGISTERED
    active_tunnels: List[ClientTunnel] = field(default_factory=list)
    connection_count: int = 0
    first_connected: Optional[datetime] = None
    last_connected: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("registered_at", "last_seen", "first_connected", "last_connected"):
            value = getattr(self, key)
            data[key] = value.isoformat() if value else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientRecord":
        def when(value):
            return datetime.fromisoformat(value) if value else None

        return cls(
            client_id=data["client_id"],
            host_name=data.get("host_name", ""),
            registered_at=when(data["registered_at"]),
            last_seen=when(data["last_seen"]),
            status=ClientStatus(data.get("status", ClientStatus.REGISTERED.value)),
            active_tunnels=[ClientTunnel(**t) for t in data.get("active_tunnels", [])],
            connection_count=data.get("connection_count", 0),
            first_connected=when(data.get("first_connected")),
            last_connected=when(data.get("last_connected")),
            metadata=data.get("metadata") or {},
        )


@dataclass
class ClientSnapshot:
    """ClientRecord plus fields derived at read time."""
    record: ClientRecord
    minutes_since_last_seen: float
    uptime_seconds: float


# Configure retry decorator for store writes
store_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
    retry=retry_if_exception_type(OSError),
    before_sleep=lambda retry_state: registry_logger.warning(
        f"Registry write failed, retrying ({retry_state.attempt_number}/3): "
        f"{retry_state.outcome.exception()}"
    )
)


class JsonRegistryStore:
    """Whole-registry JSON document, replaced atomically on every save."""

    def __init__(self, path: str):
        self.path = Path(path).expanduser()

    def ensure_writable(self) -> None:
        """Fail fast at startup when the store location cannot be written."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise RegistryStoreError(f"Cannot create {self.path.parent}: {e}") from e
        if not os.access(self.path.parent, os.W_OK):
            raise RegistryStoreError(f"Registry directory {self.path.parent} is not writable")
        if self.path.exists() and not os.access(self.path, os.W_OK):
            raise RegistryStoreError(f"Registry file {self.path} is not writable")

    def load(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            with open(self.path) as f:
                document = json.load(f)
        except (OSError, ValueError) as e:
            raise RegistryStoreError(f"Cannot read registry {self.path}: {e}") from e
        if isinstance(document, list):
            return document
        return document.get("clients", [])

    @store_retry
    def save(self, records: List[Dict[str, Any]]) -> None:
        document = {
            "version": STORE_VERSION,
            "saved_at": datetime.utcnow().isoformat(),
            "clients": records,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".clients-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(document, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


class ClientRegistry:
    """
    Registry of agents keyed by client id.

    Mutations for any client are linearized by one re-entrant lock and
    persisted before they return. A failed write is retried; if it keeps
    failing the in-memory state stays authoritative and the error is logged.
    """

    def __init__(self, store: Optional[JsonRegistryStore] = None):
        self.store = store
        self._clients: Dict[str, ClientRecord] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Reload state from the store; call before serving traffic."""
        if self.store is None:
            return 0
        self.store.ensure_writable()
        loaded: Dict[str, ClientRecord] = {}
        for data in self.store.load():
            try:
                record = ClientRecord.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                registry_logger.warning(f"Skipping unreadable registry entry: {e}")
                continue
            loaded[record.client_id] = record
        with self._lock:
            self._clients = loaded
        registry_logger.info(f"Loaded {len(loaded)} client(s) from {self.store.path}")
        return len(loaded)

    def _persist(self) -> None:
        if self.store is None:
            return
        records = [record.to_dict() for record in self._clients.values()]
        try:
            self.store.save(records)
        except RetryError as e:
            registry_logger.error(
                f"Registry persist failed after retries: {e.last_attempt.exception()}"
            )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def register(self, client_info: Dict[str, Any]) -> str:
        """
        Register an agent and return its client id.

        A known ``clientId`` only refreshes last-seen and host details. An
        unknown one (e.g. after the server lost its store) is adopted so the
        agent keeps a stable identity.
        """
        now = datetime.utcnow()
        client_id = client_info.get("clientId") or client_info.get("client_id")
        host_name = client_info.get("hostName") or client_info.get("host_name") or ""
        metadata = {
            k: v for k, v in client_info.items()
            if k not in ("clientId", "client_id", "hostName", "host_name")
        }

        with self._lock:
            existing = self._clients.get(client_id) if client_id else None
            if existing is not None:
                existing.last_seen = now
                if host_name:
                    existing.host_name = host_name
                existing.metadata.update(metadata)
                log_registry_operation("re-register", {"client_id": client_id})
            else:
                client_id = client_id or str(uuid.uuid4())
                self._clients[client_id] = ClientRecord(
                    client_id=client_id,
                    host_name=host_name,
                    registered_at=now,
                    last_seen=now,
                    metadata=metadata,
                )
                log_registry_operation("register", {"client_id": client_id, "host": host_name})
            self._persist()
        return client_id

    def update_status(
        self,
        client_id: str,
        status: ClientStatus,
        tunnels: Iterable[Any]
    ) -> Optional[ClientRecord]:
        """
        Overwrite status and tunnel list of a known client.

        Returns a copy of the updated record, or None when the client is
        unknown; an unknown client is logged and never created.
        """
        tunnel_list = [_coerce_tunnel(t) for t in tunnels]
        now = datetime.utcnow()

        with self._lock:
            record = self._clients.get(client_id)
            if record is None:
                registry_logger.warning(f"Status update for unknown client {client_id} ignored")
                return None

            previous = record.status
            record.status = status
            record.active_tunnels = tunnel_list
            record.last_seen = now
            if status == ClientStatus.CONNECTED and previous != ClientStatus.CONNECTED:
                record.connection_count += 1
                record.last_connected = now
                if record.first_connected is None:
                    record.first_connected = now

            if previous != status:
                log_registry_operation(
                    "status",
                    {"client_id": client_id, "from": previous.value, "to": status.value,
                     "tunnels": len(tunnel_list)},
                )
            self._persist()
            return copy.deepcopy(record)

    def remove(self, client_id: str) -> bool:
        with self._lock:
            if client_id not in self._clients:
                registry_logger.warning(f"Remove requested for unknown client {client_id}")
                return False
            del self._clients[client_id]
            log_registry_operation("remove", {"client_id": client_id})
            self._persist()
            return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, client_id: str) -> Optional[ClientSnapshot]:
        with self._lock:
            record = self._clients.get(client_id)
            record = copy.deepcopy(record) if record else None
        if record is None:
            return None
        return _derive(record, datetime.utcnow())

    def list(self) -> List[ClientSnapshot]:
        """All clients, most recently seen first."""
        records = self.snapshot()
        now = datetime.utcnow()
        records.sort(key=lambda r: r.last_seen, reverse=True)
        return [_derive(record, now) for record in records]

    def snapshot(self) -> List[ClientRecord]:
        """One consistent copy of every record."""
        with self._lock:
            return copy.deepcopy(list(self._clients.values()))

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def __contains__(self, client_id: str) -> bool:
        with self._lock:
            return client_id in self._clients


def _coerce_tunnel(value: Any) -> ClientTunnel:
    if isinstance(value, ClientTunnel):
        return ClientTunnel(value.service, value.local_port, value.remote_port)
    if isinstance(value, dict):
        return ClientTunnel(
            service=value.get("service", ""),
            local_port=int(value.get("local_port", value.get("localPort", 0))),
            remote_port=int(value.get("remote_port", value.get("remotePort", 0))),
        )
    return ClientTunnel(
        service=value.service,
        local_port=int(value.local_port),
        remote_port=int(value.remote_port),
    )


def _derive(record: ClientRecord, now: datetime) -> ClientSnapshot:
    minutes = max((now - record.last_seen).total_seconds() / 60.0, 0.0)
    uptime = 0.0
    if record.status == ClientStatus.CONNECTED and record.last_connected:
        uptime = max((now - record.last_connected).total_seconds(), 0.0)
    return ClientSnapshot(
        record=record,
        minutes_since_last_seen=round(minutes, 2),
        uptime_seconds=round(uptime, 1),
    )
