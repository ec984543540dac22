"""Shared fixtures for tunnelfleet tests."""

import asyncio
from typing import List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from tunnelfleet.core.logging import api_logger, discovery_logger, logger, registry_logger, tunnel_logger
from tunnelfleet.main import create_app
from tunnelfleet.services.discovery.schemas import ServerCandidate
from tunnelfleet.services.registry import ClientRegistry, JsonRegistryStore
from tunnelfleet.services.tunnels.schemas import TunnelSpec
from tunnelfleet.services.tunnels.transport import TransportProcess, TunnelTransport


# ============================================================================
# Tunnel transport fake
# ============================================================================

class FakeTransport(TunnelTransport):
    """
    In-memory transport. Processes live until stopped or crashed; with
    ``exit_code`` set every process is dead on arrival.
    """

    def __init__(self, exit_code: Optional[int] = None, start_delay: float = 0.0):
        self.exit_code = exit_code
        self.start_delay = start_delay
        self.started: List[Tuple[TunnelSpec, ServerCandidate]] = []
        self.processes: List[TransportProcess] = []
        self.stopped: List[TransportProcess] = []
        self._next_pid = 4000

    async def start(self, spec, server):
        self._next_pid += 1
        process = TransportProcess(self._next_pid, ["ssh", "-N", "-R", f"{spec.remote_port}:localhost:{spec.local_port}", server.host])
        self.started.append((spec, server))
        self.processes.append(process)
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.exit_code is not None:
            process.record("Permission denied (publickey).")
            process.returncode = self.exit_code
        return process

    async def stop(self, process, timeout):
        if process.returncode is None:
            process.returncode = -15
            self.stopped.append(process)
        return process.returncode

    def is_alive(self, process):
        return process.returncode is None

    def crash(self, process, code: int = 255):
        process.record("Connection to server closed by remote host.")
        process.returncode = code

    @property
    def live_processes(self) -> List[TransportProcess]:
        return [p for p in self.processes if p.returncode is None]


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def failing_transport():
    return FakeTransport(exit_code=255)


@pytest.fixture
def ssh_spec():
    return TunnelSpec(service="ssh", local_port=22, remote_port=10022)


@pytest.fixture
def server():
    return ServerCandidate(host="relay.example.net", port=22, priority=10, source="static")


# ============================================================================
# Registry and API fixtures
# ============================================================================

@pytest.fixture
def registry_path(tmp_path):
    return tmp_path / "registry" / "clients.json"


@pytest.fixture
def registry(registry_path):
    return ClientRegistry(JsonRegistryStore(str(registry_path)))


@pytest.fixture
def api_client(registry):
    app = create_app(registry=registry, discovery_responder=False)
    with TestClient(app, raise_server_exceptions=False) as client:
        yield client


# ============================================================================
# Logging
# ============================================================================

@pytest.fixture
def component_logs(caplog):
    """caplog wired into the component loggers, which do not propagate."""
    loggers = [logger, tunnel_logger, discovery_logger, registry_logger, api_logger]
    for log in loggers:
        log.addHandler(caplog.handler)
    yield caplog
    for log in loggers:
        log.removeHandler(caplog.handler)
