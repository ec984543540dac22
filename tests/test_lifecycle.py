"""Tests for the tunnel lifecycle manager."""

import asyncio
import logging

import pytest

from tunnelfleet.services.discovery.schemas import ServerCandidate
from tunnelfleet.services.tunnels import (
    ClientStatus,
    RestartPolicy,
    SessionManager,
    SessionState,
    TunnelLifecycleManager,
    TunnelSpec,
)

from .conftest import FakeTransport


class FakeDiscovery:
    def __init__(self, servers=None, valid=True):
        self.servers = servers or []
        self.valid = valid
        self.last_ranked = []
        self.discover_calls = 0
        self.revalidate_calls = 0

    async def discover(self):
        self.discover_calls += 1
        self.last_ranked = list(self.servers)
        return self.last_ranked

    async def revalidate(self, candidate):
        self.revalidate_calls += 1
        return self.valid


class FakeReporter:
    def __init__(self):
        self.reports = []

    async def report(self, status, tunnels):
        self.reports.append((status, list(tunnels)))
        return True


def build(specs, transport=None, discovery=None, reporter=None, delay=60.0, grace_period=0, **kwargs):
    transport = transport or FakeTransport()
    sessions = SessionManager(transport, grace_period=grace_period, stop_timeout=1)
    manager = TunnelLifecycleManager(
        specs,
        sessions,
        discovery=discovery,
        reporter=reporter,
        health_check_interval=3600,
        report_interval=3600,
        restart_policy=RestartPolicy(base_delay=delay, max_delay=delay, jitter=False),
        **kwargs,
    )
    return manager, transport


@pytest.fixture
def relay():
    return ServerCandidate("relay.example.net", 22, priority=1)


class TestRestartPolicy:
    def test_exponential_growth_with_cap(self):
        policy = RestartPolicy(base_delay=5, max_delay=30, jitter=False)
        assert [policy.delay(n) for n in range(0, 6)] == [5, 5, 10, 20, 30, 30]

    def test_jitter_stays_within_half_to_full_delay(self):
        policy = RestartPolicy(base_delay=8, max_delay=300, jitter=True)
        for _ in range(50):
            assert 8 <= policy.delay(2) <= 16


class TestStartAndStop:
    @pytest.mark.asyncio
    async def test_start_connects_every_spec(self, ssh_spec, relay):
        web = TunnelSpec("web", 8080, 18080)
        manager, transport = build([ssh_spec, web], discovery=FakeDiscovery([relay]))

        await manager.start()
        try:
            assert len(transport.live_processes) == 2
            assert manager.agent_status() == ClientStatus.CONNECTED
            assert set(manager.active_tunnels()) == {ssh_spec, web}
            assert {s.state for s in manager.snapshot()} == {SessionState.ACTIVE}
        finally:
            await manager.stop()

        assert transport.live_processes == []

    @pytest.mark.asyncio
    async def test_pinned_server_skips_discovery(self):
        discovery = FakeDiscovery()
        spec = TunnelSpec("ssh", 22, 10022, server="pinned.example.net:2222")
        manager, transport = build([spec], discovery=discovery)

        await manager.start()
        try:
            assert discovery.discover_calls == 0
            server = transport.started[0][1]
            assert (server.host, server.port) == ("pinned.example.net", 2222)
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_stop_reports_disconnected(self, ssh_spec, relay):
        reporter = FakeReporter()
        manager, _ = build([ssh_spec], discovery=FakeDiscovery([relay]), reporter=reporter)

        await manager.start()
        await manager.stop()

        assert reporter.reports[-1] == (ClientStatus.DISCONNECTED, [])

    @pytest.mark.asyncio
    async def test_no_servers_found(self, ssh_spec, component_logs):
        manager, transport = build([ssh_spec], discovery=FakeDiscovery([]))

        with component_logs.at_level(logging.ERROR, logger="tunnel"):
            await manager.start()
        try:
            assert transport.started == []
            assert "No parent servers found" in component_logs.text
            assert manager.agent_status() == ClientStatus.ERROR

            await manager.check_health()
            assert manager.restart_attempts == 1
            assert manager.agent_status() == ClientStatus.RECONNECTING
        finally:
            await manager.stop()


class TestHealthChecks:
    @pytest.mark.asyncio
    async def test_crash_schedules_exactly_one_restart(self, ssh_spec, relay):
        manager, transport = build([ssh_spec], discovery=FakeDiscovery([relay]), delay=60)
        await manager.start()
        try:
            transport.crash(transport.processes[0])

            states = await manager.check_health()
            assert states[ssh_spec.key] == SessionState.TERMINATED
            assert manager.restart_attempts == 1

            # A second pass while the restart is still pending adds nothing
            await manager.check_health()
            assert manager.restart_attempts == 1
            assert len(transport.processes) == 1
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_restart_brings_tunnel_back(self, ssh_spec, relay):
        manager, transport = build([ssh_spec], discovery=FakeDiscovery([relay]), delay=0)
        await manager.start()
        try:
            transport.crash(transport.processes[0])
            await manager.check_health()
            await manager._restarts[ssh_spec.key]

            assert len(transport.processes) == 2
            assert len(transport.live_processes) == 1
            assert manager.agent_status() == ClientStatus.CONNECTED
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_startup_failure_is_retried(self, ssh_spec, relay):
        manager, transport = build(
            [ssh_spec], transport=FakeTransport(exit_code=255), discovery=FakeDiscovery([relay])
        )
        await manager.start()
        try:
            assert manager.agent_status() == ClientStatus.ERROR
            await manager.check_health()
            assert manager.restart_attempts == 1
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_requested_stop_is_not_restarted(self, ssh_spec, relay):
        manager, transport = build([ssh_spec], discovery=FakeDiscovery([relay]))
        await manager.start()
        try:
            session = manager.sessions.sessions()[0]
            await manager.sessions.stop(session)

            await manager.check_health()
            assert manager.restart_attempts == 0
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_auto_restart_disabled(self, ssh_spec, relay):
        manager, transport = build(
            [ssh_spec], discovery=FakeDiscovery([relay]), auto_restart=False
        )
        await manager.start()
        try:
            transport.crash(transport.processes[0])
            await manager.check_health()
            assert manager.restart_attempts == 0
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_active_pass_resets_failures(self, ssh_spec, relay):
        manager, _ = build([ssh_spec], discovery=FakeDiscovery([relay]))
        manager._failures[ssh_spec.key] = 4
        await manager.start()
        try:
            await manager.check_health()
            assert manager._failures[ssh_spec.key] == 0
        finally:
            await manager.stop()


class TestServerSelection:
    @pytest.mark.asyncio
    async def test_reuses_last_ranked_while_valid(self, ssh_spec, relay):
        discovery = FakeDiscovery([relay])
        discovery.last_ranked = [relay]
        manager, _ = build([ssh_spec], discovery=discovery)

        assert await manager.resolve_server(ssh_spec) is relay
        assert discovery.discover_calls == 0

    @pytest.mark.asyncio
    async def test_rediscovers_when_top_server_fails_validation(self, ssh_spec, relay):
        backup = ServerCandidate("backup.example.net", 22, priority=5)
        discovery = FakeDiscovery([backup], valid=False)
        discovery.last_ranked = [relay]
        manager, _ = build([ssh_spec], discovery=discovery)

        assert await manager.resolve_server(ssh_spec) is backup
        assert discovery.discover_calls == 1

    @pytest.mark.asyncio
    async def test_without_discovery_nothing_resolves(self, ssh_spec):
        manager, _ = build([ssh_spec])
        assert await manager.resolve_server(ssh_spec) is None


class TestApplySpecs:
    @pytest.mark.asyncio
    async def test_replaces_tunnel_set(self, ssh_spec, relay):
        manager, transport = build([ssh_spec], discovery=FakeDiscovery([relay]))
        await manager.start()
        try:
            web = TunnelSpec("web", 8080, 18080)
            await manager.apply_specs([web])

            assert manager.specs == [web]
            assert len(transport.live_processes) == 1
            assert transport.live_processes[0].command[3] == "18080:localhost:8080"
            assert manager.active_tunnels() == [web]
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_unchanged_spec_keeps_its_process(self, ssh_spec, relay):
        manager, transport = build([ssh_spec], discovery=FakeDiscovery([relay]))
        await manager.start()
        try:
            await manager.apply_specs([ssh_spec])
            assert len(transport.processes) == 1
            assert len(transport.live_processes) == 1
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_retiring_during_restart_grace_window_stops_the_process(self, ssh_spec, relay):
        manager, transport = build(
            [ssh_spec], discovery=FakeDiscovery([relay]), delay=0, grace_period=0.5
        )
        await manager.start()
        try:
            transport.crash(transport.processes[0])
            await manager.check_health()
            await asyncio.sleep(0.1)
            # The restart has launched its process and is inside the grace window
            assert len(transport.processes) == 2

            await manager.apply_specs([])
            assert transport.live_processes == []
            assert manager.sessions.sessions() == []

            await manager.apply_specs([ssh_spec])
            assert manager.agent_status() == ClientStatus.CONNECTED
            assert [s.state for s in manager.snapshot()] == [SessionState.ACTIVE]
            assert len(transport.live_processes) == 1
        finally:
            await manager.stop()
