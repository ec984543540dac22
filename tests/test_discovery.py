"""Tests for server discovery: candidates, strategies and the engine."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import dns.exception
import pytest

from tunnelfleet.services.discovery import (
    DiscoveryEngine,
    ServerCandidate,
    merge_candidates,
    rank_candidates,
)
from tunnelfleet.services.discovery.protocol import (
    build_discovery_request,
    build_discovery_response,
    parse_discovery_request,
    parse_discovery_response,
)
from tunnelfleet.services.discovery.schemas import BROADCAST_PRIORITY, SUBNET_PRIORITY
from tunnelfleet.services.discovery.strategies import (
    DiscoveryStrategy,
    DnsSrvStrategy,
    StaticListStrategy,
    SubnetSweepStrategy,
    _ResponseCollector,
)


class FixedStrategy(DiscoveryStrategy):
    """Yields a fixed list, optionally stalling or failing afterwards."""

    def __init__(self, name, candidates, stall=0.0, error=None, timeout=5.0):
        super().__init__(timeout)
        self.name = name
        self.candidates = candidates
        self.stall = stall
        self.error = error

    async def discover(self, sink):
        for candidate in self.candidates:
            sink.append(candidate)
        if self.stall:
            await asyncio.sleep(self.stall)
        if self.error:
            raise self.error


def accept_all_probe():
    probe = AsyncMock()
    probe.validate_tunnel_service.return_value = True
    probe.probe.return_value = True
    return probe


class TestServerCandidate:
    def test_parse_host_only(self):
        candidate = ServerCandidate.parse("relay.example.net")
        assert (candidate.host, candidate.port, candidate.priority, candidate.weight) == (
            "relay.example.net", 22, 10, 0
        )

    def test_parse_full(self):
        candidate = ServerCandidate.parse("10.0.0.5:2222:3:40", source="cli")
        assert candidate.port == 2222
        assert candidate.priority == 3
        assert candidate.weight == 40
        assert candidate.source == "cli"

    def test_parse_ipv6(self):
        candidate = ServerCandidate.parse("[fd00::1]:2222")
        assert candidate.host == "fd00::1"
        assert candidate.port == 2222

    @pytest.mark.parametrize("value", ["", ":22", "host:notaport", "host:70000"])
    def test_parse_rejects_malformed(self, value):
        with pytest.raises(ValueError):
            ServerCandidate.parse(value)

    def test_key_ignores_host_case(self):
        assert ServerCandidate("Relay.Example.NET", 22).key == ServerCandidate("relay.example.net", 22).key


class TestMergeAndRank:
    def test_duplicate_keeps_lowest_priority(self):
        merged = merge_candidates([
            ServerCandidate("relay", 22, priority=5, source="dns"),
            ServerCandidate("relay", 22, priority=1, source="static"),
        ])
        assert len(merged) == 1
        assert merged[0].priority == 1
        assert merged[0].source == "static"

    def test_different_ports_are_distinct(self):
        merged = merge_candidates([ServerCandidate("relay", 22), ServerCandidate("relay", 2222)])
        assert len(merged) == 2

    def test_rank_by_priority_then_weight_then_order(self):
        a = ServerCandidate("a", priority=10, weight=0)
        b = ServerCandidate("b", priority=5, weight=0)
        c = ServerCandidate("c", priority=10, weight=50)
        d = ServerCandidate("d", priority=10, weight=0)
        assert [x.host for x in rank_candidates([a, b, c, d])] == ["b", "c", "a", "d"]


class TestProtocol:
    def test_request_round_trip(self):
        message = parse_discovery_request(build_discovery_request("req-1"))
        assert message["requestId"] == "req-1"

    def test_response_round_trip(self):
        assert parse_discovery_response(build_discovery_response(2222)) == 2222

    @pytest.mark.parametrize("payload", [
        b"not json",
        b"[1, 2]",
        json.dumps({"tunnelPort": 22}).encode(),
        json.dumps({"type": "other", "tunnelPort": 22}).encode(),
        json.dumps({"type": "tunnel-server", "tunnelPort": "22"}).encode(),
        json.dumps({"type": "tunnel-server", "tunnelPort": True}).encode(),
        json.dumps({"type": "tunnel-server", "tunnelPort": 0}).encode(),
        json.dumps({"type": "tunnel-server", "tunnelPort": 65536}).encode(),
        b"\xff\xfe",
        json.dumps({"type": "tunnel-server", "tunnelPort": 22, "pad": "x" * 4096}).encode(),
    ])
    def test_malformed_responses_are_ignored(self, payload):
        assert parse_discovery_response(payload) is None

    def test_request_is_not_a_response(self):
        assert parse_discovery_response(build_discovery_request()) is None
        assert parse_discovery_request(build_discovery_response(22)) is None


class TestStaticListStrategy:
    @pytest.mark.asyncio
    async def test_invalid_entries_are_skipped(self):
        sink = []
        await StaticListStrategy(["relay-a:2222:1", "bad:port", "relay-b"]).discover(sink)
        assert [c.host for c in sink] == ["relay-a", "relay-b"]
        assert sink[0].priority == 1


class TestDnsSrvStrategy:
    def test_record_name(self):
        strategy = DnsSrvStrategy(domain="corp.example.com.", service_name="_tunnel._tcp")
        assert strategy.record_name() == "_tunnel._tcp.corp.example.com"

    @pytest.mark.asyncio
    async def test_srv_records_become_candidates(self):
        records = [
            SimpleNamespace(
                target=SimpleNamespace(to_text=lambda omit_final_dot=False: "relay1.corp.example.com"),
                port=2222, priority=1, weight=10,
            ),
            SimpleNamespace(
                target=SimpleNamespace(to_text=lambda omit_final_dot=False: "relay2.corp.example.com"),
                port=22, priority=2, weight=0,
            ),
        ]
        with patch("dns.asyncresolver.resolve", new=AsyncMock(return_value=records)) as resolve:
            sink = []
            await DnsSrvStrategy(domain="corp.example.com").discover(sink)

        resolve.assert_awaited_once()
        assert resolve.await_args.args[:2] == ("_tunnel._tcp.corp.example.com", "SRV")
        assert [(c.host, c.port, c.priority, c.weight, c.source) for c in sink] == [
            ("relay1.corp.example.com", 2222, 1, 10, "dns"),
            ("relay2.corp.example.com", 22, 2, 0, "dns"),
        ]

    @pytest.mark.asyncio
    async def test_lookup_failure_yields_nothing(self):
        error = dns.exception.Timeout()
        with patch("dns.asyncresolver.resolve", new=AsyncMock(side_effect=error)):
            sink = []
            await DnsSrvStrategy(domain="corp.example.com").discover(sink)
        assert sink == []


class TestBroadcastCollector:
    def test_valid_reply_is_reported(self):
        replies = []
        collector = _ResponseCollector(lambda host, port: replies.append((host, port)))
        collector.datagram_received(build_discovery_response(2222), ("192.168.1.20", 47474))
        assert replies == [("192.168.1.20", 2222)]

    def test_malformed_reply_is_dropped(self):
        replies = []
        collector = _ResponseCollector(lambda host, port: replies.append((host, port)))
        collector.datagram_received(json.dumps({"tunnelPort": 22}).encode(), ("192.168.1.20", 47474))
        collector.datagram_received(b"garbage", ("192.168.1.21", 47474))
        assert replies == []


class TestSubnetSweepStrategy:
    def test_hosts_are_capped(self):
        strategy = SubnetSweepStrategy(accept_all_probe(), cidr="10.1.2.0/24", max_hosts=10)
        hosts = strategy.hosts()
        assert len(hosts) == 10
        assert hosts[0] == "10.1.2.1"

    def test_invalid_range_yields_no_hosts(self):
        assert SubnetSweepStrategy(accept_all_probe(), cidr="not-a-cidr").hosts() == []

    @pytest.mark.asyncio
    async def test_sweep_probes_at_most_max_hosts(self):
        probe = AsyncMock()
        probe.probe.side_effect = lambda host, port: host == "10.1.2.3" and port == 22
        strategy = SubnetSweepStrategy(
            probe, cidr="10.1.2.0/24", ports=[22, 2222], max_hosts=10, concurrency=4
        )

        sink = []
        await strategy.discover(sink)

        assert strategy.hosts_probed == 10
        probed_hosts = {call.args[0] for call in probe.probe.await_args_list}
        assert len(probed_hosts) == 10
        assert [(c.host, c.port, c.priority) for c in sink] == [("10.1.2.3", 22, SUBNET_PRIORITY)]


class TestDiscoveryEngine:
    @pytest.mark.asyncio
    async def test_merges_validates_and_ranks(self):
        probe = AsyncMock()
        probe.validate_tunnel_service.side_effect = lambda host, port: host != "dead"
        engine = DiscoveryEngine(
            [
                FixedStrategy("dns", [ServerCandidate("relay", 22, priority=5, source="dns")]),
                FixedStrategy("static", [
                    ServerCandidate("relay", 22, priority=1),
                    ServerCandidate("dead", 22, priority=0),
                ]),
                FixedStrategy("broadcast", [
                    ServerCandidate("lan", 2222, priority=BROADCAST_PRIORITY, source="broadcast"),
                ]),
            ],
            probe=probe,
            overall_timeout=2,
        )

        ranked = await engine.discover()

        assert [(c.host, c.priority) for c in ranked] == [("relay", 1), ("lan", BROADCAST_PRIORITY)]
        assert all(c.last_validated is not None for c in ranked)
        assert engine.last_ranked == ranked
        assert engine.last_run is not None

    @pytest.mark.asyncio
    async def test_failing_strategy_contributes_nothing(self):
        engine = DiscoveryEngine(
            [
                FixedStrategy("dns", [], error=RuntimeError("resolver exploded")),
                FixedStrategy("static", [ServerCandidate("relay", 22)]),
            ],
            probe=accept_all_probe(),
            overall_timeout=2,
        )
        ranked = await engine.discover()
        assert [c.host for c in ranked] == ["relay"]

    @pytest.mark.asyncio
    async def test_strategy_timeout_keeps_partial_results(self):
        slow = FixedStrategy(
            "subnet", [ServerCandidate("10.0.0.7", 22, priority=SUBNET_PRIORITY)], stall=10, timeout=0.1
        )
        engine = DiscoveryEngine([slow], probe=accept_all_probe(), overall_timeout=5)
        ranked = await engine.discover()
        assert [c.host for c in ranked] == ["10.0.0.7"]

    @pytest.mark.asyncio
    async def test_overall_deadline_harvests_partial_results(self):
        slow = FixedStrategy("broadcast", [ServerCandidate("lan", 22)], stall=10, timeout=10)
        engine = DiscoveryEngine([slow], probe=accept_all_probe(), overall_timeout=0.1)

        started = asyncio.get_running_loop().time()
        ranked = await engine.discover()

        assert asyncio.get_running_loop().time() - started < 2
        assert [c.host for c in ranked] == ["lan"]

    @pytest.mark.asyncio
    async def test_nothing_found_is_an_empty_list(self):
        probe = AsyncMock()
        probe.validate_tunnel_service.return_value = False
        engine = DiscoveryEngine(
            [FixedStrategy("static", [ServerCandidate("relay", 22)])], probe=probe, overall_timeout=1
        )
        assert await engine.discover() == []

    @pytest.mark.asyncio
    async def test_revalidate(self):
        probe = AsyncMock()
        probe.validate_tunnel_service.return_value = True
        engine = DiscoveryEngine([], probe=probe)
        candidate = ServerCandidate("relay", 22)
        assert await engine.revalidate(candidate)
        assert candidate.last_validated is not None
