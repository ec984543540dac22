"""
Discovery Engine

Runs every configured strategy concurrently under one deadline, then merges,
validates and ranks what they found.
"""

import asyncio
import time
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from tunnelfleet.core.config import settings
from tunnelfleet.core.logging import discovery_logger, log_discovery_result
from tunnelfleet.services.probe import ConnectivityProbe
from .schemas import ServerCandidate, merge_candidates, rank_candidates
from .strategies import (
    BroadcastStrategy,
    DiscoveryStrategy,
    DnsSrvStrategy,
    StaticListStrategy,
    SubnetSweepStrategy,
)


class DiscoveryEngine:
    """
    Multi-strategy discovery of coordination servers.

    A failing or slow strategy only costs its own candidates: errors are
    logged here and never reach the caller. An empty list means nothing
    reachable was found.
    """

    def __init__(
        self,
        strategies: Sequence[DiscoveryStrategy],
        probe: Optional[ConnectivityProbe] = None,
        overall_timeout: float = settings.DISCOVERY_TIMEOUT,
        validate: bool = True
    ):
        self.strategies = list(strategies)
        self.probe = probe or ConnectivityProbe()
        self.overall_timeout = overall_timeout
        self.validate = validate
        self.last_ranked: List[ServerCandidate] = []
        self.last_run: Optional[datetime] = None

    async def discover(self) -> List[ServerCandidate]:
        """Run one full discovery pass and return ranked, validated candidates."""
        sinks: Dict[str, List[ServerCandidate]] = {
            strategy.name: [] for strategy in self.strategies
        }
        tasks = [
            asyncio.create_task(self._run_strategy(strategy, sinks[strategy.name]))
            for strategy in self.strategies
        ]

        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=self.overall_timeout)
            if pending:
                discovery_logger.warning(
                    f"Discovery deadline of {self.overall_timeout}s reached, "
                    f"abandoning {len(pending)} strategy run(s)"
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        collected = [
            candidate
            for strategy in self.strategies
            for candidate in sinks[strategy.name]
        ]
        merged = merge_candidates(collected)

        if self.validate:
            merged = await self._validate(merged)

        ranked = rank_candidates(merged)
        self.last_ranked = ranked
        self.last_run = datetime.utcnow()

        if ranked:
            discovery_logger.info(
                f"Discovered {len(ranked)} server(s): "
                + ", ".join(f"{c.address} (p{c.priority}, {c.source})" for c in ranked)
            )
        else:
            discovery_logger.warning("Discovery found no reachable tunnel servers")
        return ranked

    async def _run_strategy(
        self, strategy: DiscoveryStrategy, sink: List[ServerCandidate]
    ) -> None:
        started = time.monotonic()
        try:
            await asyncio.wait_for(strategy.discover(sink), timeout=strategy.timeout)
        except asyncio.TimeoutError:
            discovery_logger.info(
                f"Discovery strategy '{strategy.name}' timed out after "
                f"{strategy.timeout}s with {len(sink)} candidate(s)"
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            discovery_logger.warning(f"Discovery strategy '{strategy.name}' failed: {e}")
        finally:
            log_discovery_result(strategy.name, len(sink), time.monotonic() - started)

    async def _validate(self, candidates: List[ServerCandidate]) -> List[ServerCandidate]:
        results = await asyncio.gather(
            *(self.probe.validate_tunnel_service(c.host, c.port) for c in candidates)
        )
        now = datetime.utcnow()
        valid = []
        for candidate, ok in zip(candidates, results):
            if ok:
                candidate.last_validated = now
                valid.append(candidate)
            else:
                discovery_logger.debug(
                    f"Dropping {candidate.address} from {candidate.source}: "
                    "tunnel service validation failed"
                )
        return valid

    async def revalidate(self, candidate: ServerCandidate) -> bool:
        """Re-run the banner check for one previously discovered candidate."""
        ok = await self.probe.validate_tunnel_service(candidate.host, candidate.port)
        if ok:
            candidate.last_validated = datetime.utcnow()
        return ok


def build_discovery_engine(
    probe: Optional[ConnectivityProbe] = None,
    static_servers: Optional[Sequence[str]] = None
) -> DiscoveryEngine:
    """Assemble the engine from settings."""
    probe = probe or ConnectivityProbe()
    strategies: List[DiscoveryStrategy] = []

    if settings.ENABLE_STATIC_DISCOVERY:
        servers = settings.STATIC_SERVERS if static_servers is None else static_servers
        strategies.append(StaticListStrategy(servers))
    if settings.ENABLE_DNS_DISCOVERY:
        strategies.append(DnsSrvStrategy(domain=settings.DISCOVERY_DOMAIN))
    if settings.ENABLE_BROADCAST_DISCOVERY:
        strategies.append(BroadcastStrategy())
    if settings.ENABLE_SUBNET_DISCOVERY:
        strategies.append(SubnetSweepStrategy(probe, cidr=settings.SUBNET_CIDR))

    return DiscoveryEngine(strategies, probe=probe)
