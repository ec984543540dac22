"""
Discovery Strategies

Each strategy appends the candidates it finds to a caller-supplied list as
soon as they are found, so whatever was collected before a timeout or
cancellation is still usable by the engine.
"""

import asyncio
import ipaddress
import socket
import time
from itertools import islice
from typing import Iterable, List, Optional, Sequence, Set, Tuple

import dns.asyncresolver
import dns.exception

from tunnelfleet.core.config import settings
from tunnelfleet.core.logging import discovery_logger
from tunnelfleet.services.probe import ConnectivityProbe
from .protocol import build_discovery_request, parse_discovery_response
from .schemas import (
    BROADCAST_PRIORITY,
    SUBNET_PRIORITY,
    ServerCandidate,
)


class DiscoveryStrategy:
    """Base class for a single source of server candidates."""

    name = "base"

    def __init__(self, timeout: float = settings.STRATEGY_TIMEOUT):
        self.timeout = timeout

    async def discover(self, sink: List[ServerCandidate]) -> None:
        raise NotImplementedError


class StaticListStrategy(DiscoveryStrategy):
    """Servers listed in configuration, priority as configured."""

    name = "static"

    def __init__(
        self,
        servers: Iterable[str] = (),
        timeout: float = settings.STRATEGY_TIMEOUT
    ):
        super().__init__(timeout)
        self.servers = list(servers)

    async def discover(self, sink: List[ServerCandidate]) -> None:
        for entry in self.servers:
            try:
                sink.append(ServerCandidate.parse(entry, source=self.name))
            except ValueError as e:
                discovery_logger.warning(f"Ignoring static server '{entry}': {e}")


def local_domain() -> Optional[str]:
    """Domain part of this host's FQDN, if it has one."""
    fqdn = socket.getfqdn()
    if "." not in fqdn:
        return None
    domain = fqdn.split(".", 1)[1]
    # Reverse-lookup artefacts are not a search domain
    if domain in ("localdomain", "local", "in-addr.arpa", "ip6.arpa"):
        return None
    return domain


class DnsSrvStrategy(DiscoveryStrategy):
    """SRV lookup of a well-known service name under the local domain."""

    name = "dns"

    def __init__(
        self,
        domain: Optional[str] = None,
        service_name: str = settings.DISCOVERY_SRV_NAME,
        timeout: float = settings.STRATEGY_TIMEOUT
    ):
        super().__init__(timeout)
        self.domain = domain
        self.service_name = service_name

    def record_name(self) -> Optional[str]:
        domain = self.domain or local_domain()
        if not domain:
            return None
        return f"{self.service_name}.{domain.strip('.')}"

    async def discover(self, sink: List[ServerCandidate]) -> None:
        name = self.record_name()
        if not name:
            discovery_logger.debug("No local domain known, skipping SRV lookup")
            return

        try:
            answer = await dns.asyncresolver.resolve(
                name, "SRV", lifetime=self.timeout
            )
        except dns.exception.DNSException as e:
            discovery_logger.debug(f"SRV lookup for {name} failed: {e}")
            return

        for record in answer:
            sink.append(
                ServerCandidate(
                    host=record.target.to_text(omit_final_dot=True),
                    port=record.port,
                    priority=record.priority,
                    weight=record.weight,
                    source=self.name,
                )
            )


class _ResponseCollector(asyncio.DatagramProtocol):
    """Collects well-formed discovery responses; drops everything else."""

    def __init__(self, on_response):
        self.on_response = on_response

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        tunnel_port = parse_discovery_response(data)
        if tunnel_port is None:
            discovery_logger.debug(f"Ignoring malformed discovery reply from {addr[0]}")
            return
        self.on_response(addr[0], tunnel_port)

    def error_received(self, exc: Exception) -> None:
        discovery_logger.debug(f"Broadcast socket error: {exc}")


class BroadcastStrategy(DiscoveryStrategy):
    """JSON datagram broadcast to well-known discovery ports."""

    name = "broadcast"

    def __init__(
        self,
        ports: Sequence[int] = tuple(settings.DISCOVERY_PORTS),
        broadcast_address: str = settings.BROADCAST_ADDRESS,
        listen_time: float = 3.0,
        timeout: float = settings.STRATEGY_TIMEOUT
    ):
        super().__init__(timeout)
        self.ports = list(ports)
        self.broadcast_address = broadcast_address
        self.listen_time = min(listen_time, timeout)

    async def discover(self, sink: List[ServerCandidate]) -> None:
        seen: Set[Tuple[str, int]] = set()

        def on_response(host: str, tunnel_port: int) -> None:
            if (host, tunnel_port) in seen:
                return
            seen.add((host, tunnel_port))
            sink.append(
                ServerCandidate(
                    host=host,
                    port=tunnel_port,
                    priority=BROADCAST_PRIORITY,
                    source=self.name,
                )
            )

        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _ResponseCollector(on_response),
            local_addr=("0.0.0.0", 0),
            allow_broadcast=True,
        )
        try:
            payload = build_discovery_request()
            for port in self.ports:
                transport.sendto(payload, (self.broadcast_address, port))
            await asyncio.sleep(self.listen_time)
        finally:
            transport.close()


def local_subnet(prefix: int = 24) -> Optional[str]:
    """CIDR of the interface holding the default route."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No packet is sent; connect() on UDP only selects a route
        sock.connect(("192.0.2.1", 9))
        address = sock.getsockname()[0]
    except OSError:
        return None
    finally:
        sock.close()
    return str(ipaddress.ip_network(f"{address}/{prefix}", strict=False))


class SubnetSweepStrategy(DiscoveryStrategy):
    """Bounded TCP sweep of a CIDR range for open tunnel ports."""

    name = "subnet"

    def __init__(
        self,
        probe: ConnectivityProbe,
        cidr: Optional[str] = None,
        ports: Sequence[int] = tuple(settings.SUBNET_PORTS),
        max_hosts: int = settings.SUBNET_MAX_HOSTS,
        concurrency: int = settings.SUBNET_CONCURRENCY,
        timeout: float = settings.STRATEGY_TIMEOUT
    ):
        super().__init__(timeout)
        self.probe = probe
        self.cidr = cidr
        self.ports = list(ports)
        self.max_hosts = max(0, max_hosts)
        self.concurrency = max(1, concurrency)
        self.hosts_probed = 0

    def hosts(self) -> List[str]:
        cidr = self.cidr or local_subnet()
        if not cidr:
            return []
        try:
            network = ipaddress.ip_network(cidr, strict=False)
        except ValueError as e:
            discovery_logger.warning(f"Invalid sweep range '{cidr}': {e}")
            return []
        return [str(host) for host in islice(network.hosts(), self.max_hosts)]

    async def discover(self, sink: List[ServerCandidate]) -> None:
        hosts = self.hosts()
        if not hosts:
            return

        semaphore = asyncio.Semaphore(self.concurrency)
        started = time.monotonic()

        async def sweep_host(host: str) -> None:
            async with semaphore:
                self.hosts_probed += 1
                for port in self.ports:
                    if await self.probe.probe(host, port):
                        sink.append(
                            ServerCandidate(
                                host=host,
                                port=port,
                                priority=SUBNET_PRIORITY,
                                source=self.name,
                            )
                        )

        await asyncio.gather(*(sweep_host(host) for host in hosts))
        discovery_logger.debug(
            f"Swept {len(hosts)} hosts in {time.monotonic() - started:.2f}s"
        )
