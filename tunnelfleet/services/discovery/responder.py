"""
Discovery Responder

Server-side answer to broadcast discovery: every well-formed request on a
discovery port gets the advertised tunnel-service port back.
"""

import asyncio
from typing import List, Optional, Sequence, Tuple

from tunnelfleet.core.config import settings
from tunnelfleet.core.logging import discovery_logger
from .protocol import build_discovery_response, parse_discovery_request


class DiscoveryResponderProtocol(asyncio.DatagramProtocol):
    def __init__(self, tunnel_port: int):
        self.tunnel_port = tunnel_port
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.replies_sent = 0

    def connection_made(self, transport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        request = parse_discovery_request(data)
        if request is None:
            return
        discovery_logger.debug(
            f"Discovery request {request.get('requestId')} from {addr[0]}:{addr[1]}"
        )
        if self.transport is not None:
            self.transport.sendto(build_discovery_response(self.tunnel_port), addr)
            self.replies_sent += 1

    def error_received(self, exc: Exception) -> None:
        discovery_logger.debug(f"Discovery responder socket error: {exc}")


class DiscoveryResponder:
    """Listens on the discovery ports for as long as the server runs."""

    def __init__(
        self,
        ports: Sequence[int] = tuple(settings.DISCOVERY_PORTS),
        tunnel_port: int = settings.TUNNEL_SERVICE_PORT,
        host: str = "0.0.0.0"
    ):
        self.ports = list(ports)
        self.tunnel_port = tunnel_port
        self.host = host
        self._transports: List[asyncio.DatagramTransport] = []

    async def start(self) -> int:
        """Bind every port that can be bound; returns how many succeeded."""
        loop = asyncio.get_running_loop()
        for port in self.ports:
            try:
                transport, _ = await loop.create_datagram_endpoint(
                    lambda: DiscoveryResponderProtocol(self.tunnel_port),
                    local_addr=(self.host, port),
                    allow_broadcast=True,
                )
            except OSError as e:
                discovery_logger.warning(f"Discovery responder cannot bind UDP {port}: {e}")
                continue
            self._transports.append(transport)

        if self._transports:
            discovery_logger.info(
                f"Discovery responder advertising tunnel port {self.tunnel_port} "
                f"on UDP {', '.join(str(p) for p in self.ports)}"
            )
        return len(self._transports)

    def stop(self) -> None:
        for transport in self._transports:
            transport.close()
        self._transports = []
        discovery_logger.info("Discovery responder stopped")
