"""
Control-Plane Reporter

Registers this agent with the control plane and pushes its tunnel set.
Reporting is best effort: failures are logged and never touch the tunnels.
"""

import asyncio
import platform
import socket
from typing import Any, Dict, List, Optional

import aiohttp

from tunnelfleet import __version__
from tunnelfleet.core.config import settings
from tunnelfleet.core.logging import tunnel_logger
from tunnelfleet.services.circuit_breaker import CircuitBreaker, CircuitBreakerException
from .enums import ClientStatus
from .schemas import TunnelSpec


class ControlPlaneReporter:
    """Client for the control plane's /register and /update-status endpoints."""

    def __init__(
        self,
        base_url: str,
        host_name: Optional[str] = None,
        client_id: Optional[str] = None,
        timeout: float = 10.0,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.host_name = host_name or settings.AGENT_HOSTNAME or socket.gethostname()
        self.client_id = client_id
        self.timeout = timeout
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.last_status: Optional[ClientStatus] = None

    def _client_info(self) -> Dict[str, Any]:
        info = {
            "hostName": self.host_name,
            "platform": platform.platform(),
            "agentVersion": __version__,
        }
        if self.client_id:
            info["clientId"] = self.client_id
        return info

    async def _post(self, session: aiohttp.ClientSession, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with session.post(f"{self.base_url}{path}", json=payload) as response:
            response.raise_for_status()
            return await response.json()

    async def _register(self, session: aiohttp.ClientSession) -> str:
        data = await self._post(session, "/register", self._client_info())
        if not data.get("success") or not data.get("clientId"):
            raise aiohttp.ClientError(f"Registration rejected: {data}")
        if data["clientId"] != self.client_id:
            tunnel_logger.info(f"Registered with control plane as {data['clientId']}")
        self.client_id = data["clientId"]
        return self.client_id

    async def _update(
        self,
        session: aiohttp.ClientSession,
        status: ClientStatus,
        tunnels: List[TunnelSpec]
    ) -> bool:
        payload = {
            "clientId": self.client_id,
            "status": status.value,
            "tunnelInfo": [
                {
                    "service": spec.service,
                    "localPort": spec.local_port,
                    "remotePort": spec.remote_port,
                }
                for spec in tunnels
            ],
        }
        data = await self._post(session, "/update-status", payload)
        return bool(data.get("success"))

    async def _send(self, status: ClientStatus, tunnels: List[TunnelSpec]) -> bool:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            if self.client_id is None:
                await self._register(session)
            if await self._update(session, status, tunnels):
                return True

            # Control plane lost our record (e.g. registry reset): register again
            tunnel_logger.warning(
                f"Control plane does not know client {self.client_id}, re-registering"
            )
            await self._register(session)
            return await self._update(session, status, tunnels)

    async def report(self, status: ClientStatus, tunnels: List[TunnelSpec]) -> bool:
        """Send status and active tunnels. Returns True when the server accepted it."""
        try:
            accepted = await self.circuit_breaker.call(self._send, status, tunnels)
        except CircuitBreakerException as e:
            tunnel_logger.debug(f"Skipping status report: {e}")
            return False
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            tunnel_logger.warning(f"Status report to {self.base_url} failed: {e}")
            return False

        if accepted:
            if status != self.last_status:
                tunnel_logger.info(
                    f"Reported status {status.value} with {len(tunnels)} tunnel(s)"
                )
            self.last_status = status
        return accepted
