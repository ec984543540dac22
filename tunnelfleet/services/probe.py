"""
Connectivity Probe

Plain TCP reachability checks and tunnel-service validation for candidate
coordination servers. Probe failures are ordinary negative answers: nothing
in this module raises to the caller.
"""

import asyncio
from typing import Optional

from tunnelfleet.core.config import settings
from tunnelfleet.core.logging import discovery_logger

# SSH servers open with an identification string such as "SSH-2.0-OpenSSH_9.6"
TUNNEL_SERVICE_SIGNATURE = b"SSH-"
BANNER_MAX_BYTES = 255


class ConnectivityProbe:
    """TCP reachability and banner validation for tunnel endpoints."""

    def __init__(
        self,
        timeout: float = settings.PROBE_TIMEOUT,
        signature: bytes = TUNNEL_SERVICE_SIGNATURE,
    ):
        self.timeout = timeout
        self.signature = signature

    async def probe(
        self, host: str, port: int, timeout: Optional[float] = None
    ) -> bool:
        """Test if host:port accepts a TCP connection."""
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=timeout or self.timeout
            )
        except (asyncio.TimeoutError, ConnectionRefusedError, OSError):
            return False

        await self._close(writer)
        return True

    async def validate_tunnel_service(
        self, host: str, port: int, timeout: Optional[float] = None
    ) -> bool:
        """
        Test that host:port is reachable and greets with the tunnel banner.

        An open port that stays silent, closes immediately or sends anything
        other than the expected signature is rejected.
        """
        budget = timeout or self.timeout
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=budget
            )
        except (asyncio.TimeoutError, ConnectionRefusedError, OSError):
            return False

        try:
            banner = await asyncio.wait_for(
                reader.readline(), timeout=budget
            )
        except (asyncio.TimeoutError, ConnectionError, OSError, ValueError):
            # ValueError: line longer than the stream limit
            banner = b""
        finally:
            await self._close(writer)

        valid = banner[:BANNER_MAX_BYTES].startswith(self.signature)
        if not valid:
            discovery_logger.debug(
                f"{host}:{port} is reachable but did not present a tunnel banner "
                f"({banner[:40]!r})"
            )
        return valid

    @staticmethod
    async def _close(writer: asyncio.StreamWriter) -> None:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass


async def probe(host: str, port: int, timeout: float = settings.PROBE_TIMEOUT) -> bool:
    """Module-level shortcut for a one-off reachability check."""
    return await ConnectivityProbe(timeout=timeout).probe(host, port)


async def validate_tunnel_service(
    host: str, port: int, timeout: float = settings.PROBE_TIMEOUT
) -> bool:
    """Module-level shortcut for a one-off tunnel banner check."""
    return await ConnectivityProbe(timeout=timeout).validate_tunnel_service(host, port)
