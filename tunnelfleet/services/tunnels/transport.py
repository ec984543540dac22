"""
Tunnel Transport

The capability a tunnel session needs from the encrypted transport: start a
process, tell whether it is alive, stop it, and read its diagnostic output.
SSHTransport implements it by running the system ``ssh`` client.
"""

import asyncio
import os
import time
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from typing import Deque, List, Optional, Tuple

import psutil

from tunnelfleet.core.config import settings
from tunnelfleet.core.logging import log_tunnel_command, tunnel_logger
from tunnelfleet.services.discovery.schemas import ServerCandidate
from .schemas import TunnelSpec

# Diagnostic lines from ssh that indicate a flaky link without an exit
NETWORK_WARNING_PATTERNS: Tuple[str, ...] = (
    "Timeout, server",
    "Connection reset",
    "Broken pipe",
    "client_loop: send disconnect",
    "packet_write_wait",
    "Network is unreachable",
    "No route to host",
)

DIAGNOSTIC_BUFFER_LINES = 200


class TransportProcess:
    """Handle on one running tunnel process and its diagnostic output."""

    def __init__(self, pid: int, command: List[str]):
        self.pid = pid
        self.command = command
        self.started_at = datetime.utcnow()
        self.returncode: Optional[int] = None
        self.diagnostics: Deque[str] = deque(maxlen=DIAGNOSTIC_BUFFER_LINES)
        self.last_warning: Optional[str] = None
        self.last_warning_at: Optional[float] = None

    def record(self, line: str) -> None:
        """Store one diagnostic line, noting network warnings."""
        self.diagnostics.append(line)
        if any(pattern in line for pattern in NETWORK_WARNING_PATTERNS):
            self.last_warning = line
            self.last_warning_at = time.monotonic()


class TunnelTransport(ABC):
    """Capability interface used by tunnel sessions."""

    @abstractmethod
    async def start(self, spec: TunnelSpec, server: ServerCandidate) -> TransportProcess:
        """Launch the tunnel process. Raises OSError when it cannot be spawned."""

    @abstractmethod
    async def stop(self, process: TransportProcess, timeout: float) -> Optional[int]:
        """Terminate (or reap) the process and return its exit code."""

    @abstractmethod
    def is_alive(self, process: TransportProcess) -> bool:
        """Cheap process-alive test."""

    def read_diagnostics(self, process: TransportProcess, last: Optional[int] = None) -> List[str]:
        lines = list(process.diagnostics)
        return lines[-last:] if last else lines

    def recent_warning(self, process: TransportProcess, window: float) -> Optional[str]:
        """The last network warning if it was seen within ``window`` seconds."""
        if process.last_warning_at is None:
            return None
        if time.monotonic() - process.last_warning_at > window:
            return None
        return process.last_warning


class SSHProcess(TransportProcess):
    def __init__(self, process: asyncio.subprocess.Process, command: List[str]):
        super().__init__(process.pid, command)
        self.process = process
        self.readers: List[asyncio.Task] = []


class SSHTransport(TunnelTransport):
    """
    Reverse tunnels through the OpenSSH client.

    Runs ``ssh -N -R remote:localhost:local`` against the chosen server and
    keeps stdout/stderr in a bounded buffer for diagnostics.
    """

    def __init__(
        self,
        binary: str = settings.SSH_BINARY,
        user: Optional[str] = settings.SSH_USER,
        key_file: Optional[str] = settings.SSH_KEY_FILE,
        strict_host_key_checking: str = settings.SSH_STRICT_HOST_KEY_CHECKING,
        server_alive_interval: int = settings.SSH_SERVER_ALIVE_INTERVAL,
        server_alive_count_max: int = settings.SSH_SERVER_ALIVE_COUNT_MAX,
        connect_timeout: int = settings.SSH_CONNECT_TIMEOUT,
        verbose: bool = settings.DEBUG
    ):
        self.binary = binary
        self.user = user
        self.key_file = key_file
        self.strict_host_key_checking = strict_host_key_checking
        self.server_alive_interval = server_alive_interval
        self.server_alive_count_max = server_alive_count_max
        self.connect_timeout = connect_timeout
        self.verbose = verbose

    def build_command(self, spec: TunnelSpec, server: ServerCandidate) -> List[str]:
        cmd = [self.binary]
        if self.verbose:
            cmd.append("-v")
        cmd += [
            "-N",  # Don't execute remote command
            "-R", f"{spec.remote_port}:localhost:{spec.local_port}",
            "-p", str(server.port),
            "-o", f"StrictHostKeyChecking={self.strict_host_key_checking}",
            "-o", f"ServerAliveInterval={self.server_alive_interval}",
            "-o", f"ServerAliveCountMax={self.server_alive_count_max}",
            "-o", "ExitOnForwardFailure=yes",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-o", "BatchMode=yes",
        ]

        key_file = spec.credential or self.key_file
        if key_file:
            cmd += ["-i", os.path.expanduser(key_file)]

        cmd.append(f"{self.user}@{server.host}" if self.user else server.host)
        return cmd

    async def start(self, spec: TunnelSpec, server: ServerCandidate) -> TransportProcess:
        cmd = self.build_command(spec, server)
        log_tunnel_command(cmd)

        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
        tunnel_logger.info(
            f"SSH process started with PID {process.pid}: "
            f"{server.address} R{spec.remote_port} -> localhost:{spec.local_port}"
        )

        handle = SSHProcess(process, cmd)
        handle.readers = [
            asyncio.create_task(self._pump(handle, process.stdout, "stdout")),
            asyncio.create_task(self._pump(handle, process.stderr, "stderr")),
        ]
        return handle

    async def _pump(self, handle: SSHProcess, stream: asyncio.StreamReader, name: str) -> None:
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode(errors="replace").rstrip()
            if line:
                handle.record(line)
                tunnel_logger.debug(f"[{handle.pid}] ssh {name}: {line}")

    def is_alive(self, process: TransportProcess) -> bool:
        if process.returncode is not None:
            return False
        if isinstance(process, SSHProcess) and process.process.returncode is not None:
            return False
        try:
            proc = psutil.Process(process.pid)
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return False

    async def stop(self, process: TransportProcess, timeout: float) -> Optional[int]:
        if not isinstance(process, SSHProcess):
            raise TypeError(f"SSHTransport cannot stop {type(process).__name__}")

        child = process.process
        if child.returncode is None:
            # Try graceful termination first
            try:
                child.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(child.wait(), timeout=timeout)
                tunnel_logger.info(f"Process {process.pid} terminated (code {child.returncode})")
            except asyncio.TimeoutError:
                # Force kill if graceful termination failed
                try:
                    child.kill()
                except ProcessLookupError:
                    pass
                await child.wait()
                tunnel_logger.warning(f"Process {process.pid} force killed")

        await self._drain(process)
        process.returncode = child.returncode
        return child.returncode

    @staticmethod
    async def _drain(process: SSHProcess) -> None:
        if not process.readers:
            return
        done, pending = await asyncio.wait(process.readers, timeout=1.0)
        for task in pending:
            task.cancel()
        process.readers = []
