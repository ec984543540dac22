"""
Tunnel Sessions

A TunnelSession is one attempt at keeping a reverse tunnel up. It owns its
transport process exclusively and moves through

    Idle -> Connecting -> Active <-> Degraded -> Terminated

Terminated is final for the instance; reconnecting means a new session with
the same identity. SessionManager guarantees at most one live session per
identity.
"""

import asyncio
from datetime import datetime
from typing import Callable, Dict, List, Optional

from tunnelfleet.core.config import settings
from tunnelfleet.core.logging import tunnel_logger
from tunnelfleet.services.discovery.schemas import ServerCandidate
from .enums import LIVE_STATES, SessionState
from .schemas import SessionSnapshot, TunnelSpec, session_identity
from .transport import TransportProcess, TunnelTransport

TransitionListener = Callable[["TunnelSession", SessionState, SessionState], None]


class TunnelSession:
    """One reverse-tunnel process bound to (server, remote port, local port)."""

    def __init__(
        self,
        spec: TunnelSpec,
        server: ServerCandidate,
        transport: TunnelTransport,
        grace_period: float = settings.CONNECT_GRACE_PERIOD,
        stop_timeout: float = settings.STOP_TIMEOUT,
        degraded_window: float = settings.DEGRADED_WINDOW,
        consecutive_failures: int = 0
    ):
        self.spec = spec
        self.server = server
        self.transport = transport
        self.grace_period = grace_period
        self.stop_timeout = stop_timeout
        self.degraded_window = degraded_window

        self.identity = session_identity(
            server.host, server.port, spec.remote_port, spec.local_port
        )
        self.state = SessionState.IDLE
        self.process: Optional[TransportProcess] = None
        self.started_at: Optional[datetime] = None
        self.ended_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.exit_code: Optional[int] = None
        self.consecutive_failures = consecutive_failures
        self.stop_requested = False
        self._listeners: List[TransitionListener] = []

    def __repr__(self) -> str:
        return f"<TunnelSession {self.identity} {self.state.value}>"

    @property
    def log_extra(self) -> Dict[str, str]:
        return {"session_id": self.identity}

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    @property
    def unexpected_exit(self) -> bool:
        """Terminated without anyone asking it to stop."""
        return self.state == SessionState.TERMINATED and not self.stop_requested

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def _set_state(self, new_state: SessionState) -> None:
        old_state = self.state
        if old_state == new_state:
            return
        self.state = new_state
        tunnel_logger.debug(
            f"Tunnel {self.identity}: {old_state.value} -> {new_state.value}"
        )
        for listener in self._listeners:
            try:
                listener(self, old_state, new_state)
            except Exception as e:
                tunnel_logger.error(f"Tunnel transition listener failed: {e}")

    def _fail(self, message: str) -> None:
        self.last_error = message
        self.consecutive_failures += 1
        self.ended_at = datetime.utcnow()
        tunnel_logger.error(f"Tunnel {self.identity}: {message}", extra=self.log_extra)
        self._set_state(SessionState.TERMINATED)

    def _describe_exit(self, code: Optional[int], when: str) -> str:
        tail = self.transport.read_diagnostics(self.process, last=3) if self.process else []
        message = f"Tunnel process {when} with code {code}"
        if tail:
            message += ": " + " | ".join(tail)
        return message

    async def connect(self) -> SessionState:
        """
        Launch the process and wait out the grace window.

        A process that is gone when the window closes (bad credentials,
        refused forward, unreachable server) ends the session right away.
        """
        if self.state != SessionState.IDLE:
            tunnel_logger.warning(
                f"Tunnel {self.identity} already {self.state.value}, not connecting again"
            )
            return self.state

        self._set_state(SessionState.CONNECTING)
        self.started_at = datetime.utcnow()

        try:
            self.process = await self.transport.start(self.spec, self.server)
        except OSError as e:
            self._fail(f"Failed to launch tunnel process: {e}")
            return self.state

        await asyncio.sleep(self.grace_period)

        if self.stop_requested:
            # stop() arrived during the grace window and already finished the job
            return self.state

        if not self.transport.is_alive(self.process):
            self.exit_code = await self.transport.stop(self.process, self.stop_timeout)
            self._fail(self._describe_exit(self.exit_code, "exited during startup"))
            return self.state

        tunnel_logger.info(
            f"Tunnel {self.identity} active (PID {self.process.pid}, "
            f"service {self.spec.service})",
            extra=self.log_extra,
        )
        self._set_state(SessionState.ACTIVE)
        return self.state

    async def check_liveness(self) -> SessionState:
        """Cheap process-alive check; moves between Active, Degraded and Terminated."""
        if self.state not in (SessionState.ACTIVE, SessionState.DEGRADED):
            return self.state

        if not self.transport.is_alive(self.process):
            self.exit_code = await self.transport.stop(self.process, self.stop_timeout)
            self._fail(self._describe_exit(self.exit_code, "exited unexpectedly"))
            return self.state

        warning = self.transport.recent_warning(self.process, self.degraded_window)
        if warning:
            if self.state != SessionState.DEGRADED:
                tunnel_logger.warning(f"Tunnel {self.identity} degraded: {warning}", extra=self.log_extra)
            self._set_state(SessionState.DEGRADED)
        else:
            if self.state == SessionState.DEGRADED:
                tunnel_logger.info(f"Tunnel {self.identity} recovered", extra=self.log_extra)
            self._set_state(SessionState.ACTIVE)
        return self.state

    async def terminate(self) -> None:
        """Requested stop. Calling it on a terminated session does nothing."""
        if self.state == SessionState.TERMINATED:
            return

        self.stop_requested = True
        if self.process is not None:
            self.exit_code = await self.transport.stop(self.process, self.stop_timeout)
        self.ended_at = datetime.utcnow()
        tunnel_logger.info(f"Tunnel {self.identity} stopped", extra=self.log_extra)
        self._set_state(SessionState.TERMINATED)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            identity=self.identity,
            service=self.spec.service,
            local_port=self.spec.local_port,
            remote_port=self.spec.remote_port,
            server=self.server.address,
            state=self.state,
            pid=self.process.pid if self.process else None,
            started_at=self.started_at,
            ended_at=self.ended_at,
            last_error=self.last_error,
            consecutive_failures=self.consecutive_failures,
        )


class SessionManager:
    """
    Owns every tunnel session of this agent, keyed by identity.

    ``start`` is idempotent: while a live session exists for an identity it is
    returned as-is, and concurrent starts for one identity are serialized.
    """

    def __init__(
        self,
        transport: TunnelTransport,
        grace_period: float = settings.CONNECT_GRACE_PERIOD,
        stop_timeout: float = settings.STOP_TIMEOUT,
        degraded_window: float = settings.DEGRADED_WINDOW
    ):
        self.transport = transport
        self.grace_period = grace_period
        self.stop_timeout = stop_timeout
        self.degraded_window = degraded_window
        self._sessions: Dict[str, TunnelSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._listeners: List[TransitionListener] = []

    def add_listener(self, listener: TransitionListener) -> None:
        """Subscribe to state transitions of every session started from now on."""
        self._listeners.append(listener)

    def _lock_for(self, identity: str) -> asyncio.Lock:
        lock = self._locks.get(identity)
        if lock is None:
            lock = self._locks[identity] = asyncio.Lock()
        return lock

    async def start(
        self,
        spec: TunnelSpec,
        server: ServerCandidate,
        consecutive_failures: int = 0
    ) -> TunnelSession:
        identity = session_identity(
            server.host, server.port, spec.remote_port, spec.local_port
        )
        async with self._lock_for(identity):
            existing = self._sessions.get(identity)
            if existing is not None and existing.is_live:
                tunnel_logger.warning(
                    f"Tunnel {identity} is already {existing.state.value}, "
                    "returning the running session"
                )
                return existing

            session = TunnelSession(
                spec,
                server,
                self.transport,
                grace_period=self.grace_period,
                stop_timeout=self.stop_timeout,
                degraded_window=self.degraded_window,
                consecutive_failures=consecutive_failures,
            )
            for listener in self._listeners:
                session.add_listener(listener)
            self._sessions[identity] = session
            try:
                await session.connect()
            except asyncio.CancelledError:
                # A cancelled start must not leave its process running
                await asyncio.shield(session.terminate())
                raise
            return session

    async def stop(self, session: TunnelSession) -> None:
        await session.terminate()

    def is_alive(self, session: TunnelSession) -> bool:
        return (
            session.is_live
            and session.process is not None
            and self.transport.is_alive(session.process)
        )

    def get(self, identity: str) -> Optional[TunnelSession]:
        return self._sessions.get(identity)

    def sessions(self) -> List[TunnelSession]:
        return list(self._sessions.values())

    def reap(self) -> List[TunnelSession]:
        """Forget terminated sessions; returns what was removed."""
        reaped = [
            s for s in self._sessions.values()
            if s.state == SessionState.TERMINATED
        ]
        for session in reaped:
            del self._sessions[session.identity]
            lock = self._locks.get(session.identity)
            if lock is not None and not lock.locked():
                del self._locks[session.identity]
        return reaped

    async def stop_all(self) -> int:
        live = [s for s in self._sessions.values() if s.state != SessionState.TERMINATED]
        await asyncio.gather(*(s.terminate() for s in live))
        self.reap()
        return len(live)
