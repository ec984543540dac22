"""
Tunnel Lifecycle Manager

Keeps every desired tunnel up: picks a server through discovery, starts a
session, watches it from a periodic health monitor and restarts it with
bounded, jittered backoff when it dies on its own.
"""

import asyncio
import random
from typing import Dict, Iterable, List, Optional

from tunnelfleet.core.config import settings
from tunnelfleet.core.logging import tunnel_logger
from tunnelfleet.services.discovery.engine import DiscoveryEngine
from tunnelfleet.services.discovery.schemas import ServerCandidate
from .enums import ClientStatus, SessionState
from .schemas import SessionSnapshot, TunnelSpec
from .session import SessionManager, TunnelSession


class RestartPolicy:
    """Exponential backoff with a cap and random jitter."""

    def __init__(
        self,
        base_delay: float = settings.RESTART_DELAY,
        max_delay: float = settings.RESTART_MAX_DELAY,
        jitter: bool = True
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    def delay(self, failures: int) -> float:
        exponent = max(failures, 1) - 1
        delay = min(self.base_delay * (2 ** exponent), self.max_delay)
        if self.jitter:
            # Spread agents that lost the same server at the same moment
            delay *= random.uniform(0.5, 1.0)
        return delay


class TunnelLifecycleManager:
    """
    Drives one session per TunnelSpec.

    At most one live process exists per spec: connects for a spec are
    serialized, a live session is never replaced, and at most one restart is
    pending per spec at any time.
    """

    def __init__(
        self,
        specs: Iterable[TunnelSpec],
        sessions: SessionManager,
        discovery: Optional[DiscoveryEngine] = None,
        reporter=None,
        health_check_interval: float = settings.HEALTH_CHECK_INTERVAL,
        report_interval: float = settings.REPORT_INTERVAL,
        auto_restart: bool = settings.AUTO_RESTART,
        restart_policy: Optional[RestartPolicy] = None
    ):
        self.sessions = sessions
        self.discovery = discovery
        self.reporter = reporter
        self.health_check_interval = health_check_interval
        self.report_interval = report_interval
        self.auto_restart = auto_restart
        self.restart_policy = restart_policy or RestartPolicy()

        self._specs: Dict[str, TunnelSpec] = {spec.key: spec for spec in specs}
        self._current: Dict[str, TunnelSession] = {}
        self._servers: Dict[str, ServerCandidate] = {}
        self._failures: Dict[str, int] = {}
        self._restarts: Dict[str, asyncio.Task] = {}
        self._spec_locks: Dict[str, asyncio.Lock] = {}
        self._discovery_lock = asyncio.Lock()
        self._report_event = asyncio.Event()
        self._monitor_task: Optional[asyncio.Task] = None
        self._report_task: Optional[asyncio.Task] = None
        self.running = False
        self.restart_attempts = 0

        self.sessions.add_listener(self._on_transition)

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect every spec and start the background loops."""
        if self.running:
            return
        self.running = True
        tunnel_logger.info(f"Starting lifecycle manager for {len(self._specs)} tunnel(s)")

        await asyncio.gather(*(self._connect(spec) for spec in list(self._specs.values())))

        self._monitor_task = asyncio.create_task(self._monitor_loop())
        if self.reporter is not None:
            self._report_task = asyncio.create_task(self._report_loop())
            self._report_event.set()

    async def stop(self) -> None:
        """Cancel background work and stop every session."""
        self.running = False
        tasks = [t for t in (self._monitor_task, self._report_task) if t is not None]
        tasks += [t for t in self._restarts.values() if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._monitor_task = None
        self._report_task = None
        self._restarts.clear()

        stopped = await self.sessions.stop_all()
        self._current.clear()
        tunnel_logger.info(f"Lifecycle manager stopped ({stopped} tunnel(s) closed)")

        if self.reporter is not None:
            await self.reporter.report(ClientStatus.DISCONNECTED, [])

    async def apply_specs(self, specs: Iterable[TunnelSpec]) -> None:
        """Replace the desired tunnel set; changed specs are restarted."""
        desired = {spec.key: spec for spec in specs}
        retired = [
            key for key, spec in self._specs.items()
            if desired.get(key) != spec
        ]
        added = [
            spec for key, spec in desired.items()
            if self._specs.get(key) != spec
        ]

        for key in retired:
            await self._retire(key)
        self._specs = desired
        if added:
            await asyncio.gather(*(self._connect(spec) for spec in added))
        tunnel_logger.info(
            f"Tunnel set updated: {len(retired)} retired, {len(added)} added, "
            f"{len(desired)} desired"
        )
        self._report_event.set()

    async def _retire(self, key: str) -> None:
        restart = self._restarts.pop(key, None)
        if restart is not None and not restart.done():
            restart.cancel()
            await asyncio.gather(restart, return_exceptions=True)
        async with self._lock_for(key):
            session = self._current.pop(key, None)
            if session is not None:
                await self.sessions.stop(session)
        self._servers.pop(key, None)
        self._failures.pop(key, None)
        self.sessions.reap()

    # ------------------------------------------------------------------
    # Server selection and connecting
    # ------------------------------------------------------------------

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._spec_locks.get(key)
        if lock is None:
            lock = self._spec_locks[key] = asyncio.Lock()
        return lock

    async def resolve_server(self, spec: TunnelSpec) -> Optional[ServerCandidate]:
        """
        Pick the server for a spec.

        A pinned server wins. Otherwise the top of the last ranked list is
        reused while it still validates; if it does not, or nothing was
        discovered yet, a fresh discovery pass runs.
        """
        if spec.server:
            return ServerCandidate.parse(spec.server, source="spec")
        if self.discovery is None:
            return None

        ranked = self.discovery.last_ranked
        if ranked and await self.discovery.revalidate(ranked[0]):
            return ranked[0]

        async with self._discovery_lock:
            # Another spec may have refreshed the list while we waited
            if self.discovery.last_ranked is not ranked and self.discovery.last_ranked:
                return self.discovery.last_ranked[0]
            fresh = await self.discovery.discover()
        return fresh[0] if fresh else None

    async def _connect(self, spec: TunnelSpec) -> Optional[TunnelSession]:
        async with self._lock_for(spec.key):
            if self._specs.get(spec.key) != spec:
                # Spec was retired or replaced meanwhile
                return None

            current = self._current.get(spec.key)
            if current is not None and current.is_live:
                return current

            server = await self.resolve_server(spec)
            if server is None:
                self._failures[spec.key] = self._failures.get(spec.key, 0) + 1
                tunnel_logger.error(
                    f"No parent servers found for tunnel {spec.service} "
                    f"(R{spec.remote_port} -> L{spec.local_port}), "
                    "retrying on the next health check"
                )
                self._report_event.set()
                return None

            session = await self.sessions.start(
                spec, server, consecutive_failures=self._failures.get(spec.key, 0)
            )
            self._current[spec.key] = session
            self._servers[spec.key] = server
            if session.state == SessionState.TERMINATED:
                self._failures[spec.key] = session.consecutive_failures
            return session

    # ------------------------------------------------------------------
    # Health monitoring and restarts
    # ------------------------------------------------------------------

    async def check_health(self) -> Dict[str, SessionState]:
        """
        One monitor pass over all specs.

        Terminated sessions are reaped; a spec without a live session gets
        one restart scheduled unless it was stopped on purpose.
        """
        states: Dict[str, SessionState] = {}
        for key, spec in list(self._specs.items()):
            session = self._current.get(key)
            if session is not None:
                state = await session.check_liveness()
                states[key] = state
                if state == SessionState.ACTIVE:
                    # Survived a full monitor interval: backoff starts over
                    self._failures[key] = 0
                    session.consecutive_failures = 0
                if state in (SessionState.CONNECTING, SessionState.ACTIVE, SessionState.DEGRADED):
                    continue
                self._failures[key] = max(
                    self._failures.get(key, 0), session.consecutive_failures
                )
                if not session.unexpected_exit:
                    continue
            else:
                states[key] = SessionState.IDLE

            if self.auto_restart:
                self._schedule_restart(spec)

        self.sessions.reap()
        return states

    def _schedule_restart(self, spec: TunnelSpec) -> bool:
        pending = self._restarts.get(spec.key)
        if pending is not None and not pending.done():
            return False

        failures = self._failures.get(spec.key, 0)
        delay = self.restart_policy.delay(failures)
        tunnel_logger.info(
            f"Restarting tunnel {spec.service} (R{spec.remote_port} -> L{spec.local_port}) "
            f"in {delay:.1f}s after {failures} failure(s)"
        )
        self._restarts[spec.key] = asyncio.create_task(self._restart_after(spec, delay))
        self.restart_attempts += 1
        return True

    async def _restart_after(self, spec: TunnelSpec, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self._connect(spec)
        except Exception as e:
            tunnel_logger.error(f"Restart of tunnel {spec.service} failed: {e}")

    async def _monitor_loop(self) -> None:
        tunnel_logger.info(
            f"Tunnel health monitor started ({self.health_check_interval}s interval)"
        )
        while self.running:
            await asyncio.sleep(self.health_check_interval)
            try:
                await self.check_health()
            except Exception as e:
                tunnel_logger.error(f"Error in tunnel health monitor: {e}")

    # ------------------------------------------------------------------
    # Status reporting
    # ------------------------------------------------------------------

    def _on_transition(self, session: TunnelSession, old: SessionState, new: SessionState) -> None:
        self._report_event.set()

    async def _report_loop(self) -> None:
        while self.running:
            try:
                await asyncio.wait_for(self._report_event.wait(), timeout=self.report_interval)
            except asyncio.TimeoutError:
                pass
            self._report_event.clear()
            try:
                await self.reporter.report(self.agent_status(), self.active_tunnels())
            except Exception as e:
                tunnel_logger.error(f"Error reporting tunnel status: {e}")

    def _live_sessions(self) -> List[TunnelSession]:
        return [
            session for key, session in self._current.items()
            if key in self._specs
            and session.state in (SessionState.ACTIVE, SessionState.DEGRADED)
        ]

    def active_tunnels(self) -> List[TunnelSpec]:
        return [session.spec for session in self._live_sessions()]

    def agent_status(self) -> ClientStatus:
        """Fleet-level status of this agent derived from its sessions."""
        if not self._specs:
            return ClientStatus.DISCONNECTED

        live = len(self._live_sessions())
        if live == len(self._specs):
            return ClientStatus.CONNECTED

        restarting = any(not task.done() for task in self._restarts.values()) or any(
            s.state == SessionState.CONNECTING for s in self._current.values()
        )
        if restarting or live > 0:
            return ClientStatus.RECONNECTING
        if any(self._failures.values()):
            return ClientStatus.ERROR
        return ClientStatus.DISCONNECTED

    def snapshot(self) -> List[SessionSnapshot]:
        return [self._current[key].snapshot() for key in self._specs if key in self._current]

    @property
    def specs(self) -> List[TunnelSpec]:
        return list(self._specs.values())
