"""
Tunnel fleet agent.

    tunnelfleet-agent run [--tunnel ssh:22:10022] [--server host:port]
    tunnelfleet-agent discover
    tunnelfleet-agent probe HOST PORT
"""

import argparse
import asyncio
import signal
import sys
from typing import List, Optional

from rich.table import Table

from tunnelfleet.core.config import settings
from tunnelfleet.core.logging import console, logger
from tunnelfleet.services.discovery import build_discovery_engine
from tunnelfleet.services.probe import ConnectivityProbe
from tunnelfleet.services.tunnels import (
    ControlPlaneReporter,
    SessionManager,
    SSHTransport,
    TunnelLifecycleManager,
    TunnelSpec,
)


def load_specs(tunnel_args: Optional[List[str]]) -> List[TunnelSpec]:
    """Tunnels from the command line, falling back to the TUNNELS setting."""
    if tunnel_args:
        return [TunnelSpec.parse(value) for value in tunnel_args]
    return [TunnelSpec.from_dict(data) for data in settings.TUNNELS]


def build_manager(args: argparse.Namespace) -> TunnelLifecycleManager:
    probe = ConnectivityProbe()
    discovery = build_discovery_engine(
        probe=probe, static_servers=args.server or None
    )
    sessions = SessionManager(SSHTransport())

    reporter = None
    control_plane = args.control_plane or settings.CONTROL_PLANE_URL
    if control_plane:
        reporter = ControlPlaneReporter(control_plane)
    else:
        logger.warning("No control plane configured, tunnel status will not be reported")

    return TunnelLifecycleManager(
        load_specs(args.tunnel),
        sessions,
        discovery=discovery,
        reporter=reporter,
        auto_restart=not args.no_restart,
    )


async def run_agent(args: argparse.Namespace) -> int:
    manager = build_manager(args)
    if not manager.specs:
        logger.error("No tunnels configured (use --tunnel or the TUNNELS setting)")
        return 2

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    await manager.start()
    try:
        await stop_event.wait()
    finally:
        logger.info("Stopping agent")
        await manager.stop()
    return 0


async def run_discovery(args: argparse.Namespace) -> int:
    engine = build_discovery_engine(static_servers=args.server or None)
    candidates = await engine.discover()

    table = Table(title="Tunnel servers")
    table.add_column("Host")
    table.add_column("Port", justify="right")
    table.add_column("Priority", justify="right")
    table.add_column("Weight", justify="right")
    table.add_column("Source")
    for candidate in candidates:
        table.add_row(
            candidate.host,
            str(candidate.port),
            str(candidate.priority),
            str(candidate.weight),
            candidate.source,
        )
    console.print(table)
    return 0 if candidates else 1


async def run_probe(args: argparse.Namespace) -> int:
    probe = ConnectivityProbe(timeout=args.timeout)
    reachable = await probe.probe(args.host, args.port)
    valid = reachable and await probe.validate_tunnel_service(args.host, args.port)
    console.print(
        f"{args.host}:{args.port} reachable: "
        f"{'[green]yes[/green]' if reachable else '[red]no[/red]'}, "
        f"tunnel service: {'[green]yes[/green]' if valid else '[red]no[/red]'}"
    )
    return 0 if valid else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tunnelfleet-agent", description="Reverse tunnel agent")
    sub = parser.add_subparsers(dest="command", required=True)

    run_parser = sub.add_parser("run", help="Keep the configured tunnels up")
    run_parser.add_argument(
        "--tunnel", action="append",
        help="service:local_port:remote_port[@host[:port]] (repeatable)"
    )
    run_parser.add_argument(
        "--server", action="append",
        help="Static server host[:port[:priority[:weight]]] (repeatable)"
    )
    run_parser.add_argument("--control-plane", help="Control plane base URL")
    run_parser.add_argument("--no-restart", action="store_true", help="Do not restart failed tunnels")

    discover_parser = sub.add_parser("discover", help="Run one discovery pass")
    discover_parser.add_argument("--server", action="append", help="Static server (repeatable)")

    probe_parser = sub.add_parser("probe", help="Check one endpoint")
    probe_parser.add_argument("host")
    probe_parser.add_argument("port", type=int)
    probe_parser.add_argument("--timeout", type=float, default=settings.PROBE_TIMEOUT)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    handlers = {
        "run": run_agent,
        "discover": run_discovery,
        "probe": run_probe,
    }
    try:
        return asyncio.run(handlers[args.command](args))
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
