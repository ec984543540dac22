"""Tests for the agent command line."""

import socket

import pytest

from tunnelfleet.agent import build_parser, load_specs, main
from tunnelfleet.core.config import settings
from tunnelfleet.services.tunnels import TunnelSpec


def test_load_specs_from_arguments():
    specs = load_specs(["ssh:22:10022", "web:8080:18080@relay.example.net"])
    assert specs == [
        TunnelSpec("ssh", 22, 10022),
        TunnelSpec("web", 8080, 18080, server="relay.example.net"),
    ]


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_run_arguments():
    args = build_parser().parse_args(
        ["run", "--tunnel", "ssh:22:10022", "--server", "relay:2222:1", "--no-restart"]
    )
    assert args.tunnel == ["ssh:22:10022"]
    assert args.server == ["relay:2222:1"]
    assert args.no_restart


def test_invalid_tunnel_exits_with_configuration_error():
    assert main(["run", "--tunnel", "ssh:22"]) == 2


def test_probe_closed_port():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()

    assert main(["probe", "127.0.0.1", str(port), "--timeout", "0.5"]) == 1


def test_configured_tunnel_without_port_exits_with_configuration_error(monkeypatch):
    monkeypatch.setattr(settings, "TUNNELS", [{"service": "ssh", "localPort": 22}])
    assert main(["run"]) == 2
