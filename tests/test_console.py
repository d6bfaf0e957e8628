"""Tests for console command dispatch."""

import pytest

from shark_launcher.local.console import execute_command, handler
from shark_launcher.local.supervisor import ports


@pytest.fixture
def console_supervisor(make_service, make_supervisor, monkeypatch):
    supervisor = make_supervisor(make_service(name="mcp"), make_service(name="ui"))
    monkeypatch.setattr(handler, "_supervisor", supervisor)
    return supervisor


def test_start_status_and_exit(console_supervisor, capsys):
    assert execute_command("start", []) is False
    assert all(console_supervisor.status(name) for name in ("mcp", "ui"))

    execute_command("status", [])
    out = capsys.readouterr().out
    assert "mcp" in out and "LISTENING" in out

    ports_in_use = [s.port for s in console_supervisor.services.values()]
    assert execute_command("exit", []) is True
    assert not any(ports.is_listening(port) for port in ports_in_use)


def test_start_and_stop_single_service(console_supervisor):
    execute_command("start", ["ui"])
    assert console_supervisor.status("ui")
    assert not console_supervisor.status("mcp")

    execute_command("stop", ["ui"])
    assert not console_supervisor.status("ui")


def test_unknown_service_is_reported(console_supervisor, capsys):
    execute_command("start", ["nope"])
    assert "Unknown service 'nope'" in capsys.readouterr().out


def test_config_and_help_commands(console_supervisor, capsys):
    execute_command("config", ["show"])
    execute_command("help", [])
    out = capsys.readouterr().out
    assert "READINESS_MAX_CHECKS" in out
    assert "export-logs" in out
