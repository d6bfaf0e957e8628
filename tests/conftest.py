# tests/conftest.py
import os
import sys
import time
import socket
import tempfile
import subprocess

# Keep the suite away from the user's data dir and shell before settings load.
os.environ["MCP_SHARK_DATA_DIR"] = tempfile.mkdtemp(prefix="shark-launcher-tests-")
os.environ["SHARK_PATH_DISCOVERY"] = "never"

import psutil
import pytest

from shark_launcher.local.config import effective_settings as config
from shark_launcher.log.handler import DiagnosticsHandler
from shark_launcher.local.supervisor import ServiceDescriptor, Supervisor
from shark_launcher.local.supervisor.ports import is_listening

# A throwaway service: optionally waits, then listens on argv[1] until killed.
LISTENER_SCRIPT = """
import socket, sys, time
port = int(sys.argv[1])
delay = float(sys.argv[2]) if len(sys.argv) > 2 else 0.0
time.sleep(delay)
server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
server.bind(("127.0.0.1", port))
server.listen(16)
print(f"listening on {port}", flush=True)
while True:
    conn, _ = server.accept()
    conn.close()
"""

# Spawns a long-lived grandchild, reports its pid, then listens like LISTENER_SCRIPT.
TREE_SCRIPT = """
import socket, subprocess, sys
child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(120)"])
print(f"child {child.pid}", flush=True)
server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
server.bind(("127.0.0.1", int(sys.argv[1])))
server.listen(16)
while True:
    conn, _ = server.accept()
    conn.close()
"""

# Listens but ignores the cooperative stop signal.
STUBBORN_SCRIPT = """
import signal, socket, sys
signal.signal(signal.SIGTERM, signal.SIG_IGN)
server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
server.bind(("127.0.0.1", int(sys.argv[1])))
server.listen(16)
while True:
    conn, _ = server.accept()
    conn.close()
"""

MISSING_MODULE_SCRIPT = """
import sys
print("booting", flush=True)
sys.stderr.write("Error: Cannot find module 'express'\\n")
sys.exit(1)
"""

SLEEPER_SCRIPT = "import time; time.sleep(120)"


def get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def pid_gone(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


@pytest.fixture(autouse=True)
def fast_timings(monkeypatch):
    monkeypatch.setattr(config, "TERMINATION_GRACE_PERIOD", 1.0)
    monkeypatch.setattr(config, "PORT_RECLAIM_WAIT", 2.0)
    monkeypatch.setattr(config, "OUTPUT_READER_JOIN_TIMEOUT", 1.0)
    monkeypatch.setattr(config, "PATH_DISCOVERY", "never")


@pytest.fixture
def free_port():
    return get_free_port()


@pytest.fixture
def make_service(tmp_path):
    """Builds a descriptor running `script` with the current interpreter."""
    def factory(name: str = "svc", script: str = LISTENER_SCRIPT, port: int = None, extra_args=(),
                interval: float = 0.05, checks: int = 100, **kwargs) -> ServiceDescriptor:
        port = port or get_free_port()
        return ServiceDescriptor(
            name=name,
            executable=sys.executable,
            cwd=kwargs.pop("cwd", tmp_path),
            port=port,
            args=("-c", script, str(port), *map(str, extra_args)),
            readiness_interval=interval,
            readiness_checks=checks,
            **kwargs,
        )
    return factory


@pytest.fixture
def diagnostics():
    return DiagnosticsHandler(retention=1000)


@pytest.fixture
def make_supervisor(tmp_path, diagnostics):
    """Creates Supervisors over throwaway services and shuts them all down afterwards."""
    created = []

    def factory(*services: ServiceDescriptor, **kwargs) -> Supervisor:
        kwargs.setdefault("diagnostics", diagnostics)
        kwargs.setdefault("pid_file", tmp_path / "launcher.pid")
        kwargs.setdefault("path_strategies", [])
        supervisor = Supervisor(services={s.name: s for s in services}, **kwargs)
        created.append(supervisor)
        return supervisor

    yield factory
    for supervisor in created:
        supervisor.shutdown_all()
        supervisor.close()


@pytest.fixture
def external_listener():
    """Starts listener processes that the supervisor does not own."""
    procs = []

    def factory(port: int) -> subprocess.Popen:
        proc = subprocess.Popen([sys.executable, "-c", LISTENER_SCRIPT, str(port)],
                                stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        procs.append(proc)
        assert wait_for(lambda: is_listening(port), timeout=10)
        return proc

    yield factory
    for proc in procs:
        if proc.poll() is None:
            proc.kill()
        proc.wait(5)


@pytest.fixture
def on_posix():
    if sys.platform == "win32":
        pytest.skip("POSIX signal semantics")

