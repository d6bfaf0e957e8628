"""Tests for the termination cascade over process trees."""

import os
import sys
import time
import subprocess

import pytest

from conftest import SLEEPER_SCRIPT, STUBBORN_SCRIPT, TREE_SCRIPT, pid_gone, wait_for
from shark_launcher.local.supervisor import ports
from shark_launcher.local.supervisor.errors import EarlyExitError
from shark_launcher.local.supervisor.launcher import launch
from shark_launcher.local.supervisor.process_tree import PosixTreeController, WindowsTreeController, get_tree_controller
from shark_launcher.local.supervisor.termination import force_kill_tree, terminate, terminate_pid


def _child_pid(handle) -> int:
    assert wait_for(lambda: any(line.startswith("child ") for line in handle.stdout.lines()))
    line = next(line for line in handle.stdout.lines() if line.startswith("child "))
    return int(line.split()[1])


def test_terminate_stops_service_and_descendants(make_service):
    service = make_service(script=TREE_SCRIPT)
    handle = launch(service, dict(os.environ))
    child = _child_pid(handle)

    terminate(handle)

    assert not handle.is_running
    assert wait_for(lambda: pid_gone(child))
    assert wait_for(lambda: not ports.is_listening(service.port))


def test_terminate_forces_stubborn_process(make_service, on_posix):
    service = make_service(script=STUBBORN_SCRIPT)
    handle = launch(service, dict(os.environ))

    started = time.monotonic()
    terminate(handle, grace=0.3)

    assert not handle.is_running
    assert time.monotonic() - started >= 0.3
    assert handle.returncode is not None and handle.returncode != 0


def test_terminate_is_noop_for_missing_or_exited_handle(make_service):
    terminate(None)
    with pytest.raises(EarlyExitError) as excinfo:
        launch(make_service(script="raise SystemExit(2)"), dict(os.environ))
    handle = excinfo.value.handle
    terminate(handle)
    assert handle.returncode == 2


def test_terminate_pid_stops_foreign_process():
    proc = subprocess.Popen([sys.executable, "-c", SLEEPER_SCRIPT])
    try:
        terminate_pid(proc.pid, grace=1.0)
        assert wait_for(lambda: pid_gone(proc.pid))
    finally:
        if proc.poll() is None:
            proc.kill()
        proc.wait(5)


def test_terminate_pid_ignores_unknown_pid():
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait(5)
    terminate_pid(proc.pid)
    force_kill_tree(proc.pid)


def test_force_kill_tree(make_service):
    handle = launch(make_service(script=TREE_SCRIPT), dict(os.environ))
    child = _child_pid(handle)
    force_kill_tree(handle.pid)
    assert handle.wait(5)
    assert wait_for(lambda: pid_gone(child))


def test_controller_selection():
    assert isinstance(get_tree_controller("win32"), WindowsTreeController)
    assert isinstance(get_tree_controller("linux"), PosixTreeController)
    assert isinstance(get_tree_controller("darwin"), PosixTreeController)


def test_listening_pids_finds_owner(external_listener, free_port):
    proc = external_listener(free_port)
    pids = get_tree_controller().listening_pids(free_port)
    if not pids:
        pytest.skip("No permission to map ports to processes on this host")
    assert proc.pid in pids
