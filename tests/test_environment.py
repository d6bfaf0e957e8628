"""Tests for executable search path discovery and child environment synthesis."""

import os
import stat
import sys

import pytest

from shark_launcher.local.supervisor import environment
from shark_launcher.local.supervisor.environment import (
    InteractiveShellStrategy, PathStrategy, ShellConfigFileStrategy,
    build_environment, discover_search_path, merge_paths, run_strategies, split_path,
)
from shark_launcher.local.supervisor.services import ServiceDescriptor


class RecordingStrategy(PathStrategy):
    def __init__(self, name, entries):
        self.name = name
        self.entries = entries
        self.calls = 0

    def discover(self, base_env, timeout):
        self.calls += 1
        return list(self.entries)


class FailingStrategy(PathStrategy):
    name = "failing"

    def discover(self, base_env, timeout):
        raise RuntimeError("shell exploded")


def _service(tmp_path, **kwargs):
    return ServiceDescriptor(name="svc", executable="node", cwd=tmp_path, port=1, **kwargs)


def test_merge_paths_keeps_first_occurrence():
    assert merge_paths(["/a", "/b"], ["/b", "/c", "/a/"]) == ["/a", "/b", "/c"]
    assert split_path(os.pathsep.join(["/a", "", " ", "/b"])) == ["/a", "/b"]


def test_run_strategies_first_non_empty_wins():
    empty = RecordingStrategy("empty", [])
    first = RecordingStrategy("first", ["/opt/first/bin"])
    second = RecordingStrategy("second", ["/opt/second/bin"])
    assert run_strategies([empty, first, second], {}, 0.1) == ["/opt/first/bin"]
    assert empty.calls == 1 and first.calls == 1 and second.calls == 0


def test_failing_strategy_falls_through():
    fallback = RecordingStrategy("fallback", ["/opt/tools/bin"])
    assert run_strategies([FailingStrategy(), fallback], {}, 0.1) == ["/opt/tools/bin"]


def test_discovery_runs_only_for_minimal_path():
    strategy = RecordingStrategy("shell", ["/opt/node/bin"])

    result = discover_search_path({"PATH": os.pathsep.join(["/usr/bin", "/bin"])}, [strategy], mode="auto")
    assert strategy.calls == 1
    assert split_path(result)[:3] == ["/usr/bin", "/bin", "/opt/node/bin"]

    rich = os.pathsep.join(["/home/user/.local/bin", "/usr/bin"])
    discover_search_path({"PATH": rich}, [strategy], mode="auto")
    assert strategy.calls == 1

    discover_search_path({"PATH": rich}, [strategy], mode="always")
    assert strategy.calls == 2


def test_empty_path_still_yields_search_path():
    result = discover_search_path({"PATH": ""}, [FailingStrategy()], mode="always")
    assert result
    assert split_path(result)


def test_discovery_never_raises(monkeypatch):
    def broken_chain(base_env, timeout):
        raise RuntimeError("boom")

    monkeypatch.setattr(environment, "well_known_tool_dirs", lambda base_env=None: 1 / 0)
    result = discover_search_path({"PATH": "/usr/bin"}, [broken_chain], mode="always")
    assert split_path(result) == ["/usr/bin"]


def test_shell_config_file_strategy_reads_exports(tmp_path):
    (tmp_path / ".bashrc").write_text(
        "# comment\n"
        'export PATH="$HOME/tools/bin:$PATH"\n'
        "alias ll='ls -l'\n"
        "PATH=/opt/extra/bin:${PATH}  # trailing comment\n"
    )
    strategy = ShellConfigFileStrategy(home=tmp_path, filenames=[".zshrc", ".bashrc"])
    entries = strategy({"PATH": "/usr/bin"}, 1.0)
    assert str(tmp_path / "tools" / "bin") in entries
    assert "/opt/extra/bin" in entries
    assert "/usr/bin" in entries


def test_interactive_shell_strategy_missing_shell():
    assert InteractiveShellStrategy("/nonexistent/shell")({}, 0.5) == []


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shells only")
def test_interactive_shell_strategy_ignores_banner_noise(tmp_path):
    fake_shell = tmp_path / "fakesh"
    fake_shell.write_text(
        "#!/bin/sh\n"
        "echo 'Welcome back!'\n"
        "printf '%s' '__SHARK_PATH_START__/opt/fake/bin:/usr/bin__SHARK_PATH_END__'\n"
        "echo 'bye'\n"
    )
    fake_shell.chmod(fake_shell.stat().st_mode | stat.S_IEXEC)
    assert InteractiveShellStrategy(str(fake_shell))({}, 2.0) == ["/opt/fake/bin", "/usr/bin"]


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shells only")
def test_interactive_shell_strategy_times_out(tmp_path):
    slow_shell = tmp_path / "slowsh"
    slow_shell.write_text("#!/bin/sh\nexec sleep 5\n")
    slow_shell.chmod(slow_shell.stat().st_mode | stat.S_IEXEC)
    assert InteractiveShellStrategy(str(slow_shell))({}, 0.2) == []


def test_build_environment_sets_service_variables(tmp_path):
    modules = tmp_path / "node_modules"
    modules.mkdir()
    missing = tmp_path / "missing" / "node_modules"
    service = _service(tmp_path, dependency_dirs=(modules, missing), extra_env={"NODE_ENV": "production"})
    base_env = {"PATH": "", "HOME": str(tmp_path)}

    env = build_environment(base_env, service, strategies=[])

    assert env["NODE_PATH"] == str(modules)
    assert env["PWD"] == str(tmp_path)
    assert env["NODE_ENV"] == "production"
    assert env["PATH"]
    assert "ELECTRON_RUN_AS_NODE" not in env
    assert base_env == {"PATH": "", "HOME": str(tmp_path)}


def test_build_environment_embedded_runtime_flag(tmp_path):
    env = build_environment({"PATH": "/usr/bin"}, _service(tmp_path, embedded_runtime=True), strategies=[])
    assert env["ELECTRON_RUN_AS_NODE"] == "1"


def test_build_environment_returns_fresh_mapping(tmp_path):
    service = _service(tmp_path)
    first = build_environment({"PATH": "/usr/bin"}, service, strategies=[])
    first["EXTRA"] = "1"
    assert "EXTRA" not in build_environment({"PATH": "/usr/bin"}, service, strategies=[])
