"""
Environment synthesis for spawned services.

The executable search path handed to a service is the union of the inherited
PATH, a best-effort discovered PATH and the well-known tool directories that
exist on disk. Discovery is an ordered chain of strategies; each one is tried
with the same timeout and the first that yields entries wins. Nothing in this
module raises to its caller.
"""
import os
import re
import glob
import logging
import subprocess
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from shark_launcher.local.config import effective_settings as config
from shark_launcher.local.supervisor.services import ServiceDescriptor

log = logging.getLogger(__name__)

PATH_START_MARKER = "__SHARK_PATH_START__"
PATH_END_MARKER = "__SHARK_PATH_END__"
_EXPORT_PATH_RE = re.compile(r"""^\s*(?:export\s+)?PATH\s*=\s*(['"]?)(?P<value>.*?)\1\s*(?:#.*)?$""")


def split_path(value: Optional[str]) -> List[str]:
    return [entry for entry in (value or "").split(os.pathsep) if entry.strip()]


def merge_paths(*groups: Iterable[str]) -> List[str]:
    """Concatenates PATH entry groups, dropping duplicates while keeping the first position."""
    seen = set()
    merged: List[str] = []
    for group in groups:
        for entry in group:
            normalized = os.path.normcase(os.path.normpath(entry))
            if normalized in seen:
                continue
            seen.add(normalized)
            merged.append(entry)
    return merged


def is_minimal_path(entries: Sequence[str]) -> bool:
    """True when the PATH only holds the bare system directories GUI launchers provide."""
    return all(os.path.normpath(entry) in config.MINIMAL_PATH_ENTRIES for entry in entries)


#* --- Discovery Strategies ---
class PathStrategy:
    """
    One way of discovering the user's real executable search path.

    Subclasses implement `discover`, which may raise or time out; `__call__`
    wraps it so a failure simply yields no entries.
    """
    name = "strategy"

    def discover(self, base_env: Mapping[str, str], timeout: float) -> List[str]:
        raise NotImplementedError

    def __call__(self, base_env: Mapping[str, str], timeout: float) -> List[str]:
        try:
            entries = self.discover(base_env, timeout)
        except subprocess.TimeoutExpired:
            log.debug(f"PATH discovery '{self.name}' timed out after {timeout}s.")
            return []
        except Exception as e:
            log.debug(f"PATH discovery '{self.name}' failed: {e}")
            return []
        return entries or []

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name}>"


class InteractiveShellStrategy(PathStrategy):
    """Asks a shell to print PATH after loading its interactive login configuration."""

    def __init__(self, shell: str):
        self.shell = shell
        self.name = f"shell:{shell}"

    def discover(self, base_env: Mapping[str, str], timeout: float) -> List[str]:
        if not os.path.isfile(self.shell):
            return []
        script = f'printf "%s%s%s" "{PATH_START_MARKER}" "$PATH" "{PATH_END_MARKER}"'
        result = subprocess.run(
            [self.shell, "-i", "-l", "-c", script],
            env=dict(base_env),
            stdin=subprocess.DEVNULL,
            capture_output=True,
            timeout=timeout,
            check=False,
        )
        # Interactive rc files may print banners around our output.
        output = result.stdout.decode("utf-8", errors="replace")
        start = output.rfind(PATH_START_MARKER)
        end = output.find(PATH_END_MARKER, start + 1)
        if start == -1 or end == -1:
            return []
        return split_path(output[start + len(PATH_START_MARKER):end])


class ShellConfigFileStrategy(PathStrategy):
    """Reads PATH assignments directly out of the usual shell configuration files."""
    name = "shell-config-files"

    def __init__(self, home: Optional[Path] = None, filenames: Optional[Sequence[str]] = None):
        self.home = home
        self.filenames = list(filenames) if filenames is not None else list(config.SHELL_CONFIG_FILES)

    def discover(self, base_env: Mapping[str, str], timeout: float) -> List[str]:
        home = self.home or Path(base_env.get("HOME") or Path.home())
        inherited = base_env.get("PATH", "")
        entries: List[str] = []
        for filename in self.filenames:
            rc_file = home / filename
            if not rc_file.is_file():
                continue
            for line in rc_file.read_text(encoding="utf-8", errors="replace").splitlines():
                match = _EXPORT_PATH_RE.match(line)
                if not match:
                    continue
                value = match.group("value").replace("${PATH}", inherited).replace("$PATH", inherited)
                value = value.replace("$HOME", str(home)).replace("${HOME}", str(home))
                for entry in split_path(value):
                    entry = os.path.expanduser(entry)
                    if "$" not in entry:
                        entries.append(entry)
        return merge_paths(entries)


class WindowsShellStrategy(PathStrategy):
    """Asks cmd.exe for the PATH it resolves from the registry-backed environment."""
    name = "cmd-path"

    def discover(self, base_env: Mapping[str, str], timeout: float) -> List[str]:
        result = subprocess.run(
            ["cmd", "/d", "/c", "echo %PATH%"],
            env=dict(base_env),
            stdin=subprocess.DEVNULL,
            capture_output=True,
            timeout=timeout,
            check=False,
        )
        if result.returncode != 0:
            return []
        return split_path(result.stdout.decode("utf-8", errors="replace").strip())


def candidate_shells(base_env: Mapping[str, str]) -> List[str]:
    """The user's configured shell first, then the fixed preference list."""
    shells = [base_env.get("SHELL", "")] + list(config.FALLBACK_SHELLS)
    return merge_paths(shell for shell in shells if shell)


def default_strategies(base_env: Mapping[str, str]) -> List[PathStrategy]:
    if config.IS_WINDOWS:
        return [WindowsShellStrategy()]
    strategies: List[PathStrategy] = [InteractiveShellStrategy(shell) for shell in candidate_shells(base_env)]
    strategies.append(ShellConfigFileStrategy())
    return strategies


def run_strategies(strategies: Sequence[Callable[[Mapping[str, str], float], List[str]]],
                   base_env: Mapping[str, str], timeout: float) -> List[str]:
    """
    Tries each strategy in order and returns the entries of the first that yields any.

    :param strategies: Ordered discovery strategies.
    :param base_env: The environment the strategies run under.
    :param timeout: Per-strategy bound in seconds.
    :return: Discovered PATH entries, empty if every strategy failed.
    """
    for strategy in strategies:
        entries = strategy(base_env, timeout)
        if entries:
            log.debug(f"Executable search path discovered via {strategy!r} ({len(entries)} entries).")
            return entries
    log.debug("No PATH discovery strategy succeeded.")
    return []


def well_known_tool_dirs(base_env: Optional[Mapping[str, str]] = None) -> List[str]:
    """Returns the configured per-user and per-platform tool directories that exist on disk."""
    base_env = base_env if base_env is not None else os.environ
    templates = config.WINDOWS_TOOL_DIRS if config.IS_WINDOWS else config.POSIX_TOOL_DIRS
    found: List[str] = []
    for template in templates:
        expanded = os.path.expanduser(os.path.expandvars(template))
        if "%" in expanded or "$" in expanded:
            continue  # An unset variable
        # Version managers keep one directory per installed version.
        for candidate in sorted(glob.glob(expanded), reverse=True) if "*" in expanded else [expanded]:
            if os.path.isdir(candidate):
                found.append(candidate)
    return merge_paths(found)


#* --- Synthesis ---
def discover_search_path(base_env: Mapping[str, str],
                         strategies: Optional[Sequence[Callable[[Mapping[str, str], float], List[str]]]] = None,
                         mode: Optional[str] = None) -> str:
    """
    Builds the executable search path for a child service.

    :param base_env: The supervising process environment.
    :param strategies: Discovery chain, defaults to the platform chain.
    :param mode: 'auto', 'always' or 'never'; defaults to PATH_DISCOVERY.
    :return: A non-empty os.pathsep separated search path.
    """
    inherited = split_path(base_env.get("PATH"))
    mode = (mode or config.PATH_DISCOVERY).lower()
    discovered: List[str] = []
    try:
        if mode == "always" or (mode == "auto" and is_minimal_path(inherited)):
            chain = strategies if strategies is not None else default_strategies(base_env)
            discovered = run_strategies(chain, base_env, config.SHELL_PROBE_TIMEOUT)
        static = well_known_tool_dirs(base_env)
    except Exception as e:
        log.warning(f"Executable search path discovery failed, using inherited PATH: {e}")
        static = []

    entries = merge_paths(inherited, discovered, static)
    if not entries:
        entries = split_path(os.defpath)
    return os.pathsep.join(entries)


def build_environment(base_env: Mapping[str, str], service: ServiceDescriptor,
                      strategies: Optional[Sequence[Callable[[Mapping[str, str], float], List[str]]]] = None) -> Dict[str, str]:
    """
    Synthesizes the environment for one spawn of `service`.

    Starts from `base_env` and adds the module search variable (only existing
    dependency directories), the working-directory hint, the embedded-runtime
    flag when relevant, the service's extra variables and the synthesized PATH.
    A fresh dict is returned on every call.

    :param base_env: The supervising process environment.
    :param service: The descriptor of the service about to be spawned.
    :param strategies: Optional PATH discovery chain override.
    :return: The environment mapping for the child.
    """
    env = {str(k): str(v) for k, v in base_env.items()}
    data = {"service": service.name}
    try:
        env.update({k: str(v) for k, v in service.extra_env.items()})

        module_dirs = [str(d) for d in service.dependency_dirs if Path(d).is_dir()]
        if module_dirs:
            env[config.MODULE_PATH_VARIABLE] = os.pathsep.join(merge_paths(module_dirs, split_path(env.get(config.MODULE_PATH_VARIABLE))))
            log.debug(f"{config.MODULE_PATH_VARIABLE} for '{service.name}' set to: {env[config.MODULE_PATH_VARIABLE]}",
                      extra={"data": data})
        else:
            log.warning(f"No dependency directory found for '{service.name}'. Module resolution may fail.", extra={"data": data})

        env["PWD"] = str(service.cwd)
        if service.embedded_runtime:
            env[config.EMBEDDED_RUNTIME_FLAG] = "1"

        env["PATH"] = discover_search_path(base_env, strategies)
    except Exception as e:
        log.warning(f"Environment synthesis for '{service.name}' degraded to the inherited environment: {e}",
                    extra={"data": data})
        env = {str(k): str(v) for k, v in base_env.items()}
        env["PATH"] = base_env.get("PATH") or os.defpath
    return env
