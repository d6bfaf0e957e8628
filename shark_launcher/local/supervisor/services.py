import json
import logging
from pathlib import Path
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from shark_launcher.local.config import effective_settings as config

log = logging.getLogger(__name__)

# Lower bound for readiness polling, whatever the configured interval.
MIN_POLL_INTERVAL = 0.01


@dataclass(frozen=True)
class ServiceDescriptor:
    """
    Static description of one supervised service.

    The launcher runs `executable` with `args` from `cwd` and considers the
    service ready once `port` accepts connections. Descriptors are created
    once per Supervisor and never mutated; `with_args` returns a copy.

    When `build_marker` is missing and `build_command` is set, the command is
    run from `cwd` before the service is spawned.
    """
    name: str
    executable: str
    cwd: Path
    port: int
    args: Tuple[str, ...] = ()
    dependency_dirs: Tuple[Path, ...] = ()
    required_paths: Tuple[Path, ...] = ()
    extra_env: Mapping[str, str] = field(default_factory=dict)
    embedded_runtime: bool = False
    readiness_interval: Optional[float] = None
    readiness_checks: Optional[int] = None
    build_command: Tuple[str, ...] = ()
    build_marker: Optional[Path] = None

    def with_args(self, extra_args: Sequence[str]) -> "ServiceDescriptor":
        """Returns a copy whose argument list is extended by `extra_args`."""
        return replace(self, args=tuple(self.args) + tuple(str(a) for a in extra_args))

    @property
    def command(self) -> List[str]:
        return [self.executable, *self.args]

    @property
    def poll_interval(self) -> float:
        interval = self.readiness_interval if self.readiness_interval is not None else config.READINESS_POLL_INTERVAL
        return max(MIN_POLL_INTERVAL, float(interval))

    @property
    def max_checks(self) -> int:
        checks = self.readiness_checks if self.readiness_checks is not None else config.READINESS_MAX_CHECKS
        return max(1, int(checks))

    @property
    def needs_build(self) -> bool:
        return bool(self.build_command) and self.build_marker is not None and not Path(self.build_marker).exists()


def _is_package_dir(path: Path) -> bool:
    return (path / "mcp-server").is_dir() and (path / "ui").is_dir()


def resolve_mcp_shark_path() -> Path:
    """
    Locates the installed mcp-shark package.

    Candidates are tried in order: the MCP_SHARK_PATH setting, then the
    configured node_modules locations. If none holds both `mcp-server/` and
    `ui/`, the first candidate is returned anyway so that a later start
    reports the missing files with their full paths.

    :return: The package directory.
    """
    candidates: List[Path] = []
    if config.MCP_SHARK_PATH:
        candidates.append(Path(config.MCP_SHARK_PATH).expanduser())
    candidates.extend(Path(p) for p in config.MCP_SHARK_CANDIDATE_DIRS)

    for candidate in candidates:
        if _is_package_dir(candidate):
            log.debug(f"MCP Shark package found at: {candidate}")
            return candidate.resolve()
        log.debug(f"MCP Shark package candidate rejected: {candidate}")

    log.warning(
        f"{config.MCP_SHARK_PACKAGE_NAME} package not found (tried: {', '.join(map(str, candidates))}). "
        "Install it with 'npm install' or set MCP_SHARK_PATH."
    )
    return candidates[0]


def get_mcp_shark_version(package_path: Path) -> Optional[str]:
    """
    Reads the version from the package's package.json.

    :param package_path: The mcp-shark package directory.
    :return: The version string, or None if it cannot be determined.
    """
    package_json = Path(package_path) / "package.json"
    try:
        return json.loads(package_json.read_text(encoding="utf-8")).get("version") or None
    except (OSError, ValueError, AttributeError) as e:
        log.debug(f"Could not read mcp-shark version from '{package_json}': {e}")
        return None


def _runtime() -> Tuple[str, bool]:
    """Returns the executable used to run service scripts and whether it is an embedded runtime."""
    if config.EMBEDDED_RUNTIME:
        return config.EMBEDDED_RUNTIME, True
    return config.NODE_EXECUTABLE, False


def build_default_services(package_path: Optional[Path] = None) -> Dict[str, ServiceDescriptor]:
    """
    Builds the descriptors of the MCP server and the UI server.

    :param package_path: The mcp-shark package directory, discovered when omitted.
    :return: A mapping of service name to descriptor.
    """
    package_path = Path(package_path) if package_path else resolve_mcp_shark_path()
    executable, embedded = _runtime()
    shared_modules = (package_path / "node_modules", package_path.parent / "node_modules")
    extra_env = dict(config.SERVICE_ENV_DEFAULTS)

    server_dir = package_path / "mcp-server"
    server_script = server_dir / "mcp-shark.js"
    ui_dir = package_path / "ui"
    ui_script = ui_dir / "server.js"
    ui_index = ui_dir / "dist" / "index.html"

    return {
        config.MCP_SERVER_NAME: ServiceDescriptor(
            name=config.MCP_SERVER_NAME,
            executable=executable,
            cwd=server_dir,
            port=config.MCP_SERVER_PORT,
            args=(str(server_script),),
            dependency_dirs=(server_dir / "node_modules", *shared_modules),
            required_paths=(server_dir, server_script),
            extra_env=extra_env,
            embedded_runtime=embedded,
        ),
        config.UI_SERVER_NAME: ServiceDescriptor(
            name=config.UI_SERVER_NAME,
            executable=executable,
            cwd=ui_dir,
            port=config.UI_SERVER_PORT,
            args=(str(ui_script),),
            dependency_dirs=(ui_dir / "node_modules", *shared_modules),
            required_paths=(ui_dir, ui_script, ui_index),
            build_command=tuple(config.UI_BUILD_COMMAND),
            build_marker=ui_index,
            extra_env=extra_env,
            embedded_runtime=embedded,
        ),
    }
