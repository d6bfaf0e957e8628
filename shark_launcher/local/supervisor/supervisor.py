import os
import time
import shutil
import logging
import threading
from pathlib import Path
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from shark_launcher.local.config import effective_settings as config
from shark_launcher.log.handler import DiagnosticsHandler, ServiceFilter
from shark_launcher.log.setup import attach_diagnostics, detach_diagnostics, diagnostics_handler
from shark_launcher.local.supervisor import persistence, ports
from shark_launcher.local.supervisor.environment import build_environment
from shark_launcher.local.supervisor.errors import LaunchError, PortConflictError, ServiceEnvironmentError, SupervisorError
from shark_launcher.local.supervisor.launcher import ProcessHandle, build, launch
from shark_launcher.local.supervisor.process_tree import ProcessTreeController, get_tree_controller
from shark_launcher.local.supervisor.services import ServiceDescriptor, build_default_services
from shark_launcher.local.supervisor.termination import force_kill_tree, terminate, terminate_pid

log = logging.getLogger(__name__)


@dataclass
class StartResult:
    """Outcome of `Supervisor.start`. On success `handle` references the live process."""
    success: bool
    message: str = ""
    pid: Optional[int] = None
    error: Optional[str] = None
    output: str = ""
    handle: Optional[ProcessHandle] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        """The plain shape handed to UI callers."""
        result: Dict[str, Any] = {"success": self.success}
        if self.message:
            result["message"] = self.message
        if self.pid is not None:
            result["pid"] = self.pid
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class StopResult:
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success}
        if self.error:
            result["error"] = self.error
        return result


class Supervisor:
    """
    Owns the lifecycle of the MCP server and the UI server.

    Operations on the same service are serialized by a per-service lock: a
    second `start` arriving while one is in flight waits for it and then sees
    the live handle, and a `stop` queues behind a running `start`. Different
    services proceed independently. Every public method returns a result
    instead of raising.
    """

    def __init__(self,
                 services: Optional[Mapping[str, ServiceDescriptor]] = None,
                 controller: Optional[ProcessTreeController] = None,
                 probe: Optional[Callable[[int], bool]] = None,
                 diagnostics: Optional[DiagnosticsHandler] = None,
                 pid_file: Optional[Path] = None,
                 base_env: Optional[Mapping[str, str]] = None,
                 path_strategies: Optional[Sequence[Callable]] = None) -> None:
        """
        :param services: Service descriptors by name, defaults to the two mcp-shark services.
        :param controller: Process-tree controller, selected from the platform when omitted.
        :param probe: Port probe, defaults to `ports.is_listening`.
        :param diagnostics: Diagnostic stream to feed, defaults to the process-wide one.
            A private stream only receives events about this supervisor's services.
        :param pid_file: Where running PIDs are recorded, defaults to PID_FILE_PATH.
        :param base_env: Environment children inherit from, defaults to os.environ at spawn time.
        :param path_strategies: PATH discovery chain override.
        """
        self.services: Dict[str, ServiceDescriptor] = dict(services) if services is not None else build_default_services()
        self.controller = controller or get_tree_controller()
        self.probe = probe or ports.is_listening
        self.diagnostics = diagnostics or diagnostics_handler
        self.pid_file = Path(pid_file) if pid_file is not None else config.PID_FILE_PATH
        self.base_env = dict(base_env) if base_env is not None else None
        self.path_strategies = path_strategies

        self._handles: Dict[str, ProcessHandle] = {}
        self._locks: Dict[str, threading.RLock] = {name: threading.RLock() for name in self.services}
        self._state_lock = threading.Lock()

        self._filter: Optional[ServiceFilter] = None
        if self.diagnostics is not diagnostics_handler:
            self._filter = ServiceFilter.on(self.diagnostics)
            self._filter.include(self.services)
        attach_diagnostics(self.diagnostics)

        # Records left by a run that ended without shutting down; kept in the PID file until swept.
        self._leftovers = persistence.live_records(persistence.read_pid_file(self.pid_file))
        if self._leftovers:
            log.warning(f"Found processes left by an earlier run: {sorted(r['pid'] for r in self._leftovers.values())}",
                        extra=self._tag(leftovers=self._leftovers))

    #* --- Public Operations ---
    def start(self, name: str, args: Optional[Sequence[str]] = None) -> StartResult:
        """
        Starts a service unless it is already running.

        :param name: The service name.
        :param args: Extra arguments appended to the service's startup arguments.
        :return: A StartResult; failures carry the reason and captured output.
        """
        service = self.services.get(name)
        if service is None:
            return StartResult(False, error=self._unknown(name))

        with self._locks[name]:
            try:
                return self._start_locked(service, args)
            except Exception as e:
                log.critical(f"Unexpected error while starting '{name}': {e}", exc_info=True, extra=self._tag(name))
                return StartResult(False, error=f"Unexpected error while starting '{name}': {e}")

    def stop(self, name: str) -> StopResult:
        """
        Stops a service and its descendants. Stopping a service that is not running succeeds.

        :param name: The service name.
        :return: A StopResult.
        """
        if name not in self.services:
            return StopResult(False, error=self._unknown(name))

        with self._locks[name]:
            with self._state_lock:
                handle = self._handles.pop(name, None)
            if handle is None:
                log.debug(f"Stop requested for '{name}', which has no running process.", extra=self._tag(name))
                return StopResult(True)

            log.info(f"Stopping '{name}' (PID {handle.pid})...", extra=self._tag(name, pid=handle.pid))
            terminate(handle, self.controller)
            self._persist()
            return StopResult(True)

    def restart(self, name: str, args: Optional[Sequence[str]] = None) -> StartResult:
        """Stops then starts a service without letting other operations on it interleave."""
        if name not in self.services:
            return StartResult(False, error=self._unknown(name))
        with self._locks[name]:
            self.stop(name)
            return self.start(name, args)

    def status(self, name: str) -> bool:
        """
        Reports whether the service's fixed port is reachable.

        The stored handle is not consulted: the port is the ground truth even
        if the process was killed from outside.
        """
        service = self.services.get(name)
        if service is None:
            return False
        return self.probe(service.port)

    def shutdown_all(self) -> bool:
        """
        Stops every service, then force-kills anything still bound to a service port.

        Processes recorded in the PID file by an earlier run are swept as well.

        :return: True if every service port was confirmed free.
        """
        log.info("Shutting down all services...", extra=self._tag())
        for name in self.services:
            self.stop(name)

        service_ports = [service.port for service in self.services.values()]
        with self._state_lock:
            leftovers = persistence.live_records(self._leftovers)
        recorded = {record["pid"] for record in leftovers.values()}
        recorded |= set(persistence.recorded_live_pids(self.pid_file))
        for attempt in range(1, max(1, config.PORT_SWEEP_ATTEMPTS) + 1):
            pids = set(recorded)
            for port in service_ports:
                pids |= self.controller.listening_pids(port)
            pids.discard(os.getpid())
            recorded = set()

            if not pids and not self._occupied(service_ports):
                break
            if pids:
                log.warning(f"Sweeping leftover processes on service ports (attempt {attempt}): {sorted(pids)}",
                            extra=self._tag(pids=sorted(pids)))
            for pid in pids:
                force_kill_tree(pid, self.controller)
            self._wait_ports_free(service_ports, config.PORT_RECLAIM_WAIT / 2)

        with self._state_lock:
            self._leftovers = {}
        persistence.clear_pid_file(self.pid_file)
        occupied = self._occupied(service_ports)
        if occupied:
            log.error(f"Ports still in use after shutdown: {occupied}", extra=self._tag(ports=occupied))
            return False
        log.info("All services stopped and their ports are free.", extra=self._tag())
        return True

    def handle(self, name: str) -> Optional[ProcessHandle]:
        """The stored handle for a service, if any."""
        with self._state_lock:
            return self._handles.get(name)

    def snapshot(self) -> List[Dict[str, Any]]:
        """Per-service view of port state and the stored handle, for status displays."""
        rows = []
        for name, service in self.services.items():
            handle = self.handle(name)
            rows.append({
                "service": name,
                "port": service.port,
                "listening": self.status(name),
                "pid": handle.pid if handle else None,
                "running": bool(handle and handle.is_running),
                "started_at": handle.started_at if handle else None,
            })
        return rows

    def close(self) -> None:
        """Detaches a private diagnostics stream. Services are left as they are."""
        if self._filter is None:
            return
        self._filter.exclude(self.services)
        if not self._filter.services:
            # Last supervisor on this stream.
            detach_diagnostics(self.diagnostics)
            self.diagnostics.removeFilter(self._filter)
        self._filter = None

    def __enter__(self) -> "Supervisor":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown_all()
        self.close()

    #* --- Start Sequence ---
    def _start_locked(self, service: ServiceDescriptor, args: Optional[Sequence[str]]) -> StartResult:
        name = service.name
        with self._state_lock:
            existing = self._handles.get(name)
            if existing is not None and not existing.is_running:
                log.info(f"Discarding stale handle for '{name}' (PID {existing.pid}, exit code {existing.returncode}).",
                         extra=self._tag(name, pid=existing.pid))
                self._handles.pop(name, None)
                existing = None
        if existing is not None:
            log.info(f"'{name}' is already running (PID {existing.pid}).", extra=self._tag(name, pid=existing.pid))
            return StartResult(True, message=f"{name} already running", pid=existing.pid, handle=existing)

        if args:
            service = service.with_args(args)

        log.info(f"Starting '{name}' on port {service.port}...", extra=self._tag(name, port=service.port))
        try:
            env = build_environment(self._base_env(), service, self.path_strategies)
            if service.needs_build and Path(service.cwd).is_dir():
                build(service, env)
            self._check_required_paths(service)
            executable = self._resolve_executable(service, env)
            self._reclaim_port(service)
            handle = launch(service, env, executable, probe=self.probe)
        except LaunchError as e:
            if e.handle is not None:
                terminate(e.handle, self.controller)
            else:
                log.error(str(e), extra=self._tag(name))
            return StartResult(False, error=str(e), output=e.output)
        except SupervisorError as e:
            log.error(f"Cannot start '{name}': {e}", extra=self._tag(name))
            return StartResult(False, error=str(e))

        with self._state_lock:
            self._handles[name] = handle
        handle.on_exit(self._on_service_exit)
        self._persist()
        return StartResult(True, message=f"{name} started successfully", pid=handle.pid, handle=handle)

    def _check_required_paths(self, service: ServiceDescriptor) -> None:
        for path in service.required_paths:
            if not Path(path).exists():
                raise ServiceEnvironmentError(f"Required path for '{service.name}' does not exist", path)
        if not Path(service.cwd).is_dir():
            raise ServiceEnvironmentError(f"Working directory for '{service.name}' does not exist", service.cwd)

    def _resolve_executable(self, service: ServiceDescriptor, env: Mapping[str, str]) -> str:
        executable = service.executable
        if os.path.dirname(executable):
            if not Path(executable).is_file():
                raise ServiceEnvironmentError(f"Executable for '{service.name}' not found", executable)
            return executable
        resolved = shutil.which(executable, path=env.get("PATH"))
        if resolved is None:
            raise ServiceEnvironmentError(
                f"Executable '{executable}' for '{service.name}' not found on PATH ({env.get('PATH', '')})"
            )
        return resolved

    def _reclaim_port(self, service: ServiceDescriptor) -> None:
        """Frees the service port from whatever holds it, or raises PortConflictError."""
        if not self.probe(service.port):
            return

        pids = self.controller.listening_pids(service.port)
        log.warning(
            f"Port {service.port} is in use, attempting to free it for '{service.name}' (PIDs: {sorted(pids) or 'unknown'})...",
            extra=self._tag(service.name, port=service.port, pids=sorted(pids)),
        )
        for pid in pids:
            terminate_pid(pid, self.controller, service=service.name)

        if not self._wait_ports_free([service.port], config.PORT_RECLAIM_WAIT):
            raise PortConflictError(service.name, service.port, self.controller.listening_pids(service.port) or pids)
        log.info(f"Port {service.port} reclaimed.", extra=self._tag(service.name, port=service.port))

    #* --- Helpers ---
    def _on_service_exit(self, handle: ProcessHandle) -> None:
        with self._state_lock:
            unexpected = self._handles.get(handle.service) is handle
        if unexpected:
            log.warning(
                f"'{handle.service}' (PID {handle.pid}) exited unexpectedly with code {handle.returncode}.",
                extra={"data": handle.describe()},
            )
            self._persist()

    def _persist(self) -> None:
        with self._state_lock:
            handles = dict(self._handles)
            leftovers = dict(self._leftovers)
        persistence.write_pid_file(self.pid_file, handles, leftovers)

    def _occupied(self, service_ports: Sequence[int]) -> List[int]:
        return [port for port in service_ports if self.probe(port)]

    def _wait_ports_free(self, service_ports: Sequence[int], timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        for port in service_ports:
            remaining = max(0.0, deadline - time.monotonic())
            if not ports.wait_until_free(port, remaining, check=self.probe):
                return False
        return True

    def _tag(self, service: Optional[str] = None, **data: Any) -> Dict[str, Any]:
        """Builds the `extra` of a log call so per-supervisor streams can tell whose event it is."""
        owner = {"service": service} if service else {"services": list(self.services)}
        return {"data": {**owner, **data}}

    def _base_env(self) -> Dict[str, str]:
        return dict(self.base_env if self.base_env is not None else os.environ)

    def _unknown(self, name: str) -> str:
        return f"Unknown service '{name}'. Known services: {', '.join(self.services)}"
