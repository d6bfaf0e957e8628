import sys
import time
import shutil
import psutil
import logging
import threading
import subprocess
from collections import deque
from enum import Enum
from typing import IO, Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence

from shark_launcher.local.config import effective_settings as config
from shark_launcher.local.supervisor import ports
from shark_launcher.local.supervisor.services import ServiceDescriptor
from shark_launcher.local.supervisor.errors import EarlyExitError, ReadinessTimeoutError, ServiceEnvironmentError, SpawnError

log = logging.getLogger(__name__)


class LaunchState(str, Enum):
    SPAWNING = "spawning"
    LISTENING = "listening"
    EXITED = "exited"
    TIMED_OUT = "timeout"


class OutputBuffer:
    """A thread-safe, bounded accumulator of output lines from one child stream."""

    def __init__(self, max_lines: int):
        self._lines: Deque[str] = deque(maxlen=max_lines)
        self._lock = threading.Lock()

    def append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)

    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def text(self) -> str:
        return "\n".join(self.lines())

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


class ProcessHandle:
    """
    A live reference to one spawned service process.

    Owns the Popen object, the captured stdout/stderr and an exit event set by a
    watcher thread, so callers can wait for exit without polling.
    """

    def __init__(self, service: str, popen: subprocess.Popen, max_lines: Optional[int] = None):
        self.service = service
        self.popen = popen
        self.pid: int = popen.pid
        self.started_at = time.time()
        max_lines = max_lines or config.OUTPUT_BUFFER_LINES
        self.stdout = OutputBuffer(max_lines)
        self.stderr = OutputBuffer(max_lines)
        self._exited = threading.Event()
        self._readers: List[threading.Thread] = []
        self._callback_lock = threading.Lock()
        self._exit_callbacks: List[Callable[["ProcessHandle"], None]] = []
        self._process: Optional[psutil.Process] = None
        try:
            self._process = psutil.Process(self.pid)
        except psutil.Error:
            pass  # Already gone, the watcher reports the exit.
        self._watcher = threading.Thread(target=self._watch_exit, daemon=True, name=f"{service}-exit-watcher")

    def start_watching(self) -> None:
        self._watcher.start()

    def _watch_exit(self) -> None:
        returncode = self.popen.wait()
        log.info(f"'{self.service}' (PID {self.pid}) exited with code {returncode}.",
                 extra={"data": {"service": self.service, "pid": self.pid, "returncode": returncode}})
        with self._callback_lock:
            self._exited.set()
            callbacks = list(self._exit_callbacks)
        for callback in callbacks:
            self._run_exit_callback(callback)

    def _run_exit_callback(self, callback: Callable[["ProcessHandle"], None]) -> None:
        try:
            callback(self)
        except Exception as e:
            log.error(f"Exit callback for '{self.service}' failed: {e}", exc_info=True,
                      extra={"data": {"service": self.service}})

    def on_exit(self, callback: Callable[["ProcessHandle"], None]) -> None:
        """Registers a callback run once the process exits, immediately if it already has."""
        with self._callback_lock:
            already_exited = self._exited.is_set()
            if not already_exited:
                self._exit_callbacks.append(callback)
        if already_exited:
            self._run_exit_callback(callback)

    @property
    def is_running(self) -> bool:
        return not self._exited.is_set() and self.popen.poll() is None

    @property
    def returncode(self) -> Optional[int]:
        return self.popen.returncode

    @property
    def process(self) -> Optional[psutil.Process]:
        """The psutil view of the primary process, None if it could not be attached."""
        return self._process

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Blocks until the process exits or `timeout` elapses.

        :return: True if the process has exited.
        """
        return self._exited.wait(timeout)

    def attach_reader(self, thread: threading.Thread) -> None:
        self._readers.append(thread)
        thread.start()

    def join_readers(self, timeout: float) -> None:
        """Waits for the stream readers to drain, bounded by `timeout` overall."""
        deadline = time.monotonic() + timeout
        for reader in self._readers:
            reader.join(max(0.0, deadline - time.monotonic()))

    def output(self) -> str:
        """The captured output, stdout then stderr, for diagnostics."""
        parts = []
        if len(self.stdout):
            parts.append(f"[stdout]\n{self.stdout.text()}")
        if len(self.stderr):
            parts.append(f"[stderr]\n{self.stderr.text()}")
        return "\n".join(parts)

    def describe(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "pid": self.pid,
            "running": self.is_running,
            "returncode": self.returncode,
            "started_at": self.started_at,
        }


#* --- Process Creation ---
def get_popen_creation_flags() -> Dict[str, Any]:
    """
    Returns platform-specific keyword arguments for subprocess.Popen.

    On Windows the child gets its own process group and no console window. On
    other platforms it gets its own session, so terminal signals aimed at the
    launcher do not reach it before the launcher can stop it in order.

    :return dict: A dictionary of keyword arguments for Popen.
    """
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW}
    return {"start_new_session": True}


def is_error_line(line: str, markers: Sequence[str]) -> bool:
    lowered = line.lower()
    return any(marker in lowered for marker in markers)


def _read_pipe(pipe: IO[bytes], handle: ProcessHandle, stream: str, buffer: OutputBuffer, level: int) -> None:
    """Target function for reader threads. Captures and logs lines from a subprocess pipe."""
    proc_logger = logging.getLogger(f"proc.{handle.service}")
    markers = tuple(m.lower() for m in config.ERROR_MARKERS)
    try:
        for line_bytes in iter(pipe.readline, b""):
            line = line_bytes.decode("utf-8", errors="replace").rstrip()
            if not line.strip():
                continue
            buffer.append(line)
            if is_error_line(line, markers):
                proc_logger.error(
                    f"Error detected in {stream}: {line}",
                    extra={"data": {"service": handle.service, "pid": handle.pid, "stream": stream}},
                )
            else:
                proc_logger.log(level, line)
    except (OSError, ValueError) as e:
        proc_logger.debug(f"Pipe reader for {handle.service} {stream} exited: {e}")
    finally:
        pipe.close()


def capture_process_output(handle: ProcessHandle) -> None:
    """Starts background threads consuming the child's stdout/stderr into its buffers."""
    popen = handle.popen
    if popen.stdout:
        handle.attach_reader(threading.Thread(
            target=_read_pipe,
            args=(popen.stdout, handle, "stdout", handle.stdout, logging.INFO),
            daemon=True,
            name=f"{handle.service}-stdout",
        ))
    if popen.stderr:
        handle.attach_reader(threading.Thread(
            target=_read_pipe,
            args=(popen.stderr, handle, "stderr", handle.stderr, logging.WARNING),
            daemon=True,
            name=f"{handle.service}-stderr",
        ))


def spawn(service: ServiceDescriptor, env: Mapping[str, str], executable: Optional[str] = None) -> ProcessHandle:
    """
    Creates the service process with captured output.

    :param service: The service to spawn.
    :param env: The synthesized environment.
    :param executable: Resolved executable path, defaults to the descriptor's.
    :return: The handle of the new process.
    :raises SpawnError: If the operating system refuses to create the process.
    """
    command = [executable or service.executable, *service.args]
    log.info(f"Spawning '{service.name}': {' '.join(command)} (cwd: {service.cwd})",
             extra={"data": {"service": service.name, "command": command}})
    try:
        popen = subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=str(service.cwd),
            env=dict(env),
            **get_popen_creation_flags(),
        )
    except (OSError, ValueError) as e:
        raise SpawnError(service.name, command, service.cwd, str(e)) from e

    handle = ProcessHandle(service.name, popen)
    capture_process_output(handle)
    handle.start_watching()
    log.info(f"'{service.name}' process spawned with PID: {handle.pid}",
             extra={"data": {"service": service.name, "pid": handle.pid}})
    return handle


def build(service: ServiceDescriptor, env: Mapping[str, str], timeout: Optional[float] = None) -> None:
    """
    Runs the service's build command from its working directory and waits for it.

    :param service: The service whose `build_command` is run.
    :param env: The synthesized environment; NODE_ENV is forced to production.
    :param timeout: Bound in seconds, defaults to UI_BUILD_TIMEOUT.
    :raises ServiceEnvironmentError: If the build cannot run, fails, or leaves no `build_marker` behind.
    """
    timeout = config.UI_BUILD_TIMEOUT if timeout is None else timeout
    command = list(service.build_command)
    command[0] = shutil.which(command[0], path=env.get("PATH")) or command[0]
    data = {"service": service.name, "command": command}
    log.info(f"Building '{service.name}': {' '.join(command)} (cwd: {service.cwd})", extra={"data": data})

    try:
        result = subprocess.run(
            command,
            cwd=str(service.cwd),
            env={**env, "NODE_ENV": "production"},
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
            **get_popen_creation_flags(),
        )
    except subprocess.TimeoutExpired as e:
        output = "".join(_text(part) for part in (e.stdout, e.stderr))
        raise ServiceEnvironmentError(
            f"Build of '{service.name}' did not finish within {timeout:.0f}s\n--- Build output ---\n{output}"
        ) from e
    except (OSError, ValueError) as e:
        raise ServiceEnvironmentError(f"Build of '{service.name}' could not run ({e})", service.cwd) from e

    output = (result.stdout or "") + (result.stderr or "")
    if result.returncode != 0:
        raise ServiceEnvironmentError(
            f"Build of '{service.name}' failed with code {result.returncode}\n--- Build output ---\n{output}"
        )
    if service.build_marker is not None and not service.build_marker.exists():
        raise ServiceEnvironmentError(f"Build of '{service.name}' finished without producing", service.build_marker)
    log.info(f"'{service.name}' build completed.", extra={"data": data})


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value.decode(errors="replace") if isinstance(value, bytes) else value


def wait_for_readiness(handle: ProcessHandle, service: ServiceDescriptor,
                       probe: Callable[[int], bool] = ports.is_listening) -> LaunchState:
    """
    Polls the service port until it listens, the process exits, or the check budget runs out.

    The exit event cuts each poll interval short, so whichever of "listening"
    and "exited" is observed first decides the outcome.

    :return: The terminal LaunchState of this attempt.
    """
    interval, max_checks = service.poll_interval, service.max_checks
    deadline = time.monotonic() + interval * max_checks
    for check in range(1, max_checks + 1):
        if handle.wait(interval):
            return LaunchState.EXITED
        if probe(service.port):
            # A listener alongside a dead child belongs to someone else.
            return LaunchState.EXITED if not handle.is_running else LaunchState.LISTENING
        log.debug(f"Waiting for '{service.name}' on port {service.port} (check {check}/{max_checks})...",
                  extra={"data": {"service": service.name, "port": service.port}})
        if time.monotonic() >= deadline:
            break
    return LaunchState.EXITED if not handle.is_running else LaunchState.TIMED_OUT


def launch(service: ServiceDescriptor, env: Mapping[str, str], executable: Optional[str] = None,
           probe: Callable[[int], bool] = ports.is_listening) -> ProcessHandle:
    """
    Spawns a service and blocks until it is reachable on its port.

    :param service: The service to launch.
    :param env: The synthesized environment.
    :param executable: Resolved executable path, defaults to the descriptor's.
    :param probe: Port readiness check.
    :return: The live handle once the port accepts connections.
    :raises SpawnError: If the process could not be created.
    :raises EarlyExitError: If it exited before listening; carries captured output.
    :raises ReadinessTimeoutError: If it is alive but never listened; carries the handle for cleanup.
    """
    started = time.monotonic()
    handle = spawn(service, env, executable)
    state = wait_for_readiness(handle, service, probe)

    if state is LaunchState.LISTENING:
        log.info(
            f"'{service.name}' is listening on port {service.port} (PID {handle.pid}) after {time.monotonic() - started:.1f}s.",
            extra={"data": {"service": service.name, "pid": handle.pid, "port": service.port}},
        )
        return handle

    handle.join_readers(config.OUTPUT_READER_JOIN_TIMEOUT)
    output = handle.output()
    if state is LaunchState.EXITED:
        handle.wait(config.OUTPUT_READER_JOIN_TIMEOUT)
        error = EarlyExitError(service.name, handle.returncode, output, handle)
    else:
        error = ReadinessTimeoutError(service.name, service.port, time.monotonic() - started, output, handle)
    log.error(str(error), extra={"data": {"service": service.name, "pid": handle.pid, "state": state.value}})
    raise error
