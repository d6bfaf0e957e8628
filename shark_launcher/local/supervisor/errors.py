"""
Failure types raised inside the supervisor package.

They never cross the Supervisor boundary: `Supervisor.start` turns them into a
failed StartResult carrying the message and any captured child output.
"""
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Optional, Sequence, Union

if TYPE_CHECKING:
    from .launcher import ProcessHandle


class SupervisorError(Exception):
    """Base class for every fatal start condition."""


class ServiceEnvironmentError(SupervisorError):
    """A required executable, script or support directory is missing."""

    def __init__(self, message: str, path: Optional[Union[str, Path]] = None):
        self.path = str(path) if path is not None else None
        if self.path and self.path not in message:
            message = f"{message}: {self.path}"
        super().__init__(message)


class PortConflictError(SupervisorError):
    """The fixed port is still occupied after a reclaim attempt."""

    def __init__(self, service: str, port: int, pids: Iterable[int] = ()):
        self.service = service
        self.port = port
        self.pids = sorted(set(pids))
        holders = f" (held by PID {', '.join(map(str, self.pids))})" if self.pids else ""
        super().__init__(
            f"Port {port} required by '{service}' is still in use after reclaim{holders}. "
            "Stop the process holding it and try again."
        )


class LaunchError(SupervisorError):
    """
    A launch attempt reached a failure state.

    :param message: Human readable reason.
    :param output: Captured stdout/stderr of the child, if any.
    :param handle: The spawned process, if one exists and may still need cleanup.
    """

    def __init__(self, message: str, output: str = "", handle: Optional["ProcessHandle"] = None):
        self.output = output
        self.handle = handle
        if output:
            message = f"{message}\n--- Service output ---\n{output}"
        super().__init__(message)


class SpawnError(LaunchError):
    """The operating system refused to create the process."""

    def __init__(self, service: str, command: Sequence[str], cwd: Union[str, Path], reason: str):
        self.command = list(command)
        self.cwd = str(cwd)
        super().__init__(
            f"Failed to spawn '{service}': {reason}\nCommand: {' '.join(self.command)}\nCWD: {self.cwd}"
        )


class EarlyExitError(LaunchError):
    """The child terminated before its port became reachable."""

    def __init__(self, service: str, returncode: Optional[int], output: str = "", handle: Optional["ProcessHandle"] = None):
        self.returncode = returncode
        self.clean = returncode == 0
        how = "cleanly" if self.clean else f"with code {returncode}"
        super().__init__(f"'{service}' exited {how} before it started listening.", output, handle)


class ReadinessTimeoutError(LaunchError):
    """The child stayed alive but never became reachable on its port."""

    def __init__(self, service: str, port: int, waited: float, output: str = "", handle: Optional["ProcessHandle"] = None):
        self.port = port
        self.waited = waited
        pid = f" (PID {handle.pid})" if handle is not None else ""
        super().__init__(
            f"'{service}'{pid} did not start listening on port {port} after {waited:.1f}s. "
            "The process may need to be inspected or killed manually.",
            output,
            handle,
        )
