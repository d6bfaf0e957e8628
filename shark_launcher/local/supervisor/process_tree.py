import os
import re
import sys
import signal
import psutil
import logging
import subprocess
from typing import List, Optional, Set

log = logging.getLogger(__name__)

HELPER_TIMEOUT = 5


class ProcessTreeController:
    """
    Platform capability for signalling process trees and finding port owners.

    All methods are best effort: a process that is already gone, or that we
    are not allowed to inspect, is skipped rather than reported as an error.
    """

    def children(self, pid: int) -> List[psutil.Process]:
        """
        Returns every descendant of `pid` (direct children first).

        :param pid: The parent process id.
        :return: A list of psutil.Process objects, empty if none or on error.
        """
        try:
            return psutil.Process(pid).children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return []

    def request_stop(self, proc: psutil.Process) -> None:
        raise NotImplementedError

    def force_kill(self, proc: psutil.Process) -> None:
        raise NotImplementedError

    def listening_pids(self, port: int) -> Set[int]:
        """
        Finds the ids of processes listening on a TCP port.

        :param port: The TCP port.
        :return: The set of owning PIDs, never including this process.
        """
        pids = self._pids_from_net_connections(port)
        if pids is None:
            pids = self._pids_from_process_scan(port)
        if not pids:
            pids = self._pids_from_helper(port)
        pids.discard(os.getpid())
        pids.discard(0)
        return pids

    def _pids_from_net_connections(self, port: int) -> Optional[Set[int]]:
        try:
            return {
                conn.pid for conn in psutil.net_connections(kind="inet")
                if conn.pid and conn.laddr and conn.laddr.port == port and conn.status == psutil.CONN_LISTEN
            }
        except (psutil.AccessDenied, PermissionError):
            # System-wide enumeration needs privileges on some platforms (macOS).
            return None

    def _pids_from_process_scan(self, port: int) -> Set[int]:
        pids: Set[int] = set()
        for proc in psutil.process_iter(['pid']):
            try:
                connections = proc.net_connections(kind='inet') if hasattr(proc, "net_connections") else proc.connections(kind='inet')
                for conn in connections:
                    if conn.laddr and conn.laddr.port == port and conn.status == psutil.CONN_LISTEN:
                        pids.add(proc.info['pid'])
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return pids

    def _pids_from_helper(self, port: int) -> Set[int]:
        return set()

    def describe(self, proc: psutil.Process) -> str:
        try:
            return f"{proc.name()} (PID {proc.pid})"
        except psutil.Error:
            return f"PID {proc.pid}"


class PosixTreeController(ProcessTreeController):
    """SIGTERM / SIGKILL through psutil, `lsof` as the last port lookup."""

    def request_stop(self, proc: psutil.Process) -> None:
        try:
            log.debug(f"Sending SIGTERM to {self.describe(proc)}")
            proc.send_signal(signal.SIGTERM)
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            pass
        except psutil.AccessDenied as e:
            log.warning(f"Not allowed to stop PID {proc.pid}: {e}")

    def force_kill(self, proc: psutil.Process) -> None:
        try:
            log.warning(f"Killing stubborn process {self.describe(proc)}.")
            proc.kill()
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            pass
        except psutil.AccessDenied as e:
            log.warning(f"Not allowed to kill PID {proc.pid}: {e}")

    def _pids_from_helper(self, port: int) -> Set[int]:
        try:
            result = subprocess.run(
                ["lsof", "-nP", f"-iTCP:{port}", "-sTCP:LISTEN", "-t"],
                capture_output=True, text=True, timeout=HELPER_TIMEOUT, check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            log.debug(f"lsof lookup for port {port} failed: {e}")
            return set()
        return {int(line) for line in result.stdout.split() if line.strip().isdigit()}


class WindowsTreeController(ProcessTreeController):
    """`taskkill` by process id, `netstat -ano` as the last port lookup."""

    def _taskkill(self, pid: int, force: bool) -> None:
        cmd = ["taskkill", "/T", "/PID", str(pid)]
        if force:
            cmd.insert(1, "/F")
        try:
            subprocess.run(cmd, capture_output=True, timeout=HELPER_TIMEOUT, check=False)
        except (OSError, subprocess.TimeoutExpired) as e:
            log.debug(f"{' '.join(cmd)} failed: {e}")

    def request_stop(self, proc: psutil.Process) -> None:
        log.debug(f"Requesting stop of {self.describe(proc)}")
        self._taskkill(proc.pid, force=False)

    def force_kill(self, proc: psutil.Process) -> None:
        log.warning(f"Killing stubborn process {self.describe(proc)}.")
        self._taskkill(proc.pid, force=True)

    def _pids_from_helper(self, port: int) -> Set[int]:
        try:
            result = subprocess.run(
                ["netstat", "-ano", "-p", "TCP"],
                capture_output=True, text=True, timeout=HELPER_TIMEOUT, check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            log.debug(f"netstat lookup for port {port} failed: {e}")
            return set()
        pids: Set[int] = set()
        pattern = re.compile(rf"^\s*TCP\s+\S+:{port}\s+\S+\s+LISTENING\s+(\d+)\s*$", re.IGNORECASE)
        for line in result.stdout.splitlines():
            match = pattern.match(line)
            if match:
                pids.add(int(match.group(1)))
        return pids


def get_tree_controller(platform: Optional[str] = None) -> ProcessTreeController:
    """Selects the controller for the running platform."""
    platform = platform or sys.platform
    if platform == "win32":
        return WindowsTreeController()
    return PosixTreeController()
