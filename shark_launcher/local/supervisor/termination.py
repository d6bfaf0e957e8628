import time
import psutil
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from shark_launcher.local.config import effective_settings as config
from shark_launcher.local.supervisor.launcher import ProcessHandle
from shark_launcher.local.supervisor.process_tree import ProcessTreeController, get_tree_controller

log = logging.getLogger(__name__)


def _alive(processes: Iterable[psutil.Process]) -> List[psutil.Process]:
    alive = []
    for proc in processes:
        try:
            if proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE:
                alive.append(proc)
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            continue
        except psutil.AccessDenied:
            alive.append(proc)
    return alive


def _wait_procs(processes: List[psutil.Process], timeout: float) -> List[psutil.Process]:
    """Waits for processes to exit and returns the ones still alive."""
    if not processes:
        return []
    try:
        _, alive = psutil.wait_procs(processes, timeout=max(0.0, timeout))
    except psutil.Error:
        alive = processes
    return _alive(alive)


def _cascade(primary: psutil.Process, wait_primary: Callable[[float], bool],
             controller: ProcessTreeController, grace: float, label: str,
             data: Optional[Dict[str, Any]] = None) -> None:
    """
    Stops `primary` and its descendants: cooperatively first, forcefully once `grace` elapses.

    Descendants are enumerated before any signal is sent, since they are
    re-parented once the primary is gone.
    """
    started = time.monotonic()
    children = controller.children(primary.pid)
    if children:
        log.debug(f"{label}: stopping {len(children)} descendant process(es) along with PID {primary.pid}.",
                  extra={"data": data})

    controller.request_stop(primary)
    for child in children:
        controller.request_stop(child)

    if wait_primary(grace):
        log.info(f"{label} (PID {primary.pid}) stopped gracefully.", extra={"data": data})
        # Give descendants what is left of the grace period, then remove stragglers.
        stragglers = _wait_procs(children, grace - (time.monotonic() - started))
    else:
        log.warning(f"{label} (PID {primary.pid}) did not stop within {grace:.1f}s. Forcing shutdown...",
                    extra={"data": data})
        controller.force_kill(primary)
        stragglers = _alive(children)

    for proc in stragglers:
        controller.force_kill(proc)


def terminate(handle: Optional[ProcessHandle], controller: Optional[ProcessTreeController] = None,
              grace: Optional[float] = None) -> None:
    """
    Stops a launched service and every process it spawned. Never raises.

    :param handle: The handle returned by the launcher; None or an exited handle is a no-op.
    :param controller: Platform process-tree controller.
    :param grace: Seconds to wait for a cooperative exit before killing.
    """
    if handle is None or not handle.is_running:
        return

    controller = controller or get_tree_controller()
    grace = config.TERMINATION_GRACE_PERIOD if grace is None else grace
    label = f"'{handle.service}'"
    data = {"service": handle.service, "pid": handle.pid}
    try:
        primary = handle.process or psutil.Process(handle.pid)
        _cascade(primary, handle.wait, controller, grace, label, data)
    except psutil.NoSuchProcess:
        log.debug(f"{label} (PID {handle.pid}) was already gone.", extra={"data": data})
    except Exception as e:
        log.warning(f"Error while stopping {label} (PID {handle.pid}): {e}", exc_info=True, extra={"data": data})
        try:
            handle.popen.kill()
        except OSError:
            pass
    # Reap the primary so it does not linger as a zombie.
    handle.wait(max(grace, 1.0))


def terminate_pid(pid: int, controller: Optional[ProcessTreeController] = None,
                  grace: Optional[float] = None, service: Optional[str] = None) -> None:
    """
    Stops an arbitrary process tree by id, e.g. a stray listener on a service port. Never raises.

    :param pid: The process id of the tree root.
    :param controller: Platform process-tree controller.
    :param grace: Seconds to wait for a cooperative exit before killing.
    :param service: The service whose port the process holds, for diagnostics.
    """
    controller = controller or get_tree_controller()
    grace = config.TERMINATION_GRACE_PERIOD if grace is None else grace
    data = {"service": service, "pid": pid} if service else None
    try:
        primary = psutil.Process(pid)
        label = controller.describe(primary)
    except psutil.NoSuchProcess:
        return
    except psutil.Error as e:
        log.warning(f"Cannot inspect PID {pid}: {e}")
        return

    def wait_primary(timeout: float) -> bool:
        return not _wait_procs([primary], timeout)

    try:
        _cascade(primary, wait_primary, controller, grace, label, data)
    except psutil.NoSuchProcess:
        pass
    except Exception as e:
        log.warning(f"Error while stopping {label}: {e}", exc_info=True, extra={"data": data})


def force_kill_tree(pid: int, controller: Optional[ProcessTreeController] = None) -> None:
    """Immediately kills a process and its descendants. Never raises."""
    controller = controller or get_tree_controller()
    try:
        primary = psutil.Process(pid)
        processes = [primary, *controller.children(pid)]
    except psutil.NoSuchProcess:
        return
    except psutil.Error as e:
        log.warning(f"Cannot inspect PID {pid}: {e}")
        return
    for proc in processes:
        controller.force_kill(proc)
    _wait_procs(processes, 1.0)
