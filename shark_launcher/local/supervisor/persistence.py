import json
import psutil
import logging
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from shark_launcher.local.supervisor.launcher import ProcessHandle

log = logging.getLogger(__name__)


def read_pid_file(pid_file: Path) -> Dict[str, Dict[str, float]]:
    """
    Reads the recorded service processes from disk.

    :param pid_file: Location of the PID file.
    :return: A mapping of service name to {"pid", "create_time"}; empty if missing or invalid.
    """
    if not pid_file.exists():
        return {}
    try:
        with pid_file.open("r") as f:
            records = json.load(f)
    except (json.JSONDecodeError, IOError):
        log.warning(f"Could not read PID file '{pid_file}', assuming stale.")
        pid_file.unlink(missing_ok=True)
        return {}
    if not isinstance(records, dict):
        log.error(f"PID file '{pid_file}' is malformed. Deleting.")
        pid_file.unlink(missing_ok=True)
        return {}
    return {
        name: record for name, record in records.items()
        if isinstance(record, dict) and isinstance(record.get("pid"), int)
    }


def write_pid_file(pid_file: Path, handles: Mapping[str, ProcessHandle],
                   leftovers: Optional[Mapping[str, Dict[str, float]]] = None) -> None:
    """
    Atomically writes the running service processes to the PID file.

    :param pid_file: Location of the PID file.
    :param handles: The supervisor's current handles.
    :param leftovers: Records inherited from an earlier run that have not been swept yet.
    """
    records = {}
    for name, handle in handles.items():
        if not handle.is_running or handle.process is None:
            continue
        try:
            records[name] = {"pid": handle.pid, "create_time": handle.process.create_time()}
        except psutil.Error:
            continue
    for name, record in (leftovers or {}).items():
        key = name if name not in records else f"{name}:{record['pid']}"
        records[key] = dict(record)

    if not records:
        pid_file.unlink(missing_ok=True)
        return

    temp_pid_path = pid_file.with_suffix(".tmp")
    try:
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        with temp_pid_path.open("w") as f:
            json.dump(records, f, indent=4)
        temp_pid_path.replace(pid_file)
    except (IOError, OSError) as e:
        log.error(f"Failed to write PID file: {e}", exc_info=True)
    finally:
        temp_pid_path.unlink(missing_ok=True)


def live_records(records: Mapping[str, Dict[str, float]]) -> Dict[str, Dict[str, float]]:
    """
    Keeps the records whose PID still belongs to the same process.

    A PID is only trusted when its creation time matches the recorded one,
    so a reused PID is never reported.
    """
    live = {}
    for name, record in records.items():
        try:
            proc = psutil.Process(record["pid"])
            if abs(proc.create_time() - float(record.get("create_time", 0))) < 1.0:
                live[name] = dict(record)
            else:
                log.debug(f"Recorded PID {record['pid']} for '{name}' now belongs to another process.")
        except (psutil.NoSuchProcess, psutil.AccessDenied, KeyError, TypeError, ValueError):
            continue
    return live


def recorded_live_pids(pid_file: Path) -> List[int]:
    """Returns the PIDs in the PID file that still belong to the recorded processes."""
    return [record["pid"] for record in live_records(read_pid_file(pid_file)).values()]


def clear_pid_file(pid_file: Path) -> None:
    pid_file.unlink(missing_ok=True)
    pid_file.with_suffix(".tmp").unlink(missing_ok=True)
