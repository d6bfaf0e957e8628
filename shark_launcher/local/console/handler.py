import os
import time
import psutil
import signal
import logging
import threading
from pathlib import Path
from typing import List, Optional

from shark_launcher import __version__
from shark_launcher.local.config import effective_settings as config
from shark_launcher.log import diagnostics_handler, export_diagnostics_to_excel
from shark_launcher.log.handler import DiagnosticEvent
from shark_launcher.local.supervisor import Supervisor, StartResult, get_mcp_shark_version, resolve_mcp_shark_path

log = logging.getLogger(__name__)

_supervisor: Optional[Supervisor] = None
_supervisor_lock = threading.Lock()


def get_supervisor() -> Supervisor:
    """Returns the console's Supervisor, creating it on first use."""
    global _supervisor
    with _supervisor_lock:
        if _supervisor is None:
            _supervisor = Supervisor()
        return _supervisor


def _target_services(args: List[str]) -> List[str]:
    """The service named by the first argument, or every service in start order."""
    supervisor = get_supervisor()
    if args and args[0] in supervisor.services:
        return [args[0]]
    return list(supervisor.services)


def _report(name: str, result: StartResult) -> None:
    if result.success:
        print(f"  {name}: {result.message} (PID {result.pid})")
    else:
        print(f"  {name}: FAILED\n{result.error}")


#* --- Lifecycle Commands ---
def handle_start_command(args: List[str]) -> bool:
    """
    Starts one service (`start <service> [args...]`) or all of them.

    :return bool: True if every requested service is running.
    """
    supervisor = get_supervisor()
    if args and args[0] in supervisor.services:
        result = supervisor.start(args[0], args[1:])
        _report(args[0], result)
        return result.success

    if args:
        print(f"Unknown service '{args[0]}'. Known services: {', '.join(supervisor.services)}")
        return False

    all_ok = True
    for name in supervisor.services:
        result = supervisor.start(name)
        _report(name, result)
        all_ok = all_ok and result.success
    return all_ok


def handle_stop_command(args: List[str]) -> None:
    """Stops one service, or everything including leftovers on the service ports."""
    supervisor = get_supervisor()
    if args:
        result = supervisor.stop(args[0])
        print(f"  {args[0]}: {'stopped' if result.success else result.error}")
        return
    if supervisor.shutdown_all():
        print("All services stopped.")
    else:
        print("WARNING: Some service ports are still in use. See the log for details.")


def handle_restart_command(args: List[str]) -> None:
    supervisor = get_supervisor()
    for name in _target_services(args):
        _report(name, supervisor.restart(name, args[1:] if args and args[0] == name else None))


def handle_run_command(args: List[str]) -> None:
    """
    Starts every service and keeps them running until SIGINT or SIGTERM,
    then shuts everything down.
    """
    supervisor = get_supervisor()
    stop_event = threading.Event()

    def handle_shutdown_signal(signum, frame):
        log.info(f"Signal {signum} received, shutting down services.")
        stop_event.set()

    previous_handlers = {
        signal.SIGINT: signal.signal(signal.SIGINT, handle_shutdown_signal),
        signal.SIGTERM: signal.signal(signal.SIGTERM, handle_shutdown_signal),
    }
    try:
        if not handle_start_command(args):
            log.error("Not all services could be started. Shutting down.")
            return
        print("Services are running. Press Ctrl-C to stop.")
        while not stop_event.wait(1.0):
            pass
    finally:
        supervisor.shutdown_all()
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)


#* --- Status & Logs ---
def _resource_usage(pid: int) -> str:
    try:
        p = psutil.Process(pid)
        cpu = p.cpu_percent(interval=0.1)
        mem = p.memory_info().rss
        return f"Status: {p.status().upper()} | CPU: {cpu:.1f}% | MEM: {mem/1024/1024:.1f} MB"
    except psutil.NoSuchProcess:
        return "Status: STOPPED"
    except psutil.AccessDenied:
        return "Status: RUNNING (Access Denied)"


def display_status() -> None:
    """Shows the port state of every service and the resource usage of the processes we own."""
    supervisor = get_supervisor()
    print("\n--- Service Status ---")
    print(f"  - {'console':<14} : PID {os.getpid():<8} | {_resource_usage(os.getpid())}")
    for row in supervisor.snapshot():
        state = "LISTENING" if row["listening"] else "DOWN"
        line = f"  - {row['service']:<14} : port {row['port']:<6} {state:<10}"
        if row["pid"] is not None:
            line += f"| PID {row['pid']:<8} | {_resource_usage(row['pid'])}"
            if row["running"] and row["started_at"]:
                line += f" | Up: {time.strftime('%H:%M:%S', time.gmtime(time.time() - row['started_at']))}"
        elif row["listening"]:
            line += "| not owned by this launcher"
        print(line)
    print("-" * 22 + "\n")


def _format_event(event: DiagnosticEvent) -> str:
    stamp = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
    return f"{stamp} {event.severity.upper():<5} [{event.source}] {event.message}"


def handle_logs_command() -> None:
    """
    Prints the retained diagnostic events, then tails new ones until Enter is pressed.
    """
    print(f"\n--- Displaying last {config.LOG_HISTORY_COUNT} diagnostic events ---")
    for event in diagnostics_handler.entries()[-config.LOG_HISTORY_COUNT:]:
        print(_format_event(event))

    print("\n--- Now tailing new events (Press Enter to stop) ---\n")
    unsubscribe = diagnostics_handler.subscribe(lambda event: print(_format_event(event)))
    try:
        input()
        print("--- Log tailing stopped. Returning to console. ---")
    except (KeyboardInterrupt, EOFError):
        print("\n--- Log tailing interrupted. Returning to console. ---")
    finally:
        unsubscribe()


def handle_export_logs_command(args: List[str]) -> None:
    output_file = Path(args[0]) if args else config.LOG_EXPORT_PATH
    log.info(f"Exporting diagnostics to '{output_file}'...")
    if export_diagnostics_to_excel(diagnostics_handler.entries(), output_file):
        print(f"Diagnostics exported to {output_file}")
    else:
        print("Export failed. See the log for details.")


#* --- Configuration ---
def _config_show():
    """Displays the current values of the modifiable settings."""
    print("\n--- Current Launcher Configuration ---")
    print(f"(Overrides file: {config.OVERRIDES_JSON_PATH})")
    for key in sorted(config.MODIFIABLE_SETTINGS):
        print(f"  {key} = {config.get(key, 'N/A')}")
    print("---")
    print("Use 'config set <KEY> <VALUE>' to change a setting.")
    print("Changes apply to the next start of each service.")
    print("--------------------------------------\n")


def _config_set(args: List[str]):
    if len(args) < 2:
        print("Usage: config set <SETTING_NAME> <VALUE>")
        return
    key, value_str = args[0].upper(), " ".join(args[1:])
    _, message = config.update_setting(key, value_str)
    print(message)


def _config_help():
    print("\nConfig Command Help:")
    print("  config show                - Display all modifiable settings.")
    print("  config set KEY VALUE       - Change and persist a setting.")
    print("  config help                - Show this help message.")


def handle_config_command(args: List[str]) -> None:
    """
    Handles all sub-commands for the 'config' command.

    :param args: A list of string arguments following the 'config' command.
    """
    sub_command = args[0].lower() if args else "show"

    if sub_command == "show":
        _config_show()
    elif sub_command == "set":
        _config_set(args[1:])
    elif sub_command == "help":
        _config_help()
    else:
        print(f"Unknown config sub-command: '{sub_command}'. Type 'config help' for available commands.")


#* --- Misc ---
def print_version() -> None:
    package_path = resolve_mcp_shark_path()
    print(f"shark-launcher {__version__}")
    print(f"mcp-shark {get_mcp_shark_version(package_path) or 'unknown'} ({package_path})")


def toggle_verbose_logging() -> None:
    """Toggles verbose (DEBUG level) logging for the console handler."""
    config.VERBOSE_LOGGING = not config.VERBOSE_LOGGING
    new_level = logging.DEBUG if config.VERBOSE_LOGGING else logging.INFO

    root_logger = logging.getLogger()
    found_handler = False
    for handler in root_logger.handlers:
        if isinstance(handler, logging.StreamHandler):
            handler.setLevel(new_level)
            found_handler = True
            break

    status = "ON" if config.VERBOSE_LOGGING else "OFF"
    if found_handler:
        print(f"Verbose console logging is now {status}.")
        log.debug("Debug logging test: This message should only appear when verbose is ON.")
    else:
        print("Could not find console handler to modify level.")


def print_help():
    """Prints the main help text for the console."""
    print("\nAvailable commands:")
    print("  start [service] [args] - Start one service, or both when no service is given.")
    print("  stop [service]         - Stop one service, or both and free their ports.")
    print("  restart [service]      - Stop and then start one or both services.")
    print("  status                 - Show port state and resource usage of the services.")
    print("  run                    - Start both services and keep them up until Ctrl-C.")
    print("  logs                   - Show recent diagnostic events and tail new ones.")
    print("  export-logs [filename] - Export diagnostic events to a styled Excel file.")
    print("  config <cmd>           - Manage configuration. Use 'config help' for more details.")
    print("  version                - Show launcher and mcp-shark versions.")
    print("  verbose                - Toggle detailed DEBUG log output in the console.")
    print("  exit                   - Stop all services and exit the console.")
    print()
