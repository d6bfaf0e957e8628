import logging
from typing import List

from shark_launcher.local.console.handler import (
    display_status, get_supervisor, handle_config_command, handle_export_logs_command,
    handle_logs_command, handle_restart_command, handle_run_command, handle_start_command,
    handle_stop_command, print_help, print_version, toggle_verbose_logging,
)

log = logging.getLogger(__name__)


def execute_command(command: str, args: List[str]) -> bool:
    """
    Executes a single command from the user.

    :param command: The main command string (e.g., 'start', 'config').
    :param args: A list of arguments for the command.
    :return bool: True if the console should exit, False otherwise.
    """
    log.debug(f"Executing command: {command}, args: {args}")
    command_map = {
        "start": lambda: handle_start_command(args),
        "stop": lambda: handle_stop_command(args),
        "shutdown": lambda: handle_stop_command([]),
        "restart": lambda: handle_restart_command(args),
        "status": display_status,
        "run": lambda: handle_run_command(args),
        "logs": handle_logs_command,
        "export-logs": lambda: handle_export_logs_command(args),
        "config": lambda: handle_config_command(args),
        "version": print_version,
        "verbose": toggle_verbose_logging,
        "help": print_help,
    }

    if command in ("exit", "quit"):
        get_supervisor().shutdown_all()
        return True

    if command in command_map:
        command_map[command]()
    else:
        log.info(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
    return False
