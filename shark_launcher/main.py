import setproctitle
import sys
import logging
import threading

from shark_launcher.local.config import effective_settings as config

setproctitle.setproctitle(config.PROCESS_TITLE)

import shark_launcher.local.console as console
from shark_launcher.log.setup import setup_logging

log = logging.getLogger("shark_launcher.console")

CONSOLE_LOCK = threading.Lock()

# One-shot commands whose services must outlive the command are run in the foreground.
FOREGROUND_COMMANDS = {"start": "run"}


def main() -> None:
    """The main entry point for the console application."""
    setup_logging(logging.DEBUG if config.VERBOSE_LOGGING else logging.INFO)

    # Non-interactive mode for one-off commands
    if len(sys.argv) > 1:
        command, args = sys.argv[1].lower(), sys.argv[2:]
        if "--verbose" in args:
            console.toggle_verbose_logging()
            args.remove("--verbose")

        console.execute_command(FOREGROUND_COMMANDS.get(command, command), args)
        return

    # Interactive mode
    print("--- MCP Shark Launcher Console ---")
    print("Type 'help' for a list of commands.")

    supervisor = console.get_supervisor()
    running = [name for name in supervisor.services if supervisor.status(name)]
    print(f"Services currently listening: {', '.join(running) if running else 'none'}.")

    while True:
        try:
            # The input prompt must be outside the lock to not block background threads
            command_line_str = input("> ")
            with CONSOLE_LOCK:
                if not command_line_str.strip():
                    continue
                command_line = command_line_str.strip().split()
                command, args = command_line[0].lower(), command_line[1:]

                log.debug(f"Received command: {command}, args: {args}")

                if console.execute_command(command, args):
                    break

        except (KeyboardInterrupt, EOFError):
            with CONSOLE_LOCK:
                log.warning("Exiting console, stopping services...")
                supervisor.shutdown_all()
                break
        except Exception as e:
            with CONSOLE_LOCK:
                log.error(f"An unexpected error occurred in the console: {e}", exc_info=True)


if __name__ == "__main__":
    main()
    print("Exiting launcher console. See you next time!")
