"""
This module contains the default configuration settings for the MCP Shark launcher.
It defines paths, supervised service ports, timing bounds, logging options and the
executable search locations used when synthesizing a child service environment.
Values can be overridden through environment variables or a `.env` file.
"""

import os
import sys
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 't', 'yes', 'y')


#* --- Core Paths ---
BASE_DIR = pathlib.Path(__file__).resolve().parent.parent  # Project Root
HOME_DIR = pathlib.Path.home()
DATA_DIR = pathlib.Path(os.getenv("MCP_SHARK_DATA_DIR", str(HOME_DIR / ".mcp-shark")))
LOGS_DIR = DATA_DIR / "logs"

#* --- Application File Paths ---
PID_FILE_PATH = DATA_DIR / "launcher.pid"
OVERRIDES_JSON_PATH = DATA_DIR / "overrides.json"
LOG_EXPORT_PATH = LOGS_DIR / "diagnostics_export.xlsx"
PROCESS_TITLE = "MCP Shark - Launcher"

#* --- MCP Shark Package ---
# Directory of the installed mcp-shark package holding `mcp-server/` and `ui/`.
MCP_SHARK_PATH = os.getenv("MCP_SHARK_PATH", "")
MCP_SHARK_PACKAGE_NAME = "mcp-shark"
MCP_SHARK_CANDIDATE_DIRS = [
    BASE_DIR / "node_modules" / MCP_SHARK_PACKAGE_NAME,
    pathlib.Path.cwd() / "node_modules" / MCP_SHARK_PACKAGE_NAME,
]

#* --- Service Runtime ---
# Plain runtime used to run the service scripts. When SHARK_EMBEDDED_RUNTIME points at a
# multi-purpose host binary, that binary is used instead and told to act as a plain interpreter.
NODE_EXECUTABLE = os.getenv("SHARK_NODE_EXECUTABLE", "node")
EMBEDDED_RUNTIME = os.getenv("SHARK_EMBEDDED_RUNTIME", "")
EMBEDDED_RUNTIME_FLAG = "ELECTRON_RUN_AS_NODE"
MODULE_PATH_VARIABLE = "NODE_PATH"
SERVICE_ENV_DEFAULTS = {
    "NODE_ENV": "production",
    "MCP_SHARK_DATA_DIR": str(DATA_DIR),
}

#* --- Supervised Services ---
MCP_SERVER_NAME = "mcp-server"
UI_SERVER_NAME = "ui-server"
MCP_SERVER_PORT = 9851
UI_SERVER_PORT = 9853
SERVICE_HOST = "localhost"

# Built once before the first UI start when ui/dist/index.html is missing.
UI_BUILD_COMMAND = ("npx", "--yes", "vite", "build")
UI_BUILD_TIMEOUT = 300.0

#* --- Supervisor Timing (seconds) ---
PORT_PROBE_TIMEOUT = 0.1
READINESS_POLL_INTERVAL = 0.5
READINESS_MAX_CHECKS = 20
TERMINATION_GRACE_PERIOD = 2.0
PORT_RECLAIM_WAIT = 2.0
PORT_SWEEP_ATTEMPTS = 3
SHELL_PROBE_TIMEOUT = 2.0
OUTPUT_READER_JOIN_TIMEOUT = 1.0

#* --- Child Output ---
OUTPUT_BUFFER_LINES = 500
ERROR_MARKERS = ("error", "cannot find module", "eaddrinuse", "exception", "fatal")

#* --- Executable Search Path Discovery ---
# 'auto' discovers the interactive shell PATH only when the inherited one looks minimal.
PATH_DISCOVERY = os.getenv("SHARK_PATH_DISCOVERY", "auto").lower()
FALLBACK_SHELLS = ["/bin/zsh", "/bin/bash", "/usr/bin/zsh", "/usr/bin/bash", "/bin/sh"]
SHELL_CONFIG_FILES = [".zshenv", ".zprofile", ".zshrc", ".bash_profile", ".bashrc", ".profile"]
# A PATH made only of these entries is what GUI launchers hand to their children.
MINIMAL_PATH_ENTRIES = {"/usr/bin", "/bin", "/usr/sbin", "/sbin"}

POSIX_TOOL_DIRS = [
    "/opt/homebrew/bin",
    "/opt/homebrew/sbin",
    "/usr/local/bin",
    "/usr/local/sbin",
    "/usr/bin",
    "/bin",
    "/usr/sbin",
    "/sbin",
    "/snap/bin",
    "~/.local/bin",
    "~/bin",
    "~/.volta/bin",
    "~/.nvm/current/bin",
    "~/.nvm/versions/node/*/bin",
    "~/.fnm/aliases/default/bin",
    "~/.asdf/shims",
    "~/.nodenv/shims",
    "~/.local/share/pnpm",
    "~/Library/pnpm",
    "~/.npm-global/bin",
    "~/.yarn/bin",
    "~/.bun/bin",
    "~/.cargo/bin",
    "~/.pyenv/shims",
    "/Applications/Visual Studio Code.app/Contents/Resources/app/bin",
    "/Applications/Cursor.app/Contents/Resources/app/bin",
]

WINDOWS_TOOL_DIRS = [
    "%ProgramFiles%\\nodejs",
    "%ProgramFiles(x86)%\\nodejs",
    "%APPDATA%\\npm",
    "%LOCALAPPDATA%\\Volta\\bin",
    "%LOCALAPPDATA%\\pnpm",
    "%USERPROFILE%\\.bun\\bin",
    "%LOCALAPPDATA%\\Programs\\Microsoft VS Code\\bin",
    "%SystemRoot%\\System32",
    "%SystemRoot%",
]

IS_WINDOWS = sys.platform == "win32"

#* --- Diagnostics & Logging ---
DIAGNOSTICS_RETENTION = 500
LOG_HISTORY_COUNT = 50
VERBOSE_LOGGING = False

# Grafana Loki (optional log shipping)
LOKI_ENABLED = _env_flag("LOKI_ENABLED")
LOKI_URL = os.getenv("LOKI_URL", "http://localhost:3100")
LOKI_ORG_ID = os.getenv("LOKI_ORG_ID", "fake")
LOG_BUFFER_FLUSH_INTERVAL = 10
LOKI_BATCH_SIZE = 200

#* --- MODIFIABLE SETTINGS (Changeable at runtime via 'config' command) ---
MODIFIABLE_SETTINGS = {
    # Readiness & termination
    "READINESS_POLL_INTERVAL", "READINESS_MAX_CHECKS",
    "TERMINATION_GRACE_PERIOD", "PORT_RECLAIM_WAIT", "PORT_SWEEP_ATTEMPTS",
    "SHELL_PROBE_TIMEOUT",
    # Diagnostics
    "OUTPUT_BUFFER_LINES", "LOG_HISTORY_COUNT",
    # Runtime
    "NODE_EXECUTABLE", "PATH_DISCOVERY",
}
