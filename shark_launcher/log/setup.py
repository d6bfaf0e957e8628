import sys
import logging

from shark_launcher.local.config import effective_settings as config
from shark_launcher.log.handler import DiagnosticsHandler, LokiHandler

# Loggers whose records feed the diagnostic event stream.
DIAGNOSTIC_LOGGERS = ("shark_launcher", "proc")

# The process-wide diagnostic stream consumed by the console and any UI layer.
diagnostics_handler = DiagnosticsHandler(retention=config.DIAGNOSTICS_RETENTION)


class MainFormatter(logging.Formatter):
    """A custom formatter to handle regular logs and raw subprocess logs."""

    def format(self, record):
        # Child service output is printed as-is, prefixed by the service name.
        if record.name.startswith('proc.'):
            return f"[{record.name[5:]}] {record.getMessage()}"

        original_format = self._style._fmt
        self._style._fmt = '%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'
        formatted_message = super().format(record)
        self._style._fmt = original_format
        return formatted_message


def attach_diagnostics(handler: DiagnosticsHandler) -> None:
    """
    Attaches a diagnostics handler to the launcher and child-output loggers.

    :param handler: The DiagnosticsHandler to feed.
    """
    for name in DIAGNOSTIC_LOGGERS:
        logger = logging.getLogger(name)
        if logger.level == logging.NOTSET:
            logger.setLevel(logging.DEBUG)
        if handler not in logger.handlers:
            logger.addHandler(handler)


def detach_diagnostics(handler: DiagnosticsHandler) -> None:
    for name in DIAGNOSTIC_LOGGERS:
        logging.getLogger(name).removeHandler(handler)


def setup_logging(console_level: int = logging.INFO) -> None:
    """
    Configures the root logger for the launcher.
    This sets up handlers for console, the diagnostic stream and optionally Loki,
    clearing any previously configured handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    """
    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    if root_logger.hasHandlers():
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    root_logger.addHandler(console_handler)

    # --- Diagnostic Stream (always enabled) ---
    attach_diagnostics(diagnostics_handler)

    # --- Loki Handler (conditional) ---
    if config.LOKI_ENABLED:
        try:
            loki_handler = LokiHandler(
                url=config.LOKI_URL,
                org_id=config.LOKI_ORG_ID,
                flush_interval=config.LOG_BUFFER_FLUSH_INTERVAL,
                batch_size=config.LOKI_BATCH_SIZE,
            )
            loki_handler.setLevel(logging.INFO)  # Avoid spamming Loki with DEBUG logs
            root_logger.addHandler(loki_handler)
            root_logger.info(f"Grafana Loki logging handler initialized for {config.LOKI_URL}.")
        except Exception as e:
            root_logger.error(f"Failed to initialize Grafana Loki logging handler: {e}")
