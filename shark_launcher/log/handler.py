import os
import sys
import socket
import logging
import threading
import requests
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, FrozenSet, Iterable, List, Optional

SEVERITY_INFO = "info"
SEVERITY_WARN = "warn"
SEVERITY_ERROR = "error"


def severity_for_level(levelno: int) -> str:
    """Maps a logging level onto the three diagnostic severities."""
    if levelno >= logging.ERROR:
        return SEVERITY_ERROR
    if levelno >= logging.WARNING:
        return SEVERITY_WARN
    return SEVERITY_INFO


@dataclass(frozen=True)
class DiagnosticEvent:
    """A single entry of the diagnostic event stream."""
    timestamp: float
    severity: str
    message: str
    source: str = ""
    data: Optional[Dict[str, Any]] = field(default=None)

    def to_dict(self) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "severity": self.severity,
            "message": self.message,
            "source": self.source,
        }
        if self.data is not None:
            entry["data"] = self.data
        return entry


class DiagnosticsHandler(logging.Handler):
    """
    A logging handler that keeps the most recent records as an ordered,
    bounded stream of DiagnosticEvent objects.

    Consumers can poll the whole buffer (`entries`, `since`) or subscribe to
    receive each new event as it is produced. Once the retention count is
    reached the oldest events are discarded first.
    """

    def __init__(self, retention: int = 500, level: int = logging.DEBUG):
        """
        Initializes the diagnostics handler.

        :param retention: Maximum number of events kept in memory.
        :param level: Minimum level of records turned into events.
        """
        super().__init__(level)
        self.retention = retention
        self.events: Deque[DiagnosticEvent] = deque(maxlen=retention)
        self.buffer_lock = threading.Lock()
        self.subscribers: List[Callable[[DiagnosticEvent], None]] = []

    def emit(self, record: logging.LogRecord) -> None:
        """
        Converts a log record into a DiagnosticEvent, stores it and pushes it
        to every subscriber.

        :param record: The log record to be processed.
        """
        try:
            data = getattr(record, "data", None)
            event = DiagnosticEvent(
                timestamp=record.created,
                severity=severity_for_level(record.levelno),
                message=record.getMessage(),
                source=record.name,
                data=dict(data) if isinstance(data, dict) else None,
            )
        except Exception:
            self.handleError(record)
            return

        with self.buffer_lock:
            self.events.append(event)
            subscribers = list(self.subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                # Logging from here would recurse into this handler.
                print(f"ERROR: Diagnostics subscriber {callback!r} failed: {e}", file=sys.stderr)

    def entries(self) -> List[DiagnosticEvent]:
        """Returns a snapshot of the retained events, oldest first."""
        with self.buffer_lock:
            return list(self.events)

    def since(self, timestamp: float) -> List[DiagnosticEvent]:
        """Returns the retained events created strictly after `timestamp`."""
        with self.buffer_lock:
            return [event for event in self.events if event.timestamp > timestamp]

    def subscribe(self, callback: Callable[[DiagnosticEvent], None]) -> Callable[[], None]:
        """
        Registers a callback for new events.

        :param callback: Called with each new DiagnosticEvent, on the logging thread.
        :return: A function that removes the subscription when called.
        """
        with self.buffer_lock:
            self.subscribers.append(callback)

        def unsubscribe() -> None:
            with self.buffer_lock:
                if callback in self.subscribers:
                    self.subscribers.remove(callback)

        return unsubscribe

    def clear(self) -> None:
        with self.buffer_lock:
            self.events.clear()


class ServiceFilter(logging.Filter):
    """
    Passes only records that belong to one of the given services.

    A record belongs to a service when it comes from the `proc.<service>`
    child-output logger, or when its `data` names the service under "service"
    (or lists it under "services").
    """

    def __init__(self, services: Iterable[str] = ()):
        super().__init__()
        self._owners: Counter = Counter()
        self._lock = threading.Lock()
        self.include(services)

    @property
    def services(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._owners)

    def include(self, services: Iterable[str]) -> None:
        """Accepts `services` until a matching `exclude`, so several supervisors can share one stream."""
        with self._lock:
            self._owners.update(set(services))

    def exclude(self, services: Iterable[str]) -> None:
        with self._lock:
            self._owners.subtract(set(services))
            self._owners += Counter()

    @classmethod
    def on(cls, handler: logging.Handler) -> "ServiceFilter":
        """Returns the ServiceFilter installed on `handler`, installing an empty one if needed."""
        for existing in handler.filters:
            if isinstance(existing, cls):
                return existing
        service_filter = cls()
        handler.addFilter(service_filter)
        return service_filter

    def filter(self, record: logging.LogRecord) -> bool:
        services = self.services
        if record.name.startswith("proc."):
            return record.name[5:] in services
        data = getattr(record, "data", None)
        if not isinstance(data, dict):
            return False
        if data.get("service") in services:
            return True
        return not services.isdisjoint(data.get("services") or ())


class LokiHandler(logging.Handler):
    """
    A custom logging handler that sends logs to a Grafana Loki instance
    in batches using a background thread.
    """
    def __init__(self, url: str, org_id: Optional[str] = None, flush_interval: float = 10, batch_size: int = 200):
        """
        Initializes the Loki handler.

        :param url: The base URL of the Loki instance.
        :param org_id: The tenant ID for Loki (e.g., 'X-Scope-OrgID').
        :param flush_interval: Seconds between background flushes.
        :param batch_size: Number of buffered entries that triggers an immediate flush.
        """
        super().__init__()
        self.url = f"{url.rstrip('/')}/loki/api/v1/push"
        self.org_id = org_id
        self.log_buffer: Deque[Dict[str, Any]] = deque()
        self.buffer_lock = threading.Lock()
        self.flush_interval = flush_interval
        self.batch_size = batch_size
        self.hostname = os.getenv('COMPUTERNAME') or os.getenv('HOSTNAME') or socket.gethostname()

        self.stop_event = threading.Event()
        self.flush_thread = threading.Thread(target=self._periodic_flush, daemon=True)
        self.flush_thread.name = "LokiFlushThread"
        self.flush_thread.start()

    def _periodic_flush(self) -> None:
        """Periodically flushes the log buffer until the handler is closed."""
        while not self.stop_event.wait(self.flush_interval):
            self.flush()
        self.flush()

    def emit(self, record: logging.LogRecord) -> None:
        """
        Formats a log record and adds it to the internal buffer.
        If the buffer exceeds the batch size, it triggers a flush.

        :param record: The log record to be processed.
        """
        try:
            # Child service output carries the service name as the last logger component.
            if record.name.startswith('proc.'):
                msg = record.getMessage()
                service = record.name.split('.', 1)[-1]
            else:
                msg = self.format(record)
                service = "launcher"

            log_entry = {
                "stream": {
                    "job": "shark-launcher",
                    "service": service,
                    "level": severity_for_level(record.levelno),
                    "hostname": self.hostname,
                    "logger": record.name,
                },
                "values": [
                    [str(int(record.created * 1e9)), msg]
                ]
            }
            with self.buffer_lock:
                self.log_buffer.append(log_entry)
                if len(self.log_buffer) >= self.batch_size:
                    self._flush_locked()
        except Exception as e:
            print(f"ERROR: LokiHandler failed to process a log record: {e}", file=sys.stderr)

    def _flush_locked(self) -> None:
        """
        Sends the buffered logs to Loki. This method assumes the buffer lock is already held.
        """
        if not self.log_buffer:
            return

        logs_to_send = list(self.log_buffer)
        self.log_buffer.clear()

        # Release the lock before making a blocking network call
        self.buffer_lock.release()
        try:
            headers = {'Content-Type': 'application/json'}
            if self.org_id:
                headers['X-Scope-OrgID'] = self.org_id

            response = requests.post(self.url, json={"streams": logs_to_send}, headers=headers, timeout=5)
            # 204 No Content is the success status for Loki push
            if response.status_code != 204:
                print(f"ERROR: Loki returned non-204 status: {response.status_code} - {response.text}", file=sys.stderr)
        except requests.RequestException as e:
            print(f"CRITICAL: Failed to send {len(logs_to_send)} logs to Loki: {e}", file=sys.stderr)
        finally:
            self.buffer_lock.acquire()

    def flush(self) -> None:
        """Triggers a manual flush of the log buffer in a thread-safe manner."""
        with self.buffer_lock:
            self._flush_locked()

    def close(self) -> None:
        """Shuts down the handler, ensuring all buffered logs are flushed."""
        self.stop_event.set()
        if self.flush_thread.is_alive():
            self.flush_thread.join(timeout=self.flush_interval + 2)
        super().close()
