import time
import errno
import socket
import logging
from typing import Callable, Optional

from shark_launcher.local.config import effective_settings as config

log = logging.getLogger(__name__)


def is_listening(port: int, host: Optional[str] = None, timeout: Optional[float] = None) -> bool:
    """
    Reports whether something accepts TCP connections on `host:port`.

    A refused connection, an unreachable host or no answer within `timeout`
    all mean "not serving". This never raises.

    :param port: The TCP port to probe.
    :param host: Host name to connect to, defaults to SERVICE_HOST.
    :param timeout: Connect timeout in seconds, defaults to PORT_PROBE_TIMEOUT.
    :return: True if the port is occupied by a listener.
    """
    host = host or config.SERVICE_HOST
    timeout = config.PORT_PROBE_TIMEOUT if timeout is None else timeout
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError as e:
        return e.errno == errno.EADDRINUSE
    except (OverflowError, ValueError, TypeError) as e:
        log.debug(f"Invalid port probe target {host}:{port}: {e}")
        return False


def wait_until_free(port: int, timeout: float, interval: float = 0.1, host: Optional[str] = None,
                    check: Optional[Callable[[int], bool]] = None) -> bool:
    """
    Polls a port until nothing listens on it any more.

    :param port: The TCP port to watch.
    :param timeout: Overall bound in seconds.
    :param interval: Delay between checks.
    :param host: Host name to connect to, defaults to SERVICE_HOST.
    :param check: Occupancy test used instead of `is_listening` when given.
    :return: True if the port was observed free before the bound elapsed.
    """
    occupied = check or (lambda p: is_listening(p, host=host))
    deadline = time.monotonic() + timeout
    while occupied(port):
        if time.monotonic() >= deadline:
            return False
        time.sleep(interval)
    return True
