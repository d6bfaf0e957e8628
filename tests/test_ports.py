"""Tests for the TCP port prober."""

import socket
import threading

from shark_launcher.local.supervisor import ports


def _listening_socket():
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(8)
    return server


def test_is_listening_detects_listener():
    with _listening_socket() as server:
        port = server.getsockname()[1]
        assert ports.is_listening(port) is True
        assert ports.is_listening(port, host="127.0.0.1") is True


def test_is_listening_false_when_refused(free_port):
    assert ports.is_listening(free_port) is False


def test_is_listening_never_raises_on_bad_input():
    assert ports.is_listening(-1) is False
    assert ports.is_listening(None) is False


def test_wait_until_free_sees_release():
    server = _listening_socket()
    port = server.getsockname()[1]
    threading.Timer(0.2, server.close).start()
    assert ports.wait_until_free(port, timeout=3) is True


def test_wait_until_free_times_out_while_held():
    with _listening_socket() as server:
        assert ports.wait_until_free(server.getsockname()[1], timeout=0.3) is False


def test_wait_until_free_uses_given_check(free_port):
    answers = iter([True, True, False])
    seen = []

    def occupied(port):
        seen.append(port)
        return next(answers)

    assert ports.wait_until_free(free_port, timeout=3, interval=0.01, check=occupied) is True
    assert seen == [free_port] * 3
