"""Shared fixtures and helpers for katcpclient tests.

Most tests run against FakeKatcpServer, a scripted in-process KATCP
server listening on 127.0.0.1.  Tests in test_live.py talk to a real
KATCP device and are skipped unless a host is given.

Usage:
    pytest tests/ -v
    pytest tests/test_live.py --host roach2 --port 7147 -v

Host and port can also be set via KATCP_HOST and KATCP_PORT
environment variables.
"""

import os
import socket
import sys
import threading
import time

import pytest

# Add the client library to the path so tests can import katcpclient
_client_dir = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
    "client",
)
if _client_dir not in sys.path:
    sys.path.insert(0, _client_dir)

from katcpclient import KatcpClient


ENCODING = "iso-8859-1"

# Timeout used by clients talking to the fake server; short enough that
# timeout tests stay fast.
FAST_TIMEOUT = 0.1


def wait_for(predicate, timeout=2.0, interval=0.01):
    """Poll predicate until it returns true or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


# ---------------------------------------------------------------------------
# Fake KATCP server
# ---------------------------------------------------------------------------

class FakeKatcpServer:
    """Scripted KATCP server for end-to-end tests.

    ``replies`` maps a request name to one of:

    - a list of raw lines to send back (without LF),
    - None, meaning the request is never answered,
    - a callable ``action(server, conn, line)`` returning a list of lines
      (or None); it may close conn to simulate a dropped connection.

    Requests with no entry get ``!<name> ok``.  Every request line
    received (without LF) is recorded in ``requests``.
    """

    def __init__(self):
        self.replies = {}
        self.requests = []
        self.connections = 0
        self._clients = []
        self._lock = threading.Lock()
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen(5)
        self.host, self.port = self._sock.getsockname()
        self._thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._thread.start()

    def _accept_loop(self):
        while True:
            try:
                conn, _addr = self._sock.accept()
            except OSError:
                return
            with self._lock:
                self.connections += 1
                self._clients.append(conn)
            threading.Thread(
                target=self._serve, args=(conn,), daemon=True).start()

    def _serve(self, conn):
        reader = conn.makefile("rb")
        try:
            for raw in reader:
                line = raw.decode(ENCODING).rstrip("\r\n")
                self.requests.append(line)
                name = line.split(" ")[0][1:]
                action = self.replies.get(name, ["!{} ok".format(name)])
                if callable(action):
                    action = action(self, conn, line)
                if action:
                    self.send("".join(l + "\n" for l in action), conn)
        except (OSError, ValueError):
            pass
        finally:
            reader.close()

    def send(self, text, conn=None):
        """Send raw text on conn, or on the newest connection."""
        if conn is None:
            with self._lock:
                conn = self._clients[-1]
        conn.sendall(text.encode(ENCODING))

    def drop(self, conn):
        """Close one accepted connection from the server side."""
        try:
            conn.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        conn.close()

    def stop(self):
        self._sock.close()
        with self._lock:
            clients, self._clients = self._clients, []
        for conn in clients:
            self.drop(conn)


@pytest.fixture
def server():
    """Provide a running FakeKatcpServer, stopped on teardown."""
    fake = FakeKatcpServer()
    yield fake
    fake.stop()


@pytest.fixture
def client(server):
    """Provide a KatcpClient connected to the fake server."""
    connection = KatcpClient(server.host, server.port, timeout=FAST_TIMEOUT)
    yield connection
    connection.close()


# ---------------------------------------------------------------------------
# Command-line options
# ---------------------------------------------------------------------------

def pytest_addoption(parser):
    parser.addoption(
        "--host",
        default=os.environ.get("KATCP_HOST"),
        help="Host of a live KATCP server for test_live.py "
             "(default: KATCP_HOST env; live tests skipped if unset)",
    )
    parser.addoption(
        "--port",
        type=int,
        default=int(os.environ.get("KATCP_PORT", "7147")),
        help="TCP port of the live KATCP server "
             "(default: KATCP_PORT env or 7147)",
    )


# ---------------------------------------------------------------------------
# Live server fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def katcp_host(request):
    """Return the configured live server host, skipping if unset."""
    host = request.config.getoption("--host")
    if not host:
        pytest.skip("no live KATCP host configured (--host or KATCP_HOST)")
    return host


@pytest.fixture
def katcp_port(request):
    """Return the configured live server port number."""
    return request.config.getoption("--port")


@pytest.fixture
def live_client(katcp_host, katcp_port):
    """Provide a KatcpClient connected to the live server."""
    connection = KatcpClient(katcp_host, katcp_port, timeout=1.0)
    yield connection
    connection.close()
