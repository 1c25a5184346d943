"""katcpclient -- Python client library for KATCP servers.

Provides KatcpClient for talking to a KATCP device server (for example
tcpborphserver on a ROACH board) over TCP, plus an exception hierarchy
for requests that cannot be completed.

Usage::

    with KatcpClient("roach2") as roach:
        print(roach.request("watchdog"))
        print(roach.listdev("size"))
        print(roach.informs(clear=True))
"""

import logging
import os
import queue
import threading
from typing import List, Optional, Tuple

from .message import Message
from .protocol import (
    ENCODING, EscapeError, KatcpError, ProtocolError, ReplyError,
    SOCKET_EOF, SOCKET_ERROR, SOCKET_TIMEOUT,
    escape, format_request, is_reply, is_sentinel, normalize_name, unescape,
)
from .reader import InformLog, ReaderLoop
from .transport import DEFAULT_CONNECT_TIMEOUT, ConnectTimeoutError, Transport


__all__ = [
    "KatcpClient",
    "KatcpError",
    "ConnectTimeoutError",
    "RequestError",
    "RequestTimeoutError",
    "SocketError",
    "SocketEOF",
    "Message",
    "ProtocolError",
    "EscapeError",
    "ReplyError",
    "escape",
    "unescape",
]

logger = logging.getLogger(__name__)

DEFAULT_PORT = 7147
DEFAULT_TIMEOUT = 0.25


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------

class RequestError(KatcpError):
    """A request failed twice at the transport level.

    Attributes:
        name: The request name as sent on the wire.
        sentinel: The internal failure marker (e.g. "!!socket-eof").
        response: Message holding whatever lines arrived before the
            failure.
    """

    def __init__(self, name: str, sentinel: str, response: Message) -> None:
        self.name = name
        self.sentinel = sentinel
        self.response = response
        super().__init__("Request ?{} failed: {} ({} lines received)".format(
            name, sentinel.lstrip("!"), len(response)))


class RequestTimeoutError(RequestError):
    """No reply arrived (two consecutive read timeouts), even after a retry."""


class SocketError(RequestError):
    """Reading from or writing to the socket failed, even after a retry."""


class SocketEOF(RequestError):
    """The server closed the connection, even after a retry."""


# Map sentinels to exception classes.  Unknown sentinels fall back to
# the base RequestError.
_ERROR_MAP = {
    SOCKET_TIMEOUT: RequestTimeoutError,
    SOCKET_ERROR: SocketError,
    SOCKET_EOF: SocketEOF,
}


def _request_error(name: str, sentinel: str, response: Message) -> RequestError:
    exc_class = _ERROR_MAP.get(sentinel, RequestError)
    return exc_class(name, sentinel, response)


def _default_port() -> int:
    """Return KATCP_PORT from the environment, else DEFAULT_PORT."""
    try:
        return int(os.environ.get("KATCP_PORT", DEFAULT_PORT))
    except ValueError:
        return DEFAULT_PORT


# ---------------------------------------------------------------------------
# Client class
# ---------------------------------------------------------------------------

class KatcpClient:
    """A connection to a KATCP server.

    Any attribute that is not defined here is translated into a request
    of the same name, so ``client.listdev("size")`` is
    ``client.request("listdev", "size")`` and ``client.tap_start(...)``
    sends ``?tap-start ...``.

    Can be used as a context manager::

        with KatcpClient("roach2") as roach:
            print(roach.request("listbof"))

    Or managed manually::

        client = KatcpClient("roach2", autoconnect=False)
        client.connect()
        try:
            print(client.help())
        finally:
            client.close()

    Only one request is in flight at a time; concurrent callers wait
    their turn.  A request that hits a timeout, socket error or EOF is
    retried once on a fresh connection before an error is raised.
    """

    def __init__(
        self,
        host: str,
        port: Optional[int] = None,
        local_host: Optional[str] = None,
        local_port: Optional[int] = None,
        timeout: float = DEFAULT_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        autoconnect: bool = True,
    ) -> None:
        self._host = host
        self._port = int(port) if port is not None else _default_port()
        self._local_host = local_host
        self._local_port = local_port
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self._transport = None  # type: Optional[Transport]
        self._reader = None  # type: Optional[ReaderLoop]
        self._informs = InformLog()
        self._lock = threading.RLock()
        self._reqname = None  # type: Optional[str]
        self._attempts = 0
        if autoconnect:
            self.connect()

    # -- Context manager ---------------------------------------------------

    def __enter__(self) -> "KatcpClient":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore
        self.close()
        return None

    def __str__(self) -> str:
        return "{}:{}".format(self._host, self._port)

    def __repr__(self) -> str:
        state = "connected" if self.connected else "disconnected"
        return "KatcpClient({!r}, port={}, {}, {} inform messages)".format(
            self._host, self._port, state, len(self._informs))

    def __getattr__(self, name: str):
        # Only reached for attributes not found normally
        if name.startswith("_"):
            raise AttributeError(name)

        def send(*args) -> Message:
            return self.request(name, *args)

        send.__name__ = name
        return send

    # -- Properties --------------------------------------------------------

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def connected(self) -> bool:
        """True if the socket is open and its reader is still running."""
        transport = self._transport
        reader = self._reader
        return (transport is not None and transport.connected
                and reader is not None and reader.is_alive())

    @property
    def attempts(self) -> int:
        """Number of request attempts made, retries included."""
        return self._attempts

    # -- Connection lifecycle ----------------------------------------------

    def connect(self) -> None:
        """Connect unless already connected.

        Raises ConnectTimeoutError or OSError; connect failures are not
        retried.
        """
        with self._lock:
            if not self.connected:
                self.reconnect()

    def reconnect(self) -> None:
        """Close any existing connection, then open a new one.

        Starts a new reader thread for the new connection.  The old
        reader stops on its own once its socket is closed.
        """
        with self._lock:
            self._close_transport()
            transport = Transport()
            transport.connect(
                self._host, self._port, self._local_host, self._local_port,
                timeout=self.connect_timeout)
            reader = ReaderLoop(
                transport, self.timeout, self._current_request, self._informs)
            self._transport = transport
            self._reader = reader
            reader.start()
            logger.debug("Connected to %s", self)

    def close(self) -> None:
        """Close the connection.  Safe to call when already closed."""
        with self._lock:
            self._close_transport()

    def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        self._reader = None
        if transport is not None:
            transport.close()

    def _current_request(self) -> Optional[str]:
        return self._reqname

    # -- Requests ----------------------------------------------------------

    def request(self, name, *args) -> Message:
        """Send request name with args and return the server's Message.

        name may use underscores in place of hyphens.  Arguments are
        converted with str() (bytes are sent as raw octets) and escaped.

        The Message is returned whatever its status; use Message.ok() or
        Message.raise_for_status() to check it.  Raises a RequestError
        subclass if the request fails twice at the transport level, or
        once followed by a failed reconnect (the connect error is chained
        as __cause__).  ConnectTimeoutError or OSError propagate as-is
        only when the connection cannot be opened before the first send.
        """
        name = normalize_name(name)
        line = format_request(name, args).encode(ENCODING)
        with self._lock:
            if not self.connected:
                self.reconnect()
            response, sentinel = self._attempt(name, line)
            if sentinel is None:
                return response

            logger.warning("Request ?%s to %s failed (%s), retrying",
                           name, self, sentinel.lstrip("!"))
            try:
                self.reconnect()
            except (ConnectTimeoutError, OSError) as e:
                logger.error("Reconnect to %s failed: %s", self, e)
                raise _request_error(name, sentinel, response) from e
            response, sentinel = self._attempt(name, line)
            if sentinel is None:
                return response
            raise _request_error(name, sentinel, response)

    def _attempt(self, name: str, line: bytes) -> Tuple[Message, Optional[str]]:
        """Send line once and collect lines until the reply.

        Returns (message, None) on success or (partial_message, sentinel)
        when the transport failed.
        """
        self._attempts += 1
        attempt = self._attempts
        reader = self._reader
        response = Message()
        self._reqname = name
        try:
            logger.debug("Attempt %d: sending %r", attempt, line)
            try:
                self._transport.write_line(line)
            except OSError as e:
                logger.warning("Attempt %d: write failed: %s", attempt, e)
                return response, SOCKET_ERROR

            while True:
                words = self._next_line(reader)
                if is_sentinel(words):
                    logger.debug("Attempt %d: %s", attempt, words[0])
                    return response, words[0]
                response.append(words)
                if is_reply(words):
                    return response, None
        finally:
            self._reqname = None

    def _next_line(self, reader: ReaderLoop) -> List[str]:
        """Wait for the next line routed to the in-flight request."""
        while True:
            try:
                return reader.channel.get(timeout=self.timeout)
            except queue.Empty:
                if reader.is_alive():
                    continue
            # Reader has stopped; anything it queued is already there
            try:
                return reader.channel.get_nowait()
            except queue.Empty:
                return [SOCKET_ERROR]

    def informs(self, clear: bool = False) -> List[str]:
        """Return asynchronous inform messages received so far.

        Each is the inform line as received, with every word unescaped
        and the original separators kept.  If clear is True the log is
        emptied.
        """
        return self._informs.drain(clear)

    def help(self, *args) -> Message:
        """Send ?help and return the Message with its informs sorted."""
        return self.request("help", *args).sort_informs()
