"""TCP transport for the katcpclient library.

Owns one socket: connect, close, newline-framed reads with a timeout and
whole-line writes.  Knows nothing about KATCP itself.
"""

import logging
import select
import socket
import time
from typing import Optional

from .protocol import ENCODING, KatcpError

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 5.0

_RECV_SIZE = 4096


class ConnectTimeoutError(KatcpError):
    """Raised when a TCP connect does not complete within its timeout."""


class TransportTimeout(Exception):
    """No complete line arrived within the read timeout."""


class TransportEOF(Exception):
    """The peer closed the connection."""


class Transport:
    """A single TCP connection carrying LF-terminated lines."""

    def __init__(self) -> None:
        self._sock = None  # type: Optional[socket.socket]
        self._buffer = bytearray()
        self._eof = False
        self.closed = False

    def __repr__(self) -> str:
        state = "connected" if self.connected else "disconnected"
        return "Transport({})".format(state)

    # -- Lifecycle ---------------------------------------------------------

    def connect(
        self,
        remote_host: str,
        remote_port: int,
        local_host: Optional[str] = None,
        local_port: Optional[int] = None,
        timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ) -> None:
        """Open the TCP connection.

        Raises ConnectTimeoutError if the connect takes longer than
        timeout seconds; any other failure propagates as OSError.
        """
        source = None
        if local_host is not None or local_port is not None:
            source = (local_host or "", local_port or 0)
        try:
            sock = socket.create_connection(
                (remote_host, remote_port), timeout=timeout,
                source_address=source)
        except socket.timeout:
            raise ConnectTimeoutError(
                "Timed out connecting to {}:{} after {} seconds".format(
                    remote_host, remote_port, timeout))
        # Reads are paced with select(); writes block until sent
        sock.settimeout(None)
        self._sock = sock
        self._buffer = bytearray()
        self._eof = False
        self.closed = False
        logger.debug("Connected to %s:%s", remote_host, remote_port)

    def close(self) -> None:
        """Close the socket.  Safe to call any number of times."""
        self.closed = True
        sock, self._sock = self._sock, None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        finally:
            sock.close()

    @property
    def connected(self) -> bool:
        """True while the socket is open and no EOF or error was seen."""
        return self._sock is not None and not self._eof

    # -- I/O ---------------------------------------------------------------

    def read_line(self, timeout: float) -> str:
        """Return the next line without its LF (or CR LF).

        Raises TransportTimeout if no complete line arrives within
        timeout seconds, TransportEOF if the peer closes the connection.
        Socket errors propagate as OSError.
        """
        deadline = time.monotonic() + timeout
        while True:
            end = self._buffer.find(b"\n")
            if end >= 0:
                raw = bytes(self._buffer[:end])
                del self._buffer[:end + 1]
                line = raw.decode(ENCODING)
                if line.endswith("\r"):
                    line = line[:-1]
                return line

            sock = self._sock
            if sock is None or self._eof:
                raise TransportEOF("Transport is closed")

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TransportTimeout(
                    "No line received within {} seconds".format(timeout))
            try:
                readable, _, _ = select.select([sock], [], [], remaining)
                if not readable:
                    continue
                chunk = sock.recv(_RECV_SIZE)
            except (OSError, ValueError) as e:
                self._eof = True
                if self.closed:
                    raise TransportEOF("Transport is closed")
                if isinstance(e, ValueError):
                    raise OSError(str(e))
                raise

            if not chunk:
                self._eof = True
                if self._buffer:
                    logger.debug("Discarding partial line at EOF: %r",
                                 bytes(self._buffer))
                raise TransportEOF("Connection closed by server")
            self._buffer.extend(chunk)

    def write_line(self, data: bytes) -> None:
        """Send one complete line.  May raise OSError (e.g. broken pipe)."""
        sock = self._sock
        if sock is None:
            raise OSError("Transport is not connected")
        sock.sendall(data)
