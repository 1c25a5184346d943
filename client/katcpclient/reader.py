"""Background reader for a KATCP connection.

One ReaderLoop thread runs per live Transport.  It classifies every
incoming line and routes it either onto its channel (for the in-flight
request) or into the asynchronous inform log.  Transport failures are
reported on the channel as double-bang sentinel lines, after which the
loop stops for good; a new loop is started only by a reconnect.
"""

import logging
import queue
import threading
from typing import Callable, List, Optional

from .protocol import (
    EscapeError, SOCKET_EOF, SOCKET_ERROR, SOCKET_TIMEOUT,
    inform_name, is_inform, is_reply, is_request, split_line, unescape_line,
)
from .transport import Transport, TransportEOF, TransportTimeout

logger = logging.getLogger(__name__)

# Consecutive read timeouts tolerated while a reply is pending
MAX_TIMEOUTS = 2


class InformLog:
    """Thread-safe list of asynchronous inform lines."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._lines = []  # type: List[str]

    def append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)

    def drain(self, clear: bool = False) -> List[str]:
        """Return a copy of the logged lines, emptying the log if clear."""
        with self._lock:
            lines = list(self._lines)
            if clear:
                self._lines = []
        return lines

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


class ReaderLoop:
    """Reads lines from a Transport on a daemon thread.

    Args:
        transport: The connected Transport to read from.
        timeout: Seconds to wait for each line.
        current_request: Callable returning the in-flight request name,
            or None when no request is in flight.
        informs: Log receiving uncorrelated inform lines.
    """

    def __init__(
        self,
        transport: Transport,
        timeout: float,
        current_request: Callable[[], Optional[str]],
        informs: InformLog,
    ) -> None:
        self.transport = transport
        self.timeout = timeout
        self.channel = queue.Queue()  # type: queue.Queue
        self._current_request = current_request
        self._informs = informs
        self._timeouts = 0
        self._thread = threading.Thread(
            target=self.run, name="katcp-reader", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    # -- Loop --------------------------------------------------------------

    def run(self) -> None:
        while True:
            sentinel = self._read_one()
            if sentinel is not None:
                if self.transport.closed:
                    logger.debug("Reader stopped on closed transport")
                self.channel.put([sentinel])
                return

    def _read_one(self) -> Optional[str]:
        """Read and route one line.

        Returns a sentinel when the loop must stop, None otherwise.
        """
        try:
            line = self.transport.read_line(self.timeout)
        except TransportTimeout:
            if self._current_request() is None:
                self._timeouts = 0
                return None
            self._timeouts += 1
            if self._timeouts >= MAX_TIMEOUTS:
                logger.warning("No reply after %d read timeouts",
                               self._timeouts)
                return SOCKET_TIMEOUT
            return None
        except TransportEOF:
            if not self.transport.closed:
                logger.warning("Read on socket returned EOF")
            return SOCKET_EOF
        except OSError as e:
            if self.transport.closed:
                return SOCKET_EOF
            logger.error("Socket error while reading: %s", e)
            return SOCKET_ERROR

        try:
            words = split_line(line)
        except EscapeError as e:
            logger.error("Cannot decode line %r: %s", line, e)
            return SOCKET_ERROR

        self._timeouts = 0
        self._route(line, words)
        return None

    def _route(self, line: str, words: List[str]) -> None:
        if is_request(words):
            logger.debug("Ignoring request from server: %r", line)
        elif is_reply(words):
            logger.debug("Reply: %r", line)
            self.channel.put(words)
        elif is_inform(words):
            current = self._current_request()
            if current is not None and inform_name(words) == current:
                self.channel.put(words)
            else:
                self._informs.append(unescape_line(line))
        else:
            logger.warning("Malformed line: %r", line)
