"""Accumulated lines of one KATCP request.

A Message holds the inform lines whose name matched the request followed
by the reply line, in the order the server sent them.  Each line is a
list of unescaped words (which may contain embedded spaces).
"""

import re
from typing import Iterator, List, Optional, Union

from .protocol import ProtocolError, ReplyError, is_reply

INCOMPLETE = "incomplete"


def _copy_line(line: List[str]) -> List[str]:
    return list(line)


class Message:
    """Inform and reply lines received for one request.

    Lines handed out by any accessor are copies; mutating them never
    affects the Message.
    """

    def __init__(self, lines=None) -> None:
        self._lines = []  # type: List[List[str]]
        for line in lines or ():
            self.append(line)

    # -- Building ----------------------------------------------------------

    def append(self, line: List[str]) -> None:
        """Add a line (a list of words).

        Raises TypeError if line is not a list of str, and ProtocolError
        if the Message already ends in a reply line.
        """
        if not isinstance(line, list) or not all(
                isinstance(word, str) for word in line):
            raise TypeError("line must be a list of str, got {!r}".format(line))
        if not line:
            raise ProtocolError("Cannot append an empty line")
        if self.complete():
            raise ProtocolError(
                "Message already complete, cannot append {!r}".format(line))
        self._lines.append(_copy_line(line))

    # -- Queries -----------------------------------------------------------

    def lines(self) -> List[List[str]]:
        """Return a deep copy of all lines."""
        return [_copy_line(line) for line in self._lines]

    def informs(self) -> List[List[str]]:
        """Return copies of every line except a trailing reply line."""
        count = len(self._lines) - 1 if self.complete() else len(self._lines)
        return [_copy_line(line) for line in self._lines[:count]]

    def complete(self) -> bool:
        """True if the most recently added line is a reply line."""
        return bool(self._lines) and is_reply(self._lines[-1])

    def status(self) -> str:
        """Status word of the reply line, or "incomplete"."""
        if not self.complete():
            return INCOMPLETE
        reply = self._lines[-1]
        return reply[1] if len(reply) > 1 else ""

    def ok(self) -> bool:
        return self.complete() and self.status() == "ok"

    def payload(self) -> str:
        """Reply words after the status word, joined by single spaces.

        Empty when the Message is incomplete or the reply carries no
        payload.
        """
        if not self.complete():
            return ""
        return " ".join(self._lines[-1][2:])

    def reqname(self) -> Optional[str]:
        """Request name taken from the reply line, or None if incomplete."""
        if not self.complete():
            return None
        return self._lines[-1][0][1:]

    def grep(self, pattern, join: Optional[str] = " ") -> List[Union[str, List[str]]]:
        """Return lines having at least one word that matches pattern.

        Each match is joined with join, or returned as a list of words
        if join is None.
        """
        regex = re.compile(pattern)
        matches = [
            _copy_line(line) for line in self._lines
            if any(regex.search(word) for word in line)
        ]
        if join is None:
            return matches
        return [join.join(line) for line in matches]

    def raise_for_status(self) -> "Message":
        """Raise ReplyError unless ok(); return self otherwise."""
        if not self.ok():
            raise ReplyError(self)
        return self

    # -- Ordering ----------------------------------------------------------

    def sort_informs(self) -> "Message":
        """Sort the inform lines in place, keeping the reply line last.

        The sort is stable.  Returns self.
        """
        count = len(self._lines) - 1 if self.complete() else len(self._lines)
        if count > 1:
            self._lines[:count] = sorted(self._lines[:count])
        return self

    def sorted(self) -> "Message":
        """Return a copy with inform lines sorted."""
        return self.copy().sort_informs()

    def copy(self) -> "Message":
        return Message(self._lines)

    # -- Rendering ---------------------------------------------------------

    def render(self) -> str:
        """Join words with spaces and lines with newlines."""
        return "\n".join(" ".join(line) for line in self._lines)

    def __str__(self) -> str:
        return self.render()

    def __repr__(self) -> str:
        if self.complete():
            return "<Message {}, {} lines>".format(
                self.status(), len(self._lines))
        return "<Message {} lines, incomplete>".format(len(self._lines))

    # -- Sequence protocol -------------------------------------------------

    def __len__(self) -> int:
        return len(self._lines)

    def __getitem__(self, index):
        if isinstance(index, slice):
            return [_copy_line(line) for line in self._lines[index]]
        return _copy_line(self._lines[index])

    def __iter__(self) -> Iterator[List[str]]:
        return iter(self.lines())

    def __eq__(self, other) -> bool:
        if not isinstance(other, Message):
            return NotImplemented
        return self._lines == other._lines

    __hash__ = None  # type: ignore
