"""Wire protocol helpers for the katcpclient library.

Handles word escaping, line splitting, line classification and request
formatting per the KATCP wire format.  All wire communication uses
ISO-8859-1 encoding so that binary payloads survive the trip through
``str`` unchanged.
"""

import re
from typing import Iterable, List, Optional

ENCODING = "iso-8859-1"

# Escaped form of the empty word
EMPTY_WORD = "\\@"

# Internal pseudo-replies passed from the reader loop to the request
# engine.  Never sent on the wire.
SOCKET_TIMEOUT = "!!socket-timeout"
SOCKET_ERROR = "!!socket-error"
SOCKET_EOF = "!!socket-eof"

_ESCAPES = {
    "\\": "\\\\",
    " ": "\\_",
    "\0": "\\0",
    "\n": "\\n",
    "\r": "\\r",
    "\x1b": "\\e",
    "\t": "\\t",
}
_ESCAPE_TABLE = str.maketrans(_ESCAPES)
_UNESCAPES = {code[1]: char for char, code in _ESCAPES.items()}

_ESCAPE_RE = re.compile(r"\\(.?)", re.DOTALL)
_WORD_SEPARATOR_RE = re.compile(r"[ \t]+")
_SEPARATOR_SPLIT_RE = re.compile(r"([ \t]+)")


class KatcpError(Exception):
    """Base exception for katcpclient connection and request errors."""


class ProtocolError(KatcpError):
    """Raised on wire protocol violations."""


class EscapeError(ProtocolError):
    """Raised when a word contains an escape sequence KATCP does not define.

    Attributes:
        token: The offending wire token.
    """

    def __init__(self, token: str) -> None:
        self.token = token
        super().__init__("Invalid escape sequence in {!r}".format(token))


class ReplyError(ProtocolError):
    """Raised by Message.raise_for_status() for a non-ok reply.

    Attributes:
        response: The complete (or incomplete) Message.
        status: The reply status word, or "incomplete".
    """

    def __init__(self, response) -> None:
        self.response = response
        self.status = response.status()
        super().__init__(response.render() or self.status)


# ---------------------------------------------------------------------------
# Word codec
# ---------------------------------------------------------------------------

def escape(word: str) -> str:
    """Escape a single word for the wire.

    The empty string becomes ``\\@``; backslash, space, NUL, newline,
    carriage return, escape and tab become two-character sequences.
    Every other character is passed through untouched.
    """
    if not word:
        return EMPTY_WORD
    return word.translate(_ESCAPE_TABLE)


def _unescape_match(match):
    char = match.group(1)
    try:
        return _UNESCAPES[char]
    except KeyError:
        raise EscapeError(match.string)


def unescape(token: str) -> str:
    """Inverse of escape().

    Raises EscapeError for any sequence outside the defined set,
    including ``\\@`` appearing inside a longer word and a trailing
    lone backslash.
    """
    if token == EMPTY_WORD:
        return ""
    return _ESCAPE_RE.sub(_unescape_match, token)


# ---------------------------------------------------------------------------
# Lines
# ---------------------------------------------------------------------------

def split_line(text: str) -> List[str]:
    """Split a raw line on runs of spaces/tabs and unescape each word.

    Returns an empty list for a blank line.
    """
    return [unescape(word) for word in _WORD_SEPARATOR_RE.split(text) if word]


def unescape_line(text: str) -> str:
    """Unescape every word of a raw line, keeping the separators as sent."""
    parts = _SEPARATOR_SPLIT_RE.split(text)
    # Odd indices hold the captured separators
    return "".join(part if i % 2 else unescape(part)
                   for i, part in enumerate(parts))


def normalize_name(name) -> str:
    """Return the wire form of a request name.

    Accepts anything with a useful str() and maps underscores to
    hyphens, so ``some_name`` and ``some-name`` are the same request.
    """
    return str(name).replace("_", "-")


def _to_word(arg) -> str:
    if isinstance(arg, (bytes, bytearray)):
        return bytes(arg).decode(ENCODING)
    return str(arg)


def format_request(name: str, args: Iterable = ()) -> str:
    """Build a request line: ``?name arg1 arg2...`` plus LF.

    The name is used as given (see normalize_name()); each argument is
    converted to a word and escaped.
    """
    words = [name] + [escape(_to_word(arg)) for arg in args]
    return "?{}\n".format(" ".join(words))


def _lead(words: List[str]) -> str:
    return words[0] if words else ""


def is_request(words: List[str]) -> bool:
    return _lead(words).startswith("?")


def is_reply(words: List[str]) -> bool:
    """True for reply lines, including the internal sentinels."""
    return _lead(words).startswith("!")


def is_inform(words: List[str]) -> bool:
    return _lead(words).startswith("#")


def is_sentinel(words: List[str]) -> bool:
    return _lead(words).startswith("!!")


def inform_name(words: List[str]) -> Optional[str]:
    """Return the name of an inform line, or None for other lines."""
    if not is_inform(words):
        return None
    return words[0][1:]
