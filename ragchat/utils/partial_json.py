"""Best-effort parsing of tool arguments that arrive as JSON fragments.

While a tool-use block is still streaming, its argument buffer is almost always
incomplete JSON. A failed parse at that point means "not yet", never an error.
Only the buffer at block-stop is authoritative, and only a strict parse of it
counts.
"""

import json
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Incomplete:
    """The buffer cannot be read as JSON yet."""


@dataclass(frozen=True)
class Parsed:
    """The buffer (or its tolerant completion) parsed to ``value``."""

    value: Any


@dataclass(frozen=True)
class Invalid:
    """The final buffer is not valid JSON."""

    error: str


ParseResult = Incomplete | Parsed | Invalid

INCOMPLETE = Incomplete()


def _complete_fragment(buffer: str) -> str | None:
    """Close an open string and any open containers at the end of ``buffer``.

    Returns None when the fragment ends somewhere a closer cannot fix, such as
    after a key, a colon or a trailing comma.
    """
    stack: list[str] = []
    in_string = False
    escaped = False

    for char in buffer:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]":
            if not stack:
                return None
            stack.pop()

    completed = buffer
    if in_string:
        if escaped:
            completed = completed[:-1]
        completed += '"'

    stripped = completed.rstrip()
    if stripped.endswith((",", ":")):
        return None

    return completed + "".join(reversed(stack))


def parse_partial(buffer: str) -> ParseResult:
    """Try to read a still-streaming buffer.

    Returns ``Parsed`` when the buffer is already complete JSON or becomes valid
    once its open string and containers are closed, otherwise ``Incomplete``.
    Never returns ``Invalid``.
    """
    if not buffer.strip():
        return INCOMPLETE

    try:
        return Parsed(json.loads(buffer))
    except json.JSONDecodeError:
        pass

    completed = _complete_fragment(buffer)
    if completed is None:
        return INCOMPLETE

    try:
        return Parsed(json.loads(completed))
    except json.JSONDecodeError:
        return INCOMPLETE


def parse_final(buffer: str) -> ParseResult:
    """Strictly parse the buffer of a finished tool-use block.

    An empty buffer is a tool call without arguments and parses to ``{}``.
    """
    if not buffer.strip():
        return Parsed({})

    try:
        return Parsed(json.loads(buffer))
    except json.JSONDecodeError as e:
        return Invalid(str(e))
