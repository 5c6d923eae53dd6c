"""String literal extraction from decompiled text."""

from __future__ import annotations

import re
from typing import Iterator, List

# A C# regular string literal; escapes are kept for unescape().
STRING_LITERAL = re.compile(r'"((?:[^"\\\n]|\\.)*)"')

_SIMPLE_ESCAPES = {
    "'": "'",
    '"': '"',
    "\\": "\\",
    "0": "\0",
    "a": "\a",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "v": "\v",
}

_ESCAPE = re.compile(r"\\(u[0-9A-Fa-f]{4}|U[0-9A-Fa-f]{8}|x[0-9A-Fa-f]{1,4}|.)")

_QUOTE_MAP = {value: f"\\{key}" for key, value in _SIMPLE_ESCAPES.items() if key != "'"}


def _replace_escape(match: re.Match) -> str:
    escape = match.group(1)
    if escape[0] in "uUx" and len(escape) > 1:
        return chr(int(escape[1:], 16))
    return _SIMPLE_ESCAPES.get(escape, escape)


def unescape(body: str) -> str:
    """Resolve the escape sequences of a literal body."""

    return _ESCAPE.sub(_replace_escape, body)


def quote(value: str) -> str:
    """Render ``value`` as a C# string literal."""

    return '"' + "".join(_QUOTE_MAP.get(char, char) for char in value) + '"'


def iter_string_literals(text: str) -> Iterator[str]:
    """Yield the string literals of ``text`` in order of appearance."""

    for match in STRING_LITERAL.finditer(text):
        yield unescape(match.group(1))


def extract_string_literals(text: str) -> List[str]:
    return list(iter_string_literals(text))


__all__ = ["extract_string_literals", "iter_string_literals", "quote", "unescape"]
