"""Loosely typed JSON objects with a stable, canonical encoding and hash."""

from __future__ import annotations

import hashlib
import json
import math
import re
from decimal import Decimal
from typing import Any

_SHORT_ESCAPES = {
    '"': '\\"',
    "\\": "\\\\",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}

_NEEDS_ESCAPE = re.compile('[\x00-\x1f"\\\\<>&\u2028\u2029\ud800-\udfff]')


def _escape_char(match: re.Match) -> str:
    ch = match.group(0)
    short = _SHORT_ESCAPES.get(ch)
    if short is not None:
        return short
    if "\ud800" <= ch <= "\udfff":
        return "\ufffd"
    return f"\\u{ord(ch):04x}"


def _encode_string(text: str) -> str:
    return '"' + _NEEDS_ESCAPE.sub(_escape_char, text) + '"'


def _encode_float(number: float) -> str:
    if not math.isfinite(number):
        raise ValueError(f"unsupported value: {number!r}")
    magnitude = abs(number)
    if magnitude != 0 and (magnitude < 1e-6 or magnitude >= 1e21):
        mantissa, _, exponent = repr(number).partition("e")
        sign, digits = exponent[0], exponent[1:]
        if sign == "-" and len(digits) == 2 and digits[0] == "0":
            digits = digits[1:]
        return f"{mantissa}e{sign}{digits}"
    text = format(Decimal(repr(number)), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def _encode(value: Any) -> str:
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, str):
        return _encode_string(value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _encode_float(value)
    if isinstance(value, dict):
        for key in value:
            if not isinstance(key, str):
                raise TypeError(f"unsupported map key: {key!r}")
        members = (
            f"{_encode_string(key)}:{_encode(value[key])}" for key in sorted(value)
        )
        return "{" + ",".join(members) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_encode(item) for item in value) + "]"
    raise TypeError(f"unsupported type: {type(value).__name__}")


def encode(value: Any) -> bytes:
    """Encode a JSON value compactly, with sorted keys and HTML-safe escaping."""
    return _encode(value).encode("utf-8")


class Map(dict):
    """A JSON object with helpers for typed lookups and hashing."""

    def get_map(self, key: str) -> Map | None:
        """Return the nested object stored at ``key``, or None."""
        value = self.get(key)
        if isinstance(value, Map):
            return value
        if isinstance(value, dict):
            return Map(value)
        return None

    def get_string(self, key: str) -> str:
        """Return the string stored at ``key``, or an empty string."""
        value = self.get(key)
        return value if isinstance(value, str) else ""

    def hash(self) -> str:
        """Return the hex SHA-256 of the canonical encoding plus a newline."""
        return hashlib.sha256(encode(self) + b"\n").hexdigest()

    def marshal(self) -> bytes:
        """Return the canonical JSON encoding."""
        return encode(self)


def _parse_number(text: str) -> float:
    number = float(text)
    if not math.isfinite(number):
        raise ValueError(f"number {text} out of range")
    return number


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON literal: {name}")


def parse(data: bytes | str | None) -> Map | None:
    """Parse a JSON object; empty input or ``null`` yields None."""
    if not data:
        return None
    document = json.loads(
        data,
        object_hook=Map,
        parse_int=_parse_number,
        parse_float=_parse_number,
        parse_constant=_reject_constant,
    )
    if document is None:
        return None
    if not isinstance(document, Map):
        raise ValueError(
            f"cannot unmarshal {type(document).__name__} into an object"
        )
    return document