"""Role descriptors derived from a policy's output permissions."""

from __future__ import annotations

import hashlib
import json

from fleetcore import smap

DEFAULT_OUTPUT_NAME = "default"
FIELD_OUTPUT_PERMISSIONS = "output_permissions"

_WHITESPACE = " \t\n\r"


class OutputPermissionsError(ValueError):
    """Base class for output permission errors."""


class OutputPermissionsNotFoundError(OutputPermissionsError):
    def __init__(self, message: str = "output_permissions not found") -> None:
        super().__init__(message)


class DefaultOutputNotFoundError(OutputPermissionsError):
    def __init__(self, message: str = "default output not found") -> None:
        super().__init__(message)


class InvalidPermissionsFormatError(OutputPermissionsError):
    def __init__(self, message: str = "invalid permissions format") -> None:
        super().__init__(message)


def _reject_constant(name: str):
    raise ValueError(f"invalid JSON literal: {name}")


_DECODER = json.JSONDecoder(parse_constant=_reject_constant)


def _skip(text: str, pos: int) -> int:
    while pos < len(text) and text[pos] in _WHITESPACE:
        pos += 1
    return pos


def _expect(text: str, pos: int, char: str) -> None:
    if pos >= len(text) or text[pos] != char:
        raise ValueError(f"expected {char!r} at offset {pos}")


def _raw_members(raw: bytes | str) -> dict[str, bytes]:
    """Split a JSON object into its members' exact source bytes."""
    text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
    pos = _skip(text, 0)
    if text.startswith("null", pos) and _skip(text, pos + 4) == len(text):
        return {}
    _expect(text, pos, "{")
    members: dict[str, bytes] = {}
    pos = _skip(text, pos + 1)
    if pos < len(text) and text[pos] == "}":
        pos += 1
    else:
        while True:
            _expect(text, pos, '"')
            key, pos = _DECODER.raw_decode(text, pos)
            pos = _skip(text, pos)
            _expect(text, pos, ":")
            start = _skip(text, pos + 1)
            _, pos = _DECODER.raw_decode(text, start)
            members[key] = text[start:pos].encode("utf-8")
            pos = _skip(text, pos)
            if pos < len(text) and text[pos] == ",":
                pos = _skip(text, pos + 1)
                continue
            _expect(text, pos, "}")
            pos += 1
            break
    if _skip(text, pos) != len(text):
        raise ValueError("trailing data after JSON object")
    return members


def _default_output_hash(raw: bytes | str) -> str:
    section = _raw_members(raw).get(DEFAULT_OUTPUT_NAME)
    if not section:
        return ""
    return hashlib.sha256(section).hexdigest()


def _default_output_map(raw: bytes | str) -> smap.Map:
    permissions = smap.parse(raw)
    default = permissions.get_map(DEFAULT_OUTPUT_NAME) if permissions is not None else None
    if default is None:
        raise DefaultOutputNotFoundError()
    return default


def get_role_descriptors(raw: bytes | str | None) -> tuple[str, bytes | None]:
    """Return the stable hash and canonical JSON of the default output's roles."""
    if not raw:
        return "", None
    output = _default_output_map(raw)
    return output.hash(), output.marshal()


def check_output_permissions_changed(
    previous_hash: str, raw: bytes | str | None
) -> tuple[str, bytes | None, bool]:
    """Return ``(hash, roles, changed)`` for the default output's permissions.

    ``roles`` is None when nothing had to be recomputed.
    """
    if not raw:
        return "", None, False

    # Shortcut: the raw section may hash the same if serialized identically.
    if _default_output_hash(raw) == previous_hash:
        return previous_hash, None, False

    new_hash, roles = get_role_descriptors(raw)
    return new_hash, roles, new_hash != previous_hash