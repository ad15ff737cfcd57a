"""Version compatibility between this server and Elasticsearch."""

from __future__ import annotations

import functools
import logging
import re
from dataclasses import dataclass

log = logging.getLogger(__name__)

_VERSION_RE = re.compile(
    r"v?([0-9]+(?:\.[0-9]+)*?)"
    r"(?:-([0-9]+[0-9A-Za-z\-~]*(?:\.[0-9A-Za-z\-~]+)*)"
    r"|(?:-?([A-Za-z\-~]+[0-9A-Za-z\-~]*(?:\.[0-9A-Za-z\-~]+)*)))?"
    r"(?:\+([0-9A-Za-z\-~]+(?:\.[0-9A-Za-z\-~]+)*))?"
)
_INT64_MAX = 2**63 - 1


class VersionError(ValueError):
    """Base class for version errors."""


class UnsupportedVersionError(VersionError):
    """Elasticsearch is older than this server supports."""


class MalformedVersionError(VersionError):
    """A version string could not be parsed."""


def _compare_prerelease_part(a: str, b: str) -> int:
    a_num, b_num = a.isdigit(), b.isdigit()
    if a_num and b_num:
        return (int(a) > int(b)) - (int(a) < int(b))
    if a_num != b_num:
        return -1 if a_num else 1
    return (a > b) - (a < b)


def _compare_prerelease(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return 1
    if not b:
        return -1
    a_parts, b_parts = a.split("."), b.split(".")
    for a_part, b_part in zip(a_parts, b_parts):
        result = _compare_prerelease_part(a_part, b_part)
        if result:
            return result
    return (len(a_parts) > len(b_parts)) - (len(a_parts) < len(b_parts))


@functools.total_ordering
@dataclass(frozen=True, eq=False)
class Version:
    """A parsed version: at least three numeric segments plus optional labels."""

    segments: tuple[int, ...]
    prerelease: str = ""
    metadata: str = ""

    def _compare(self, other: Version) -> int:
        width = max(len(self.segments), len(other.segments))
        mine = self.segments + (0,) * (width - len(self.segments))
        theirs = other.segments + (0,) * (width - len(other.segments))
        if mine != theirs:
            return -1 if mine < theirs else 1
        return _compare_prerelease(self.prerelease, other.prerelease)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._compare(other) == 0

    def __lt__(self, other: Version) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._compare(other) < 0

    def __hash__(self) -> int:
        segments = list(self.segments)
        while len(segments) > 3 and segments[-1] == 0:
            segments.pop()
        return hash((tuple(segments), self.prerelease))

    def __str__(self) -> str:
        text = ".".join(str(segment) for segment in self.segments)
        if self.prerelease:
            text += f"-{self.prerelease}"
        if self.metadata:
            text += f"+{self.metadata}"
        return text


def parse_version(text: str) -> Version:
    """Parse a version, padding it to at least three segments."""
    match = _VERSION_RE.fullmatch(text)
    if match is None:
        raise MalformedVersionError(f"Malformed version: {text}")
    segments = [int(part) for part in match.group(1).split(".")]
    if any(segment > _INT64_MAX for segment in segments):
        raise MalformedVersionError(f"Error parsing version: {text}")
    segments += [0] * (3 - len(segments))
    prerelease = match.group(2) or match.group(3) or ""
    return Version(tuple(segments), prerelease, match.group(4) or "")


def minimize_patch(version: Version) -> str:
    """Return ``major.minor.0`` for ``version``."""
    return ".".join(str(segment) for segment in (*version.segments[:2], 0))


def check_compatibility(fleet_version: str, es_version: str) -> None:
    """Raise unless ``es_version`` is at least the fleet version's major.minor.0."""
    try:
        minimum = parse_version(minimize_patch(parse_version(fleet_version)))
    except MalformedVersionError:
        log.error("failed to build constraint for fleet version %r", fleet_version)
        raise
    version = parse_version(es_version)

    # A release constraint never matches a pre-release version.
    if version.prerelease or version < minimum:
        log.error("failed elasticsearch version check: %s < %s", version, minimum)
        raise UnsupportedVersionError(
            f"unsupported version: {version} does not satisfy >= {minimum}"
        )
    log.info(
        "versions are compatible: fleet %s, elasticsearch %s", fleet_version, es_version
    )