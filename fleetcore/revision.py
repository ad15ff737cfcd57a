"""Policy revisions as sent to agents in action IDs."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fleetcore.parsed_policy import Policy

_INTEGER = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


def _parse_int64(text: str) -> int | None:
    if not _INTEGER.fullmatch(text):
        return None
    number = int(text)
    if not _INT64_MIN <= number <= _INT64_MAX:
        return None
    return number


@dataclass(frozen=True)
class Revision:
    """A policy revision identified by policy, revision and coordinator index."""

    policy_id: str
    revision_idx: int
    coordinator_idx: int

    @classmethod
    def from_policy(cls, policy: Policy) -> Revision:
        return cls(policy.policy_id, policy.revision_idx, policy.coordinator_idx)

    @classmethod
    def parse(cls, action_id: str) -> Revision | None:
        """Parse ``policy:<id>:<rev>:<coord>``; None if it is not one."""
        parts = action_id.split(":")
        if len(parts) != 4 or parts[0] != "policy":
            return None
        revision_idx = _parse_int64(parts[2])
        coordinator_idx = _parse_int64(parts[3])
        if revision_idx is None or coordinator_idx is None:
            return None
        return cls(parts[1], revision_idx, coordinator_idx)

    def __str__(self) -> str:
        return f"policy:{self.policy_id}:{self.revision_idx}:{self.coordinator_idx}"