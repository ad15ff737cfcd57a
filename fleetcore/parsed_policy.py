"""Agent policies and their pre-parsed form."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Mapping

from fleetcore import smap
from fleetcore.output_permissions import FIELD_OUTPUT_PERMISSIONS


def _raw_json(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value, separators=(",", ":")).encode("utf-8")


@dataclass(frozen=True)
class Policy:
    """A stored policy revision; ``data`` holds the raw JSON policy body."""

    policy_id: str = ""
    revision_idx: int = 0
    coordinator_idx: int = 0
    data: bytes = b""
    default_fleet_server: bool = False
    timestamp: str = ""
    id: str = ""
    version: int = 0
    seq_no: int = 0

    @classmethod
    def from_dict(cls, doc: Mapping[str, Any]) -> Policy:
        """Build a policy from its document; ``_id``, ``_version`` and ``_seq_no`` are optional."""
        return cls(
            policy_id=doc.get("policy_id", ""),
            revision_idx=int(doc.get("revision_idx", 0)),
            coordinator_idx=int(doc.get("coordinator_idx", 0)),
            data=_raw_json(doc.get("data")),
            default_fleet_server=bool(doc.get("default_fleet_server", False)),
            timestamp=doc.get("@timestamp", ""),
            id=doc.get("_id", ""),
            version=int(doc.get("_version", 0)),
            seq_no=int(doc.get("_seq_no", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the document body, without the index metadata."""
        doc: dict[str, Any] = {}
        if self.timestamp:
            doc["@timestamp"] = self.timestamp
        doc["coordinator_idx"] = self.coordinator_idx
        if self.data:
            doc["data"] = json.loads(self.data)
        doc["default_fleet_server"] = self.default_fleet_server
        doc["policy_id"] = self.policy_id
        doc["revision_idx"] = self.revision_idx
        return doc


@dataclass(frozen=True)
class Role:
    """Canonical JSON of one permission section and its stable hash."""

    raw: bytes
    sha2: str


@dataclass(frozen=True)
class ParsedPolicy:
    """A policy with its top-level fields and output roles decoded."""

    policy: Policy
    fields: dict[str, Any] = field(default_factory=dict)
    roles: dict[str, Role] | None = None

    @classmethod
    def from_policy(cls, policy: Policy) -> ParsedPolicy:
        """Decode ``policy.data``; raises ValueError on malformed JSON."""
        fields = json.loads(policy.data)
        if fields is None:
            fields = {}
        if not isinstance(fields, dict):
            raise ValueError("policy data is not a JSON object")

        roles = None
        if FIELD_OUTPUT_PERMISSIONS in fields:
            roles = parse_permissions(json.dumps(fields[FIELD_OUTPUT_PERMISSIONS]))

        return cls(policy=policy, fields=fields, roles=roles)


def parse_permissions(raw: bytes | str) -> dict[str, Role]:
    """Map each object-valued permission section to its role."""
    permissions = smap.parse(raw)
    if permissions is None:
        return {}
    roles: dict[str, Role] = {}
    for key in permissions:
        section = permissions.get_map(key)
        if section is not None:
            roles[key] = Role(raw=section.marshal(), sha2=section.hash())
    return roles