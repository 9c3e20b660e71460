"""Canonical hashing and deterministic fact identifiers.

Hashes are SHA256 over compact, key-sorted JSON so any reader can
recompute them from stored rows alone.
"""

from __future__ import annotations

import hashlib
import json
from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:
    from .models import Claim


def canonical_json(data: Any) -> str:
    """Serialize to the canonical form used for every ledger hash."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def compute_hash(data: Any) -> str:
    """SHA256 hex digest of canonical JSON."""
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()


def compute_section_hash(data: Any) -> str:
    """Hash a section that may be a model, a list of models, or plain data.

    Lists are wrapped as ``{"items": [...]}`` so an empty list still hashes
    to a stable value distinct from an empty dict.
    """
    if hasattr(data, "model_dump"):
        as_dict = data.model_dump(mode="json")
    elif isinstance(data, list):
        as_dict = {"items": [
            item.model_dump(mode="json") if hasattr(item, "model_dump") else item
            for item in data
        ]}
    elif isinstance(data, dict):
        as_dict = data
    else:
        as_dict = {"value": data}

    return compute_hash(as_dict)


def compute_payload_hash(payload: dict[str, Any] | None) -> str:
    """Hash of a fact's source payload; ``None`` hashes as JSON null."""
    return compute_hash(payload)


def compute_allocation_set_hash(claims: Iterable[Claim]) -> str:
    """Pin the exact finalized allocation set a statement was computed from.

    Claims are merged per subject and sorted, so the hash does not depend on
    input order.
    """
    totals: dict[str, int] = {}
    for claim in claims:
        totals[claim.subject_id] = totals.get(claim.subject_id, 0) + claim.units
    items = [
        {"subject_id": subject_id, "units": totals[subject_id]}
        for subject_id in sorted(totals)
    ]
    return compute_section_hash(items)


def build_fact_id(source: str, kind: str, scope: str, native_id: str | int) -> str:
    """Deterministic fact id, e.g. ``github:pr:owner/repo:42``."""
    for name, part in (("source", source), ("kind", kind), ("scope", scope)):
        if not part:
            raise ValueError(f"{name} must be non-empty")
    if native_id is None or str(native_id) == "":
        raise ValueError("native_id must be non-empty")
    return f"{source}:{kind}:{scope}:{native_id}"


__all__ = [
    "build_fact_id",
    "canonical_json",
    "compute_allocation_set_hash",
    "compute_hash",
    "compute_payload_hash",
    "compute_section_hash",
]
