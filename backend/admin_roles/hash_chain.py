"""
Hash chain over the activity log (tamper evidence).

Each entry stores the hash of its predecessor and a SHA-256 over its own
canonical content. The first entry links to `GENESIS_HASH`. Editing a payload,
deleting an entry or reordering entries breaks verification at the first
affected sequence number. Details are hashed in the normalized form a jsonb
column hands back, so rows read from Postgres verify like the ones written.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Iterable, Optional

from admin_roles.models import ActivityLogEntry, iso, normalize_payload

GENESIS_HASH = "0" * 64


def canonical_content(
    *,
    entry_id: str,
    sequence: int,
    actor_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: Optional[str],
    details: Dict[str, Any],
    created_at,
    ip_address: Optional[str],
    prev_hash: str,
) -> str:
    body = {
        "id": entry_id,
        "sequence": int(sequence),
        "actor_id": actor_id,
        "action": action,
        "resource_type": resource_type,
        "resource_id": resource_id,
        "details": normalize_payload(details),
        "created_at": iso(created_at),
        "ip_address": ip_address,
        "prev_hash": prev_hash,
    }
    return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_entry_hash(**fields: Any) -> str:
    return hashlib.sha256(canonical_content(**fields).encode("utf-8")).hexdigest()


def hash_for_entry(entry: ActivityLogEntry) -> str:
    return compute_entry_hash(
        entry_id=entry.id,
        sequence=entry.sequence,
        actor_id=entry.actor_id,
        action=entry.action,
        resource_type=entry.resource_type,
        resource_id=entry.resource_id,
        details=entry.details,
        created_at=entry.created_at,
        ip_address=entry.ip_address,
        prev_hash=entry.prev_hash,
    )


def verify_chain(entries: Iterable[ActivityLogEntry]) -> Dict[str, Any]:
    """Verify entries ordered oldest-first, starting at sequence 1.

    Returns:
        {"valid": bool, "checked": int, "broken_at": int | None, "reason": str | None}
    """
    expected_prev = GENESIS_HASH
    expected_seq = 1
    checked = 0
    for entry in entries:
        if entry.sequence != expected_seq:
            return _broken(checked, entry.sequence, "sequence_gap")
        if entry.prev_hash != expected_prev:
            return _broken(checked, entry.sequence, "prev_hash_mismatch")
        if hash_for_entry(entry) != entry.entry_hash:
            return _broken(checked, entry.sequence, "entry_hash_mismatch")
        checked += 1
        expected_prev = entry.entry_hash
        expected_seq += 1
    return {"valid": True, "checked": checked, "broken_at": None, "reason": None}


def _broken(checked: int, sequence: int, reason: str) -> Dict[str, Any]:
    return {"valid": False, "checked": checked, "broken_at": sequence, "reason": reason}


__all__ = ["GENESIS_HASH", "compute_entry_hash", "hash_for_entry", "verify_chain"]
