"""Records owned by the admin-roles core: role grants and activity log entries."""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from identity_access.domain import Tier

Payload = Dict[str, Any]

ACTION_GRANT_ROLE = "grant_role"
ACTION_REVOKE_ROLE = "revoke_role"
RESOURCE_ROLE_GRANT = "role_grant"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    return ts.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: object, *, code: str = "invalid_timestamp") -> Optional[datetime]:
    """Accept None, an aware datetime or an ISO-8601 string with offset."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError(code) from exc
    else:
        raise ValueError(code)
    if parsed.tzinfo is None:
        raise ValueError(code)
    return parsed.astimezone(timezone.utc)


def copy_payload(value: Optional[Payload]) -> Payload:
    """Detached copy so stored payloads round-trip verbatim and cannot be aliased."""
    return copy.deepcopy(dict(value or {}))


def _fold_integral_floats(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        # jsonb keeps numbers as numeric: 1e20 reads back as 100000000000000000000.
        return int(Decimal(repr(value)))
    if isinstance(value, dict):
        return {k: _fold_integral_floats(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_fold_integral_floats(v) for v in value]
    return value


def normalize_payload(value: object, *, code: str = "invalid_details") -> Payload:
    """JSON object in the exact form a jsonb column returns it.

    Rejects anything that is not a JSON object with string keys (datetimes,
    sets, NaN); tuples become lists and integral floats become ints.
    """
    if value is None:
        return {}
    if not isinstance(value, dict) or not all(isinstance(k, str) for k in value):
        raise ValueError(code)
    try:
        data = json.loads(json.dumps(value, allow_nan=False))
    except (TypeError, ValueError) as exc:
        raise ValueError(code) from exc
    return _fold_integral_floats(data)


@dataclass(frozen=True)
class RoleGrant:
    id: str
    subject_id: str
    tier: Tier
    granted_by: Optional[str]
    granted_at: datetime
    expires_at: Optional[datetime]
    active: bool
    permissions: Payload = field(default_factory=dict)

    def is_expired(self, at: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= at

    def in_force(self, at: datetime) -> bool:
        return self.active and not self.is_expired(at)

    @property
    def is_temporary(self) -> bool:
        return self.expires_at is not None

    def as_revoked(self) -> "RoleGrant":
        return replace(self, active=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "tier": int(self.tier),
            "role_name": self.tier.label,
            "granted_by": self.granted_by,
            "granted_at": iso(self.granted_at),
            "expires_at": iso(self.expires_at),
            "active": self.active,
            "permissions": copy_payload(self.permissions),
        }


@dataclass(frozen=True)
class ActivityLogEntry:
    id: str
    actor_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    details: Payload
    created_at: datetime
    ip_address: Optional[str] = None
    sequence: int = 0
    prev_hash: str = ""
    entry_hash: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor_id": self.actor_id,
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "details": copy_payload(self.details),
            "created_at": iso(self.created_at),
            "ip_address": self.ip_address,
            "sequence": self.sequence,
            "prev_hash": self.prev_hash,
            "entry_hash": self.entry_hash,
        }


__all__ = [
    "Payload",
    "RoleGrant",
    "ActivityLogEntry",
    "ACTION_GRANT_ROLE",
    "ACTION_REVOKE_ROLE",
    "RESOURCE_ROLE_GRANT",
    "utcnow",
    "iso",
    "parse_timestamp",
    "copy_payload",
    "normalize_payload",
]
