"""In-memory admin-roles repository for dev and tests.

A single lock serializes every mutation so the check-then-insert for the
(subject_id, tier) uniqueness rule and the hash-chain append are atomic
within the process.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from identity_access.domain import Tier
from admin_roles.errors import AlreadyRevoked, DuplicateActiveGrant, NotFound
from admin_roles.hash_chain import GENESIS_HASH, compute_entry_hash
from admin_roles.models import ActivityLogEntry, Payload, RoleGrant, copy_payload, utcnow


class InMemoryAdminRolesRepo:
    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._grants: Dict[str, RoleGrant] = {}
        # (subject_id, tier) -> grant id; plays the role of the partial unique index
        self._active_index: Dict[tuple, str] = {}
        self._activity: List[ActivityLogEntry] = []

    # --- Grant ledger -------------------------------------------------------
    def list_active_grants(self) -> List[RoleGrant]:
        with self._lock:
            grants = [g for g in self._grants.values() if g.active]
        return sorted(grants, key=lambda g: g.granted_at, reverse=True)

    def create_grant(
        self,
        subject_id: str,
        tier: Tier,
        granted_by: Optional[str],
        *,
        expires_at: Optional[datetime] = None,
        permissions: Optional[Payload] = None,
    ) -> RoleGrant:
        key = (str(subject_id), int(tier))
        with self._lock:
            if key in self._active_index:
                raise DuplicateActiveGrant()
            granted_at = self._clock()
            if expires_at is not None and expires_at < granted_at:
                granted_at = expires_at
            grant = RoleGrant(
                id=str(uuid4()),
                subject_id=str(subject_id),
                tier=Tier(tier),
                granted_by=granted_by,
                granted_at=granted_at,
                expires_at=expires_at,
                active=True,
                permissions=copy_payload(permissions),
            )
            self._grants[grant.id] = grant
            self._active_index[key] = grant.id
        return grant

    def revoke_grant(self, grant_id: str) -> RoleGrant:
        with self._lock:
            grant = self._grants.get(str(grant_id))
            if grant is None:
                raise NotFound("grant_not_found")
            if not grant.active:
                raise AlreadyRevoked()
            revoked = grant.as_revoked()
            self._grants[grant.id] = revoked
            self._active_index.pop((grant.subject_id, int(grant.tier)), None)
        return revoked

    def get_grant(self, grant_id: str) -> RoleGrant:
        with self._lock:
            grant = self._grants.get(str(grant_id))
        if grant is None:
            raise NotFound("grant_not_found")
        return grant

    def list_grants_for_subject(self, subject_id: str) -> List[RoleGrant]:
        with self._lock:
            grants = [g for g in self._grants.values() if g.subject_id == str(subject_id)]
        return sorted(grants, key=lambda g: g.granted_at, reverse=True)

    # --- Activity log -------------------------------------------------------
    def append_activity(
        self,
        *,
        actor_id: Optional[str],
        action: str,
        resource_type: str,
        resource_id: Optional[str],
        details: Payload,
        ip_address: Optional[str] = None,
    ) -> ActivityLogEntry:
        with self._lock:
            prev_hash = self._activity[-1].entry_hash if self._activity else GENESIS_HASH
            sequence = len(self._activity) + 1
            entry_id = str(uuid4())
            created_at = self._clock()
            stored_details = copy_payload(details)
            entry_hash = compute_entry_hash(
                entry_id=entry_id,
                sequence=sequence,
                actor_id=actor_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                details=stored_details,
                created_at=created_at,
                ip_address=ip_address,
                prev_hash=prev_hash,
            )
            entry = ActivityLogEntry(
                id=entry_id,
                actor_id=actor_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                details=stored_details,
                created_at=created_at,
                ip_address=ip_address,
                sequence=sequence,
                prev_hash=prev_hash,
                entry_hash=entry_hash,
            )
            self._activity.append(entry)
        return entry

    def list_recent_activity(self, limit: int) -> List[ActivityLogEntry]:
        with self._lock:
            newest_first = list(reversed(self._activity))
        return newest_first[: max(0, int(limit))]

    def iter_activity_chain(self) -> List[ActivityLogEntry]:
        with self._lock:
            return list(self._activity)


__all__ = ["InMemoryAdminRolesRepo"]
