"""
Persistence ports for the admin-roles core.

Keep these small and framework-agnostic so tests can supply simple fakes.
Both the in-memory and the Postgres adapters implement the two protocols.
"""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from identity_access.domain import Tier
from admin_roles.models import ActivityLogEntry, Payload, RoleGrant


class GrantLedgerProtocol(Protocol):
    """Authoritative set of role grants.

    Invariants enforced by implementations:
        - at most one active grant per (subject_id, tier), checked atomically
          with the insert (`DuplicateActiveGrant`);
        - `active` only ever goes from true to false;
        - `id`, `granted_by`, `granted_at` never change after creation.
    """

    def list_active_grants(self) -> List[RoleGrant]:
        """All grants with active = true, including those already expired."""
        ...

    def create_grant(
        self,
        subject_id: str,
        tier: Tier,
        granted_by: Optional[str],
        *,
        expires_at: Optional[datetime] = None,
        permissions: Optional[Payload] = None,
    ) -> RoleGrant:
        ...

    def revoke_grant(self, grant_id: str) -> RoleGrant:
        """Set active = false; raises NotFound or AlreadyRevoked."""
        ...

    def get_grant(self, grant_id: str) -> RoleGrant:
        ...

    def list_grants_for_subject(self, subject_id: str) -> List[RoleGrant]:
        ...


class ActivityLogProtocol(Protocol):
    """Append-only activity log with hash-chain bookkeeping."""

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
        """Assign id, created_at, sequence and hashes atomically with the insert."""
        ...

    def list_recent_activity(self, limit: int) -> List[ActivityLogEntry]:
        """Newest first."""
        ...

    def iter_activity_chain(self) -> List[ActivityLogEntry]:
        """All entries oldest first, for chain verification."""
        ...


__all__ = ["GrantLedgerProtocol", "ActivityLogProtocol"]
