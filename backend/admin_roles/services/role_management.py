"""Role management service layer (Clean Architecture boundary).

Why:
    Encapsulates the grant/revoke workflows and the role panel read views so
    that web adapters and the operator CLI stay thin, and the authorization
    rules can be unit-tested without FastAPI or a database.

Permissions:
    Every operation takes the acting identity explicitly (`actor_id`); there
    is no ambient "current admin". Grant: only SuperAdmin grants SuperAdmin or
    Admin; Admin or higher grants Moderator. Revoke: Admin or higher revokes
    Admin/Moderator; only SuperAdmin revokes SuperAdmin.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

from identity_access.directory import DirectoryUnavailable, IdentityDirectory, resolve_names
from identity_access.domain import Identity, Tier, parse_tier
from admin_roles.audit import AuditRecorder
from admin_roles.authorization import AuthorizationEngine, can_grant, can_revoke, satisfies
from admin_roles.errors import AuditWriteFailure, Forbidden, NotFound, PersistenceFailure
from admin_roles.models import (
    ACTION_GRANT_ROLE,
    ACTION_REVOKE_ROLE,
    RESOURCE_ROLE_GRANT,
    ActivityLogEntry,
    Payload,
    RoleGrant,
    iso,
    normalize_payload,
    parse_timestamp,
    utcnow,
)
from admin_roles.ports import GrantLedgerProtocol

logger = logging.getLogger("campus.admin_roles")

SYSTEM_NAME = "System"
UNKNOWN_USER = "Unknown User"
UNKNOWN_ADMIN = "Unknown Admin"


def _normalize_subject(value: object) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("invalid_subject_id")
    return value.strip()


@contextmanager
def _directory_call() -> Iterator[None]:
    """A directory outage is transient for callers, like a ledger outage."""
    try:
        yield
    except DirectoryUnavailable as exc:
        raise PersistenceFailure("directory_unavailable") from exc


def _lookup_subject(directory: IdentityDirectory, subject: str) -> Identity:
    with _directory_call():
        try:
            return directory.get_identity(subject)
        except LookupError as exc:
            raise NotFound("identity_not_found") from exc


def _normalize_permissions(value: object) -> Payload:
    return normalize_payload(value, code="invalid_permissions")


def _suffix(value: Optional[str]) -> str:
    return (value or "")[-6:]


@dataclass(frozen=True)
class GrantView:
    grant: RoleGrant
    subject: Optional[Identity]
    granted_by_name: str

    def to_dict(self) -> dict:
        data = self.grant.to_dict()
        data["subject_name"] = self.subject.display_name if self.subject else UNKNOWN_USER
        data["subject_email"] = self.subject.email if self.subject else ""
        data["granted_by_name"] = self.granted_by_name
        return data


@dataclass(frozen=True)
class ActivityView:
    entry: ActivityLogEntry
    actor_name: str

    @property
    def summary(self) -> str:
        return f"{self.actor_name} {self.entry.action.replace('_', ' ')} {self.entry.resource_type.replace('_', ' ')}"

    def to_dict(self) -> dict:
        data = self.entry.to_dict()
        data["actor_name"] = self.actor_name
        data["summary"] = self.summary
        return data


@dataclass(frozen=True)
class RoleStats:
    total: int
    super_admins: int
    admins: int
    moderators: int
    temporary: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_admins": self.total,
            "super_admins": self.super_admins,
            "admins": self.admins,
            "moderators": self.moderators,
            "temporary_roles": self.temporary,
        }


@dataclass
class RoleManagementService:
    """Use cases for the role management panel (framework-independent)."""

    ledger: GrantLedgerProtocol
    directory: IdentityDirectory
    audit: AuditRecorder
    authz: AuthorizationEngine
    clock: Callable[[], datetime] = field(default=utcnow)
    activity_limit: int = 50

    # --- Grant workflow -----------------------------------------------------
    def grant_role(
        self,
        actor_id: str,
        subject_id: object,
        tier: object,
        *,
        expires_at: object = None,
        permissions: object = None,
        ip_address: Optional[str] = None,
    ) -> RoleGrant:
        subject = _normalize_subject(subject_id)
        target_tier = parse_tier(tier)
        expiry = parse_timestamp(expires_at, code="invalid_expires_at")
        perms = _normalize_permissions(permissions)

        # Forbidden takes precedence over identity_not_found.
        actor_tier = self.authz.effective_tier(actor_id)
        if not can_grant(actor_tier, target_tier):
            logger.warning(
                "grant_role forbidden actor=%s actor_tier=%s requested=%s",
                _suffix(actor_id),
                actor_tier,
                int(target_tier),
            )
            raise Forbidden()

        identity = _lookup_subject(self.directory, subject)

        # DuplicateActiveGrant propagates here, before any audit write.
        grant = self.ledger.create_grant(
            subject,
            target_tier,
            actor_id,
            expires_at=expiry,
            permissions=perms,
        )
        self.authz.invalidate(subject)
        logger.info("Role granted grant=%s tier=%s subject=%s", grant.id, int(grant.tier), _suffix(subject))

        self._audit_or_escalate(
            grant,
            actor_id=actor_id,
            action=ACTION_GRANT_ROLE,
            details={
                "subject": subject,
                "subject_email": identity.email,
                "tier": int(target_tier),
                "role_name": target_tier.label,
                "expires_at": iso(grant.expires_at),
            },
            ip_address=ip_address,
        )
        return grant

    # --- Revoke workflow ----------------------------------------------------
    def revoke_role(self, actor_id: str, grant_id: object, *, ip_address: Optional[str] = None) -> RoleGrant:
        if not isinstance(grant_id, str) or not grant_id.strip():
            raise NotFound("grant_not_found")
        existing = self.ledger.get_grant(grant_id.strip())

        actor_tier = self.authz.effective_tier(actor_id)
        if not can_revoke(actor_tier, existing.tier):
            logger.warning(
                "revoke_role forbidden actor=%s actor_tier=%s grant=%s",
                _suffix(actor_id),
                actor_tier,
                existing.id,
            )
            raise Forbidden()

        # NotFound / AlreadyRevoked propagate without an audit entry.
        revoked = self.ledger.revoke_grant(existing.id)
        self.authz.invalidate(revoked.subject_id)
        logger.info("Role revoked grant=%s tier=%s", revoked.id, int(revoked.tier))

        self._audit_or_escalate(
            revoked,
            actor_id=actor_id,
            action=ACTION_REVOKE_ROLE,
            details={
                "subject": revoked.subject_id,
                "tier": int(revoked.tier),
                "role_name": revoked.tier.label,
            },
            ip_address=ip_address,
        )
        return revoked

    # --- Bootstrap ----------------------------------------------------------
    def seed_super_admin(self, subject_id: object) -> RoleGrant:
        """System-seeded SuperAdmin grant (operator CLI only).

        The first SuperAdmin cannot be granted through `grant_role` because no
        actor holds a tier yet. The grant carries `granted_by = None` and its
        audit entry `actor_id = None` ("System" in the panel).
        """
        subject = _normalize_subject(subject_id)
        identity = _lookup_subject(self.directory, subject)

        grant = self.ledger.create_grant(subject, Tier.SUPER_ADMIN, None)
        self.authz.invalidate(subject)
        logger.info("SuperAdmin seeded grant=%s subject=%s", grant.id, _suffix(subject))
        self._audit_or_escalate(
            grant,
            actor_id=None,
            action=ACTION_GRANT_ROLE,
            details={
                "subject": subject,
                "subject_email": identity.email,
                "tier": int(Tier.SUPER_ADMIN),
                "role_name": Tier.SUPER_ADMIN.label,
                "expires_at": None,
                "seeded": True,
            },
            ip_address=None,
        )
        return grant

    def _audit_or_escalate(
        self,
        grant: RoleGrant,
        *,
        actor_id: Optional[str],
        action: str,
        details: Payload,
        ip_address: Optional[str],
    ) -> ActivityLogEntry:
        try:
            return self.audit.record(
                actor_id,
                action,
                RESOURCE_ROLE_GRANT,
                grant.id,
                details,
                ip_address=ip_address,
            )
        except AuditWriteFailure as exc:
            logger.error(
                "AUDIT WRITE FAILED after %s: grant=%s persisted without audit entry; reconcile manually (%s)",
                action,
                grant.id,
                exc.detail,
            )
            raise AuditWriteFailure(exc.detail, grant=grant, action=action) from exc

    # --- Read views ---------------------------------------------------------
    def current_grants(self, at: Optional[datetime] = None) -> List[GrantView]:
        """Active, non-expired grants joined with directory identities, newest first."""
        now = at or self.clock()
        grants = [g for g in self.ledger.list_active_grants() if g.in_force(now)]
        grants.sort(key=lambda g: g.granted_at, reverse=True)
        ids = {g.subject_id for g in grants} | {g.granted_by for g in grants if g.granted_by}
        with _directory_call():
            people = resolve_names(self.directory, ids)
        views: List[GrantView] = []
        for g in grants:
            if g.granted_by is None:
                granter = SYSTEM_NAME
            else:
                ident = people.get(g.granted_by)
                granter = ident.display_name if ident else UNKNOWN_USER
            views.append(GrantView(grant=g, subject=people.get(g.subject_id), granted_by_name=granter))
        return views

    def recent_activity(self, limit: Optional[int] = None) -> List[ActivityView]:
        entries = self.audit.recent(limit if limit is not None else self.activity_limit)
        with _directory_call():
            people = resolve_names(self.directory, {e.actor_id for e in entries if e.actor_id})
        views: List[ActivityView] = []
        for e in entries:
            if e.actor_id is None:
                name = SYSTEM_NAME
            else:
                ident = people.get(e.actor_id)
                name = ident.display_name if ident else UNKNOWN_ADMIN
            views.append(ActivityView(entry=e, actor_name=name))
        return views

    def stats(self, at: Optional[datetime] = None) -> RoleStats:
        now = at or self.clock()
        in_force = [g for g in self.ledger.list_active_grants() if g.in_force(now)]
        return RoleStats(
            total=len(in_force),
            super_admins=sum(1 for g in in_force if g.tier == Tier.SUPER_ADMIN),
            admins=sum(1 for g in in_force if g.tier == Tier.ADMIN),
            moderators=sum(1 for g in in_force if g.tier == Tier.MODERATOR),
            temporary=sum(1 for g in in_force if g.is_temporary),
        )

    def grantable_identities(self, at: Optional[datetime] = None) -> List[Identity]:
        """Identities without any grant in force (candidates for the grant dialog)."""
        now = at or self.clock()
        holders = {g.subject_id for g in self.ledger.list_active_grants() if g.in_force(now)}
        with _directory_call():
            identities = self.directory.list_identities()
        return [i for i in identities if i.id not in holders]

    def grant_history(self, subject_id: str) -> List[RoleGrant]:
        return self.ledger.list_grants_for_subject(_normalize_subject(subject_id))

    def caller_access(self, actor_id: str, required_tier: object) -> Dict[str, Any]:
        """Effective tier of the caller and whether it satisfies `required_tier`."""
        required = parse_tier(required_tier)
        tier = self.authz.effective_tier(actor_id)
        return {
            "allowed": satisfies(tier, required),
            "effective_tier": int(tier) if tier is not None else None,
            "role_name": tier.label if tier is not None else None,
        }


__all__ = ["RoleManagementService", "GrantView", "ActivityView", "RoleStats"]
