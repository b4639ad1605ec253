"""Typed outcomes of the admin-roles core.

`NotFound`, `DuplicateActiveGrant`, `AlreadyRevoked` and `Forbidden` are
expected business outcomes: surface them to the caller, never retry them.
`PersistenceFailure` is transient; the whole operation may be retried.
`AuditWriteFailure` means a privileged change persisted without its audit
entry and must be escalated to an operator.
"""

from __future__ import annotations

from typing import Any, Optional


class AdminRolesError(Exception):
    """Base class for admin-roles failures."""

    code = "admin_roles_error"

    def __init__(self, detail: Optional[str] = None) -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code


class NotFound(AdminRolesError, LookupError):
    """Referenced identity or grant does not exist."""

    code = "not_found"


class DuplicateActiveGrant(AdminRolesError):
    """The subject already holds an active grant for the requested tier."""

    code = "duplicate_active_grant"


class AlreadyRevoked(AdminRolesError):
    """The grant was revoked before; nothing to do."""

    code = "already_revoked"


class Forbidden(AdminRolesError, PermissionError):
    """The acting identity lacks the tier required for this operation."""

    code = "forbidden"


class PersistenceFailure(AdminRolesError):
    """Underlying store unreachable or write rejected; safe to retry."""

    code = "persistence_failure"


class AuditWriteFailure(AdminRolesError):
    """Ledger mutation succeeded but its audit entry could not be written."""

    code = "audit_write_failed"

    def __init__(self, detail: Optional[str] = None, *, grant: Any = None, action: str = "") -> None:
        super().__init__(detail)
        self.grant = grant
        self.action = action


__all__ = [
    "AdminRolesError",
    "NotFound",
    "DuplicateActiveGrant",
    "AlreadyRevoked",
    "Forbidden",
    "PersistenceFailure",
    "AuditWriteFailure",
]
