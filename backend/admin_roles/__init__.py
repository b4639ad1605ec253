"""Administrative roles: time-bounded grants, authorization and audit trail."""

from admin_roles.errors import (
    AdminRolesError,
    AlreadyRevoked,
    AuditWriteFailure,
    DuplicateActiveGrant,
    Forbidden,
    NotFound,
    PersistenceFailure,
)
from admin_roles.models import ActivityLogEntry, RoleGrant

__all__ = [
    "AdminRolesError",
    "AlreadyRevoked",
    "AuditWriteFailure",
    "DuplicateActiveGrant",
    "Forbidden",
    "NotFound",
    "PersistenceFailure",
    "ActivityLogEntry",
    "RoleGrant",
]
