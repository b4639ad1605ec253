"""Audit recorder for privileged actions.

Every grant and revoke writes one entry here; by convention every other
privileged mutation in the application calls `record` after it completes.
Entries are append-only; the activity-log port assigns sequence and hash
links atomically with the insert.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from admin_roles.errors import AdminRolesError, AuditWriteFailure
from admin_roles.hash_chain import verify_chain
from admin_roles.models import ActivityLogEntry, Payload, normalize_payload
from admin_roles.ports import ActivityLogProtocol

logger = logging.getLogger("campus.admin_roles.audit")

_MAX_LABEL_LENGTH = 64


def _normalize_label(value: object, code: str) -> str:
    if not isinstance(value, str):
        raise ValueError(code)
    trimmed = value.strip()
    if not trimmed or len(trimmed) > _MAX_LABEL_LENGTH:
        raise ValueError(code)
    return trimmed


class AuditRecorder:
    def __init__(self, log: ActivityLogProtocol) -> None:
        self._log = log

    def record(
        self,
        actor_id: Optional[str],
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[Payload] = None,
        *,
        ip_address: Optional[str] = None,
    ) -> ActivityLogEntry:
        """Append one immutable entry; raise AuditWriteFailure when the store rejects it."""
        action = _normalize_label(action, "invalid_action")
        resource_type = _normalize_label(resource_type, "invalid_resource_type")
        payload = normalize_payload(details, code="invalid_details")
        try:
            entry = self._log.append_activity(
                actor_id=actor_id,
                action=action,
                resource_type=resource_type,
                resource_id=str(resource_id) if resource_id is not None else None,
                details=payload,
                ip_address=ip_address,
            )
        except AdminRolesError as exc:
            raise AuditWriteFailure(exc.detail, action=action) from exc
        logger.debug("audit entry seq=%s action=%s", entry.sequence, action)
        return entry

    def recent(self, limit: int) -> List[ActivityLogEntry]:
        return self._log.list_recent_activity(max(1, min(int(limit), 200)))

    def verify(self) -> Dict[str, Any]:
        report = verify_chain(self._log.iter_activity_chain())
        if not report["valid"]:
            logger.error(
                "Activity log hash chain broken at sequence=%s reason=%s",
                report["broken_at"],
                report["reason"],
            )
        return report


__all__ = ["AuditRecorder"]
