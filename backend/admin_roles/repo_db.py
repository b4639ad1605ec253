"""
Postgres-backed repository for admin roles (grant ledger + activity log).

Security:
- Uses a server-side DSN; the tables are not exposed to anon clients (RLS on,
  no policies for `anon`/`authenticated`).
- Uniqueness of active grants is enforced by the partial unique index
  `role_grants_one_active_per_tier`, not by a read-then-insert in Python.
- `activity_log` rejects UPDATE/DELETE via trigger (see migration).

Design:
- Minimal psycopg3 usage; each call opens a short-lived connection.
- Revocation is a single conditional UPDATE so concurrent revokes have
  exactly one winner.
- Activity appends take a transaction-scoped advisory lock so sequence and
  prev_hash are assigned without gaps or forks.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, List, Optional, Tuple
import logging
from uuid import uuid4

try:
    import psycopg
    from psycopg.types.json import Json
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional in some dev envs
    psycopg = None  # type: ignore
    Json = None  # type: ignore
    UniqueViolation = None  # type: ignore
    HAVE_PSYCOPG = False
else:  # pragma: no cover - import errors handled above
    try:
        from psycopg.errors import UniqueViolation  # type: ignore
    except Exception:  # pragma: no cover - fallback when errors module unavailable
        UniqueViolation = None  # type: ignore

from identity_access.domain import Tier
from admin_roles.config import resolve_dsn
from admin_roles.errors import (
    AdminRolesError,
    AlreadyRevoked,
    DuplicateActiveGrant,
    NotFound,
    PersistenceFailure,
)
from admin_roles.hash_chain import GENESIS_HASH, compute_entry_hash
from admin_roles.models import ActivityLogEntry, Payload, RoleGrant, copy_payload, utcnow

logger = logging.getLogger("campus.admin_roles.repo_db")

# Arbitrary constant shared by every writer of public.activity_log.
_ACTIVITY_CHAIN_LOCK = 7_340_021

_GRANT_COLUMNS_SQL = """
    id::text,
    subject_id,
    tier,
    granted_by,
    granted_at,
    expires_at,
    active,
    permissions
"""

_ACTIVITY_COLUMNS_SQL = """
    id::text,
    sequence,
    actor_id,
    action,
    resource_type,
    resource_id,
    details,
    ip_address,
    created_at,
    prev_hash,
    entry_hash
"""


def _ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _json_obj(value: Any) -> Payload:
    if value is None:
        return {}
    return copy_payload(getattr(value, "obj", value))


def _grant_row_to_model(row: Tuple) -> RoleGrant:
    return RoleGrant(
        id=row[0],
        subject_id=row[1],
        tier=Tier(int(row[2])),
        granted_by=row[3],
        granted_at=_ts(row[4]),  # type: ignore[arg-type]
        expires_at=_ts(row[5]),
        active=bool(row[6]),
        permissions=_json_obj(row[7]),
    )


def _activity_row_to_model(row: Tuple) -> ActivityLogEntry:
    return ActivityLogEntry(
        id=row[0],
        sequence=int(row[1]),
        actor_id=row[2],
        action=row[3],
        resource_type=row[4],
        resource_id=row[5],
        details=_json_obj(row[6]),
        ip_address=row[7],
        created_at=_ts(row[8]),  # type: ignore[arg-type]
        prev_hash=row[9],
        entry_hash=row[10],
    )


def _is_unique_violation(exc: BaseException) -> bool:
    if UniqueViolation is not None and isinstance(exc, UniqueViolation):
        return True
    sqlstate = getattr(exc, "sqlstate", None) or getattr(exc, "pgcode", None)
    return sqlstate == "23505"


def _json(value: Payload):
    return Json(value) if Json is not None else value


class DBAdminRolesRepo:
    """Persistence adapter implementing the grant ledger and activity log ports."""

    def __init__(self, dsn: Optional[str] = None, *, connect_timeout: int = 5) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBAdminRolesRepo")
        self._dsn = dsn or resolve_dsn() or ""
        if not self._dsn:
            raise RuntimeError("No database DSN provided for DBAdminRolesRepo")
        self._connect_timeout = connect_timeout

    def _connect(self):
        return psycopg.connect(self._dsn, connect_timeout=self._connect_timeout)

    @contextmanager
    def _guard(self, op: str) -> Iterator[None]:
        """Map driver errors to the core taxonomy; domain errors pass through."""
        try:
            yield
        except AdminRolesError:
            raise
        except Exception as exc:
            if _is_unique_violation(exc):
                raise DuplicateActiveGrant() from exc
            logger.warning("admin_roles %s failed: %s", op, exc.__class__.__name__)
            raise PersistenceFailure(op) from exc

    # --- Grant ledger -------------------------------------------------------
    def list_active_grants(self) -> List[RoleGrant]:
        with self._guard("list_active_grants"):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"select {_GRANT_COLUMNS_SQL} from public.role_grants "
                        "where active order by granted_at desc, id"
                    )
                    rows = cur.fetchall()
        return [_grant_row_to_model(r) for r in rows]

    def create_grant(
        self,
        subject_id: str,
        tier: Tier,
        granted_by: Optional[str],
        *,
        expires_at: Optional[datetime] = None,
        permissions: Optional[Payload] = None,
    ) -> RoleGrant:
        with self._guard("create_grant"):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    # granted_at is clamped to expires_at for already-expired grants
                    cur.execute(
                        f"""
                        insert into public.role_grants
                            (subject_id, tier, granted_by, granted_at, expires_at, active, permissions)
                        values (%s, %s, %s, least(now(), coalesce(%s::timestamptz, now())), %s, true, %s)
                        returning {_GRANT_COLUMNS_SQL}
                        """,
                        (
                            str(subject_id),
                            int(tier),
                            granted_by,
                            expires_at,
                            expires_at,
                            _json(copy_payload(permissions)),
                        ),
                    )
                    row = cur.fetchone()
                    if row is None:
                        raise PersistenceFailure("role_grants insert returned no row")
        return _grant_row_to_model(row)

    def revoke_grant(self, grant_id: str) -> RoleGrant:
        with self._guard("revoke_grant"):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        update public.role_grants set active = false
                         where id::text = %s and active
                        returning {_GRANT_COLUMNS_SQL}
                        """,
                        (str(grant_id),),
                    )
                    row = cur.fetchone()
                    if row is None:
                        cur.execute("select active from public.role_grants where id::text = %s", (str(grant_id),))
                        existing = cur.fetchone()
                        if existing is None:
                            raise NotFound("grant_not_found")
                        raise AlreadyRevoked()
        return _grant_row_to_model(row)

    def get_grant(self, grant_id: str) -> RoleGrant:
        with self._guard("get_grant"):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"select {_GRANT_COLUMNS_SQL} from public.role_grants where id::text = %s",
                        (str(grant_id),),
                    )
                    row = cur.fetchone()
        if row is None:
            raise NotFound("grant_not_found")
        return _grant_row_to_model(row)

    def list_grants_for_subject(self, subject_id: str) -> List[RoleGrant]:
        with self._guard("list_grants_for_subject"):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"select {_GRANT_COLUMNS_SQL} from public.role_grants "
                        "where subject_id = %s order by granted_at desc, id",
                        (str(subject_id),),
                    )
                    rows = cur.fetchall()
        return [_grant_row_to_model(r) for r in rows]

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
        stored_details = copy_payload(details)
        with self._guard("append_activity"):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute("select pg_advisory_xact_lock(%s)", (_ACTIVITY_CHAIN_LOCK,))
                    cur.execute("select sequence, entry_hash from public.activity_log order by sequence desc limit 1")
                    last = cur.fetchone()
                    sequence = int(last[0]) + 1 if last else 1
                    prev_hash = str(last[1]) if last else GENESIS_HASH
                    entry_id = str(uuid4())
                    created_at = utcnow()
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
                    cur.execute(
                        """
                        insert into public.activity_log
                            (id, sequence, actor_id, action, resource_type, resource_id,
                             details, ip_address, created_at, prev_hash, entry_hash)
                        values (%s::uuid, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            entry_id,
                            sequence,
                            actor_id,
                            action,
                            resource_type,
                            resource_id,
                            _json(stored_details),
                            ip_address,
                            created_at,
                            prev_hash,
                            entry_hash,
                        ),
                    )
        return ActivityLogEntry(
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

    def list_recent_activity(self, limit: int) -> List[ActivityLogEntry]:
        with self._guard("list_recent_activity"):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"select {_ACTIVITY_COLUMNS_SQL} from public.activity_log order by sequence desc limit %s",
                        (max(0, int(limit)),),
                    )
                    rows = cur.fetchall()
        return [_activity_row_to_model(r) for r in rows]

    def iter_activity_chain(self) -> List[ActivityLogEntry]:
        with self._guard("iter_activity_chain"):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"select {_ACTIVITY_COLUMNS_SQL} from public.activity_log order by sequence asc")
                    rows = cur.fetchall()
        return [_activity_row_to_model(r) for r in rows]


__all__ = ["DBAdminRolesRepo"]
