"""
Database-backed session store (Postgres/Supabase).

Why: The in-memory store only knows sessions created inside this process.
Deployed, the campus login flow writes sessions to `public.app_sessions` and
this service reads them by the opaque cookie id, so every worker and the login
frontend agree on who is signed in.

Security:
- Use a server-side DSN; anon clients must not read `app_sessions` (RLS on,
  no policies for `anon`/`authenticated`).
- Sessions carry no tiers. Administrative access is derived from the grant
  ledger on every request.

Selected via `SESSIONS_BACKEND=db` (see `web.main`). Tests keep using the
in-memory store.
"""
from __future__ import annotations

from typing import Optional
import os
import re
import time

try:
    import psycopg
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional dependency in dev
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False

from identity_access.stores import SessionRecord

_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}(?:\.[A-Za-z_][A-Za-z0-9_]{0,62})?$")


class SessionStoreUnavailable(RuntimeError):
    """Session table unreachable; callers answer 503 instead of 401."""


def _now() -> int:
    return int(time.time())


class DBSessionStore:
    """Postgres-backed session store.

    Parameters
    ----------
    dsn:
        Psycopg3 connection string. Falls back to `DATABASE_URL`, then
        `SUPABASE_DB_URL`.
    table:
        Table name, optionally schema-qualified. Defaults to `public.app_sessions`.
    """

    def __init__(self, dsn: str | None = None, table: str = "public.app_sessions") -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBSessionStore")
        self._dsn = dsn or os.getenv("DATABASE_URL") or os.getenv("SUPABASE_DB_URL", "")
        if not self._dsn:
            raise RuntimeError("No database DSN provided for DBSessionStore")
        if not _TABLE_RE.match(table or ""):
            raise ValueError("Invalid table name")
        schema, name = table.split(".", 1) if "." in table else ("public", table)
        # Identifiers were validated above; quote them so reserved words stay valid.
        self._table = f'"{schema}"."{name}"'

    def create(self, *, sub: str, name: str = "", ttl_seconds: int = 3600) -> SessionRecord:
        expires_at = _now() + ttl_seconds
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"insert into {self._table} (session_id, sub, name, expires_at) "
                    "values (gen_random_uuid()::text, %s, %s, to_timestamp(%s)) returning session_id",
                    (sub, name, expires_at),
                )
                row = cur.fetchone()
        sid = str(row[0]) if row else ""
        return SessionRecord(session_id=sid, sub=sub, name=name, expires_at=expires_at)

    def get(self, session_id: str) -> Optional[SessionRecord]:
        try:
            with psycopg.connect(self._dsn, connect_timeout=5) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "select session_id, sub, name, extract(epoch from expires_at)::bigint "
                        f"from {self._table} where session_id = %s and expires_at > now()",
                        (session_id,),
                    )
                    row = cur.fetchone()
        except psycopg.Error as exc:
            raise SessionStoreUnavailable("session lookup failed") from exc
        if not row:
            return None
        return SessionRecord(
            session_id=row[0],
            sub=row[1],
            name=row[2] or "",
            expires_at=int(row[3]) if row[3] is not None else None,
        )

    def delete(self, session_id: str) -> None:
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(f"delete from {self._table} where session_id = %s", (session_id,))
