"""
Configuration and startup security checks for the campus admin service.

Why: Role grants decide who may administer the platform. A deployment that
silently keeps grants in process memory, or talks to Postgres/Keycloak without
TLS, must not start in production.

Permissions: The caller needs no special privileges. The function simply reads
environment variables and raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

import os
import re
from urllib.parse import urlparse


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def _parse_user(dsn_value: str) -> str | None:
    if "://" in dsn_value:
        return urlparse(dsn_value).username
    # Keyword form: host=... user=... dbname=...
    m = re.search(r"\buser\s*=\s*([^\s]+)", dsn_value)
    return m.group(1) if m else None


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure production configuration.

    Checks (prod/stage only):
    - ADMIN_ROLES_BACKEND must not be `memory` (grants would vanish on restart
      and differ between workers).
    - No admin-roles DSN may disable TLS via `sslmode=disable`.
    - DSNs must not authenticate as the NOLOGIN application role `campus_limited`.
    - Keycloak endpoints must use HTTPS, and the admin client secret must be set
      when the Keycloak directory is selected.
    - SESSIONS_BACKEND must be `db`.
    """

    env = os.getenv("CAMPUS_ENV", "dev")
    if not _is_prod_like(env):
        return  # dev/test remain permissive

    # 1) Grant ledger must be durable
    backend = (os.getenv("ADMIN_ROLES_BACKEND") or "db").strip().lower()
    if backend == "memory":
        raise SystemExit(
            "Refusing to start: ADMIN_ROLES_BACKEND=memory is not allowed in production/staging."
        )

    # 2) Postgres TLS and login role
    for key in ("ADMIN_ROLES_DATABASE_URL", "DATABASE_URL", "SUPABASE_DB_URL"):
        val = os.getenv(key, "")
        if not val:
            continue
        if "sslmode=disable" in val:
            raise SystemExit(
                f"Refusing to start: {key} contains sslmode=disable in production. Use sslmode=require or verify TLS."
            )
        user = (_parse_user(val) or "").lower()
        if user == "campus_limited":
            raise SystemExit(
                f"Refusing to start: {key} authenticates as 'campus_limited' in production. "
                "Create an environment-specific login role that is IN ROLE campus_limited and use that instead."
            )

    # 3) Keycloak endpoints must use HTTPS
    for var_name in ("KC_BASE_URL", "KC_PUBLIC_BASE_URL"):
        value = (os.getenv(var_name, "") or "").strip().lower()
        if value.startswith("http://"):
            raise SystemExit(f"Refusing to start: {var_name} must use https in production (got http).")

    # 4) Keycloak directory needs a real client secret
    if (os.getenv("DIRECTORY_BACKEND") or "").strip().lower() == "keycloak":
        kc_secret = (os.getenv("KC_ADMIN_CLIENT_SECRET", "") or "").strip()
        if not kc_secret or kc_secret.upper().startswith("CHANGE_ME"):
            raise SystemExit(
                "Refusing to start: KC_ADMIN_CLIENT_SECRET is unset or a placeholder in production."
            )

    # 5) Sessions must come from the shared table written by the login flow
    sessions = (os.getenv("SESSIONS_BACKEND") or "memory").strip().lower()
    if sessions != "db":
        raise SystemExit(
            "Refusing to start: SESSIONS_BACKEND must be 'db' in production/staging "
            "(in-memory sessions are never populated outside tests)."
        )
