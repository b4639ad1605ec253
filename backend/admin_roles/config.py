"""
Admin-roles configuration parsing and validation.

Intent:
    Provide a single place to read the environment variables that control the
    persistence backend (DI), the directory adapter, the activity view size and
    the optional authorization cache.

Why:
    Centralising configuration keeps defaults explicit and lets tests exercise
    config behaviour without booting the web app.
"""
from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Optional


_BACKENDS = {"memory", "db"}
_DIRECTORY_BACKENDS = {"memory", "keycloak", "profiles"}


def is_prod_like(env: str) -> bool:
    return (env or "").lower() in {"prod", "production", "stage", "staging"}


def _int_env(name: str, default: int, *, low: int, high: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw!r}")
    if value < low or value > high:
        raise ValueError(f"{name} out of range ({low}..{high}), got: {value}")
    return value


def _choice_env(name: str, default: str, allowed: set[str]) -> str:
    value = (os.getenv(name) or default).strip().lower()
    if value not in allowed:
        raise ValueError(f"{name} must be one of {sorted(allowed)}, got: {value!r}")
    return value


def resolve_dsn() -> Optional[str]:
    """First non-empty of ADMIN_ROLES_DATABASE_URL, DATABASE_URL, SUPABASE_DB_URL."""
    for name in ("ADMIN_ROLES_DATABASE_URL", "DATABASE_URL", "SUPABASE_DB_URL"):
        value = (os.getenv(name) or "").strip()
        if value:
            return value
    return None


@dataclass(frozen=True)
class AdminRolesConfig:
    environment: str
    backend: str  # "memory" | "db"
    dsn: Optional[str]
    activity_limit: int
    authz_cache_ttl: int
    directory_backend: str  # "memory" | "keycloak" | "profiles"

    @classmethod
    def from_env(cls) -> "AdminRolesConfig":
        env = (os.getenv("CAMPUS_ENV", "dev") or "dev").strip().lower()
        backend = _choice_env("ADMIN_ROLES_BACKEND", "db" if is_prod_like(env) else "memory", _BACKENDS)
        dsn = resolve_dsn()
        if backend == "db" and not dsn:
            raise ValueError("ADMIN_ROLES_BACKEND=db requires ADMIN_ROLES_DATABASE_URL or DATABASE_URL")
        return cls(
            environment=env,
            backend=backend,
            dsn=dsn,
            activity_limit=_int_env("ADMIN_ROLES_ACTIVITY_LIMIT", 50, low=1, high=200),
            authz_cache_ttl=_int_env("ADMIN_ROLES_AUTHZ_CACHE_TTL", 0, low=0, high=300),
            directory_backend=_choice_env("DIRECTORY_BACKEND", "memory", _DIRECTORY_BACKENDS),
        )


__all__ = ["AdminRolesConfig", "resolve_dsn", "is_prod_like"]
