"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors), and
provide a fully in-memory role management stack (ledger, directory, clock)
so unit and API tests never need Postgres or Keycloak.
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure modules in backend/ are importable across tests
REPO_ROOT = Path(__file__).resolve().parents[2]
BACKEND_DIR = REPO_ROOT / "backend"
TESTS_DIR = BACKEND_DIR / "tests"
for p in (str(REPO_ROOT), str(BACKEND_DIR), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)


def _with_connect_timeout(dsn: str, seconds: int = 5) -> str:
    """Append `connect_timeout` unless already present; bounds hangs when DB is slow."""
    if not isinstance(dsn, str) or not dsn:
        return dsn
    if "connect_timeout=" in dsn:
        return dsn
    sep = "&" if "?" in dsn else "?"
    return f"{dsn}{sep}connect_timeout={seconds}"


def _db_reachable(dsn: str) -> bool:
    try:
        import psycopg  # type: ignore
    except Exception:
        return False
    try:
        with psycopg.connect(dsn, connect_timeout=3):  # type: ignore[arg-type]
            return True
    except Exception:
        return False


def _ensure_db_env_defaults() -> None:
    """Export ADMIN_ROLES_TEST_DSN only when the local Supabase Postgres answers."""
    host = os.getenv("TEST_DB_HOST", "127.0.0.1")
    port = os.getenv("TEST_DB_PORT", "54322")
    service_dsn = os.getenv("ADMIN_ROLES_TEST_DSN") or f"postgresql://postgres:postgres@{host}:{port}/postgres"
    if _db_reachable(service_dsn):
        os.environ["ADMIN_ROLES_TEST_DSN"] = _with_connect_timeout(service_dsn)
    else:
        os.environ.pop("ADMIN_ROLES_TEST_DSN", None)


_ensure_db_env_defaults()


T0 = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable UTC clock; call it like `utcnow()`."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _dev_env_and_clean_flags(monkeypatch: pytest.MonkeyPatch):
    """Run every test in a dev environment with no leaked admin-roles settings."""
    monkeypatch.setenv("CAMPUS_ENV", "dev")
    for key in (
        "ADMIN_ROLES_BACKEND",
        "ADMIN_ROLES_DATABASE_URL",
        "DATABASE_URL",
        "SUPABASE_DB_URL",
        "ADMIN_ROLES_ACTIVITY_LIMIT",
        "ADMIN_ROLES_AUTHZ_CACHE_TTL",
        "DIRECTORY_BACKEND",
        "CAMPUS_TRUST_PROXY",
        "SESSIONS_BACKEND",
        "KC_BASE_URL",
        "KC_PUBLIC_BASE_URL",
        "KC_ADMIN_CLIENT_SECRET",
    ):
        monkeypatch.delenv(key, raising=False)
    yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def directory():
    from identity_access.directory import InMemoryDirectory
    from identity_access.domain import Identity

    return InMemoryDirectory(
        [
            Identity(id="S1", display_name="Sara Super", email="sara@example.org"),
            Identity(id="A1", display_name="Anton Admin", email="anton@example.org"),
            Identity(id="M1", display_name="Mia Moderator", email="mia@example.org"),
            Identity(id="U1", display_name="Uwe Eins", email="uwe@example.org"),
            Identity(id="U2", display_name="Ulla Zwei", email="ulla@example.org"),
            Identity(id="U3", display_name="Udo Drei", email="udo@example.org"),
        ]
    )


@pytest.fixture
def repo(clock):
    from admin_roles.repo_memory import InMemoryAdminRolesRepo

    return InMemoryAdminRolesRepo(clock=clock)


@pytest.fixture
def service(repo, directory, clock):
    """Service with S1 seeded as SuperAdmin by the system (granted_by None)."""
    from admin_roles.audit import AuditRecorder
    from admin_roles.authorization import AuthorizationEngine
    from admin_roles.services.role_management import RoleManagementService
    from identity_access.domain import Tier

    svc = RoleManagementService(
        ledger=repo,
        directory=directory,
        audit=AuditRecorder(repo),
        authz=AuthorizationEngine(repo, clock=clock),
        clock=clock,
    )
    repo.create_grant("S1", Tier.SUPER_ADMIN, None)
    return svc
