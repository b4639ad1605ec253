"""
Directory adapters for identity lookup (read-only).

Why:
    The role panel must list people who can receive a grant and resolve stable
    user IDs (OIDC `sub` / profile `user_id`) to display names for grant and
    activity listings. The core only needs `list_identities()` and
    `get_identity(id)`; this module provides three interchangeable adapters:

    - `InMemoryDirectory`: dev/tests.
    - `KeycloakDirectory`: Keycloak Admin API (realm users).
    - `ProfilesDirectory`: the Supabase `public.profiles` table.

Security:
    - Keycloak admin credentials come from the environment; never log them.
    - Intended for server-side use only. Unknown ids raise `LookupError`;
      transport and driver failures raise `DirectoryUnavailable`.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Protocol
from urllib.parse import quote
import logging
import os
import re

import requests
from requests import RequestException

from identity_access.domain import Identity

try:
    import psycopg
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional dependency in dev
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False


logger = logging.getLogger("campus.identity_access")

UNKNOWN_NAME = "Unknown"


class DirectoryUnavailable(RuntimeError):
    """The identity backend could not be reached or answered with an error."""


@contextmanager
def _backend_call(what: str) -> Iterator[None]:
    """Turn HTTP transport and DB driver errors into `DirectoryUnavailable`."""
    try:
        yield
    except LookupError:
        raise
    except RequestException as exc:
        logger.warning("Directory request failed op=%s error=%s", what, type(exc).__name__)
        raise DirectoryUnavailable(f"{what} failed") from exc
    except Exception as exc:
        if HAVE_PSYCOPG and isinstance(exc, psycopg.Error):
            logger.warning("Directory query failed op=%s error=%s", what, type(exc).__name__)
            raise DirectoryUnavailable(f"{what} failed") from exc
        raise


class IdentityDirectory(Protocol):
    def list_identities(self) -> List[Identity]:
        ...

    def get_identity(self, identity_id: str) -> Identity:
        """Return the identity or raise LookupError("identity_not_found")."""
        ...


_splitter = re.compile(r"[^A-Za-z0-9]+")


def humanize_identifier(s: str) -> str:
    """Turn an email/username into a human display name.

    Rules:
    - Strip known prefixes like "legacy-email:".
    - For emails, use the part before '@'.
    - Split on non-alphanumeric separators (._- etc.) and title-case tokens.
    """
    if not s:
        return ""
    s = str(s)
    if s.startswith("legacy-email:"):
        s = s.split(":", 1)[1]
    if "@" in s:
        s = s.split("@", 1)[0]
    parts = [p for p in _splitter.split(s) if p]
    if not parts:
        return ""
    return " ".join(p[:1].upper() + p[1:].lower() for p in parts)


class InMemoryDirectory:
    """Static directory seeded from `Identity` records, ordered by name."""

    def __init__(self, identities: Iterable[Identity] = ()) -> None:
        self._by_id: Dict[str, Identity] = {}
        for ident in identities:
            self.add(ident)

    def add(self, identity: Identity) -> None:
        self._by_id[identity.id] = identity

    def list_identities(self) -> List[Identity]:
        return sorted(self._by_id.values(), key=lambda i: (i.display_name.lower(), i.id))

    def get_identity(self, identity_id: str) -> Identity:
        ident = self._by_id.get(str(identity_id))
        if ident is None:
            raise LookupError("identity_not_found")
        return ident


# --- Keycloak ------------------------------------------------------------------


class _KC:
    def __init__(self) -> None:
        self.base_url = os.getenv("KC_BASE_URL", "http://localhost:8080").rstrip("/")
        self.realm = os.getenv("KC_REALM", "campus")
        # Token realm for admin client, typically 'master'
        self.admin_realm = os.getenv("KC_ADMIN_REALM", "master")
        self.admin_client_id = os.getenv("KC_ADMIN_CLIENT_ID", "campus-admin-cli")
        self.admin_client_secret = os.getenv("KC_ADMIN_CLIENT_SECRET")

    def verify(self):
        ca = os.getenv("KEYCLOAK_CA_BUNDLE")
        return ca if ca else True

    def token(self) -> str:
        """Obtain an admin bearer token via OAuth2 client_credentials."""
        if not self.admin_client_secret:
            raise DirectoryUnavailable("Keycloak admin credentials missing: set KC_ADMIN_CLIENT_SECRET")
        url = f"{self.base_url}/realms/{self.admin_realm}/protocol/openid-connect/token"
        data = {
            "grant_type": "client_credentials",
            "client_id": self.admin_client_id,
            "client_secret": self.admin_client_secret,
        }
        r = requests.post(url, data=data, timeout=10, verify=self.verify())
        r.raise_for_status()
        tok = (r.json() or {}).get("access_token")
        if not tok:
            raise DirectoryUnavailable("Keycloak admin token missing")
        return str(tok)

    def hdr(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}


def _get_attr(u: dict, key: str) -> str:
    """Fetch a single-valued Keycloak user attribute from `attributes`.

    Keycloak exposes attributes as { key: [values...] }. We return the first string.
    """
    attrs = u.get("attributes") or {}
    vals = attrs.get(key) if isinstance(attrs, dict) else None
    if isinstance(vals, list) and vals:
        return str(vals[0] or "").strip()
    return ""


def _display_name(u: dict) -> str:
    # 1) explicit display_name attribute
    dn = _get_attr(u, "display_name")
    if dn:
        return dn
    # 2) first + last names
    first = (u.get("firstName") or "").strip()
    last = (u.get("lastName") or "").strip()
    if first or last:
        return " ".join([p for p in (first, last) if p]).strip()
    # 3) email or username humanized
    for key in ("email", "username"):
        h = humanize_identifier((u.get(key) or "").strip())
        if h:
            return h
    return UNKNOWN_NAME


def _kc_identity(u: dict) -> Optional[Identity]:
    sub = u.get("id")
    if not sub:
        return None
    return Identity(id=str(sub), display_name=_display_name(u), email=str(u.get("email") or ""))


class KeycloakDirectory:
    """Realm users from the Keycloak Admin API, paged in blocks of `page_size`."""

    def __init__(self, page_size: int = 200) -> None:
        self._page_size = max(1, min(500, int(page_size)))

    def list_identities(self) -> List[Identity]:
        kc = _KC()
        out: List[Identity] = []
        with _backend_call("keycloak list users"):
            token = kc.token()
            url = f"{kc.base_url}/admin/realms/{kc.realm}/users"
            first = 0
            while True:
                params = {"first": first, "max": self._page_size, "briefRepresentation": "false"}
                r = requests.get(url, headers=kc.hdr(token), params=params, timeout=10, verify=kc.verify())
                r.raise_for_status()
                page = r.json() or []
                if not isinstance(page, list):
                    raise DirectoryUnavailable("keycloak list users returned a non-list body")
                for u in page:
                    ident = _kc_identity(u) if isinstance(u, dict) else None
                    if ident is not None:
                        out.append(ident)
                if len(page) < self._page_size:
                    break
                first += self._page_size
        return sorted(out, key=lambda i: (i.display_name.lower(), i.id))

    def get_identity(self, identity_id: str) -> Identity:
        if not identity_id:
            raise LookupError("identity_not_found")
        kc = _KC()
        with _backend_call("keycloak get user"):
            token = kc.token()
            # Ids are opaque; a slash or '?' must not reach another Admin API path.
            url = f"{kc.base_url}/admin/realms/{kc.realm}/users/{quote(str(identity_id), safe='')}"
            r = requests.get(url, headers=kc.hdr(token), timeout=10, verify=kc.verify())
            if r.status_code == 404:
                raise LookupError("identity_not_found")
            r.raise_for_status()
            body = r.json()
        if not isinstance(body, dict):
            raise LookupError("identity_not_found")
        ident = _kc_identity(body)
        if ident is None:
            raise LookupError("identity_not_found")
        return ident


# --- Supabase profiles ----------------------------------------------------------


class ProfilesDirectory:
    """Identities from `public.profiles` (user_id, full_name, email).

    Uses a short-lived psycopg3 connection per call; rows without a name fall
    back to the humanized email.
    """

    def __init__(self, dsn: str | None = None) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for ProfilesDirectory")
        self._dsn = dsn or os.getenv("DATABASE_URL") or os.getenv("SUPABASE_DB_URL", "")
        if not self._dsn:
            raise RuntimeError("No database DSN provided for ProfilesDirectory")

    @staticmethod
    def _row_to_identity(row) -> Identity:
        user_id, full_name, email = row[0], row[1], row[2]
        name = (full_name or "").strip() or humanize_identifier(email or "") or UNKNOWN_NAME
        return Identity(id=str(user_id), display_name=name, email=str(email or ""))

    def list_identities(self) -> List[Identity]:
        with _backend_call("profiles list"):
            with psycopg.connect(self._dsn, connect_timeout=5) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "select user_id::text, full_name, email from public.profiles "
                        "where user_id is not null order by full_name nulls last, user_id"
                    )
                    rows = cur.fetchall()
        return [self._row_to_identity(r) for r in rows]

    def get_identity(self, identity_id: str) -> Identity:
        with _backend_call("profiles get"):
            with psycopg.connect(self._dsn, connect_timeout=5) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "select user_id::text, full_name, email from public.profiles where user_id::text = %s",
                        (str(identity_id),),
                    )
                    row = cur.fetchone()
        if not row:
            raise LookupError("identity_not_found")
        return self._row_to_identity(row)


def build_directory(backend: str, *, seed: Iterable[Identity] = ()) -> IdentityDirectory:
    """Select a directory adapter by name (`memory`, `keycloak`, `profiles`)."""
    name = (backend or "memory").strip().lower()
    if name == "keycloak":
        return KeycloakDirectory()
    if name == "profiles":
        return ProfilesDirectory()
    if name != "memory":
        raise ValueError(f"unknown directory backend: {backend!r}")
    return InMemoryDirectory(seed)


def resolve_names(directory: IdentityDirectory, ids: Iterable[str]) -> Dict[str, Identity]:
    """Resolve several ids, skipping unknown ones. Directory outages propagate."""
    out: Dict[str, Identity] = {}
    for sid in ids:
        if not sid or sid in out:
            continue
        try:
            out[sid] = directory.get_identity(sid)
        except LookupError:
            logger.debug("Directory has no identity for id suffix=%s", str(sid)[-6:])
    return out
