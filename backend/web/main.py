"Campus admin service"
from __future__ import annotations

import os
import sys

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from identity_access.stores import SessionStore
from identity_access.stores_db import SessionStoreUnavailable
from web import config as _cfg
from web.routes.admin_roles import admin_roles_router


def _under_pytest() -> bool:
    return "pytest" in sys.modules or bool(os.getenv("PYTEST_CURRENT_TEST"))


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via CAMPUS_ENABLE_DOTENV (default true outside pytest).
    """
    if _under_pytest():
        return False
    flag = (os.getenv("CAMPUS_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


if _should_load_dotenv():
    load_dotenv()


# Minimal production safety checks (fail-fast on insecure config)
if not _under_pytest():
    _cfg.ensure_secure_config_on_startup()

SESSION_COOKIE_NAME = "campus_session"


def _select_session_store():
    """`SESSIONS_BACKEND=db` reads the sessions written by the campus login flow."""
    backend = (os.getenv("SESSIONS_BACKEND", "memory") or "memory").strip().lower()
    if backend == "db":
        from identity_access.stores_db import DBSessionStore

        return DBSessionStore()
    if backend != "memory":
        raise ValueError(f"unknown sessions backend: {backend!r}")
    return SessionStore()


SESSION_STORE = SessionStore() if _under_pytest() else _select_session_store()

app = FastAPI(title="Campus admin roles", description="Rollenverwaltung für Administratoren", version="0.1.0")


# --- Auth Middleware ------------------------------------------------------------

def _is_public_path(path: str) -> bool:
    return path in ("/health", "/favicon.ico")


@app.middleware("http")
async def auth_enforcement(request: Request, call_next):
    path = request.url.path
    if _is_public_path(path):
        return await call_next(request)

    headers = {"Cache-Control": "private, no-store", "Vary": "Origin"}
    sid = request.cookies.get(SESSION_COOKIE_NAME)
    try:
        rec = SESSION_STORE.get(sid) if sid else None
    except SessionStoreUnavailable:
        return JSONResponse({"error": "service_unavailable"}, status_code=503, headers=headers)
    if not rec:
        return JSONResponse({"error": "unauthenticated"}, status_code=401, headers=headers)

    # Expose minimal, read-only user context for downstream handlers.
    # Tiers are not part of it; routes ask the authorization engine.
    request.state.user = {"sub": rec.sub, "name": rec.name}
    return await call_next(request)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response: Response = await call_next(request)
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    # CSRF checks fall back to Referer; keep it origin-only across sites.
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response


# --- Routers --------------------------------------------------------------------

app.include_router(admin_roles_router)


@app.get("/health")
async def health_check():
    # Minimal health endpoint used by orchestrators and tests.
    return JSONResponse({"status": "healthy"}, headers={"Cache-Control": "private, no-store"})
