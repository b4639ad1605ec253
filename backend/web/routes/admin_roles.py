"""
Admin role management API routes (role panel).

Why:
    Expose the grant/revoke workflows and the panel read views over JSON. The
    adapter resolves the caller from `request.state.user` (set by the auth
    middleware), enforces same-origin on writes and maps the core's typed
    errors to HTTP statuses. Business rules stay in `RoleManagementService`.

Notes:
    - Every response carries `Cache-Control: private, no-store`; role data is
      caller-scoped and must not land in shared caches.
    - Persistence: the service is built lazily from configuration; tests call
      `set_service` to inject an in-memory service.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, StrictInt

from identity_access.domain import Tier
from admin_roles.errors import (
    AlreadyRevoked,
    AuditWriteFailure,
    DuplicateActiveGrant,
    Forbidden,
    NotFound,
    PersistenceFailure,
)
from admin_roles.services.role_management import RoleManagementService

admin_roles_router = APIRouter(tags=["Admin Roles"])  # explicit paths below
logger = logging.getLogger("campus.web.admin_roles")


_SERVICE: Optional[RoleManagementService] = None


def set_service(service: Optional[RoleManagementService]) -> None:
    global _SERVICE
    _SERVICE = service


def _get_service() -> RoleManagementService:
    global _SERVICE
    if _SERVICE is None:
        from admin_roles.wiring import build_service

        _SERVICE = build_service()
    return _SERVICE


# --- Helpers -------------------------------------------------------------------


def _json_private(payload: Any, *, status_code: int = 200) -> JSONResponse:
    return JSONResponse(content=payload, status_code=status_code, headers={"Cache-Control": "private, no-store"})


def _private_error(error: str, *, status_code: int, detail: Optional[str] = None) -> JSONResponse:
    body: Dict[str, Any] = {"error": error}
    if detail:
        body["detail"] = detail
    return _json_private(body, status_code=status_code)


def _current_sub(request: Request) -> str:
    user = getattr(request.state, "user", None) or {}
    sub = user.get("sub") if isinstance(user, dict) else None
    return str(sub) if sub else ""


def _origin_tuple(url: str) -> tuple[str, str, int]:
    p = urlparse(url)
    if not p.scheme or not p.hostname:
        raise ValueError("invalid_origin")
    scheme = p.scheme.lower()
    port = p.port if p.port is not None else (443 if scheme == "https" else 80)
    return scheme, p.hostname.lower(), int(port)


def _is_same_origin(request: Request) -> bool:
    """Origin (or Referer) must match the server; absent headers pass for non-browser clients."""
    claimed = request.headers.get("origin") or request.headers.get("referer")
    if not claimed:
        return True
    scheme = (request.url.scheme or "http").lower()
    server = (scheme, (request.url.hostname or "").lower(), int(request.url.port or (443 if scheme == "https" else 80)))
    try:
        return _origin_tuple(claimed) == server
    except ValueError:
        return False


def _csrf_rejected(request: Request) -> JSONResponse:
    logger.warning("Cross-origin write rejected path=%s", request.url.path)
    return _private_error("forbidden", status_code=403, detail="csrf_violation")


def _client_ip(request: Request) -> Optional[str]:
    if (os.getenv("CAMPUS_TRUST_PROXY", "false") or "").lower() == "true":
        forwarded = (request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
        if forwarded:
            return forwarded
    return request.client.host if request.client else None


def _require_tier(request: Request, tier: Tier):
    """Return (sub, error_response) ensuring the caller currently holds `tier` or higher."""
    sub = _current_sub(request)
    if not sub:
        return None, _private_error("unauthenticated", status_code=401)
    try:
        allowed = _get_service().authz.authorize(sub, tier)
    except PersistenceFailure:
        return None, _private_error("service_unavailable", status_code=503)
    if not allowed:
        return None, _private_error("forbidden", status_code=403)
    return sub, None


def _error_response(exc: Exception) -> JSONResponse:
    if isinstance(exc, NotFound):
        return _private_error("not_found", status_code=404, detail=exc.detail)
    if isinstance(exc, DuplicateActiveGrant):
        return _private_error("conflict", status_code=409, detail=exc.code)
    if isinstance(exc, AlreadyRevoked):
        return _private_error("conflict", status_code=409, detail=exc.code)
    if isinstance(exc, Forbidden):
        return _private_error("forbidden", status_code=403)
    if isinstance(exc, AuditWriteFailure):
        return _private_error("internal_error", status_code=500, detail=exc.code)
    if isinstance(exc, PersistenceFailure):
        return _private_error("service_unavailable", status_code=503)
    if isinstance(exc, ValueError):
        return _private_error("bad_request", status_code=400, detail=str(exc))
    raise exc


class GrantRolePayload(BaseModel):
    subject_id: str = Field(..., min_length=1, max_length=200)
    tier: StrictInt
    expires_at: Optional[str] = None
    permissions: Optional[Dict[str, Any]] = None


# --- Routes --------------------------------------------------------------------


@admin_roles_router.get("/api/admin/roles")
async def list_current_roles(request: Request):
    """Active, non-expired grants with subject and granter names (Moderator+)."""
    _, error = _require_tier(request, Tier.MODERATOR)
    if error:
        return error
    try:
        views = _get_service().current_grants()
    except PersistenceFailure as exc:
        return _error_response(exc)
    return _json_private([v.to_dict() for v in views])


@admin_roles_router.get("/api/admin/roles/stats")
async def role_stats(request: Request):
    _, error = _require_tier(request, Tier.MODERATOR)
    if error:
        return error
    try:
        stats = _get_service().stats()
    except PersistenceFailure as exc:
        return _error_response(exc)
    return _json_private(stats.to_dict())


@admin_roles_router.get("/api/admin/roles/candidates")
async def grant_candidates(request: Request):
    """Identities without a grant in force (Admin+)."""
    _, error = _require_tier(request, Tier.ADMIN)
    if error:
        return error
    try:
        people = _get_service().grantable_identities()
    except PersistenceFailure as exc:
        return _error_response(exc)
    return _json_private([p.to_dict() for p in people])


@admin_roles_router.post("/api/admin/roles")
async def grant_role(request: Request, payload: GrantRolePayload):
    """Grant a tier to a subject.

    Permissions:
        SuperAdmin for SuperAdmin/Admin grants; Admin+ for Moderator grants
        (enforced by the service, which answers Forbidden otherwise).
    """
    sub = _current_sub(request)
    if not sub:
        return _private_error("unauthenticated", status_code=401)
    if not _is_same_origin(request):
        return _csrf_rejected(request)
    try:
        grant = _get_service().grant_role(
            sub,
            payload.subject_id,
            payload.tier,
            expires_at=payload.expires_at,
            permissions=payload.permissions,
            ip_address=_client_ip(request),
        )
    except Exception as exc:
        return _error_response(exc)
    return _json_private(grant.to_dict(), status_code=201)


@admin_roles_router.post("/api/admin/roles/{grant_id}/revoke")
async def revoke_role(request: Request, grant_id: str):
    sub = _current_sub(request)
    if not sub:
        return _private_error("unauthenticated", status_code=401)
    if not _is_same_origin(request):
        return _csrf_rejected(request)
    try:
        grant = _get_service().revoke_role(sub, grant_id, ip_address=_client_ip(request))
    except Exception as exc:
        return _error_response(exc)
    return _json_private(grant.to_dict())


@admin_roles_router.get("/api/admin/activity")
async def recent_activity(request: Request, limit: Optional[int] = None):
    _, error = _require_tier(request, Tier.MODERATOR)
    if error:
        return error
    try:
        views = _get_service().recent_activity(max(1, min(200, limit)) if limit is not None else None)
    except PersistenceFailure as exc:
        return _error_response(exc)
    return _json_private([v.to_dict() for v in views])


@admin_roles_router.get("/api/admin/authorize")
async def check_access(request: Request, tier: int):
    """Does the caller currently hold `tier` or higher? Any authenticated user may ask."""
    sub = _current_sub(request)
    if not sub:
        return _private_error("unauthenticated", status_code=401)
    try:
        result = _get_service().caller_access(sub, tier)
    except (ValueError, PersistenceFailure) as exc:
        return _error_response(exc)
    return _json_private(result)
