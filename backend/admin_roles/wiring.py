"""
Composition helpers: build the role management service from configuration.

Used by the web adapter (lazily, on first request) and by the operator CLI so
both run against the same backend selection rules.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from identity_access.directory import IdentityDirectory, build_directory
from admin_roles.audit import AuditRecorder
from admin_roles.authorization import AuthorizationEngine
from admin_roles.config import AdminRolesConfig
from admin_roles.models import utcnow
from admin_roles.repo_memory import InMemoryAdminRolesRepo
from admin_roles.services.role_management import RoleManagementService

logger = logging.getLogger("campus.admin_roles")


def build_repo(config: AdminRolesConfig):
    if config.backend == "db":
        from admin_roles.repo_db import DBAdminRolesRepo

        return DBAdminRolesRepo(dsn=config.dsn)
    logger.info("Admin roles wired: in-memory repository (dev only)")
    return InMemoryAdminRolesRepo()


def build_service(
    config: Optional[AdminRolesConfig] = None,
    *,
    repo=None,
    directory: Optional[IdentityDirectory] = None,
    clock: Callable[[], datetime] = utcnow,
) -> RoleManagementService:
    """Assemble ledger, directory, audit recorder and authorization engine.

    `repo` must implement both the grant ledger and the activity log ports.
    """
    cfg = config or AdminRolesConfig.from_env()
    store = repo if repo is not None else build_repo(cfg)
    return RoleManagementService(
        ledger=store,
        directory=directory if directory is not None else build_directory(cfg.directory_backend),
        audit=AuditRecorder(store),
        authz=AuthorizationEngine(store, clock=clock, ttl_seconds=cfg.authz_cache_ttl),
        clock=clock,
        activity_limit=cfg.activity_limit,
    )


__all__ = ["build_repo", "build_service"]
