"""
Authorization engine: effective tier and tier policies.

Why:
    Every privileged operation in the application asks one question: "does
    this identity hold at least tier X right now?". The answer is derived from
    the grant ledger at query time. Expiry is never swept into storage, so the
    check here is the only place it is applied for authorization.

Behavior:
    - `effective_tier` picks the numerically lowest tier among the subject's
      grants that are active and not expired at `at`.
    - `authorize` compares that tier with the required one; no grant in force
      never authorizes.
    - Optional per-subject cache (`ttl_seconds > 0`). Cached answers never
      outlive the earliest expiry among the grants they were computed from.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Optional, Tuple

from identity_access.domain import Tier
from admin_roles.models import RoleGrant, utcnow
from admin_roles.ports import GrantLedgerProtocol


def effective_tier_from(grants: Iterable[RoleGrant], at: datetime) -> Optional[Tier]:
    best: Optional[Tier] = None
    for grant in grants:
        if not grant.in_force(at):
            continue
        if best is None or grant.tier < best:
            best = grant.tier
    return best


def satisfies(tier: Optional[Tier], required: Tier) -> bool:
    return tier is not None and int(tier) <= int(required)


def can_grant(actor_tier: Optional[Tier], target_tier: Tier) -> bool:
    """Only SuperAdmin grants SuperAdmin/Admin; Admin or higher grants Moderator."""
    if target_tier in (Tier.SUPER_ADMIN, Tier.ADMIN):
        return satisfies(actor_tier, Tier.SUPER_ADMIN)
    return satisfies(actor_tier, Tier.ADMIN)


def can_revoke(actor_tier: Optional[Tier], target_tier: Tier) -> bool:
    """Only SuperAdmin revokes SuperAdmin; Admin or higher revokes Admin/Moderator."""
    if target_tier == Tier.SUPER_ADMIN:
        return satisfies(actor_tier, Tier.SUPER_ADMIN)
    return satisfies(actor_tier, Tier.ADMIN)


class AuthorizationEngine:
    def __init__(
        self,
        ledger: GrantLedgerProtocol,
        *,
        clock: Callable[[], datetime] = utcnow,
        ttl_seconds: int = 0,
    ) -> None:
        self._ledger = ledger
        self._clock = clock
        self._ttl = max(0, int(ttl_seconds))
        self._cache: Dict[str, Tuple[Optional[Tier], datetime]] = {}
        self._lock = threading.Lock()

    def effective_tier(self, subject_id: str, at: Optional[datetime] = None) -> Optional[Tier]:
        if not subject_id:
            return None
        if at is not None:
            return effective_tier_from(self._ledger.list_grants_for_subject(subject_id), at)
        now = self._clock()
        if self._ttl:
            with self._lock:
                hit = self._cache.get(subject_id)
            if hit is not None and now < hit[1]:
                return hit[0]
        grants = self._ledger.list_grants_for_subject(subject_id)
        tier = effective_tier_from(grants, now)
        if self._ttl:
            valid_until = now + timedelta(seconds=self._ttl)
            for grant in grants:
                if grant.in_force(now) and grant.expires_at is not None and grant.expires_at < valid_until:
                    valid_until = grant.expires_at
            with self._lock:
                self._cache[subject_id] = (tier, valid_until)
        return tier

    def authorize(self, subject_id: str, required_tier: Tier) -> bool:
        return satisfies(self.effective_tier(subject_id), Tier(required_tier))

    def is_admin(self, subject_id: str) -> bool:
        """True when any tier is in force for the subject."""
        return self.effective_tier(subject_id) is not None

    def invalidate(self, subject_id: Optional[str] = None) -> None:
        with self._lock:
            if subject_id is None:
                self._cache.clear()
            else:
                self._cache.pop(subject_id, None)


__all__ = [
    "AuthorizationEngine",
    "effective_tier_from",
    "satisfies",
    "can_grant",
    "can_revoke",
]
