"""Audit recorder and activity log hash chain.

Focus:
    - entries are appended with contiguous sequence numbers and hash links
    - verification detects edited payloads, removed entries and forged links
    - store failures surface as AuditWriteFailure
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

import pytest

from admin_roles.audit import AuditRecorder
from admin_roles.errors import AuditWriteFailure, PersistenceFailure
from admin_roles.hash_chain import GENESIS_HASH, hash_for_entry, verify_chain


def _record_three(audit: AuditRecorder) -> None:
    audit.record("S1", "grant_role", "role_grant", "g-1", {"subject": "U1", "tier": 3})
    audit.record("A1", "revoke_role", "role_grant", "g-1", {"subject": "U1", "tier": 3})
    audit.record(None, "grant_role", "role_grant", "g-2", {"subject": "U2", "tier": 1}, ip_address="10.0.0.7")


def test_record_appends_linked_entries(repo):
    audit = AuditRecorder(repo)
    first = audit.record("S1", "grant_role", "role_grant", "g-1", {"subject": "U1"})
    second = audit.record("S1", "revoke_role", "role_grant", "g-1", None)

    assert first.sequence == 1
    assert first.prev_hash == GENESIS_HASH
    assert second.sequence == 2
    assert second.prev_hash == first.entry_hash
    assert second.details == {}
    assert hash_for_entry(first) == first.entry_hash


def test_recent_is_newest_first_and_clamped(repo):
    audit = AuditRecorder(repo)
    _record_three(audit)
    recent = audit.recent(2)
    assert [e.sequence for e in recent] == [3, 2]
    assert recent[0].actor_id is None
    assert recent[0].ip_address == "10.0.0.7"
    assert len(audit.recent(0)) == 1
    assert len(audit.recent(10_000)) == 3


def test_verify_intact_chain(repo):
    audit = AuditRecorder(repo)
    assert audit.verify() == {"valid": True, "checked": 0, "broken_at": None, "reason": None}
    _record_three(audit)
    report = audit.verify()
    assert report["valid"] is True
    assert report["checked"] == 3


def test_verify_detects_edited_details(repo):
    _record_three(AuditRecorder(repo))
    chain = repo.iter_activity_chain()
    chain[1] = replace(chain[1], details={"subject": "U9", "tier": 3})
    report = verify_chain(chain)
    assert report["valid"] is False
    assert report["broken_at"] == 2
    assert report["reason"] == "entry_hash_mismatch"


def test_verify_detects_removed_entry(repo):
    _record_three(AuditRecorder(repo))
    chain = repo.iter_activity_chain()
    del chain[1]
    report = verify_chain(chain)
    assert report["valid"] is False
    assert report["broken_at"] == 3
    assert report["reason"] == "sequence_gap"


def test_verify_detects_relinked_entry(repo):
    _record_three(AuditRecorder(repo))
    chain = repo.iter_activity_chain()
    forged = replace(chain[2], prev_hash=GENESIS_HASH)
    chain[2] = replace(forged, entry_hash=hash_for_entry(forged))
    report = verify_chain(chain)
    assert report["broken_at"] == 3
    assert report["reason"] == "prev_hash_mismatch"


def test_stored_details_are_detached_from_caller(repo):
    audit = AuditRecorder(repo)
    details = {"subject": "U1", "extra": {"k": [1]}}
    audit.record("S1", "grant_role", "role_grant", "g-1", details)
    details["extra"]["k"].append(2)
    assert repo.iter_activity_chain()[0].details == {"subject": "U1", "extra": {"k": [1]}}
    assert AuditRecorder(repo).verify()["valid"] is True


@pytest.mark.parametrize(
    "action,resource_type,details,code",
    [
        ("", "role_grant", {}, "invalid_action"),
        ("x" * 65, "role_grant", {}, "invalid_action"),
        ("grant_role", "  ", {}, "invalid_resource_type"),
        ("grant_role", "role_grant", ["not", "a", "dict"], "invalid_details"),
    ],
)
def test_record_validates_input(repo, action, resource_type, details, code):
    with pytest.raises(ValueError) as exc:
        AuditRecorder(repo).record("S1", action, resource_type, None, details)
    assert str(exc.value) == code
    assert repo.iter_activity_chain() == []


class _BrokenLog:
    def append_activity(self, **kwargs):
        raise PersistenceFailure("append_activity")

    def list_recent_activity(self, limit):
        return []

    def iter_activity_chain(self):
        return []


def test_store_failure_becomes_audit_write_failure():
    with pytest.raises(AuditWriteFailure) as exc:
        AuditRecorder(_BrokenLog()).record("S1", "grant_role", "role_grant", "g-1", {})
    assert exc.value.code == "audit_write_failed"
    assert exc.value.action == "grant_role"


def test_record_stores_details_in_jsonb_form(repo):
    audit = AuditRecorder(repo)
    entry = audit.record("S1", "grant_role", "role_grant", "g-1", {"n": 1e20, "pair": (1, 2), "half": 0.5})
    assert entry.details == {"n": 10**20, "pair": [1, 2], "half": 0.5}
    assert verify_chain(repo.iter_activity_chain())["valid"] is True


@pytest.mark.parametrize("details", [{"at": datetime(2026, 10, 18, tzinfo=timezone.utc)}, {"x": float("nan")}, {"s": {1}}])
def test_record_rejects_non_json_details(repo, details):
    with pytest.raises(ValueError) as exc:
        AuditRecorder(repo).record("S1", "grant_role", "role_grant", "g-1", details)
    assert str(exc.value) == "invalid_details"
    assert repo.iter_activity_chain() == []
