"""Ownership decisions and identity-injection guards."""

from datetime import datetime

import pytest
import structlog
from structlog.testing import capture_logs

from communityhub.service import authorization
from communityhub.service.authorization import (
    check_ownership,
    enforce_ownership,
    is_placeholder_owner,
    sanitize_body,
    validate_no_identity_in_query,
    validate_no_owner_id_in_body,
)
from communityhub.service.errors import OwnershipViolation, ValidationError


class TestCheckOwnership:
    def test_owner_is_authorized(self):
        decision = check_ownership("u1", "u1", "comment", strict=True)
        assert decision.authorized
        assert not decision.unowned

    def test_owner_match_is_trimmed_exact(self):
        assert check_ownership(" u1 ", "u1", "post", strict=True).authorized
        assert not check_ownership("U1", "u1", "post", strict=True).authorized

    def test_other_user_is_rejected(self):
        decision = check_ownership("u1", "u2", "comment", strict=True)
        assert not decision.authorized
        assert decision.status_code == 403
        assert decision.message == "You can only modify your own comments"

    @pytest.mark.parametrize("owner", [None, "", "legacy", "  null ", "undefined"])
    def test_strict_rejects_unverifiable_owner(self, owner):
        decision = check_ownership(owner, "u1", "comment", strict=True)
        assert not decision.authorized
        assert decision.message == "Comment ownership cannot be verified"

    def test_strict_rejects_legacy_even_for_caller_named_legacy(self):
        decision = check_ownership("legacy", "legacy", "comment", strict=True)
        assert not decision.authorized
        assert decision.message == "Caller identity cannot be verified"

    @pytest.mark.parametrize("owner", [None, "", "legacy"])
    def test_lenient_allows_unowned(self, owner):
        decision = check_ownership(owner, "u2", "post", strict=False)
        assert decision.authorized
        assert decision.unowned

    def test_lenient_still_rejects_other_owner(self):
        assert not check_ownership("u1", "u2", "post", strict=False).authorized

    @pytest.mark.parametrize("caller", [None, "", "   "])
    def test_missing_caller_is_rejected(self, caller):
        decision = check_ownership("u1", caller, "post", strict=False)
        assert not decision.authorized
        assert decision.message == "Caller identity cannot be verified"

    def test_enforce_raises_with_message(self):
        with pytest.raises(OwnershipViolation) as excinfo:
            enforce_ownership("u1", "u2", "post", strict=False, resource_id="p1")
        assert excinfo.value.status_code == 403
        assert excinfo.value.detail == {"resource_kind": "post", "resource_id": "p1"}


def test_placeholder_detection():
    assert is_placeholder_owner("Legacy")
    assert is_placeholder_owner(None)
    assert not is_placeholder_owner("u1")


class TestBodyGuard:
    @pytest.mark.parametrize("field", ["userId", "user_id", "ownerUserId", "authorId"])
    def test_identity_field_is_rejected(self, field):
        with pytest.raises(ValidationError) as excinfo:
            validate_no_owner_id_in_body({"text": "hi", field: "attacker"})
        assert str(excinfo.value) == f"User ID cannot be specified in request body (field: {field})"

    @pytest.mark.parametrize("value", ["", "  ", 0, False])
    def test_blank_identity_field_is_rejected(self, value):
        with pytest.raises(ValidationError):
            validate_no_owner_id_in_body({"text": "hi", "userId": value})

    def test_null_identity_field_is_tolerated(self):
        validate_no_owner_id_in_body({"text": "hi", "userId": None, "user_id": None})

    def test_non_mapping_body_is_ignored(self):
        validate_no_owner_id_in_body(["userId"])

    def test_sanitize_drops_identity_fields(self):
        assert sanitize_body({"title": "t", "userId": "x", "author_id": "y"}) == {"title": "t"}


class TestQueryGuard:
    def test_identity_query_is_rejected(self):
        with pytest.raises(ValidationError):
            validate_no_identity_in_query({"userId": "u9"}, method="POST", path="/posts")

    def test_other_query_is_allowed(self):
        validate_no_identity_in_query({"community": "gaming"}, method="POST", path="/posts")


@pytest.fixture
def audit_log(monkeypatch):
    # module loggers are cached on first use; bind a fresh one under capture
    with capture_logs() as entries:
        monkeypatch.setattr(
            authorization, "logger", structlog.get_logger(authorization.__name__)
        )
        yield entries


def _audit_events(entries):
    return [e for e in entries if e["event"] == "unauthorized_access_attempt"]


class TestAuditLog:
    def test_owner_mismatch_is_logged(self, audit_log):
        check_ownership("u1", "u2", "comment", strict=True, resource_id="c1")

        [entry] = _audit_events(audit_log)
        assert entry["log_level"] == "warning"
        assert entry["reason"] == "owner_mismatch"
        assert entry["resource_kind"] == "comment"
        assert entry["resource_id"] == "c1"
        assert entry["claimed_owner"] == "u1"
        assert entry["caller_id"] == "u2"
        assert datetime.fromisoformat(entry["timestamp"]).tzinfo is not None

    def test_strict_placeholder_owner_is_logged(self, audit_log):
        check_ownership("legacy", "u2", "comment", strict=True, resource_id="c9")

        [entry] = _audit_events(audit_log)
        assert entry["reason"] == "owner_unverifiable"
        assert entry["resource_id"] == "c9"
        assert entry["claimed_owner"] == "legacy"
        assert entry["caller_id"] == "u2"
        assert "timestamp" in entry

    def test_unverified_caller_is_logged(self, audit_log):
        check_ownership("u1", None, "post", strict=False, resource_id="p1")

        [entry] = _audit_events(audit_log)
        assert entry["reason"] == "caller_unverified"
        assert entry["resource_kind"] == "post"
        assert entry["claimed_owner"] == "u1"
        assert entry["caller_id"] is None

    def test_allowed_access_is_not_logged(self, audit_log):
        check_ownership("u1", "u1", "post", strict=True, resource_id="p1")
        check_ownership("legacy", "u1", "post", strict=False, resource_id="p2")

        assert _audit_events(audit_log) == []
