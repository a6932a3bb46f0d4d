"""Tests for emergency access token issuance, validation and housekeeping."""
import time
import pytest
from datetime import datetime, timedelta

import jwt

from app.models.domain import AccessLog, EmergencyAccessToken
from app.models.enums import AccessLogAction, TokenAccessLevel, TokenType
from app.services.emergency_access import EmergencyAccessService
from app.services.errors import NotFoundError, ValidationError


@pytest.fixture
def clock():
    """Token checks run against the wall clock (PyJWT verifies exp with it)."""
    return datetime.utcnow().replace(microsecond=0)


class TestIssuance:

    def test_temporary_defaults(self, tokens, clock):
        issued = tokens.generate_token("contact_1", "Casey", now=clock)

        assert issued.record.token_type == TokenType.TEMPORARY
        assert issued.record.max_uses == 10
        assert issued.record.expires_at == clock + timedelta(hours=72)
        assert issued.record.access_level == TokenAccessLevel.VIEW

    def test_long_term_and_permanent_defaults(self, tokens, clock):
        long_term = tokens.generate_token("c", token_type="long_term", now=clock)
        permanent = tokens.generate_token("c", token_type=TokenType.PERMANENT, now=clock)

        assert long_term.record.max_uses == 1000
        assert long_term.record.expires_at == clock + timedelta(days=2 * 365)
        assert permanent.record.max_uses == 999999
        assert permanent.record.expires_at > clock + timedelta(days=99 * 365)

    def test_claims(self, tokens, settings, clock):
        issued = tokens.generate_token("contact_1", access_level="download", now=clock)

        claims = jwt.decode(issued.token, settings.JWT_SECRET, algorithms=["HS256"])

        assert claims["tokenId"] == issued.record.id
        assert claims["contactId"] == "contact_1"
        assert claims["accessLevel"] == "download"

    def test_contact_required(self, tokens):
        with pytest.raises(ValidationError):
            tokens.generate_token("")

    def test_creation_is_logged(self, tokens, db_session, clock):
        issued = tokens.generate_token("contact_1", now=clock)

        log = db_session.query(AccessLog).filter(AccessLog.token_id == issued.record.id).one()
        assert log.action == AccessLogAction.CREATED
        assert log.success is True


class TestValidation:

    def test_valid_token(self, tokens, clock):
        issued = tokens.generate_token("contact_1", "Casey", max_uses=3, now=clock)

        result = tokens.validate_token(issued.token, ip_address="198.51.100.7")

        assert result.valid is True
        assert result.contact == {"id": "contact_1", "name": "Casey"}
        assert result.remaining_uses == 3
        assert 0 < result.expires_in <= 72 * 3600

    def test_garbage_token(self, tokens):
        result = tokens.validate_token("not-a-jwt")
        assert result.valid is False
        assert result.error == "Invalid token"

    def test_wrong_signature(self, tokens, clock):
        issued = tokens.generate_token("contact_1", now=clock)
        forged = jwt.encode(jwt.decode(issued.token, options={"verify_signature": False}),
                            "another-secret-another-secret-another", algorithm="HS256")

        assert tokens.validate_token(forged).valid is False

    def test_unknown_token_id(self, tokens, settings, clock):
        forged = jwt.encode(
            {"tokenId": "ghost", "contactId": "c", "exp": int(time.time()) + 3600},
            settings.JWT_SECRET, algorithm="HS256"
        )
        result = tokens.validate_token(forged)
        assert result.error == "Token not found"

    def test_expired_token(self, tokens, clock):
        issued = tokens.generate_token("contact_1", expires_at=clock - timedelta(minutes=1), now=clock - timedelta(hours=1))

        result = tokens.validate_token(issued.token)

        assert result.valid is False
        assert result.error == "Token has expired"

    def test_revoked_token(self, tokens, db_session, clock):
        issued = tokens.generate_token("contact_1", now=clock)
        tokens.revoke_token(issued.record.id, "Lost device")

        result = tokens.validate_token(issued.token)

        assert result.valid is False
        assert result.error == "Token has been revoked"
        failure = db_session.query(AccessLog).filter(
            AccessLog.token_id == issued.record.id,
            AccessLog.success.is_(False)
        ).one()
        assert failure.error == "Token has been revoked"

    def test_used_up_token(self, tokens, clock):
        issued = tokens.generate_token("contact_1", max_uses=1, now=clock)
        tokens.record_usage(issued.record.id)

        result = tokens.validate_token(issued.token)

        assert result.error == "Token has reached maximum uses"
        assert tokens.validate_token(issued.token, check_uses=False).valid is True

    def test_ip_allow_list(self, tokens, clock):
        issued = tokens.generate_token("contact_1", ip_restrictions=["10.0.0.1"], now=clock)

        assert tokens.validate_token(issued.token, ip_address="10.0.0.1").valid is True
        assert tokens.validate_token(issued.token, ip_address="10.0.0.2").error == "Access denied from this IP address"


class TestUsageAndRevocation:

    def test_usage_never_exceeds_max(self, tokens, db_session, clock):
        issued = tokens.generate_token("contact_1", max_uses=2, now=clock)
        tokens.record_usage(issued.record.id, file_accessed="will.pdf")
        record = tokens.record_usage(issued.record.id)

        assert record.current_uses == 2
        with pytest.raises(ValidationError):
            tokens.record_usage(issued.record.id)
        assert db_session.get(EmergencyAccessToken, issued.record.id).current_uses == 2

    def test_usage_of_revoked_token(self, tokens, clock):
        issued = tokens.generate_token("contact_1", now=clock)
        tokens.revoke_token(issued.record.id)
        with pytest.raises(ValidationError):
            tokens.record_usage(issued.record.id)

    def test_revoke_unknown(self, tokens):
        with pytest.raises(NotFoundError):
            tokens.revoke_token("ghost")

    def test_revoke_twice_keeps_first(self, tokens, clock):
        issued = tokens.generate_token("contact_1", now=clock)
        first = tokens.revoke_token(issued.record.id, "first", now=clock + timedelta(minutes=1))
        second = tokens.revoke_token(issued.record.id, "second", now=clock + timedelta(minutes=2))

        assert second.revoked_at == first.revoked_at == clock + timedelta(minutes=1)
        assert second.revoke_reason == "first"


class TestActivationTokens:

    def test_token_issued_on_activation(self, workflow, pending_request, db_session, settings):
        moment = datetime.utcnow().replace(microsecond=0)
        # The fixture request was created on a fixed past clock; verify in-app so the window does not apply
        result = workflow.submit_verification(pending_request.id, "in_app", now=moment)

        record = db_session.get(EmergencyAccessToken, result.token_id)
        assert record.activation_request_id == pending_request.id
        assert record.contact_id == "contact_42"
        assert record.access_level == TokenAccessLevel.DOWNLOAD
        assert record.expires_at == result.request.expires_at
        assert result.remaining_uses == settings.TOKEN_MAX_USES
        assert result.expires_in == 24 * 3600

        validation = EmergencyAccessService(db_session, settings).validate_token(result.token)
        assert validation.valid is True


class TestHousekeeping:

    def test_access_logs_filters(self, tokens, clock):
        a = tokens.generate_token("contact_a", now=clock)
        tokens.generate_token("contact_b", now=clock)
        tokens.record_usage(a.record.id, now=clock + timedelta(seconds=1))

        by_token = tokens.get_access_logs(token_id=a.record.id)
        assert [log.action for log in by_token] == [AccessLogAction.ACCESSED, AccessLogAction.CREATED]

        assert len(tokens.get_access_logs(contact_id="contact_b")) == 1
        assert len(tokens.get_access_logs(action="accessed")) == 1
        assert len(tokens.get_access_logs(limit=1)) == 1

        with pytest.raises(ValidationError):
            tokens.get_access_logs(action="teleported")

    def test_cleanup_removes_only_expired(self, tokens, db_session, clock):
        stale = tokens.generate_token("c1", expires_at=clock - timedelta(hours=1), now=clock - timedelta(days=1))
        fresh = tokens.generate_token("c2", now=clock)

        result = tokens.cleanup_expired_tokens(now=clock)

        assert result.cleaned == 1
        assert result.errors == []
        assert db_session.get(EmergencyAccessToken, stale.record.id) is None
        assert db_session.get(EmergencyAccessToken, fresh.record.id) is not None

    def test_access_log_retention(self, db_session, settings, clock):
        settings.ACCESS_LOG_RETENTION = 3
        tokens = EmergencyAccessService(db_session, settings)
        for i in range(5):
            tokens.generate_token(f"c{i}", now=clock)

        tokens.cleanup_expired_tokens(now=clock)

        assert db_session.query(AccessLog).count() == 3

    def test_sharing_stats(self, tokens, clock):
        a = tokens.generate_token("contact_a", now=clock)
        b = tokens.generate_token("contact_a", now=clock)
        tokens.generate_token("contact_b", expires_at=clock - timedelta(minutes=5), now=clock - timedelta(hours=1))
        tokens.record_usage(a.record.id)
        tokens.record_usage(a.record.id)
        tokens.revoke_token(b.record.id)

        stats = tokens.get_sharing_stats(now=clock)

        assert stats == {
            "total_tokens": 3,
            "active_tokens": 1,
            "revoked_tokens": 1,
            "expired_tokens": 1,
            "total_uses": 2,
            "unique_contacts": 2,
        }
