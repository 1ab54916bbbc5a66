"""Unit tests for the access/refresh token issuer."""

import base64
import json
import time
import uuid
from datetime import timedelta

import pytest

from erpcore.config import Settings
from erpcore.service.errors import ExpiredTokenError, InvalidTokenError
from erpcore.service.tokens import TokenIssuer
from erpcore.storage.memory import MemoryStore
from erpcore.storage.models import RefreshToken, Subject, utcnow


@pytest.fixture
def settings():
    return Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def issuer(settings, store):
    return TokenIssuer(settings, store)


@pytest.fixture
def subject(store):
    return store.create_subject(
        Subject(
            id=str(uuid.uuid4()),
            email="finance@example.com",
            password_hash="x",
            role="manager",
            department="finance",
            company_id="acme",
            permissions=["read", "write", "financial:read"],
        )
    )


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _tamper_payload(token: str, **changes) -> str:
    header, payload, sig = token.split(".")
    padded = payload + "=" * (-len(payload) % 4)
    claims = json.loads(base64.urlsafe_b64decode(padded))
    claims.update(changes)
    return f"{header}.{_b64(claims)}.{sig}"


class TestAccessTokens:
    def test_round_trip_carries_subject_claims(self, issuer, subject):
        token, expires_in = issuer.issue_access_token(subject, session_id="sess-1")
        claims = issuer.verify_access_token(token)

        assert expires_in == 24 * 60 * 60
        assert claims["sub"] == subject.id
        assert claims["email"] == subject.email
        assert claims["role"] == "manager"
        assert claims["department"] == "finance"
        assert claims["company_id"] == "acme"
        assert claims["permissions"] == ["read", "write", "financial:read"]
        assert claims["sid"] == "sess-1"
        assert claims["token_type"] == "access"
        assert claims["exp"] - claims["iat"] == expires_in

    def test_remember_me_extends_lifetime(self, issuer, subject):
        _, expires_in = issuer.issue_access_token(subject, remember_me=True)
        assert expires_in == 7 * 24 * 60 * 60

    def test_each_token_has_unique_jti(self, issuer, subject):
        first, _ = issuer.issue_access_token(subject)
        second, _ = issuer.issue_access_token(subject)
        assert issuer.verify_access_token(first)["jti"] != issuer.verify_access_token(second)["jti"]

    def test_tampered_payload_is_rejected(self, issuer, subject):
        token, _ = issuer.issue_access_token(subject)
        forged = _tamper_payload(token, role="super_admin", permissions=["*"])
        with pytest.raises(InvalidTokenError):
            issuer.verify_access_token(forged)

    def test_other_secret_is_rejected(self, issuer, subject, store):
        other = TokenIssuer(Settings(jwt_secret="a-completely-different-secret-value-0123"), store)
        token, _ = other.issue_access_token(subject)
        with pytest.raises(InvalidTokenError):
            issuer.verify_access_token(token)

    def test_alg_none_is_rejected(self, issuer, subject):
        token, _ = issuer.issue_access_token(subject)
        _, payload, _ = token.split(".")
        unsigned = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}."
        with pytest.raises(InvalidTokenError):
            issuer.verify_access_token(unsigned)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!!.???.***"])
    def test_malformed_tokens_are_invalid(self, issuer, token):
        with pytest.raises(InvalidTokenError):
            issuer.verify_access_token(token)

    def test_wrong_audience_is_rejected(self, issuer, subject, store, settings):
        other = TokenIssuer(
            Settings(jwt_secret=settings.jwt_secret, jwt_audience="someone-else"), store
        )
        token, _ = other.issue_access_token(subject)
        with pytest.raises(InvalidTokenError):
            issuer.verify_access_token(token)

    def test_expired_token_is_distinct_from_invalid(self, issuer, subject):
        now = int(time.time())
        token = issuer._encode_jwt(
            {
                "iss": issuer.settings.jwt_issuer,
                "aud": issuer.settings.jwt_audience,
                "sub": subject.id,
                "token_type": "access",
                "iat": now - 3600,
                "exp": now - 120,
            }
        )
        with pytest.raises(ExpiredTokenError):
            issuer.verify_access_token(token)

    def test_recently_expired_token_within_leeway(self, issuer, subject):
        now = int(time.time())
        token = issuer._encode_jwt(
            {
                "iss": issuer.settings.jwt_issuer,
                "aud": issuer.settings.jwt_audience,
                "sub": subject.id,
                "token_type": "access",
                "iat": now - 600,
                "exp": now - 5,
            }
        )
        assert issuer.verify_access_token(token)["sub"] == subject.id

    def test_non_access_token_type_is_rejected(self, issuer, subject):
        now = int(time.time())
        token = issuer._encode_jwt(
            {
                "iss": issuer.settings.jwt_issuer,
                "aud": issuer.settings.jwt_audience,
                "sub": subject.id,
                "token_type": "refresh",
                "exp": now + 600,
            }
        )
        with pytest.raises(InvalidTokenError):
            issuer.verify_access_token(token)

    def test_peek_subject_id(self, issuer, subject):
        token, _ = issuer.issue_access_token(subject)
        assert issuer.peek_subject_id(token) == subject.id
        assert issuer.peek_subject_id("garbage") is None


class TestRefreshTokens:
    def test_issue_persists_opaque_token(self, issuer, subject, store):
        token = issuer.issue_refresh_token(subject.id, ip_address="10.0.0.1")
        assert len(token) == 80
        record = store.get_refresh_token(token)
        assert record.subject_id == subject.id
        assert record.ip_address == "10.0.0.1"

    def test_rotation_is_one_time(self, issuer, subject, store):
        old = issuer.issue_refresh_token(subject.id)
        pair = issuer.rotate_refresh_token(old)

        assert pair.refresh_token != old
        assert store.get_refresh_token(old) is None
        assert store.get_refresh_token(pair.refresh_token) is not None
        assert issuer.verify_access_token(pair.access_token)["sub"] == subject.id
        with pytest.raises(InvalidTokenError, match="Invalid or expired refresh token"):
            issuer.rotate_refresh_token(old)

    def test_unknown_token_fails(self, issuer):
        with pytest.raises(InvalidTokenError):
            issuer.rotate_refresh_token("does-not-exist")

    def test_expired_token_fails(self, issuer, subject, store):
        record = RefreshToken(
            token="expired-token",
            subject_id=subject.id,
            expires_at=utcnow() - timedelta(minutes=1),
        )
        store.save_refresh_token(record)
        with pytest.raises(InvalidTokenError):
            issuer.rotate_refresh_token("expired-token")

    def test_inactive_subject_cannot_refresh(self, issuer, subject, store):
        token = issuer.issue_refresh_token(subject.id)
        # Reactivating afterwards must not bring the token back
        store.set_subject_active(subject.id, False)
        store.set_subject_active(subject.id, True)
        with pytest.raises(InvalidTokenError):
            issuer.rotate_refresh_token(token)

    def test_deleted_subject_cannot_refresh(self, issuer, subject, store):
        token = issuer.issue_refresh_token(subject.id)
        store.soft_delete_subject(subject.id)
        with pytest.raises(InvalidTokenError):
            issuer.rotate_refresh_token(token)
