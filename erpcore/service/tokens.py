from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional, Protocol, Tuple

from erpcore.config import Settings
from erpcore.logging import get_logger
from erpcore.service.errors import ExpiredTokenError, InvalidTokenError
from erpcore.storage.models import RefreshToken, Subject

logger = get_logger(__name__)


class RefreshTokenStore(Protocol):
    def get_subject(self, subject_id: str) -> Optional[Subject]: ...

    def save_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(self, old_token: str, replacement: RefreshToken) -> bool: ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    subject_id: Optional[str] = None


class TokenIssuer:
    """Signs and verifies HS256 access tokens and manages opaque refresh tokens."""

    def __init__(self, settings: Settings, store: RefreshTokenStore) -> None:
        self.settings = settings
        self.store = store
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=30)

    # -- access tokens -----------------------------------------------------

    def issue_access_token(
        self,
        subject: Subject,
        *,
        session_id: Optional[str] = None,
        remember_me: bool = False,
    ) -> Tuple[str, int]:
        """Return ``(token, expires_in_seconds)`` for ``subject``."""
        ttl_minutes = (
            self.settings.remember_me_ttl_minutes
            if remember_me
            else self.settings.access_token_ttl_minutes
        )
        now = int(time.time())
        expires_in = ttl_minutes * 60
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject.id,
            "email": subject.email,
            "role": subject.role,
            "department": subject.department,
            "company_id": subject.company_id,
            "permissions": list(subject.permissions),
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + expires_in,
        }
        if session_id:
            payload["sid"] = session_id
        return self._encode_jwt(payload), expires_in

    def verify_access_token(self, token: str) -> dict[str, Any]:
        """Return the verified claims.

        Raises ExpiredTokenError when the signature is good but ``exp`` is past
        the leeway, InvalidTokenError for anything else.
        """
        try:
            payload = self._decode_jwt(token)
        except (ExpiredTokenError, InvalidTokenError):
            raise
        except Exception as exc:
            logger.warning("jwt_verification_error", error_type=type(exc).__name__)
            raise InvalidTokenError("Invalid token") from exc
        if payload.get("token_type") != "access" or not payload.get("sub"):
            raise InvalidTokenError("Invalid token")
        return payload

    def peek_subject_id(self, token: str) -> Optional[str]:
        """Best-effort subject id from an unverified token, for audit records only."""
        try:
            payload_b64 = token.split(".")[1]
            payload = json.loads(self._decode_segment(payload_b64))
        except (IndexError, ValueError, TypeError):
            return None
        sub = payload.get("sub") if isinstance(payload, dict) else None
        return sub if isinstance(sub, str) else None

    # -- refresh tokens ----------------------------------------------------

    def issue_refresh_token(
        self,
        subject_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        record = RefreshToken.new(
            subject_id,
            self.settings.refresh_token_ttl_minutes,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.store.save_refresh_token(record)
        return record.token

    def rotate_refresh_token(
        self,
        old_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """Consume ``old_token`` and hand out a fresh pair.

        The delete of the old record and the insert of its replacement happen in
        one store operation, so two concurrent rotations of the same token
        cannot both succeed. Raises InvalidTokenError otherwise.
        """
        record = self.store.get_refresh_token(old_token) if old_token else None
        if not record or record.is_expired():
            raise InvalidTokenError("Invalid or expired refresh token")
        subject = self.store.get_subject(record.subject_id)
        if not subject or not subject.can_authenticate:
            raise InvalidTokenError("Invalid or expired refresh token")
        replacement = RefreshToken.new(
            subject.id,
            self.settings.refresh_token_ttl_minutes,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if not self.store.rotate_refresh_token(old_token, replacement):
            raise InvalidTokenError("Invalid or expired refresh token")
        access_token, expires_in = self.issue_access_token(subject)
        return TokenPair(access_token, replacement.token, expires_in, subject.id)

    # -- JWT encoding --------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise InvalidTokenError("Invalid token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("Invalid token") from None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("Invalid token") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("Invalid token")

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise InvalidTokenError("Invalid token")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("Invalid token") from None
        if not isinstance(payload, dict):
            raise InvalidTokenError("Invalid token")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("Invalid token")
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            raise InvalidTokenError("Invalid token")
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise InvalidTokenError("Invalid token") from None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            raise ExpiredTokenError("Token expired")
        return payload

