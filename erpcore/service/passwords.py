from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, field
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from erpcore.logging import get_logger
from erpcore.service.errors import ValidationError

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
PASSWORD_SYMBOLS = '!@#$%^&*(),.?":{}|<>'
_SYMBOL_PATTERN = re.compile("[" + re.escape(PASSWORD_SYMBOLS) + "]")


@dataclass
class PasswordValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


def validate_password(password: str) -> PasswordValidationResult:
    """Check every strength rule and report all violations together."""
    errors: List[str] = []
    password = password or ""
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number")
    if not _SYMBOL_PATTERN.search(password):
        errors.append("Password must contain at least one special character")
    return PasswordValidationResult(is_valid=not errors, errors=errors)


def enforce_password_policy(password: str) -> None:
    """Raise ValidationError listing every violated rule."""
    result = validate_password(password)
    if not result.is_valid:
        raise ValidationError(
            "Password does not meet requirements",
            detail={"errors": result.errors},
        )


class PasswordService:
    """argon2id hashing with a configurable work factor."""

    def __init__(self, *, time_cost: int = 12, memory_cost_kib: int = 19456) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost_kib,
            parallelism=1,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: Optional[str], password: str) -> bool:
        """Constant-time comparison; never raises on a bad or missing hash."""
        if not password_hash:
            # Burn the same work so a missing account is not distinguishable by timing
            self._verify_dummy(password)
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unverifiable", error_type=type(exc).__name__)
            return False

    def _verify_dummy(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))
        try:
            self._hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            pass
