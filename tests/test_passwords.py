"""Unit tests for the password policy and argon2 hashing."""

import pytest

from erpcore.service.errors import ValidationError
from erpcore.service.passwords import (
    PasswordService,
    enforce_password_policy,
    validate_password,
)


@pytest.fixture
def passwords():
    return PasswordService(time_cost=1, memory_cost_kib=1024)


class TestPasswordPolicy:
    """Every rule is checked independently."""

    def test_strong_password_passes(self):
        result = validate_password("Abc12345!")
        assert result.is_valid
        assert result.errors == []

    def test_short_password_reports_length(self):
        result = validate_password("Ab1!")
        assert not result.is_valid
        assert "Password must be at least 8 characters long" in result.errors

    def test_all_violations_reported_together(self):
        result = validate_password("abc")
        assert not result.is_valid
        assert result.errors == [
            "Password must be at least 8 characters long",
            "Password must contain at least one uppercase letter",
            "Password must contain at least one number",
            "Password must contain at least one special character",
        ]

    def test_missing_lowercase(self):
        result = validate_password("ABC12345!")
        assert result.errors == ["Password must contain at least one lowercase letter"]

    def test_symbol_must_come_from_fixed_set(self):
        # Underscore and dash are not in the accepted symbol set
        assert not validate_password("Abc12345_-").is_valid
        for symbol in '!@#$%^&*(),.?":{}|<>':
            assert validate_password(f"Abc12345{symbol}").is_valid, symbol

    def test_long_password_has_no_upper_bound(self):
        # Body size is capped at the HTTP layer, not by the strength rules
        assert validate_password("Abc1!" + "x" * 200).is_valid

    def test_empty_password(self):
        result = validate_password("")
        assert not result.is_valid
        assert len(result.errors) == 5

    def test_enforce_raises_with_all_errors(self):
        with pytest.raises(ValidationError) as excinfo:
            enforce_password_policy("password")
        assert excinfo.value.status_code == 400
        assert excinfo.value.detail["errors"] == [
            "Password must contain at least one uppercase letter",
            "Password must contain at least one number",
            "Password must contain at least one special character",
        ]


class TestPasswordHashing:
    def test_hash_is_argon2id_and_not_plaintext(self, passwords):
        hashed = passwords.hash("Abc12345!")
        assert hashed.startswith("$argon2id$")
        assert "Abc12345!" not in hashed

    def test_same_password_different_hashes(self, passwords):
        assert passwords.hash("Abc12345!") != passwords.hash("Abc12345!")

    def test_verify_round_trip(self, passwords):
        hashed = passwords.hash("Abc12345!")
        assert passwords.verify(hashed, "Abc12345!")
        assert not passwords.verify(hashed, "Abc12345?")

    def test_verify_missing_hash_is_false(self, passwords):
        assert passwords.verify(None, "Abc12345!") is False
        assert passwords.verify("", "Abc12345!") is False

    def test_verify_garbage_hash_is_false(self, passwords):
        assert passwords.verify("not-a-hash", "Abc12345!") is False

    def test_cost_parameters_are_applied(self):
        service = PasswordService(time_cost=2, memory_cost_kib=2048)
        hashed = service.hash("Abc12345!")
        assert "m=2048,t=2,p=1" in hashed
        assert service.verify(hashed, "Abc12345!")
