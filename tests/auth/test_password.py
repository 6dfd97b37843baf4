"""Tests for password hashing and validation."""

import pytest

from sfam.auth.password import (
    PasswordStrengthError,
    check_needs_rehash,
    hash_password,
    validate_password_strength,
    verify_password,
)


class TestPasswordHashing:
    def test_hash_and_verify(self):
        hashed = hash_password("SecurePass1")
        assert verify_password("SecurePass1", hashed) is True

    def test_wrong_password_rejected(self):
        hashed = hash_password("CorrectPass1")
        assert verify_password("WrongPass1", hashed) is False

    def test_garbage_hash_does_not_raise(self):
        assert verify_password("Anything1", "not-a-hash") is False

    def test_hash_is_argon2id(self):
        assert hash_password("TestPass1").startswith("$argon2id$")

    def test_check_needs_rehash(self):
        assert check_needs_rehash(hash_password("TestPass1")) is False


class TestPasswordStrength:
    def test_strong_password_accepted(self):
        validate_password_strength("StrongPass1")

    @pytest.mark.parametrize(
        "password",
        ["", "   ", "Short1", "nouppercase1", "NOLOWERCASE1", "NoDigitHere", "A" * 100 + "a" * 29 + "1"],
    )
    def test_weak_passwords_rejected(self, password):
        with pytest.raises(PasswordStrengthError):
            validate_password_strength(password)
