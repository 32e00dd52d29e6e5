"""Tests for email normalisation, password policy, hashing and TOTP codes."""

import base64

import pytest

from nestauth.service import totp
from nestauth.service.errors import ValidationError
from nestauth.service.passwords import (
    PASSWORD_ALGO,
    PasswordService,
    check_password_strength,
    normalize_email,
    validate_email,
)


@pytest.fixture(scope="module")
def passwords():
    return PasswordService(fast=True)


class TestEmail:
    def test_normalize_trims_and_lowercases(self):
        assert normalize_email("  Parent@Example.COM ") == "parent@example.com"

    def test_normalize_strips_zero_width_characters(self):
        assert normalize_email("par\u200bent@exam\ufeffple.com") == "parent@example.com"

    def test_normalize_applies_nfkc(self):
        # fullwidth letters fold to ASCII
        assert normalize_email("\uff41@example.com") == "a@example.com"

    @pytest.mark.parametrize(
        "value",
        ["parent@example.com", "first.last+kids@mail.example.co.uk", "A@B.io"],
    )
    def test_valid_addresses(self, value):
        assert validate_email(value) == value.strip().lower()

    @pytest.mark.parametrize(
        "value",
        [
            "invalid-email",
            "@example.com",
            "parent@",
            "parent@localhost",
            "par ent@example.com",
            "parent@-example.com",
            "a" * 65 + "@example.com",
        ],
    )
    def test_invalid_addresses(self, value):
        with pytest.raises(ValidationError) as exc_info:
            validate_email(value)
        assert exc_info.value.detail == {"field": "email"}
        assert exc_info.value.status_code == 400


class TestPasswordPolicy:
    def test_strong_password_passes(self):
        check_password_strength("Sunshine42")

    def test_every_failed_rule_is_reported(self):
        with pytest.raises(ValidationError) as exc_info:
            check_password_strength("abc")
        rules = exc_info.value.detail["rules"]
        assert exc_info.value.detail["field"] == "password"
        assert "must be at least 8 characters" in rules
        assert "must contain a digit" in rules
        assert "must contain an uppercase letter" in rules
        assert "must contain a lowercase letter" not in rules

    def test_too_long_password(self):
        with pytest.raises(ValidationError) as exc_info:
            check_password_strength("Aa1" + "x" * 300)
        assert "must be at most 256 characters" in exc_info.value.detail["rules"]

    @pytest.mark.parametrize("value", ["alllowercase1", "ALLUPPERCASE1", "NoDigitsHere"])
    def test_missing_character_class(self, value):
        with pytest.raises(ValidationError):
            check_password_strength(value)


class TestPasswordHashing:
    def test_hash_is_argon2id_and_not_plaintext(self, passwords):
        pwd_hash, algo = passwords.hash("Sunshine42")

        assert algo == PASSWORD_ALGO == "argon2id"
        assert pwd_hash.startswith("$argon2id$")
        assert "Sunshine42" not in pwd_hash

    def test_same_password_hashes_differently(self, passwords):
        first, _ = passwords.hash("Sunshine42")
        second, _ = passwords.hash("Sunshine42")

        assert first != second

    def test_verify(self, passwords):
        pwd_hash, algo = passwords.hash("Sunshine42")

        assert passwords.verify(pwd_hash, algo, "Sunshine42") is True
        assert passwords.verify(pwd_hash, algo, "sunshine42") is False
        assert passwords.verify(pwd_hash, algo, "") is False

    def test_verify_rejects_unknown_algorithm(self, passwords):
        pwd_hash, _ = passwords.hash("Sunshine42")

        assert passwords.verify(pwd_hash, "bcrypt", "Sunshine42") is False

    def test_verify_rejects_malformed_hash(self, passwords):
        assert passwords.verify("not-a-hash", PASSWORD_ALGO, "Sunshine42") is False


# RFC 6238 appendix B seed for SHA1
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode()


class TestTotp:
    @pytest.mark.parametrize(
        "timestamp,expected",
        [(59, "287082"), (1111111109, "081804"), (1234567890, "005924")],
    )
    def test_rfc6238_vectors(self, timestamp, expected):
        assert totp.generate_totp(RFC_SECRET, timestamp) == expected

    def test_verify_accepts_adjacent_step(self):
        code = totp.generate_totp(RFC_SECRET, 1234567890)

        assert totp.verify_totp(RFC_SECRET, code, at=1234567890)
        assert totp.verify_totp(RFC_SECRET, code, at=1234567890 + 30)
        assert not totp.verify_totp(RFC_SECRET, code, at=1234567890 + 90)

    @pytest.mark.parametrize("code", ["", "abcdef", "12345x", "\u0661\u0662\u0663\u0664\u0665\u0666"])
    def test_verify_rejects_non_numeric(self, code):
        assert not totp.verify_totp(RFC_SECRET, code, at=59)

    def test_generated_secret_round_trips(self):
        secret = totp.generate_secret()
        code = totp.generate_totp(secret, 1_700_000_000)

        assert len(code) == 6
        assert totp.verify_totp(secret, code, at=1_700_000_000)

    def test_provisioning_uri(self):
        uri = totp.provisioning_uri("ABCDEF", "ops@example.com", "WonderNest API")

        assert uri.startswith("otpauth://totp/WonderNest%20API:ops%40example.com?")
        assert "secret=ABCDEF" in uri
        assert "issuer=WonderNest%20API" in uri
