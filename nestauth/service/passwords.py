from __future__ import annotations

import re
import unicodedata
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from nestauth.logging import get_logger
from nestauth.service.errors import ValidationError

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 256

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"


def normalize_email(value: str) -> str:
    """NFKC-normalise, strip and lower-case an address for storage and lookup."""
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH)
    return unicodedata.normalize("NFKC", cleaned).strip().lower()


def validate_email(value: str) -> str:
    """Return the normalised address or raise ValidationError."""
    if not isinstance(value, str):
        raise ValidationError("email must be a string", detail={"field": "email"})
    normalized = normalize_email(value)
    problem: Optional[str] = None
    local, sep, domain = normalized.partition("@")
    if len(normalized) > 254:
        problem = "email address too long"
    elif not sep or not local or not domain:
        problem = "invalid email address"
    elif len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        problem = "invalid email address format"
    else:
        labels = domain.split(".")
        if len(labels) < 2 or any(
            len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label) for label in labels
        ):
            problem = "invalid email address format"
    if problem:
        raise ValidationError(problem, detail={"field": "email"})
    return normalized


def check_password_strength(password: str) -> None:
    """Raise ValidationError listing every rule the password breaks."""
    failures = []
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        failures.append(f"must be at least {MIN_PASSWORD_LENGTH} characters")
        password = password if isinstance(password, str) else ""
    if len(password) > MAX_PASSWORD_LENGTH:
        failures.append(f"must be at most {MAX_PASSWORD_LENGTH} characters")
    if not any(c.isdigit() for c in password):
        failures.append("must contain a digit")
    if not any(c.isupper() for c in password):
        failures.append("must contain an uppercase letter")
    if not any(c.islower() for c in password):
        failures.append("must contain a lowercase letter")
    if failures:
        raise ValidationError(
            "password does not meet strength requirements",
            detail={"field": "password", "rules": failures},
        )


class PasswordService:
    """argon2id hashing with a fixed cost.

    ``fast`` swaps in the minimum argon2 parameters and is only meant for
    test runs.
    """

    def __init__(self, *, fast: bool = False) -> None:
        if fast:
            self._hasher = PasswordHasher(
                type=Type.ID, time_cost=1, memory_cost=8, parallelism=1
            )
        else:
            self._hasher = PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def verify(self, stored_hash: str, algo: str, password: str) -> bool:
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False


__all__ = [
    "PASSWORD_ALGO",
    "PasswordService",
    "check_password_strength",
    "normalize_email",
    "validate_email",
]
