"""RFC 6238 time-based one-time codes for admin second factor."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import time
from typing import Optional
from urllib.parse import quote

from nestauth.logging import get_logger

logger = get_logger(__name__)

DIGITS = 6
INTERVAL = 30


def generate_secret() -> str:
    return base64.b32encode(os.urandom(20)).decode().rstrip("=")


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    return (
        f"otpauth://totp/{quote(issuer)}:{quote(account)}"
        f"?secret={secret}&issuer={quote(issuer)}&digits={DIGITS}&period={INTERVAL}"
    )


def generate_totp(
    secret: str, timestamp: float, *, interval: int = INTERVAL, digits: int = DIGITS
) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    at: Optional[float] = None,
    window: int = 1,
    interval: int = INTERVAL,
) -> bool:
    """Accept the current step and ``window`` adjacent steps for clock skew."""
    if not secret or not code:
        return False
    code = code.strip()
    if not (code.isascii() and code.isdigit()):
        return False
    now = time.time() if at is None else at
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, now + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False
