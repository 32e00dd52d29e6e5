"""HS256 token signing and verification.

Three token families share one secret and are kept apart by audience and
``type``: user access tokens (``aud``), user refresh tokens (``aud-refresh``,
``type=refresh``) and admin console tokens (``aud-admin``, ``type`` of
``admin`` or ``admin_refresh``). Every token carries a fresh nonce so two
tokens minted in the same instant for the same subject never collide.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, FrozenSet, Optional

from nestauth.config import Settings
from nestauth.logging import get_logger
from nestauth.service.errors import AuthenticationError
from nestauth.service.result import Err, Ok, Result
from nestauth.storage.models import AdminRole, utcnow

logger = get_logger(__name__)

REFRESH_TYPE = "refresh"
ADMIN_ACCESS_TYPE = "admin"
ADMIN_REFRESH_TYPE = "admin_refresh"


@dataclass(frozen=True)
class SubjectClaims:
    """What a user token asserts about its subject."""

    user_id: str
    email: str
    role: str
    verified: bool
    family_id: Optional[str] = None


@dataclass(frozen=True)
class AccessClaims:
    sub: str
    user_id: str
    email: str
    role: str
    verified: bool
    nonce: str
    iss: str
    aud: str
    iat: int
    exp: int
    family_id: Optional[str] = None


@dataclass(frozen=True)
class RefreshClaims:
    sub: str
    user_id: str
    nonce: str
    iss: str
    aud: str
    iat: int
    exp: int
    family_id: Optional[str] = None
    type: str = REFRESH_TYPE


@dataclass(frozen=True)
class AdminSubject:
    admin_id: str
    email: str
    role: AdminRole
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    session_id: Optional[str] = None


@dataclass(frozen=True)
class AdminClaims:
    sub: str
    email: str
    role: AdminRole
    role_level: int
    permissions: FrozenSet[str]
    type: str
    nonce: str
    iat: int
    exp: int
    session_id: Optional[str] = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


class TokenService:
    """Pure signing service; no I/O beyond the injected clock."""

    def __init__(
        self, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        self._clock = clock or utcnow

    # segments
    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
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

    def _decode_jwt(self, token: str, audience: str) -> Optional[dict[str, Any]]:
        """Return the payload when signature, alg, issuer, audience and expiry hold."""
        if not isinstance(token, str) or not token.isascii():
            logger.debug("token_rejected", reason="malformed")
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            logger.debug("token_rejected", reason="malformed")
            return None

        # Only HS256; anything else (including "none") is an alg confusion attempt
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.debug("token_rejected", reason="header_decode")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.debug("token_rejected", reason="algorithm")
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}").encode("ascii")
        if not hmac.compare_digest(expected, sig_b64.encode("ascii")):
            logger.debug("token_rejected", reason="signature")
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.debug("token_rejected", reason="payload_decode")
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            logger.debug("token_rejected", reason="issuer")
            return None
        if payload.get("aud") != audience:
            logger.debug("token_rejected", reason="audience")
            return None
        try:
            exp_ts = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            logger.debug("token_rejected", reason="missing_exp")
            return None
        if exp_ts <= int(self._clock().timestamp()):
            logger.debug("token_rejected", reason="expired")
            return None
        return payload

    @staticmethod
    def _invalid() -> Err:
        return Err(AuthenticationError("invalid token"))

    # user tokens
    def issue(self, claims: SubjectClaims) -> TokenPair:
        now = self._clock()
        iat = int(now.timestamp())
        access_ttl = self.settings.access_token_ttl_seconds
        access_payload: dict[str, Any] = {
            "sub": claims.user_id,
            "userId": claims.user_id,
            "email": claims.email,
            "role": claims.role,
            "verified": claims.verified,
            "nonce": uuid.uuid4().hex,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": iat,
            "exp": iat + access_ttl,
        }
        refresh_payload: dict[str, Any] = {
            "sub": claims.user_id,
            "userId": claims.user_id,
            "type": REFRESH_TYPE,
            "nonce": uuid.uuid4().hex,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.refresh_audience,
            "iat": iat,
            "exp": iat + self.settings.refresh_token_ttl_seconds,
        }
        if claims.family_id:
            access_payload["familyId"] = claims.family_id
            refresh_payload["familyId"] = claims.family_id
        return TokenPair(
            access_token=self._encode_jwt(access_payload),
            refresh_token=self._encode_jwt(refresh_payload),
            expires_in=access_ttl,
        )

    def verify_access(self, token: str) -> Result[AccessClaims]:
        payload = self._decode_jwt(token, self.settings.jwt_audience)
        # access tokens carry no type claim; anything typed is another family
        if payload is None or "type" in payload:
            return self._invalid()
        try:
            return Ok(
                AccessClaims(
                    sub=str(payload["sub"]),
                    user_id=str(payload["userId"]),
                    email=str(payload["email"]),
                    role=str(payload["role"]),
                    verified=bool(payload["verified"]),
                    nonce=str(payload["nonce"]),
                    iss=payload["iss"],
                    aud=payload["aud"],
                    iat=int(payload["iat"]),
                    exp=int(payload["exp"]),
                    family_id=payload.get("familyId"),
                )
            )
        except (KeyError, TypeError, ValueError):
            logger.debug("token_rejected", reason="claims")
            return self._invalid()

    def decode_refresh(self, token: str) -> Result[RefreshClaims]:
        payload = self._decode_jwt(token, self.settings.refresh_audience)
        if payload is None or payload.get("type") != REFRESH_TYPE:
            return self._invalid()
        try:
            return Ok(
                RefreshClaims(
                    sub=str(payload["sub"]),
                    user_id=str(payload["userId"]),
                    nonce=str(payload["nonce"]),
                    iss=payload["iss"],
                    aud=payload["aud"],
                    iat=int(payload["iat"]),
                    exp=int(payload["exp"]),
                    family_id=payload.get("familyId"),
                )
            )
        except (KeyError, TypeError, ValueError):
            logger.debug("token_rejected", reason="claims")
            return self._invalid()

    def verify_refresh(self, token: str) -> Result[str]:
        result = self.decode_refresh(token)
        if isinstance(result, Err):
            return result
        return Ok(result.value.user_id)

    # admin tokens
    def issue_admin(self, subject: AdminSubject, expires_at: datetime) -> TokenPair:
        """Mint an admin pair that lives exactly as long as its session."""
        now = self._clock()
        iat = int(now.timestamp())
        exp = int(expires_at.timestamp())
        base: dict[str, Any] = {
            "sub": subject.admin_id,
            "email": subject.email,
            "role": subject.role.value,
            "roleLevel": subject.role.level,
            "permissions": sorted(subject.permissions),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.admin_audience,
            "iat": iat,
            "exp": exp,
        }
        if subject.session_id:
            base["sid"] = subject.session_id
        access = {**base, "type": ADMIN_ACCESS_TYPE, "nonce": uuid.uuid4().hex}
        refresh = {**base, "type": ADMIN_REFRESH_TYPE, "nonce": uuid.uuid4().hex}
        return TokenPair(
            access_token=self._encode_jwt(access),
            refresh_token=self._encode_jwt(refresh),
            expires_in=max(0, exp - iat),
        )

    def verify_admin(
        self, token: str, *, token_type: str = ADMIN_ACCESS_TYPE
    ) -> Result[AdminClaims]:
        payload = self._decode_jwt(token, self.settings.admin_audience)
        if payload is None or payload.get("type") != token_type:
            return self._invalid()
        try:
            role = AdminRole(payload["role"])
            return Ok(
                AdminClaims(
                    sub=str(payload["sub"]),
                    email=str(payload["email"]),
                    role=role,
                    role_level=int(payload["roleLevel"]),
                    permissions=frozenset(payload.get("permissions") or []),
                    type=payload["type"],
                    nonce=str(payload["nonce"]),
                    iat=int(payload["iat"]),
                    exp=int(payload["exp"]),
                    session_id=payload.get("sid"),
                )
            )
        except (KeyError, TypeError, ValueError):
            logger.debug("token_rejected", reason="claims")
            return self._invalid()

    # storage
    def fingerprint(self, token: str) -> str:
        """Keyed digest used wherever a token has to be stored or looked up."""
        return hmac.new(self._secret, token.encode(), hashlib.sha256).hexdigest()


__all__ = [
    "SubjectClaims",
    "AccessClaims",
    "RefreshClaims",
    "AdminSubject",
    "AdminClaims",
    "TokenPair",
    "TokenService",
]
