"""End-user authentication: signup, login, federated login, refresh, logout,
password reset and email verification.

User status moves ``pending_verification -> active`` on email verification;
``suspended`` is set elsewhere and only ever read here. Every successful login
or refresh creates a new :class:`Session` row whose hashes are the keyed
fingerprints of the issued access and refresh tokens.

All public coroutines return ``Ok`` or ``Err``. Failures a caller could use to
probe for accounts (unknown email, suspended, no password, wrong password,
lockout) collapse into one ``AuthenticationError("invalid credentials")``.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from nestauth.config import RefreshPolicy, Settings
from nestauth.logging import email_fingerprint, get_logger
from nestauth.service.common import StoreRunner, new_one_time_token, returns_result
from nestauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from nestauth.service.oauth import OAUTH_PROVIDERS, OAuthVerifier
from nestauth.service.passwords import (
    PasswordService,
    check_password_strength,
    normalize_email,
    validate_email,
)
from nestauth.service.result import Err, Ok, Result
from nestauth.service.tokens import AccessClaims, SubjectClaims, TokenPair, TokenService
from nestauth.storage.contracts import (
    CredentialStore,
    EmailVerificationStore,
    PasswordResetStore,
    SessionStore,
    UserStore,
)
from nestauth.storage.errors import ConstraintViolation
from nestauth.storage.models import OneTimeToken, Session, User, UserStatus, utcnow

logger = get_logger(__name__)

SUPPORTED_PROVIDERS = tuple(OAUTH_PROVIDERS)


def _new_household_id() -> str:
    # every new parent account opens its own household; clients never choose it
    return str(uuid.uuid4())


class Notifier(Protocol):
    def send_password_reset(self, to_email: str, token: str) -> bool: ...

    def send_email_verification(self, to_email: str, token: str) -> bool: ...


@dataclass(frozen=True)
class UserProfile:
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    timezone: Optional[str] = None
    language: Optional[str] = None


@dataclass(frozen=True)
class AuthResult:
    user: User
    session: Session
    tokens: TokenPair


class UserAuthService:
    def __init__(
        self,
        settings: Settings,
        tokens: TokenService,
        users: UserStore,
        credentials: CredentialStore,
        sessions: SessionStore,
        resets: PasswordResetStore,
        verifications: EmailVerificationStore,
        notifier: Notifier,
        passwords: PasswordService,
        oauth: OAuthVerifier,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.tokens = tokens
        self.users = users
        self.credentials = credentials
        self.sessions = sessions
        self.resets = resets
        self.verifications = verifications
        self.notifier = notifier
        self.passwords = passwords
        self.oauth = oauth
        self._clock = clock or utcnow
        self._store = StoreRunner(settings.store_timeout_seconds)
        self._dummy_hash: Optional[str] = None

    # helpers
    @staticmethod
    def _subject(user: User) -> SubjectClaims:
        return SubjectClaims(
            user_id=user.id,
            email=user.email,
            role=user.role,
            verified=user.email_verified,
            family_id=user.family_id,
        )

    async def _start_session(
        self, user: User, *, user_agent: Optional[str], ip_addr: Optional[str]
    ) -> AuthResult:
        pair = self.tokens.issue(self._subject(user))
        session = Session.new(
            user.id,
            self.tokens.fingerprint(pair.access_token),
            self.tokens.fingerprint(pair.refresh_token),
            self.settings.refresh_token_ttl_seconds,
            user_agent=user_agent,
            ip_addr=ip_addr,
            now=self._clock(),
        )
        session = await self._store(self.sessions.create_session, session)
        return AuthResult(user=user, session=session, tokens=pair)

    async def _burn_hash_time(self, password: str) -> None:
        # keeps unknown-user latency in line with a real verify
        if self._dummy_hash is None:
            self._dummy_hash, _ = await asyncio.to_thread(
                self.passwords.hash, uuid.uuid4().hex
            )
        await asyncio.to_thread(
            self.passwords.verify, self._dummy_hash, "argon2id", password
        )

    async def _send_verification(self, user: User) -> bool:
        """Best effort: any failure is logged and swallowed."""
        token = new_one_time_token()
        record = OneTimeToken.new(
            user.id,
            self.tokens.fingerprint(token),
            self.settings.email_verification_ttl_seconds,
            now=self._clock(),
        )
        try:
            await self._store(self.verifications.create_verification_token, record)
            return await asyncio.to_thread(
                self.notifier.send_email_verification, user.email, token
            )
        except (ServiceError, ConstraintViolation, OSError) as exc:
            logger.warning(
                "verification_email_failed", user_id=user.id, error=str(exc)
            )
            return False

    async def _locked_meanwhile(self, user_id: str, now: datetime) -> Result[AuthResult]:
        # a lock can engage between the read and the counter reset
        current = await self._store(self.users.get_user, user_id)
        if current is None or not current.is_locked(now):
            return Err(AuthenticationError())
        logger.warning(
            "user_login_locked", user_id=user_id, locked_until=current.locked_until.isoformat()
        )
        return Err(AccountLockedError(current.locked_until))

    # signup / login
    @returns_result
    async def signup(
        self,
        email: str,
        password: str,
        profile: Optional[UserProfile] = None,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Result[AuthResult]:
        normalized = validate_email(email)
        check_password_strength(password)
        if await self._store(self.users.get_user_by_email, normalized):
            return Err(ConflictError("email already exists", detail={"field": "email"}))

        pwd_hash, algo = await asyncio.to_thread(self.passwords.hash, password)
        profile = profile or UserProfile()
        user = User(
            id=str(uuid.uuid4()),
            email=normalized,
            status=UserStatus.PENDING_VERIFICATION,
            family_id=_new_household_id(),
            first_name=profile.first_name,
            last_name=profile.last_name,
            timezone=profile.timezone or "UTC",
            language=profile.language or "en",
            created_at=self._clock(),
        )
        try:
            user = await self._store(self.users.create_user, user)
        except ConstraintViolation:
            return Err(ConflictError("email already exists", detail={"field": "email"}))
        await self._store(self.credentials.save_password, user.id, pwd_hash, algo)
        logger.info("user_signed_up", user_id=user.id, email_hash=email_fingerprint(normalized))

        await self._send_verification(user)
        return Ok(await self._start_session(user, user_agent=user_agent, ip_addr=ip_addr))

    @returns_result
    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Result[AuthResult]:
        normalized = normalize_email(email or "")
        user = await self._store(self.users.get_user_by_email, normalized)
        now = self._clock()
        if not user or user.status == UserStatus.SUSPENDED:
            await self._burn_hash_time(password or "")
            logger.info(
                "user_login_rejected",
                reason="unknown" if not user else "suspended",
                email_hash=email_fingerprint(normalized),
            )
            return Err(AuthenticationError())

        if user.is_locked(now):
            logger.warning(
                "user_login_locked", user_id=user.id, locked_until=user.locked_until.isoformat()
            )
            return Err(AccountLockedError(user.locked_until))

        record = await self._store(self.credentials.get_password_record, user.id)
        if not record:
            await self._burn_hash_time(password or "")
            logger.info("user_login_rejected", reason="no_password", user_id=user.id)
            return Err(AuthenticationError())

        stored_hash, algo = record
        if not await asyncio.to_thread(self.passwords.verify, stored_hash, algo, password or ""):
            updated = await self._store(
                self.users.record_failed_login,
                user.id,
                threshold=self.settings.lockout_threshold,
                lock_until=now + timedelta(seconds=self.settings.lockout_duration_seconds),
                now=now,
            )
            if updated and updated.locked_until and updated.locked_until > now:
                logger.warning(
                    "user_login_lock_engaged",
                    user_id=user.id,
                    attempts=updated.failed_login_attempts,
                )
                return Err(AccountLockedError(updated.locked_until))
            logger.info("user_login_rejected", reason="password", user_id=user.id)
            return Err(AuthenticationError())

        if not await self._store(self.users.record_successful_login, user.id, now):
            return await self._locked_meanwhile(user.id, now)
        user = replace(user, failed_login_attempts=0, locked_until=None, last_login_at=now)
        logger.info("user_login_succeeded", user_id=user.id)
        return Ok(await self._start_session(user, user_agent=user_agent, ip_addr=ip_addr))

    @returns_result
    async def federated_login(
        self,
        provider: str,
        external_token: str,
        email: str,
        profile: Optional[UserProfile] = None,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Result[AuthResult]:
        if provider not in SUPPORTED_PROVIDERS:
            return Err(
                ValidationError("unsupported provider", detail={"field": "provider"})
            )
        normalized = validate_email(email)
        identity = await self.oauth.verify(provider, external_token)
        if (
            identity is None
            or not identity.email
            or normalize_email(identity.email) != normalized
        ):
            logger.warning(
                "federated_login_rejected",
                provider=provider,
                email_hash=email_fingerprint(normalized),
            )
            return Err(AuthenticationError())

        now = self._clock()
        user = await self._store(self.users.get_user_by_email, normalized)
        if user is None:
            profile = profile or UserProfile()
            candidate = User(
                id=str(uuid.uuid4()),
                email=normalized,
                status=UserStatus.ACTIVE,
                email_verified=True,
                family_id=_new_household_id(),
                first_name=profile.first_name or identity.first_name,
                last_name=profile.last_name or identity.last_name,
                timezone=profile.timezone or "UTC",
                language=profile.language or "en",
                auth_provider=provider,
                created_at=now,
            )
            try:
                user = await self._store(self.users.create_user, candidate)
                logger.info("federated_user_created", user_id=user.id, provider=provider)
            except ConstraintViolation:
                # lost a race with a concurrent first login for the same email
                user = await self._store(self.users.get_user_by_email, normalized)
                if user is None:
                    return Err(ConflictError("email already exists"))
        if user.status == UserStatus.SUSPENDED:
            logger.info("federated_login_rejected", reason="suspended", user_id=user.id)
            return Err(AuthenticationError())

        if not await self._store(self.users.record_successful_login, user.id, now):
            return await self._locked_meanwhile(user.id, now)
        user = replace(user, failed_login_attempts=0, locked_until=None, last_login_at=now)
        return Ok(await self._start_session(user, user_agent=user_agent, ip_addr=ip_addr))

    # token lifecycle
    @returns_result
    async def refresh(
        self,
        refresh_token: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Result[AuthResult]:
        """Exchange a refresh token for a new pair on a new session.

        Under ``RefreshPolicy.ROTATE`` the presented session is invalidated
        first; if a concurrent call already did so this one fails.
        """
        decoded = self.tokens.decode_refresh(refresh_token)
        if isinstance(decoded, Err):
            return decoded
        claims = decoded.value
        user = await self._store(self.users.get_user, claims.user_id)
        if not user or user.status != UserStatus.ACTIVE:
            logger.info("user_refresh_rejected", reason="status", user_id=claims.user_id)
            return Err(AuthenticationError("invalid token"))

        now = self._clock()
        session = await self._store(
            self.sessions.get_session_by_refresh_token,
            self.tokens.fingerprint(refresh_token),
        )
        if not session or session.user_id != user.id or not session.is_valid(now):
            logger.info("user_refresh_rejected", reason="session", user_id=user.id)
            return Err(AuthenticationError("invalid token"))

        if self.settings.refresh_policy == RefreshPolicy.ROTATE:
            if not await self._store(self.sessions.invalidate_session, session.id):
                logger.warning("user_refresh_replayed", user_id=user.id, session_id=session.id)
                return Err(AuthenticationError("invalid token"))

        result = await self._start_session(
            user,
            user_agent=user_agent or session.user_agent,
            ip_addr=ip_addr or session.ip_addr,
        )
        logger.info(
            "user_refresh_succeeded",
            user_id=user.id,
            policy=self.settings.refresh_policy.value,
            session_id=result.session.id,
        )
        return Ok(result)

    @returns_result
    async def logout(self, session_token: str) -> Result[bool]:
        session = await self._store(
            self.sessions.get_session_by_token, self.tokens.fingerprint(session_token)
        )
        if not session:
            return Ok(False)
        invalidated = await self._store(self.sessions.invalidate_session, session.id)
        logger.info("user_logged_out", user_id=session.user_id, session_id=session.id)
        return Ok(invalidated)

    @returns_result
    async def authenticate(self, access_token: str) -> Result[AccessClaims]:
        """Authorize a request: valid signature plus a live owning session."""
        verified = self.tokens.verify_access(access_token)
        if isinstance(verified, Err):
            return verified
        claims = verified.value
        now = self._clock()
        session = await self._store(
            self.sessions.get_session_by_token, self.tokens.fingerprint(access_token)
        )
        if not session or session.user_id != claims.user_id or not session.is_valid(now):
            return Err(AuthenticationError("invalid token"))
        await self._store(self.sessions.touch_session, session.id, now)
        return Ok(claims)

    @returns_result
    async def get_user(self, user_id: str) -> Result[User]:
        user = await self._store(self.users.get_user, user_id)
        if not user:
            return Err(NotFoundError("user not found"))
        return Ok(user)

    # password reset
    @returns_result
    async def request_password_reset(self, email: str) -> Result[None]:
        """Always Ok; a token is only minted and sent when the address is known."""
        normalized = normalize_email(email or "")
        user = await self._store(self.users.get_user_by_email, normalized)
        if not user:
            logger.info("password_reset_unknown_email", email_hash=email_fingerprint(normalized))
            return Ok(None)

        token = new_one_time_token()
        record = OneTimeToken.new(
            user.id,
            self.tokens.fingerprint(token),
            self.settings.password_reset_ttl_seconds,
            now=self._clock(),
        )
        try:
            await self._store(self.resets.create_reset_token, record)
            await asyncio.to_thread(self.notifier.send_password_reset, user.email, token)
        except (ServiceError, ConstraintViolation, OSError) as exc:
            logger.warning("password_reset_dispatch_failed", user_id=user.id, error=str(exc))
            return Ok(None)
        logger.info("password_reset_requested", user_id=user.id)
        return Ok(None)

    @returns_result
    async def confirm_password_reset(self, token: str, new_password: str) -> Result[int]:
        """Redeem a reset token; returns how many sessions were invalidated.

        Strength is checked before redemption so a rejected password leaves
        the token usable.
        """
        check_password_strength(new_password)
        record = await self._store(
            self.resets.consume_reset_token, self.tokens.fingerprint(token or ""), self._clock()
        )
        if not record:
            logger.info("password_reset_token_rejected")
            return Err(NotFoundError("reset token not found or expired"))

        pwd_hash, algo = await asyncio.to_thread(self.passwords.hash, new_password)
        await self._store(self.credentials.save_password, record.user_id, pwd_hash, algo)
        revoked = await self._store(self.sessions.invalidate_user_sessions, record.user_id)
        logger.info(
            "password_reset_completed", user_id=record.user_id, sessions_revoked=revoked
        )
        return Ok(revoked)

    # email verification
    @returns_result
    async def request_email_verification(self, user_id: str) -> Result[bool]:
        user = await self._store(self.users.get_user, user_id)
        if not user:
            return Err(NotFoundError("user not found"))
        if user.email_verified:
            return Ok(False)
        return Ok(await self._send_verification(user))

    @returns_result
    async def verify_email(self, token: str) -> Result[User]:
        record = await self._store(
            self.verifications.consume_verification_token,
            self.tokens.fingerprint(token or ""),
            self._clock(),
        )
        if not record:
            return Err(NotFoundError("verification token not found or expired"))
        user = await self._store(self.users.get_user, record.user_id)
        if not user:
            return Err(NotFoundError("user not found"))
        status = (
            UserStatus.ACTIVE if user.status == UserStatus.PENDING_VERIFICATION else user.status
        )
        updated = await self._store(
            self.users.update_user_status, user.id, status, email_verified=True
        )
        logger.info("email_verified", user_id=user.id, status=status.value)
        return Ok(updated or replace(user, status=status, email_verified=True))

    # housekeeping
    @returns_result
    async def cleanup_expired(self) -> Result[dict]:
        now = self._clock()
        counts = {
            "sessions": await self._store(self.sessions.delete_expired_sessions, now),
            "reset_tokens": await self._store(self.resets.delete_expired_reset_tokens, now),
            "verification_tokens": await self._store(
                self.verifications.delete_expired_verification_tokens, now
            ),
        }
        logger.info("auth_cleanup_completed", **counts)
        return Ok(counts)


__all__ = ["AuthResult", "Notifier", "UserAuthService", "UserProfile", "SUPPORTED_PROVIDERS"]
