"""Admin console authentication.

An account is either usable or locked; "locked" is an active account whose
``locked_until`` lies in the future. Failed password or second-factor
attempts go through the store's atomic counter, which sets the lock when the
threshold is reached. Externally a lock is indistinguishable from bad
credentials.

Unlike user refresh, admin refresh keeps the session row and rotates the
token hashes stored on it.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, FrozenSet, Iterable, List, Optional

from nestauth.config import Settings
from nestauth.logging import email_fingerprint, get_logger
from nestauth.service import totp
from nestauth.service.common import StoreRunner, returns_result
from nestauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    NotFoundError,
)
from nestauth.service.passwords import (
    PASSWORD_ALGO,
    PasswordService,
    check_password_strength,
    normalize_email,
    validate_email,
)
from nestauth.service.result import Err, Ok, Result
from nestauth.service.tokens import (
    ADMIN_ACCESS_TYPE,
    ADMIN_REFRESH_TYPE,
    AdminSubject,
    TokenPair,
    TokenService,
)
from nestauth.storage.contracts import AdminAccountStore, AdminSessionStore
from nestauth.storage.errors import ConstraintViolation
from nestauth.storage.models import (
    DEFAULT_ADMIN_PERMISSIONS,
    AdminAccount,
    AdminRole,
    AdminSession,
    utcnow,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class AdminIdentity:
    admin_id: str
    email: str
    role: AdminRole
    role_level: int
    permissions: FrozenSet[str]
    session_id: str


@dataclass(frozen=True)
class AdminLoginResult:
    """Outcome of a login or refresh.

    When ``requires_two_factor`` is set nothing was issued and the other
    fields are empty.
    """

    requires_two_factor: bool = False
    tokens: Optional[TokenPair] = None
    account: Optional[AdminAccount] = None
    session: Optional[AdminSession] = None


@dataclass(frozen=True)
class ProvisionedAdmin:
    account: AdminAccount
    two_factor_uri: Optional[str] = None


class AdminAuthService:
    def __init__(
        self,
        settings: Settings,
        tokens: TokenService,
        accounts: AdminAccountStore,
        sessions: AdminSessionStore,
        passwords: PasswordService,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.tokens = tokens
        self.accounts = accounts
        self.sessions = sessions
        self.passwords = passwords
        self._clock = clock or utcnow
        self._store = StoreRunner(settings.store_timeout_seconds)

    def _subject(self, account: AdminAccount, session_id: str) -> AdminSubject:
        return AdminSubject(
            admin_id=account.id,
            email=account.email,
            role=account.role,
            permissions=account.permissions,
            session_id=session_id,
        )

    async def _record_failure(
        self, account: AdminAccount, now: datetime, *, reason: str
    ) -> Err:
        updated = await self._store(
            self.accounts.record_failed_admin_login,
            account.id,
            threshold=self.settings.lockout_threshold,
            lock_until=now + timedelta(seconds=self.settings.lockout_duration_seconds),
            now=now,
        )
        if updated and updated.is_locked(now):
            logger.warning(
                "admin_login_lock_engaged",
                admin_id=account.id,
                attempts=updated.failed_login_attempts,
                locked_until=updated.locked_until.isoformat(),
            )
            return Err(AccountLockedError(updated.locked_until))
        logger.info(
            "admin_login_failed",
            admin_id=account.id,
            reason=reason,
            attempts=updated.failed_login_attempts if updated else None,
        )
        return Err(AuthenticationError())

    async def _open_session(
        self,
        account: AdminAccount,
        now: datetime,
        *,
        client_ip: Optional[str],
        user_agent: Optional[str],
    ) -> AdminLoginResult:
        session_id = str(uuid.uuid4())
        expires_at = now + timedelta(seconds=self.settings.admin_session_ttl_seconds)
        pair = self.tokens.issue_admin(self._subject(account, session_id), expires_at)
        session = AdminSession.new(
            account.id,
            self.tokens.fingerprint(pair.access_token),
            self.tokens.fingerprint(pair.refresh_token),
            self.settings.admin_session_ttl_seconds,
            ip_addr=client_ip,
            user_agent=user_agent,
            now=now,
            session_id=session_id,
        )
        session = await self._store(self.sessions.create_admin_session, session)
        return AdminLoginResult(tokens=pair, account=account, session=session)

    @returns_result
    async def authenticate(
        self,
        email: str,
        password: str,
        two_factor_code: Optional[str] = None,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[AdminLoginResult]:
        normalized = normalize_email(email or "")
        account = await self._store(self.accounts.get_admin_by_email, normalized)
        now = self._clock()
        if not account or not account.is_active:
            logger.info(
                "admin_login_rejected",
                reason="unknown" if not account else "inactive",
                email_hash=email_fingerprint(normalized),
                client_ip=client_ip,
            )
            return Err(AuthenticationError())

        if account.is_locked(now):
            logger.warning(
                "admin_login_locked",
                admin_id=account.id,
                locked_until=account.locked_until.isoformat(),
                client_ip=client_ip,
            )
            return Err(AccountLockedError(account.locked_until))

        password_ok = await asyncio.to_thread(
            self.passwords.verify, account.password_hash, PASSWORD_ALGO, password or ""
        )
        if not password_ok:
            return await self._record_failure(account, now, reason="password")

        if account.two_factor_enabled:
            if not two_factor_code:
                logger.info("admin_login_two_factor_required", admin_id=account.id)
                return Ok(AdminLoginResult(requires_two_factor=True))
            if not totp.verify_totp(
                account.two_factor_secret or "", two_factor_code, at=now.timestamp()
            ):
                return await self._record_failure(account, now, reason="two_factor")

        if not await self._store(self.accounts.record_successful_admin_login, account.id, now):
            # a concurrent failure engaged the lock after the read above
            current = await self._store(self.accounts.get_admin, account.id)
            if current is None or not current.is_locked(now):
                return Err(AuthenticationError())
            logger.warning(
                "admin_login_locked",
                admin_id=account.id,
                locked_until=current.locked_until.isoformat(),
                client_ip=client_ip,
            )
            return Err(AccountLockedError(current.locked_until))
        result = await self._open_session(
            account, now, client_ip=client_ip, user_agent=user_agent
        )
        logger.info(
            "admin_login_succeeded",
            admin_id=account.id,
            role=account.role.value,
            session_id=result.session.id,
            client_ip=client_ip,
        )
        return Ok(result)

    async def _deactivate_if_stale(self, session: AdminSession, now: datetime) -> bool:
        if session.is_valid(now):
            return False
        if session.is_active:
            await self._store(self.sessions.deactivate_admin_session, session.id)
            logger.info("admin_session_expired", admin_id=session.admin_id, session_id=session.id)
        return True

    @returns_result
    async def refresh(self, refresh_token: str) -> Result[AdminLoginResult]:
        now = self._clock()
        session = await self._store(
            self.sessions.get_admin_session_by_refresh_token,
            self.tokens.fingerprint(refresh_token or ""),
        )
        if not session or await self._deactivate_if_stale(session, now):
            return Err(AuthenticationError("invalid token"))
        verified = self.tokens.verify_admin(refresh_token, token_type=ADMIN_REFRESH_TYPE)
        if isinstance(verified, Err):
            return verified

        account = await self._store(self.accounts.get_admin, session.admin_id)
        if not account or not account.is_active:
            await self._store(self.sessions.deactivate_admin_session, session.id)
            logger.warning("admin_refresh_account_disabled", admin_id=session.admin_id)
            return Err(AuthenticationError("invalid token"))

        pair = self.tokens.issue_admin(self._subject(account, session.id), session.expires_at)
        rotated = await self._store(
            self.sessions.rotate_admin_session_tokens,
            session.id,
            self.tokens.fingerprint(pair.access_token),
            self.tokens.fingerprint(pair.refresh_token),
            now,
        )
        if not rotated:
            # logged out or revoked between lookup and rotation
            return Err(AuthenticationError("invalid token"))
        logger.info("admin_session_refreshed", admin_id=account.id, session_id=session.id)
        return Ok(AdminLoginResult(tokens=pair, account=account, session=rotated))

    @returns_result
    async def logout(self, token: str) -> Result[bool]:
        """Deactivate the session behind an access or refresh token; idempotent."""
        token_hash = self.tokens.fingerprint(token or "")
        session = await self._store(self.sessions.get_admin_session_by_token, token_hash)
        if not session:
            session = await self._store(
                self.sessions.get_admin_session_by_refresh_token, token_hash
            )
        if not session:
            return Ok(False)
        changed = await self._store(self.sessions.deactivate_admin_session, session.id)
        logger.info("admin_logged_out", admin_id=session.admin_id, session_id=session.id)
        return Ok(changed)

    @returns_result
    async def validate_session(self, token: str) -> Result[Optional[AdminIdentity]]:
        now = self._clock()
        session = await self._store(
            self.sessions.get_admin_session_by_token, self.tokens.fingerprint(token or "")
        )
        if not session or await self._deactivate_if_stale(session, now):
            return Ok(None)
        verified = self.tokens.verify_admin(token, token_type=ADMIN_ACCESS_TYPE)
        if isinstance(verified, Err):
            return Ok(None)
        account = await self._store(self.accounts.get_admin, session.admin_id)
        if not account or not account.is_active:
            return Ok(None)
        await self._store(self.sessions.touch_admin_session, session.id, now)
        return Ok(
            AdminIdentity(
                admin_id=account.id,
                email=account.email,
                role=account.role,
                role_level=account.role_level,
                permissions=account.permissions,
                session_id=session.id,
            )
        )

    @returns_result
    async def get_profile(self, admin_id: str) -> Result[AdminAccount]:
        account = await self._store(self.accounts.get_admin, admin_id)
        if not account or not account.is_active:
            return Err(NotFoundError("admin account not found"))
        return Ok(account)

    @returns_result
    async def revoke_all_sessions(self, admin_id: str) -> Result[int]:
        count = await self._store(self.sessions.deactivate_admin_sessions, admin_id)
        logger.warning("admin_sessions_revoked", admin_id=admin_id, count=count)
        return Ok(count)

    @returns_result
    async def list_sessions(self, admin_id: str) -> Result[List[AdminSession]]:
        now = self._clock()
        sessions = await self._store(self.sessions.list_admin_sessions, admin_id)
        return Ok([s for s in sessions if s.is_valid(now)])

    @returns_result
    async def cleanup_expired_sessions(self) -> Result[int]:
        count = await self._store(
            self.sessions.deactivate_expired_admin_sessions, self._clock()
        )
        if count:
            logger.info("admin_sessions_expired", count=count)
        return Ok(count)

    @returns_result
    async def set_account_active(self, admin_id: str, is_active: bool) -> Result[AdminAccount]:
        """Enable or disable an account; disabling also ends its sessions."""
        account = await self._store(self.accounts.set_admin_active, admin_id, is_active)
        if not account:
            return Err(NotFoundError("admin account not found"))
        if not is_active:
            await self._store(self.sessions.deactivate_admin_sessions, admin_id)
        logger.info("admin_account_state_changed", admin_id=admin_id, is_active=is_active)
        return Ok(account)

    @returns_result
    async def provision_admin(
        self,
        email: str,
        password: str,
        role: AdminRole,
        *,
        permissions: Optional[Iterable[str]] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        enable_two_factor: bool = False,
    ) -> Result[ProvisionedAdmin]:
        """Create an admin account out of band.

        Permissions default to the role's standard grant. With two-factor
        enabled a fresh secret is generated and its otpauth URI returned once.
        """
        normalized = validate_email(email)
        check_password_strength(password)
        if await self._store(self.accounts.get_admin_by_email, normalized):
            return Err(ConflictError("admin email already exists", detail={"field": "email"}))
        pwd_hash, _ = await asyncio.to_thread(self.passwords.hash, password)
        secret = totp.generate_secret() if enable_two_factor else None
        account = AdminAccount(
            id=str(uuid.uuid4()),
            email=normalized,
            password_hash=pwd_hash,
            role=role,
            permissions=frozenset(
                permissions if permissions is not None else DEFAULT_ADMIN_PERMISSIONS[role]
            ),
            first_name=first_name,
            last_name=last_name,
            two_factor_enabled=enable_two_factor,
            two_factor_secret=secret,
            created_at=self._clock(),
        )
        try:
            account = await self._store(self.accounts.create_admin, account)
        except ConstraintViolation:
            return Err(ConflictError("admin email already exists", detail={"field": "email"}))
        logger.info("admin_provisioned", admin_id=account.id, role=role.value)
        uri = (
            totp.provisioning_uri(secret, normalized, self.settings.jwt_realm)
            if secret
            else None
        )
        return Ok(ProvisionedAdmin(account=account, two_factor_uri=uri))


__all__ = [
    "AdminAuthService",
    "AdminIdentity",
    "AdminLoginResult",
    "ProvisionedAdmin",
]
