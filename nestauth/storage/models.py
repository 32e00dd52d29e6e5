from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    PENDING_VERIFICATION = "pending_verification"
    ACTIVE = "active"
    SUSPENDED = "suspended"


class AdminRole(str, Enum):
    """Named console roles; ``level`` is the ordinal used for privilege checks."""

    CONTENT_MODERATOR = "content_moderator"
    ANALYTICS_VIEWER = "analytics_viewer"
    CONTENT_MANAGER = "content_manager"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @property
    def level(self) -> int:
        return _ROLE_LEVELS[self]


_ROLE_LEVELS = {
    AdminRole.CONTENT_MODERATOR: 1,
    AdminRole.ANALYTICS_VIEWER: 2,
    AdminRole.CONTENT_MANAGER: 3,
    AdminRole.ADMIN: 4,
    AdminRole.SUPER_ADMIN: 5,
}

# Default permission grants per role, used when provisioning accounts
DEFAULT_ADMIN_PERMISSIONS: Dict[AdminRole, FrozenSet[str]] = {
    AdminRole.CONTENT_MODERATOR: frozenset({"moderate_content", "view_content"}),
    AdminRole.ANALYTICS_VIEWER: frozenset({"view_analytics", "view_content"}),
    AdminRole.CONTENT_MANAGER: frozenset(
        {"create_content", "edit_content", "publish_content", "view_content"}
    ),
    AdminRole.ADMIN: frozenset(
        {
            "manage_users",
            "view_user_data",
            "create_content",
            "edit_content",
            "publish_content",
            "view_content",
            "view_analytics",
        }
    ),
    AdminRole.SUPER_ADMIN: frozenset(
        {
            "manage_users",
            "view_user_data",
            "create_content",
            "edit_content",
            "publish_content",
            "view_content",
            "view_analytics",
            "manage_admin_users",
            "system_settings",
        }
    ),
}


@dataclass
class User:
    id: str
    email: str
    role: str = "parent"
    status: UserStatus = UserStatus.PENDING_VERIFICATION
    email_verified: bool = False
    family_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    timezone: str = "UTC"
    language: str = "en"
    auth_provider: str = "email"
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until


@dataclass
class UserCredential:
    user_id: str
    password_hash: str
    password_algo: str = "argon2id"
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    session_token_hash: str
    refresh_token_hash: str
    created_at: datetime
    expires_at: datetime
    last_activity: datetime
    is_active: bool = True
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        session_token_hash: str,
        refresh_token_hash: str,
        ttl_seconds: int,
        *,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            session_token_hash=session_token_hash,
            refresh_token_hash=refresh_token_hash,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            last_activity=now,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_valid(self, now: datetime) -> bool:
        return self.is_active and self.expires_at > now


@dataclass
class OneTimeToken:
    """Single-use token record (password reset or email verification).

    Only the token fingerprint is stored; ``used`` flips once.
    """

    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, user_id: str, token_hash: str, ttl_seconds: int, *, now: datetime | None = None
    ) -> "OneTimeToken":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
        )


# Entity names kept distinct for the two purposes
PasswordResetToken = OneTimeToken
EmailVerificationToken = OneTimeToken


@dataclass
class AdminAccount:
    id: str
    email: str
    password_hash: str
    role: AdminRole = AdminRole.CONTENT_MODERATOR
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    is_active: bool = True
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def role_level(self) -> int:
        return self.role.level

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until


@dataclass
class AdminSession:
    id: str
    admin_id: str
    session_token_hash: str
    refresh_token_hash: str
    created_at: datetime
    expires_at: datetime
    last_activity: datetime
    is_active: bool = True
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        admin_id: str,
        session_token_hash: str,
        refresh_token_hash: str,
        ttl_seconds: int,
        *,
        ip_addr: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
        session_id: str | None = None,
    ) -> "AdminSession":
        now = now or utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            admin_id=admin_id,
            session_token_hash=session_token_hash,
            refresh_token_hash=refresh_token_hash,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            last_activity=now,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )

    def is_valid(self, now: datetime) -> bool:
        return self.is_active and self.expires_at > now
