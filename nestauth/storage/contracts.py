"""Store contracts the auth services depend on.

Both :class:`~nestauth.storage.memory.MemoryStore` and
:class:`~nestauth.storage.postgres.PostgresStore` satisfy all of them;
:class:`~nestauth.storage.redis_cache.RedisTokenStore` satisfies the two
one-time-token contracts. Store methods are synchronous; the services run them
in worker threads with a timeout.

Two methods carry atomicity requirements that must hold across processes:

- ``record_failed_login`` / ``record_failed_admin_login`` increment the
  attempt counter and set ``locked_until`` in one read-modify-write. When a
  previous lock has already elapsed the counter restarts at 1.
- ``consume_reset_token`` / ``consume_verification_token`` flip ``used`` only
  if it is still false and the token is unexpired, returning the record to
  exactly one caller.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from nestauth.storage.models import (
    AdminAccount,
    AdminSession,
    OneTimeToken,
    Session,
    User,
    UserStatus,
)


class UserStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user_status(
        self,
        user_id: str,
        status: UserStatus,
        *,
        email_verified: Optional[bool] = None,
    ) -> Optional[User]: ...

    def record_successful_login(self, user_id: str, now: datetime) -> bool: ...

    def record_failed_login(
        self, user_id: str, *, threshold: int, lock_until: datetime, now: datetime
    ) -> Optional[User]: ...


class CredentialStore(Protocol):
    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session_by_token(self, token_hash: str) -> Optional[Session]: ...

    def get_session_by_refresh_token(self, token_hash: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, now: datetime) -> None: ...

    def invalidate_session(self, session_id: str) -> bool: ...

    def invalidate_user_sessions(self, user_id: str) -> int: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...


class PasswordResetStore(Protocol):
    def create_reset_token(self, token: OneTimeToken) -> OneTimeToken: ...

    def consume_reset_token(
        self, token_hash: str, now: datetime
    ) -> Optional[OneTimeToken]: ...

    def delete_expired_reset_tokens(self, now: datetime) -> int: ...


class EmailVerificationStore(Protocol):
    def create_verification_token(self, token: OneTimeToken) -> OneTimeToken: ...

    def consume_verification_token(
        self, token_hash: str, now: datetime
    ) -> Optional[OneTimeToken]: ...

    def delete_expired_verification_tokens(self, now: datetime) -> int: ...


class AdminAccountStore(Protocol):
    def create_admin(self, account: AdminAccount) -> AdminAccount: ...

    def get_admin(self, admin_id: str) -> Optional[AdminAccount]: ...

    def get_admin_by_email(self, email: str) -> Optional[AdminAccount]: ...

    def record_failed_admin_login(
        self, admin_id: str, *, threshold: int, lock_until: datetime, now: datetime
    ) -> Optional[AdminAccount]: ...

    def record_successful_admin_login(self, admin_id: str, now: datetime) -> bool: ...

    def set_admin_active(
        self, admin_id: str, is_active: bool
    ) -> Optional[AdminAccount]: ...


class AdminSessionStore(Protocol):
    def create_admin_session(self, session: AdminSession) -> AdminSession: ...

    def get_admin_session_by_token(self, token_hash: str) -> Optional[AdminSession]: ...

    def get_admin_session_by_refresh_token(
        self, token_hash: str
    ) -> Optional[AdminSession]: ...

    def rotate_admin_session_tokens(
        self,
        session_id: str,
        session_token_hash: str,
        refresh_token_hash: str,
        now: datetime,
    ) -> Optional[AdminSession]: ...

    def touch_admin_session(self, session_id: str, now: datetime) -> None: ...

    def deactivate_admin_session(self, session_id: str) -> bool: ...

    def deactivate_admin_sessions(self, admin_id: str) -> int: ...

    def list_admin_sessions(self, admin_id: str) -> List[AdminSession]: ...

    def deactivate_expired_admin_sessions(self, now: datetime) -> int: ...


class AuthStore(
    UserStore,
    CredentialStore,
    SessionStore,
    PasswordResetStore,
    EmailVerificationStore,
    AdminAccountStore,
    AdminSessionStore,
    Protocol,
):
    """Everything a primary backing store provides."""


__all__ = [
    "UserStore",
    "CredentialStore",
    "SessionStore",
    "PasswordResetStore",
    "EmailVerificationStore",
    "AdminAccountStore",
    "AdminSessionStore",
    "AuthStore",
]
