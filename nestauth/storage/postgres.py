from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from nestauth.logging import get_logger
from nestauth.storage.errors import ConstraintViolation, StoreUnavailable
from nestauth.storage.models import (
    AdminAccount,
    AdminRole,
    AdminSession,
    OneTimeToken,
    Session,
    User,
    UserStatus,
)

_RESET = "password_reset"
_VERIFY = "email_verification"

# Shared by app_user and admin_account. Column expressions on the right-hand
# side see the pre-update row, so an elapsed lock restarts the count at 1.
_FAILED_ATTEMPT_SET = """
    failed_login_attempts = CASE
        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
        ELSE failed_login_attempts + 1
    END,
    locked_until = CASE
        WHEN (CASE
                WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
                ELSE failed_login_attempts + 1
              END) >= %(threshold)s THEN %(lock_until)s
        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN NULL
        ELSE locked_until
    END
"""


def _opt_str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


class PostgresStore:
    """Postgres-backed store for users, sessions, one-time tokens and admins."""

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self):
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, errors.OperationalError) as exc:
            raise StoreUnavailable(str(exc)) from exc

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        required_tables = [
            "app_user",
            "user_auth_credential",
            "auth_session",
            "one_time_token",
            "admin_account",
            "admin_session",
        ]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    # users
    def create_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (
                        id, email, role, status, email_verified, family_id,
                        first_name, last_name, timezone, language, auth_provider,
                        created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.role,
                        user.status.value,
                        user.email_verified,
                        user.family_id,
                        user.first_name,
                        user.last_name,
                        user.timezone,
                        user.language,
                        user.auth_provider,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_status(
        self,
        user_id: str,
        status: UserStatus,
        *,
        email_verified: Optional[bool] = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET status = %s, email_verified = COALESCE(%s, email_verified)
                WHERE id = %s
                RETURNING *
                """,
                (status.value, email_verified, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_successful_login(self, user_id: str, now: datetime) -> bool:
        """Clear the failure counter unless a lock is in force at ``now``."""
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = 0, locked_until = NULL, last_login_at = %(now)s
                WHERE id = %(id)s AND (locked_until IS NULL OR locked_until <= %(now)s)
                """,
                {"id": user_id, "now": now},
            )
            return cur.rowcount > 0

    def record_failed_login(
        self, user_id: str, *, threshold: int, lock_until: datetime, now: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {_FAILED_ATTEMPT_SET} WHERE id = %(id)s RETURNING *",
                {"id": user_id, "now": now, "threshold": threshold, "lock_until": lock_until},
            ).fetchone()
        return self._user_from_row(row) if row else None

    # credentials
    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, session_token_hash, refresh_token_hash,
                        created_at, expires_at, last_activity, is_active,
                        user_agent, ip_addr
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.session_token_hash,
                        session.refresh_token_hash,
                        session.created_at,
                        session.expires_at,
                        session.last_activity,
                        session.is_active,
                        session.user_agent,
                        session.ip_addr,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
        return session

    def get_session_by_token(self, token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE session_token_hash = %s", (token_hash,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_refresh_token(self, token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE refresh_token_hash = %s", (token_hash,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_activity = %s WHERE id = %s",
                (now, session_id),
            )

    def invalidate_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET is_active = FALSE WHERE id = %s AND is_active",
                (session_id,),
            )
            return cur.rowcount > 0

    def invalidate_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET is_active = FALSE WHERE user_id = %s AND is_active",
                (user_id,),
            )
            return cur.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s OR NOT is_active",
                (now,),
            )
            return cur.rowcount

    # one-time tokens
    def _create_token(self, purpose: str, token: OneTimeToken) -> OneTimeToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO one_time_token (id, user_id, purpose, token_hash, expires_at, used, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        purpose,
                        token.token_hash,
                        token.expires_at,
                        token.used,
                        token.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
        return token

    def _consume_token(
        self, purpose: str, token_hash: str, now: datetime
    ) -> Optional[OneTimeToken]:
        # Single conditional UPDATE: only one concurrent caller gets the row back
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE one_time_token SET used = TRUE
                WHERE token_hash = %s AND purpose = %s AND NOT used AND expires_at > %s
                RETURNING *
                """,
                (token_hash, purpose, now),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def _delete_expired_tokens(self, purpose: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM one_time_token WHERE purpose = %s AND expires_at <= %s",
                (purpose, now),
            )
            return cur.rowcount

    def create_reset_token(self, token: OneTimeToken) -> OneTimeToken:
        return self._create_token(_RESET, token)

    def consume_reset_token(self, token_hash: str, now: datetime) -> Optional[OneTimeToken]:
        return self._consume_token(_RESET, token_hash, now)

    def delete_expired_reset_tokens(self, now: datetime) -> int:
        return self._delete_expired_tokens(_RESET, now)

    def create_verification_token(self, token: OneTimeToken) -> OneTimeToken:
        return self._create_token(_VERIFY, token)

    def consume_verification_token(
        self, token_hash: str, now: datetime
    ) -> Optional[OneTimeToken]:
        return self._consume_token(_VERIFY, token_hash, now)

    def delete_expired_verification_tokens(self, now: datetime) -> int:
        return self._delete_expired_tokens(_VERIFY, now)

    # admin accounts
    def create_admin(self, account: AdminAccount) -> AdminAccount:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO admin_account (
                        id, email, password_hash, role, permissions, is_active,
                        first_name, last_name, two_factor_enabled, two_factor_secret,
                        created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.email,
                        account.password_hash,
                        account.role.value,
                        sorted(account.permissions),
                        account.is_active,
                        account.first_name,
                        account.last_name,
                        account.two_factor_enabled,
                        account.two_factor_secret,
                        account.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("admin email already exists", {"field": "email"})
        return account

    def get_admin(self, admin_id: str) -> Optional[AdminAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_account WHERE id = %s", (admin_id,)
            ).fetchone()
        return self._admin_from_row(row) if row else None

    def get_admin_by_email(self, email: str) -> Optional[AdminAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_account WHERE email = %s", (email,)
            ).fetchone()
        return self._admin_from_row(row) if row else None

    def record_failed_admin_login(
        self, admin_id: str, *, threshold: int, lock_until: datetime, now: datetime
    ) -> Optional[AdminAccount]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE admin_account SET {_FAILED_ATTEMPT_SET} WHERE id = %(id)s RETURNING *",
                {"id": admin_id, "now": now, "threshold": threshold, "lock_until": lock_until},
            ).fetchone()
        return self._admin_from_row(row) if row else None

    def record_successful_admin_login(self, admin_id: str, now: datetime) -> bool:
        """Clear the failure counter unless a lock is in force at ``now``."""
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE admin_account
                SET failed_login_attempts = 0, locked_until = NULL, last_login_at = %(now)s
                WHERE id = %(id)s AND (locked_until IS NULL OR locked_until <= %(now)s)
                """,
                {"id": admin_id, "now": now},
            )
            return cur.rowcount > 0

    def set_admin_active(self, admin_id: str, is_active: bool) -> Optional[AdminAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE admin_account SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, admin_id),
            ).fetchone()
        return self._admin_from_row(row) if row else None

    # admin sessions
    def create_admin_session(self, session: AdminSession) -> AdminSession:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO admin_session (
                        id, admin_id, session_token_hash, refresh_token_hash,
                        created_at, expires_at, last_activity, is_active,
                        ip_addr, user_agent
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.admin_id,
                        session.session_token_hash,
                        session.refresh_token_hash,
                        session.created_at,
                        session.expires_at,
                        session.last_activity,
                        session.is_active,
                        session.ip_addr,
                        session.user_agent,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("admin does not exist", {"admin_id": session.admin_id})
        return session

    def get_admin_session_by_token(self, token_hash: str) -> Optional[AdminSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_session WHERE session_token_hash = %s", (token_hash,)
            ).fetchone()
        return self._admin_session_from_row(row) if row else None

    def get_admin_session_by_refresh_token(
        self, token_hash: str
    ) -> Optional[AdminSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_session WHERE refresh_token_hash = %s", (token_hash,)
            ).fetchone()
        return self._admin_session_from_row(row) if row else None

    def rotate_admin_session_tokens(
        self,
        session_id: str,
        session_token_hash: str,
        refresh_token_hash: str,
        now: datetime,
    ) -> Optional[AdminSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE admin_session
                SET session_token_hash = %s, refresh_token_hash = %s, last_activity = %s
                WHERE id = %s AND is_active
                RETURNING *
                """,
                (session_token_hash, refresh_token_hash, now, session_id),
            ).fetchone()
        return self._admin_session_from_row(row) if row else None

    def touch_admin_session(self, session_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE admin_session SET last_activity = %s WHERE id = %s",
                (now, session_id),
            )

    def deactivate_admin_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE admin_session SET is_active = FALSE WHERE id = %s AND is_active",
                (session_id,),
            )
            return cur.rowcount > 0

    def deactivate_admin_sessions(self, admin_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE admin_session SET is_active = FALSE WHERE admin_id = %s AND is_active",
                (admin_id,),
            )
            return cur.rowcount

    def list_admin_sessions(self, admin_id: str) -> List[AdminSession]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM admin_session
                WHERE admin_id = %s AND is_active
                ORDER BY last_activity DESC
                """,
                (admin_id,),
            ).fetchall()
        return [self._admin_session_from_row(row) for row in rows]

    def deactivate_expired_admin_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE admin_session SET is_active = FALSE WHERE is_active AND expires_at <= %s",
                (now,),
            )
            return cur.rowcount

    # row mapping
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            role=row.get("role") or "parent",
            status=UserStatus(row["status"]),
            email_verified=bool(row.get("email_verified")),
            family_id=_opt_str(row.get("family_id")),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            timezone=row.get("timezone") or "UTC",
            language=row.get("language") or "en",
            auth_provider=row.get("auth_provider") or "email",
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            session_token_hash=row["session_token_hash"],
            refresh_token_hash=row["refresh_token_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_activity=row["last_activity"],
            is_active=row["is_active"],
            user_agent=row.get("user_agent"),
            ip_addr=_opt_str(row.get("ip_addr")),
        )

    @staticmethod
    def _token_from_row(row: dict) -> OneTimeToken:
        return OneTimeToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            used=row["used"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _admin_from_row(row: dict) -> AdminAccount:
        return AdminAccount(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            role=AdminRole(row["role"]),
            permissions=frozenset(row.get("permissions") or []),
            is_active=row["is_active"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            two_factor_enabled=bool(row.get("two_factor_enabled")),
            two_factor_secret=row.get("two_factor_secret"),
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _admin_session_from_row(row: dict) -> AdminSession:
        return AdminSession(
            id=str(row["id"]),
            admin_id=str(row["admin_id"]),
            session_token_hash=row["session_token_hash"],
            refresh_token_hash=row["refresh_token_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_activity=row["last_activity"],
            is_active=row["is_active"],
            ip_addr=_opt_str(row.get("ip_addr")),
            user_agent=row.get("user_agent"),
        )
