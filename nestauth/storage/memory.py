from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from nestauth.logging import get_logger
from nestauth.storage.errors import ConstraintViolation
from nestauth.storage.models import (
    AdminAccount,
    AdminRole,
    AdminSession,
    OneTimeToken,
    Session,
    User,
    UserCredential,
    UserStatus,
)

_RESET = "password_reset"
_VERIFY = "email_verification"


class MemoryStore:
    """In-process backing store with a JSON snapshot under ``fs_root``.

    A single re-entrant lock serialises every operation, which is what makes
    the counter increment and token redemption atomic here.
    """

    def __init__(self, fs_root: str = "/tmp/nestauth", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserCredential] = {}
        self.sessions: Dict[str, Session] = {}
        self.one_time_tokens: Dict[str, Dict[str, OneTimeToken]] = {_RESET: {}, _VERIFY: {}}
        self.admins: Dict[str, AdminAccount] = {}
        self.admin_sessions: Dict[str, AdminSession] = {}
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users
    def create_user(self, user: User) -> User:
        with self._data_lock:
            if any(existing.email == user.email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.users[user.id] = replace(user)
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def update_user_status(
        self,
        user_id: str,
        status: UserStatus,
        *,
        email_verified: Optional[bool] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = status
            if email_verified is not None:
                user.email_verified = email_verified
            self._persist_state()
            return replace(user)

    def record_successful_login(self, user_id: str, now: datetime) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.is_locked(now):
                return False
            user.failed_login_attempts = 0
            user.locked_until = None
            user.last_login_at = now
            self._persist_state()
            return True

    def record_failed_login(
        self, user_id: str, *, threshold: int, lock_until: datetime, now: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            self._apply_failed_attempt(user, threshold, lock_until, now)
            self._persist_state()
            return replace(user)

    @staticmethod
    def _apply_failed_attempt(record, threshold: int, lock_until: datetime, now: datetime) -> None:
        if record.locked_until is not None and record.locked_until <= now:
            # previous window elapsed, start counting again
            record.failed_login_attempts = 0
            record.locked_until = None
        record.failed_login_attempts += 1
        if record.failed_login_attempts >= threshold:
            record.locked_until = lock_until

    # credentials
    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = UserCredential(
                user_id=user_id, password_hash=password_hash, password_algo=password_algo
            )
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            if not cred:
                return None
            return cred.password_hash, cred.password_algo

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session_by_token(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (s for s in self.sessions.values() if s.session_token_hash == token_hash),
                None,
            )
            return replace(sess) if sess else None

    def get_session_by_refresh_token(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (s for s in self.sessions.values() if s.refresh_token_hash == token_hash),
                None,
            )
            return replace(sess) if sess else None

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess:
                sess.last_activity = now

    def invalidate_session(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            sess.is_active = False
            self._persist_state()
            return True

    def invalidate_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.user_id == user_id and sess.is_active:
                    sess.is_active = False
                    count += 1
            if count:
                self._persist_state()
            return count

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.expires_at <= now or not sess.is_active
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # one-time tokens
    def _create_token(self, purpose: str, token: OneTimeToken) -> OneTimeToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            self.one_time_tokens[purpose][token.token_hash] = replace(token)
            self._persist_state()
            return replace(token)

    def _consume_token(
        self, purpose: str, token_hash: str, now: datetime
    ) -> Optional[OneTimeToken]:
        with self._data_lock:
            record = self.one_time_tokens[purpose].get(token_hash)
            if not record or record.used or record.expires_at <= now:
                return None
            record.used = True
            self._persist_state()
            return replace(record)

    def _delete_expired_tokens(self, purpose: str, now: datetime) -> int:
        with self._data_lock:
            bucket = self.one_time_tokens[purpose]
            stale = [h for h, t in bucket.items() if t.expires_at <= now]
            for token_hash in stale:
                bucket.pop(token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

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
        with self._data_lock:
            if any(a.email == account.email for a in self.admins.values()):
                raise ConstraintViolation("admin email already exists", {"field": "email"})
            self.admins[account.id] = replace(account)
            self._persist_state()
            return replace(account)

    def get_admin(self, admin_id: str) -> Optional[AdminAccount]:
        with self._data_lock:
            account = self.admins.get(admin_id)
            return replace(account) if account else None

    def get_admin_by_email(self, email: str) -> Optional[AdminAccount]:
        with self._data_lock:
            account = next((a for a in self.admins.values() if a.email == email), None)
            return replace(account) if account else None

    def record_failed_admin_login(
        self, admin_id: str, *, threshold: int, lock_until: datetime, now: datetime
    ) -> Optional[AdminAccount]:
        with self._data_lock:
            account = self.admins.get(admin_id)
            if not account:
                return None
            self._apply_failed_attempt(account, threshold, lock_until, now)
            self._persist_state()
            return replace(account)

    def record_successful_admin_login(self, admin_id: str, now: datetime) -> bool:
        with self._data_lock:
            account = self.admins.get(admin_id)
            if not account or account.is_locked(now):
                return False
            account.failed_login_attempts = 0
            account.locked_until = None
            account.last_login_at = now
            self._persist_state()
            return True

    def set_admin_active(self, admin_id: str, is_active: bool) -> Optional[AdminAccount]:
        with self._data_lock:
            account = self.admins.get(admin_id)
            if not account:
                return None
            account.is_active = is_active
            self._persist_state()
            return replace(account)

    # admin sessions
    def create_admin_session(self, session: AdminSession) -> AdminSession:
        with self._data_lock:
            if session.admin_id not in self.admins:
                raise ConstraintViolation("admin does not exist", {"admin_id": session.admin_id})
            self.admin_sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_admin_session_by_token(self, token_hash: str) -> Optional[AdminSession]:
        with self._data_lock:
            sess = next(
                (s for s in self.admin_sessions.values() if s.session_token_hash == token_hash),
                None,
            )
            return replace(sess) if sess else None

    def get_admin_session_by_refresh_token(
        self, token_hash: str
    ) -> Optional[AdminSession]:
        with self._data_lock:
            sess = next(
                (s for s in self.admin_sessions.values() if s.refresh_token_hash == token_hash),
                None,
            )
            return replace(sess) if sess else None

    def rotate_admin_session_tokens(
        self,
        session_id: str,
        session_token_hash: str,
        refresh_token_hash: str,
        now: datetime,
    ) -> Optional[AdminSession]:
        with self._data_lock:
            sess = self.admin_sessions.get(session_id)
            if not sess or not sess.is_active:
                return None
            sess.session_token_hash = session_token_hash
            sess.refresh_token_hash = refresh_token_hash
            sess.last_activity = now
            self._persist_state()
            return replace(sess)

    def touch_admin_session(self, session_id: str, now: datetime) -> None:
        with self._data_lock:
            sess = self.admin_sessions.get(session_id)
            if sess:
                sess.last_activity = now

    def deactivate_admin_session(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self.admin_sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            sess.is_active = False
            self._persist_state()
            return True

    def deactivate_admin_sessions(self, admin_id: str) -> int:
        with self._data_lock:
            count = 0
            for sess in self.admin_sessions.values():
                if sess.admin_id == admin_id and sess.is_active:
                    sess.is_active = False
                    count += 1
            if count:
                self._persist_state()
            return count

    def list_admin_sessions(self, admin_id: str) -> List[AdminSession]:
        with self._data_lock:
            results = [
                replace(s)
                for s in self.admin_sessions.values()
                if s.admin_id == admin_id and s.is_active
            ]
            return sorted(results, key=lambda s: s.last_activity, reverse=True)

    def deactivate_expired_admin_sessions(self, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for sess in self.admin_sessions.values():
                if sess.is_active and sess.expires_at <= now:
                    sess.is_active = False
                    count += 1
            if count:
                self._persist_state()
            return count

    # snapshot
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": cred.user_id,
                    "password_hash": cred.password_hash,
                    "password_algo": cred.password_algo,
                    "updated_at": self._serialize_datetime(cred.updated_at),
                }
                for cred in self.credentials.values()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "one_time_tokens": {
                purpose: [self._serialize_token(t) for t in bucket.values()]
                for purpose, bucket in self.one_time_tokens.items()
            },
            "admins": [self._serialize_admin(a) for a in self.admins.values()],
            "admin_sessions": [
                self._serialize_admin_session(s) for s in self.admin_sessions.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: UserCredential(
                user_id=entry["user_id"],
                password_hash=entry["password_hash"],
                password_algo=entry.get("password_algo", "argon2id"),
                updated_at=self._deserialize_datetime(entry.get("updated_at"))
                or datetime.now().astimezone(),
            )
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        raw_tokens = data.get("one_time_tokens", {})
        self.one_time_tokens = {
            purpose: {
                t["token_hash"]: self._deserialize_token(t)
                for t in raw_tokens.get(purpose, [])
            }
            for purpose in (_RESET, _VERIFY)
        }
        self.admins = {a["id"]: self._deserialize_admin(a) for a in data.get("admins", [])}
        self.admin_sessions = {
            s["id"]: self._deserialize_admin_session(s)
            for s in data.get("admin_sessions", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            admins=len(self.admins),
            path=str(path),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "role": user.role,
            "status": user.status.value,
            "email_verified": user.email_verified,
            "family_id": user.family_id,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "timezone": user.timezone,
            "language": user.language,
            "auth_provider": user.auth_provider,
            "failed_login_attempts": user.failed_login_attempts,
            "locked_until": self._serialize_datetime(user.locked_until),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            role=data.get("role", "parent"),
            status=UserStatus(data.get("status", UserStatus.PENDING_VERIFICATION.value)),
            email_verified=data.get("email_verified", False),
            family_id=data.get("family_id"),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            timezone=data.get("timezone", "UTC"),
            language=data.get("language", "en"),
            auth_provider=data.get("auth_provider", "email"),
            failed_login_attempts=data.get("failed_login_attempts", 0),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "session_token_hash": session.session_token_hash,
            "refresh_token_hash": session.refresh_token_hash,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "last_activity": self._serialize_datetime(session.last_activity),
            "is_active": session.is_active,
            "user_agent": session.user_agent,
            "ip_addr": session.ip_addr,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            session_token_hash=data["session_token_hash"],
            refresh_token_hash=data["refresh_token_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_activity=self._deserialize_datetime(data["last_activity"]),
            is_active=data.get("is_active", True),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
        )

    def _serialize_token(self, token: OneTimeToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "token_hash": token.token_hash,
            "expires_at": self._serialize_datetime(token.expires_at),
            "used": token.used,
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_token(self, data: dict) -> OneTimeToken:
        return OneTimeToken(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used=data.get("used", False),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_admin(self, account: AdminAccount) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "password_hash": account.password_hash,
            "role": account.role.value,
            "permissions": sorted(account.permissions),
            "is_active": account.is_active,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "two_factor_enabled": account.two_factor_enabled,
            "two_factor_secret": account.two_factor_secret,
            "failed_login_attempts": account.failed_login_attempts,
            "locked_until": self._serialize_datetime(account.locked_until),
            "last_login_at": self._serialize_datetime(account.last_login_at),
            "created_at": self._serialize_datetime(account.created_at),
        }

    def _deserialize_admin(self, data: dict) -> AdminAccount:
        return AdminAccount(
            id=data["id"],
            email=data["email"],
            password_hash=data["password_hash"],
            role=AdminRole(data.get("role", AdminRole.CONTENT_MODERATOR.value)),
            permissions=frozenset(data.get("permissions", [])),
            is_active=data.get("is_active", True),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            two_factor_enabled=data.get("two_factor_enabled", False),
            two_factor_secret=data.get("two_factor_secret"),
            failed_login_attempts=data.get("failed_login_attempts", 0),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_admin_session(self, session: AdminSession) -> dict:
        return {
            "id": session.id,
            "admin_id": session.admin_id,
            "session_token_hash": session.session_token_hash,
            "refresh_token_hash": session.refresh_token_hash,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "last_activity": self._serialize_datetime(session.last_activity),
            "is_active": session.is_active,
            "ip_addr": session.ip_addr,
            "user_agent": session.user_agent,
        }

    def _deserialize_admin_session(self, data: dict) -> AdminSession:
        return AdminSession(
            id=data["id"],
            admin_id=data["admin_id"],
            session_token_hash=data["session_token_hash"],
            refresh_token_hash=data["refresh_token_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_activity=self._deserialize_datetime(data["last_activity"]),
            is_active=data.get("is_active", True),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
        )
