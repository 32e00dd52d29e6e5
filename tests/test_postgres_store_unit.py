import ipaddress
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from nestauth.logging import get_logger
from nestauth.storage.errors import ConstraintViolation, StoreUnavailable
from nestauth.storage.models import Session, User, UserStatus
from nestauth.storage.postgres import PostgresStore

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, row=None, rowcount=0, rows=None):
        self.row = row
        self.rowcount = rowcount
        self.rows = rows or []

    def fetchone(self):
        return self.row

    def fetchall(self):
        return self.rows


class FakeConnection:
    """Records statements and replays queued results in order."""

    def __init__(self, *results, missing_tables=()):
        self.results = list(results)
        self.missing_tables = set(missing_tables)
        self.statements = []

    def execute(self, sql, params=None):
        if "to_regclass" in sql:
            table = params[0].split(".", 1)[1]
            return FakeCursor({"oid": None if table in self.missing_tables else table})
        self.statements.append((sql, params))
        result = self.results.pop(0) if self.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.closed = False

    @contextmanager
    def connection(self):
        yield self.conn

    def close(self):
        self.closed = True


class TimeoutPool:
    def connection(self):
        raise PoolTimeout("pool exhausted")


def _store(conn) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://stub"
    store.logger = get_logger(__name__)
    store.pool = FakePool(conn)
    return store


def _user_row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "email": "parent@example.com",
        "role": "parent",
        "status": "active",
        "email_verified": True,
        "family_id": None,
        "first_name": None,
        "last_name": None,
        "timezone": "UTC",
        "language": "en",
        "auth_provider": "email",
        "failed_login_attempts": 0,
        "locked_until": None,
        "last_login_at": None,
        "created_at": NOW,
    }
    row.update(overrides)
    return row


def test_schema_check_passes_with_all_tables():
    pool = FakePool(FakeConnection())
    store = PostgresStore("postgresql://stub", pool=pool)

    store.close()
    assert pool.closed is True


def test_schema_check_names_missing_tables():
    conn = FakeConnection(missing_tables={"admin_session", "one_time_token"})

    with pytest.raises(RuntimeError) as exc_info:
        PostgresStore("postgresql://stub", pool=FakePool(conn))
    assert "admin_session, one_time_token" in str(exc_info.value)


def test_pool_timeout_surfaces_as_store_unavailable():
    store = _store(FakeConnection())
    store.pool = TimeoutPool()

    with pytest.raises(StoreUnavailable):
        store.get_user("u")


def test_user_row_mapping_stringifies_uuid():
    user_id = uuid.uuid4()
    family_id = uuid.uuid4()
    conn = FakeConnection(FakeCursor(_user_row(id=user_id, family_id=family_id)))
    user = _store(conn).get_user(str(user_id))

    assert user.id == str(user_id)
    assert user.family_id == str(family_id)
    assert user.status == UserStatus.ACTIVE


def test_duplicate_email_maps_to_constraint_violation():
    conn = FakeConnection(errors.UniqueViolation("duplicate key value"))
    user = User(id=str(uuid.uuid4()), email="parent@example.com", created_at=NOW)

    with pytest.raises(ConstraintViolation) as exc_info:
        _store(conn).create_user(user)
    assert exc_info.value.detail == {"field": "email"}


def test_failed_login_is_one_conditional_update():
    lock_until = NOW + timedelta(minutes=30)
    conn = FakeConnection(
        FakeCursor(_user_row(failed_login_attempts=5, locked_until=lock_until))
    )
    updated = _store(conn).record_failed_login(
        "user-1", threshold=5, lock_until=lock_until, now=NOW
    )

    assert updated.failed_login_attempts == 5
    assert updated.locked_until == lock_until
    assert len(conn.statements) == 1
    sql, params = conn.statements[0]
    assert sql.lstrip().startswith("UPDATE app_user SET")
    assert "RETURNING *" in sql
    assert params == {"id": "user-1", "now": NOW, "threshold": 5, "lock_until": lock_until}


def test_reset_token_redeemed_by_conditional_update():
    conn = FakeConnection(FakeCursor(None))

    assert _store(conn).consume_reset_token("hash-1", NOW) is None
    sql, params = conn.statements[0]
    assert "SET used = TRUE" in sql
    assert "NOT used AND expires_at > %s" in sql
    assert params == ("hash-1", "password_reset", NOW)


def test_verification_token_uses_its_own_purpose():
    row = {
        "id": uuid.uuid4(),
        "user_id": uuid.uuid4(),
        "purpose": "email_verification",
        "token_hash": "hash-2",
        "expires_at": NOW + timedelta(hours=1),
        "used": True,
        "created_at": NOW,
    }
    conn = FakeConnection(FakeCursor(row))
    token = _store(conn).consume_verification_token("hash-2", NOW)

    assert token.used is True
    assert token.user_id == str(row["user_id"])
    assert conn.statements[0][1][1] == "email_verification"


def test_invalidate_session_reports_rowcount():
    conn = FakeConnection(FakeCursor(rowcount=1), FakeCursor(rowcount=0))
    store = _store(conn)

    assert store.invalidate_session("s-1") is True
    assert store.invalidate_session("s-1") is False


@pytest.mark.parametrize(
    "method", ["record_successful_login", "record_successful_admin_login"]
)
def test_success_reset_skips_locked_rows(method):
    conn = FakeConnection(FakeCursor(rowcount=1), FakeCursor(rowcount=0))
    store = _store(conn)

    assert getattr(store, method)("id-1", NOW) is True
    assert getattr(store, method)("id-1", NOW) is False
    sql, params = conn.statements[0]
    assert "locked_until IS NULL OR locked_until <= %(now)s" in sql
    assert params == {"id": "id-1", "now": NOW}


def test_session_ip_is_stringified():
    row = {
        "id": uuid.uuid4(),
        "user_id": uuid.uuid4(),
        "session_token_hash": "s",
        "refresh_token_hash": "r",
        "created_at": NOW,
        "expires_at": NOW + timedelta(days=30),
        "last_activity": NOW,
        "is_active": True,
        "user_agent": "ua",
        "ip_addr": ipaddress.ip_address("10.0.0.1"),
    }
    session = _store(FakeConnection(FakeCursor(row))).get_session_by_token("s")

    assert isinstance(session, Session)
    assert session.ip_addr == "10.0.0.1"


def test_session_for_missing_user_maps_to_constraint_violation():
    conn = FakeConnection(errors.ForeignKeyViolation("fk"))

    with pytest.raises(ConstraintViolation):
        _store(conn).create_session(Session.new("missing", "s", "r", 60, now=NOW))
