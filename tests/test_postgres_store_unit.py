import json
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from oceanblog.storage.errors import ConstraintViolation, RecordNotFound, StaleRecordError
from oceanblog.storage.models import RefreshTokenRecord, User
from oceanblog.storage.postgres import PostgresStore


class _Result:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class ScriptedPool:
    """Answers queries in order and records what was sent."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.queries = []

    @contextmanager
    def connection(self):
        yield self

    def execute(self, sql, params=None):
        self.queries.append((" ".join(sql.split()), params))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return _Result(response)


def _store(pool: ScriptedPool) -> PostgresStore:
    store = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unused"
    return store


def _row(**overrides):
    created = datetime(2024, 6, 1, 12, 0)
    row = {
        "id": "7b0c2c1e-0000-4000-8000-000000000001",
        "email": "reader@example.com",
        "name": "Reader",
        "password_hash": "$argon2id$stub",
        "role": "user",
        "is_active": True,
        "is_email_verified": False,
        "email_verification_token": None,
        "password_reset_token": None,
        "password_reset_expires": None,
        "login_attempts": 0,
        "lock_until": None,
        "last_login": None,
        "refresh_tokens": [{"token": "r1", "created_at": "2024-06-01T12:00:00+00:00"}],
        "bio": None,
        "avatar": None,
        "location": None,
        "website": None,
        "created_at": created,
        "updated_at": created,
        "version": 3,
    }
    row.update(overrides)
    return row


def test_row_mapping_makes_timestamps_aware_and_parses_sessions():
    user = PostgresStore._user_from_row(_row(refresh_tokens=json.dumps([{"token": "r2", "created_at": "2024-06-02T00:00:00+00:00"}])))

    assert user.created_at.tzinfo is timezone.utc
    assert [record.token for record in user.refresh_tokens] == ["r2"]
    assert user.version == 3


def test_get_user_by_email_normalises():
    pool = ScriptedPool([_row()])

    user = _store(pool).get_user_by_email("  Reader@Example.COM ")

    assert user.email == "reader@example.com"
    assert pool.queries[0][1] == ("reader@example.com",)


def test_get_missing_user_returns_none():
    assert _store(ScriptedPool([])).get_user("7b0c2c1e-0000-4000-8000-0000000000ff") is None


def test_create_duplicate_email_is_constraint_violation():
    pool = ScriptedPool(errors.UniqueViolation("duplicate key"))
    user = User.new(email="reader@example.com", name="Reader", password_hash="h")

    with pytest.raises(ConstraintViolation):
        _store(pool).create_user(user)


def test_save_is_a_version_compare_and_set():
    pool = ScriptedPool([_row(version=4, login_attempts=1)])
    user = PostgresStore._user_from_row(_row())
    user.login_attempts = 1
    user.refresh_tokens.append(RefreshTokenRecord(token="r9", created_at=datetime(2024, 6, 3, tzinfo=timezone.utc)))

    saved = _store(pool).save_user(user)

    sql, params = pool.queries[0]
    assert "WHERE id = %(id)s AND version = %(version)s" in sql
    assert "version = version + 1" in sql
    assert params["version"] == 3
    assert [entry["token"] for entry in json.loads(params["refresh_tokens"])] == ["r1", "r9"]
    assert saved.version == 4


def test_save_detects_stale_version():
    pool = ScriptedPool([], [{"version": 5}])
    user = PostgresStore._user_from_row(_row())

    with pytest.raises(StaleRecordError) as excinfo:
        _store(pool).save_user(user)

    assert excinfo.value.actual == 5


def test_save_of_deleted_user():
    pool = ScriptedPool([], [])

    with pytest.raises(RecordNotFound):
        _store(pool).save_user(PostgresStore._user_from_row(_row()))


def test_schema_check_requires_user_table():
    pool = ScriptedPool([{"oid": None}])

    with pytest.raises(RuntimeError, match="app_user"):
        _store(pool)._verify_required_schema()


@pytest.mark.parametrize("user_id", ["abc", "123", "7b0c2c1e-0000-4000-8000"])
def test_non_uuid_id_is_a_miss_without_querying(user_id):
    pool = ScriptedPool()

    assert _store(pool).get_user(user_id) is None
    assert pool.queries == []


def test_get_user_by_uuid_queries():
    pool = ScriptedPool([_row()])

    user = _store(pool).get_user("7b0c2c1e-0000-4000-8000-000000000001")

    assert user.email == "reader@example.com"
    assert pool.queries[0][1] == ("7b0c2c1e-0000-4000-8000-000000000001",)
