"""PostgresStore SQL paths against a scripted connection; no database needed."""

from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from sakalsense.config import Role
from sakalsense.storage.errors import ConstraintViolation
from sakalsense.storage.models import AdminRequestStatus
from sakalsense.storage.postgres import PostgresStore

NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return self.rows


class FakeConnection:
    """Replays queued results in order and records every statement."""

    def __init__(self, results):
        self.results = list(results)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    @contextmanager
    def transaction(self):
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(*results):
    store = PostgresStore.__new__(PostgresStore)
    conn = FakeConnection(results)
    store.pool = FakePool(conn)
    return store, conn


def _account_row(**overrides):
    row = {
        "id": "acct-1",
        "email": "jane@example.com",
        "full_name": "Jane Doe",
        "password_hash": "hash",
        "password_algo": "argon2id",
        "avatar_link": None,
        "invited_by_id": None,
        "is_active": True,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def _request_row(**overrides):
    row = {
        "id": "req-1",
        "email": "jane@example.com",
        "full_name": "Jane Doe",
        "reason": None,
        "status": "PENDING",
        "created_at": NOW,
        "updated_at": NOW,
        "reviewed_by_id": None,
        "reviewed_at": None,
        "review_note": None,
    }
    row.update(overrides)
    return row


def test_account_lookup_uses_role_table():
    store, conn = _store(FakeCursor([_account_row()]))

    account = store.get_account_by_email(Role.ADMIN, "jane@example.com")

    assert account.role is Role.ADMIN
    assert account.full_name == "Jane Doe"
    sql, params = conn.statements[0]
    assert "FROM admin_account" in sql
    assert params == ("jane@example.com",)


def test_duplicate_account_is_constraint_violation():
    store, _ = _store(errors.UniqueViolation("duplicate key"))

    with pytest.raises(ConstraintViolation) as exc:
        store.create_account(Role.USER, "jane@example.com", "Jane", "hash")
    assert exc.value.detail == {"field": "email"}


def test_update_password_reports_rowcount():
    store, conn = _store(FakeCursor(rowcount=1), FakeCursor(rowcount=0))

    assert store.update_password(Role.USER, "acct-1", "new-hash")
    assert not store.update_password(Role.USER, "missing", "new-hash")
    assert "UPDATE app_user" in conn.statements[0][0]


def test_list_admin_requests_filters_and_pages():
    store, conn = _store(FakeCursor([{"total": 3}]), FakeCursor([_request_row()]))

    page = store.list_admin_requests(
        status=AdminRequestStatus.PENDING, page=2, limit=2, sort_by="updated_at", sort_order="asc"
    )

    assert page.total == 3
    assert page.total_pages == 2
    assert page.requests[0].status is AdminRequestStatus.PENDING
    select_sql, params = conn.statements[1]
    assert "WHERE status = %s" in select_sql
    assert "ORDER BY updated_at ASC, id" in select_sql
    assert params == ["PENDING", 2, 2]


def test_list_admin_requests_rejects_unknown_sort():
    store, _ = _store()
    with pytest.raises(ValueError):
        store.list_admin_requests(sort_by="email; DROP TABLE admin_request")


def test_counts_fill_missing_statuses():
    store, _ = _store(FakeCursor([{"status": "PENDING", "n": 2}, {"status": "REJECTED", "n": 1}]))

    assert store.count_admin_requests() == {"pending": 2, "approved": 0, "rejected": 1, "total": 3}


def test_approve_creates_admin_and_flips_status():
    store, conn = _store(
        FakeCursor([_request_row()]),
        FakeCursor([_account_row(id="admin-1", invited_by_id="root-1")]),
        FakeCursor([_request_row(status="APPROVED", reviewed_by_id="root-1", reviewed_at=NOW)]),
    )

    request, admin = store.approve_admin_request(
        "req-1", password_hash="hash", reviewed_by_id="root-1", invited_by_id="root-1"
    )

    assert request.status is AdminRequestStatus.APPROVED
    assert admin.role is Role.ADMIN
    assert admin.invited_by_id == "root-1"
    assert "FOR UPDATE" in conn.statements[0][0]
    assert "INSERT INTO admin_account" in conn.statements[1][0]


def test_approve_processed_request_is_rejected():
    store, conn = _store(FakeCursor([_request_row(status="REJECTED")]))

    with pytest.raises(ConstraintViolation) as exc:
        store.approve_admin_request("req-1", password_hash="hash")
    assert exc.value.message == "admin request already processed"
    assert len(conn.statements) == 1


def test_reject_missing_request():
    store, _ = _store(FakeCursor([]))

    with pytest.raises(ConstraintViolation) as exc:
        store.reject_admin_request("nope")
    assert exc.value.message == "admin request not found"
