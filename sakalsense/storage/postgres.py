from __future__ import annotations

import math
import uuid
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sakalsense.config import Role
from sakalsense.logging import get_logger
from sakalsense.storage.errors import ConstraintViolation
from sakalsense.storage.models import (
    Account,
    AdminRequest,
    AdminRequestPage,
    AdminRequestStatus,
)

# One table per role domain
_ACCOUNT_TABLES: Dict[Role, str] = {
    Role.USER: "app_user",
    Role.ADMIN: "admin_account",
    Role.ADMINISTRATOR: "administrator_account",
}

_SORT_COLUMNS = {"created_at": "created_at", "updated_at": "updated_at"}

_ACCOUNT_COLUMNS = (
    "id, email, full_name, password_hash, password_algo, avatar_link, "
    "invited_by_id, is_active, created_at, updated_at"
)
_REQUEST_COLUMNS = (
    "id, email, full_name, reason, status, created_at, updated_at, "
    "reviewed_by_id, reviewed_at, review_note"
)


class PostgresStore:
    """Postgres-backed primary store for accounts and admin invite requests."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 5) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the account and admin request tables if they are missing."""

        with self._connect() as conn:
            # administrator_account first: admin_account.invited_by_id references it
            self._create_account_table(
                conn, _ACCOUNT_TABLES[Role.ADMINISTRATOR], "invited_by_id TEXT,"
            )
            self._create_account_table(
                conn,
                _ACCOUNT_TABLES[Role.ADMIN],
                "invited_by_id TEXT REFERENCES administrator_account(id) ON DELETE SET NULL,",
            )
            self._create_account_table(conn, _ACCOUNT_TABLES[Role.USER], "invited_by_id TEXT,")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS admin_request (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    full_name TEXT NOT NULL,
                    reason TEXT,
                    status TEXT NOT NULL DEFAULT 'PENDING'
                        CHECK (status IN ('PENDING', 'APPROVED', 'REJECTED')),
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    reviewed_by_id TEXT,
                    reviewed_at TIMESTAMPTZ,
                    review_note TEXT
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS admin_request_status_idx ON admin_request (status)"
            )
        self.logger.info("postgres_schema_ready")

    @staticmethod
    def _create_account_table(conn, table: str, invited_by_clause: str) -> None:
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL UNIQUE,
                full_name TEXT NOT NULL,
                password_hash TEXT NOT NULL,
                password_algo TEXT NOT NULL DEFAULT 'argon2id',
                avatar_link TEXT,
                {invited_by_clause}
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # accounts
    @staticmethod
    def _account_from_row(role: Role, row: Dict[str, Any]) -> Account:
        return Account(
            id=row["id"],
            email=row["email"],
            full_name=row["full_name"],
            role=role,
            password_hash=row["password_hash"],
            password_algo=row["password_algo"],
            avatar_link=row.get("avatar_link"),
            invited_by_id=row.get("invited_by_id"),
            is_active=row["is_active"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _insert_account(
        self,
        conn,
        role: Role,
        email: str,
        full_name: str,
        password_hash: str,
        password_algo: str,
        avatar_link: Optional[str],
        invited_by_id: Optional[str],
    ) -> Account:
        row = conn.execute(
            f"""
            INSERT INTO {_ACCOUNT_TABLES[role]}
                (id, email, full_name, password_hash, password_algo, avatar_link, invited_by_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING {_ACCOUNT_COLUMNS}
            """,
            (
                Account.new_id(),
                email,
                full_name,
                password_hash,
                password_algo,
                avatar_link,
                invited_by_id,
            ),
        ).fetchone()
        return self._account_from_row(role, row)

    def create_account(
        self,
        role: Role,
        email: str,
        full_name: str,
        password_hash: str,
        password_algo: str = "argon2id",
        *,
        avatar_link: Optional[str] = None,
        invited_by_id: Optional[str] = None,
    ) -> Account:
        try:
            with self._connect() as conn:
                return self._insert_account(
                    conn,
                    role,
                    email,
                    full_name,
                    password_hash,
                    password_algo,
                    avatar_link,
                    invited_by_id,
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    def get_account(self, role: Role, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM {_ACCOUNT_TABLES[role]} WHERE id = %s",
                (account_id,),
            ).fetchone()
        return self._account_from_row(role, row) if row else None

    def get_account_by_email(self, role: Role, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM {_ACCOUNT_TABLES[role]} WHERE email = %s",
                (email,),
            ).fetchone()
        return self._account_from_row(role, row) if row else None

    def list_accounts(self, role: Role) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM {_ACCOUNT_TABLES[role]} ORDER BY created_at"
            ).fetchall()
        return [self._account_from_row(role, row) for row in rows]

    def update_password(
        self, role: Role, account_id: str, password_hash: str, password_algo: str = "argon2id"
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE {_ACCOUNT_TABLES[role]}
                SET password_hash = %s, password_algo = %s, updated_at = now()
                WHERE id = %s
                """,
                (password_hash, password_algo, account_id),
            )
            return cur.rowcount > 0

    # admin requests
    @staticmethod
    def _request_from_row(row: Dict[str, Any]) -> AdminRequest:
        return AdminRequest(
            id=row["id"],
            email=row["email"],
            full_name=row["full_name"],
            reason=row.get("reason"),
            status=AdminRequestStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            reviewed_by_id=row.get("reviewed_by_id"),
            reviewed_at=row.get("reviewed_at"),
            review_note=row.get("review_note"),
        )

    def create_admin_request(
        self, email: str, full_name: str, reason: Optional[str] = None
    ) -> AdminRequest:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO admin_request (id, email, full_name, reason)
                    VALUES (%s, %s, %s, %s)
                    RETURNING {_REQUEST_COLUMNS}
                    """,
                    (str(uuid.uuid4()), email, full_name, reason),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("admin request already exists", {"field": "email"})
        return self._request_from_row(row)

    def get_admin_request(self, request_id: str) -> Optional[AdminRequest]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_REQUEST_COLUMNS} FROM admin_request WHERE id = %s",
                (request_id,),
            ).fetchone()
        return self._request_from_row(row) if row else None

    def get_admin_request_by_email(self, email: str) -> Optional[AdminRequest]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_REQUEST_COLUMNS} FROM admin_request WHERE email = %s",
                (email,),
            ).fetchone()
        return self._request_from_row(row) if row else None

    def list_admin_requests(
        self,
        *,
        status: Optional[AdminRequestStatus] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> AdminRequestPage:
        column = _SORT_COLUMNS.get(sort_by)
        if column is None:
            raise ValueError(f"unsupported sort field {sort_by}")
        direction = "ASC" if sort_order == "asc" else "DESC"
        where = "WHERE status = %s" if status else ""
        params: List[Any] = [status.value] if status else []
        offset = (page - 1) * limit
        with self._connect() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) AS total FROM admin_request {where}", params
            ).fetchone()["total"]
            rows = conn.execute(
                f"""
                SELECT {_REQUEST_COLUMNS} FROM admin_request {where}
                ORDER BY {column} {direction}, id
                LIMIT %s OFFSET %s
                """,
                [*params, limit, offset],
            ).fetchall()
        return AdminRequestPage(
            requests=[self._request_from_row(row) for row in rows],
            total=total,
            page=page,
            total_pages=math.ceil(total / limit) if total else 0,
        )

    def count_admin_requests(self) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM admin_request GROUP BY status"
            ).fetchall()
        counts = {status.value.lower(): 0 for status in AdminRequestStatus}
        for row in rows:
            counts[row["status"].lower()] = row["n"]
        counts["total"] = sum(counts.values())
        return counts

    @staticmethod
    def _claim_pending(conn, request_id: str) -> Dict[str, Any]:
        row = conn.execute(
            f"SELECT {_REQUEST_COLUMNS} FROM admin_request WHERE id = %s FOR UPDATE",
            (request_id,),
        ).fetchone()
        if row is None:
            raise ConstraintViolation("admin request not found", {"field": "id"})
        if row["status"] != AdminRequestStatus.PENDING.value:
            raise ConstraintViolation(
                "admin request already processed", {"status": row["status"]}
            )
        return row

    def approve_admin_request(
        self,
        request_id: str,
        *,
        password_hash: str,
        password_algo: str = "argon2id",
        reviewed_by_id: Optional[str] = None,
        invited_by_id: Optional[str] = None,
    ) -> Tuple[AdminRequest, Account]:
        """Create the admin account and mark the request approved in one transaction."""
        try:
            with self._connect() as conn, conn.transaction():
                row = self._claim_pending(conn, request_id)
                admin = self._insert_account(
                    conn,
                    Role.ADMIN,
                    row["email"],
                    row["full_name"],
                    password_hash,
                    password_algo,
                    None,
                    invited_by_id,
                )
                updated = conn.execute(
                    f"""
                    UPDATE admin_request
                    SET status = 'APPROVED', updated_at = now(), reviewed_at = now(),
                        reviewed_by_id = %s
                    WHERE id = %s
                    RETURNING {_REQUEST_COLUMNS}
                    """,
                    (reviewed_by_id, request_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._request_from_row(updated), admin

    def reject_admin_request(
        self,
        request_id: str,
        *,
        reason: Optional[str] = None,
        reviewed_by_id: Optional[str] = None,
    ) -> AdminRequest:
        with self._connect() as conn, conn.transaction():
            self._claim_pending(conn, request_id)
            row = conn.execute(
                f"""
                UPDATE admin_request
                SET status = 'REJECTED', updated_at = now(), reviewed_at = now(),
                    reviewed_by_id = %s, review_note = %s
                WHERE id = %s
                RETURNING {_REQUEST_COLUMNS}
                """,
                (reviewed_by_id, reason, request_id),
            ).fetchone()
        return self._request_from_row(row)
