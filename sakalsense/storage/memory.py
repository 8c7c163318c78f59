from __future__ import annotations

import math
import threading
import uuid
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from sakalsense.config import Role
from sakalsense.storage.errors import ConstraintViolation
from sakalsense.storage.models import (
    Account,
    AdminRequest,
    AdminRequestPage,
    AdminRequestStatus,
    utcnow,
)

_SORT_FIELDS = {"created_at", "updated_at"}


class MemoryStore:
    """In-memory primary store for tests and local development."""

    def __init__(self) -> None:
        self.accounts: Dict[Role, Dict[str, Account]] = {role: {} for role in Role}
        self.admin_requests: Dict[str, AdminRequest] = {}
        # RLock so compound operations can call the single-row helpers
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # accounts
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
        with self._data_lock:
            if self._find_account(role, email) is not None:
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=Account.new_id(),
                email=email,
                full_name=full_name,
                role=role,
                password_hash=password_hash,
                password_algo=password_algo,
                avatar_link=avatar_link,
                invited_by_id=invited_by_id,
            )
            self.accounts[role][account.id] = account
            return replace(account)

    def _find_account(self, role: Role, email: str) -> Optional[Account]:
        return next(
            (acct for acct in self.accounts[role].values() if acct.email == email), None
        )

    def get_account(self, role: Role, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts[role].get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, role: Role, email: str) -> Optional[Account]:
        with self._data_lock:
            account = self._find_account(role, email)
            return replace(account) if account else None

    def update_password(
        self, role: Role, account_id: str, password_hash: str, password_algo: str = "argon2id"
    ) -> bool:
        with self._data_lock:
            account = self.accounts[role].get(account_id)
            if not account:
                return False
            account.password_hash = password_hash
            account.password_algo = password_algo
            account.updated_at = utcnow()
            return True

    # admin requests
    def create_admin_request(
        self, email: str, full_name: str, reason: Optional[str] = None
    ) -> AdminRequest:
        with self._data_lock:
            if self._find_request(email) is not None:
                raise ConstraintViolation("admin request already exists", {"field": "email"})
            request = AdminRequest(
                id=str(uuid.uuid4()), email=email, full_name=full_name, reason=reason
            )
            self.admin_requests[request.id] = request
            return replace(request)

    def _find_request(self, email: str) -> Optional[AdminRequest]:
        return next(
            (req for req in self.admin_requests.values() if req.email == email), None
        )

    def get_admin_request(self, request_id: str) -> Optional[AdminRequest]:
        with self._data_lock:
            request = self.admin_requests.get(request_id)
            return replace(request) if request else None

    def get_admin_request_by_email(self, email: str) -> Optional[AdminRequest]:
        with self._data_lock:
            request = self._find_request(email)
            return replace(request) if request else None

    def list_admin_requests(
        self,
        *,
        status: Optional[AdminRequestStatus] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> AdminRequestPage:
        if sort_by not in _SORT_FIELDS:
            raise ValueError(f"unsupported sort field {sort_by}")
        with self._data_lock:
            matches = [
                req
                for req in self.admin_requests.values()
                if status is None or req.status == status
            ]
            matches.sort(key=lambda req: getattr(req, sort_by), reverse=sort_order == "desc")
            total = len(matches)
            offset = (page - 1) * limit
            window = [replace(req) for req in matches[offset : offset + limit]]
        return AdminRequestPage(
            requests=window,
            total=total,
            page=page,
            total_pages=math.ceil(total / limit) if total else 0,
        )

    def count_admin_requests(self) -> Dict[str, int]:
        with self._data_lock:
            counts = {status.value.lower(): 0 for status in AdminRequestStatus}
            for req in self.admin_requests.values():
                counts[req.status.value.lower()] += 1
        counts["total"] = sum(counts.values())
        return counts

    def _claim_pending(self, request_id: str) -> AdminRequest:
        request = self.admin_requests.get(request_id)
        if request is None:
            raise ConstraintViolation("admin request not found", {"field": "id"})
        if request.status is not AdminRequestStatus.PENDING:
            raise ConstraintViolation(
                "admin request already processed", {"status": request.status.value}
            )
        return request

    def approve_admin_request(
        self,
        request_id: str,
        *,
        password_hash: str,
        password_algo: str = "argon2id",
        reviewed_by_id: Optional[str] = None,
        invited_by_id: Optional[str] = None,
    ) -> Tuple[AdminRequest, Account]:
        """Create the admin account and mark the request approved as one unit."""
        with self._data_lock:
            request = self._claim_pending(request_id)
            admin = self.create_account(
                Role.ADMIN,
                request.email,
                request.full_name,
                password_hash,
                password_algo,
                invited_by_id=invited_by_id,
            )
            now = utcnow()
            request.status = AdminRequestStatus.APPROVED
            request.updated_at = now
            request.reviewed_at = now
            request.reviewed_by_id = reviewed_by_id
            return replace(request), admin

    def reject_admin_request(
        self,
        request_id: str,
        *,
        reason: Optional[str] = None,
        reviewed_by_id: Optional[str] = None,
    ) -> AdminRequest:
        with self._data_lock:
            request = self._claim_pending(request_id)
            now = utcnow()
            request.status = AdminRequestStatus.REJECTED
            request.updated_at = now
            request.reviewed_at = now
            request.reviewed_by_id = reviewed_by_id
            request.review_note = reason
            return replace(request)

    def list_accounts(self, role: Role) -> List[Account]:
        with self._data_lock:
            return [replace(acct) for acct in self.accounts[role].values()]
