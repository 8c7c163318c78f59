"""Admin invite requests: PENDING -> APPROVED | REJECTED, each transition once.

Submission is public. Review is administrator-only; approval creates the
admin account with a temporary password in the same store transaction that
flips the status, then queues the credential email.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol, Tuple

from sakalsense.config import Role
from sakalsense.logging import get_logger
from sakalsense.service.auth import AuthContext, normalize_email
from sakalsense.service.email import EmailService, validate_email_address
from sakalsense.service.errors import ConflictError, NotFoundError, ValidationError
from sakalsense.service.notifications import NotificationQueue
from sakalsense.service.passwords import Passwords, generate_temporary_password
from sakalsense.storage.errors import ConstraintViolation
from sakalsense.storage.models import (
    Account,
    AdminRequest,
    AdminRequestPage,
    AdminRequestStatus,
)

logger = get_logger(__name__)

SUBMITTED_MESSAGE = (
    "Your admin request has been submitted. You will be notified via email once reviewed."
)
ALREADY_ADMIN_MESSAGE = "This email is already registered as an admin"
ALREADY_PENDING_MESSAGE = "A request with this email is already pending"
PREVIOUSLY_REJECTED_MESSAGE = "Your previous request was rejected. Please contact support."
ALREADY_APPROVED_MESSAGE = "A request with this email has already been approved"
REJECTED_MESSAGE = "Request rejected successfully"

MAX_PAGE_SIZE = 100
SORT_FIELDS = ("created_at", "updated_at")
SORT_ORDERS = ("asc", "desc")


class AdminRequestStore(Protocol):
    def get_account(self, role: Role, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, role: Role, email: str) -> Optional[Account]: ...

    def create_admin_request(
        self, email: str, full_name: str, reason: Optional[str] = None
    ) -> AdminRequest: ...

    def get_admin_request(self, request_id: str) -> Optional[AdminRequest]: ...

    def get_admin_request_by_email(self, email: str) -> Optional[AdminRequest]: ...

    def list_admin_requests(
        self,
        *,
        status: Optional[AdminRequestStatus] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> AdminRequestPage: ...

    def count_admin_requests(self) -> Dict[str, int]: ...

    def approve_admin_request(
        self,
        request_id: str,
        *,
        password_hash: str,
        password_algo: str = "argon2id",
        reviewed_by_id: Optional[str] = None,
        invited_by_id: Optional[str] = None,
    ) -> Tuple[AdminRequest, Account]: ...

    def reject_admin_request(
        self,
        request_id: str,
        *,
        reason: Optional[str] = None,
        reviewed_by_id: Optional[str] = None,
    ) -> AdminRequest: ...


def _already_processed(status: AdminRequestStatus) -> ConflictError:
    return ConflictError(
        f"Request has already been {status.value.lower()}", detail={"status": status.value}
    )


class AdminRequestService:
    def __init__(
        self,
        store: AdminRequestStore,
        *,
        passwords: Passwords,
        email: EmailService,
        notifications: NotificationQueue,
    ) -> None:
        self.store: AdminRequestStore = store
        self.passwords = passwords
        self.email = email
        self.notifications = notifications

    def submit(self, full_name: str, email: str, reason: Optional[str] = None) -> AdminRequest:
        full_name = (full_name or "").strip()
        email = normalize_email(email)
        if not full_name or not email:
            raise ValidationError("Full name and email are required")
        if not validate_email_address(email):
            raise ValidationError("Invalid email address", detail={"field": "email"})

        if self.store.get_account_by_email(Role.ADMIN, email):
            raise ConflictError(ALREADY_ADMIN_MESSAGE)
        existing = self.store.get_admin_request_by_email(email)
        if existing is not None:
            if existing.status is AdminRequestStatus.PENDING:
                raise ConflictError(ALREADY_PENDING_MESSAGE)
            if existing.status is AdminRequestStatus.REJECTED:
                raise ConflictError(PREVIOUSLY_REJECTED_MESSAGE)
            # approved earlier but the admin account is gone
            raise ConflictError(ALREADY_APPROVED_MESSAGE)

        reason = (reason or "").strip() or None
        try:
            request = self.store.create_admin_request(email, full_name, reason)
        except ConstraintViolation as exc:
            # a concurrent submit for the same email won the insert
            raise ConflictError(ALREADY_PENDING_MESSAGE) from exc
        logger.info("admin_request_submitted", request_id=request.id)
        return request

    def list(
        self,
        *,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> AdminRequestPage:
        if page < 1:
            raise ValidationError("page must be at least 1", detail={"field": "page"})
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(
                f"limit must be between 1 and {MAX_PAGE_SIZE}", detail={"field": "limit"}
            )
        if sort_by not in SORT_FIELDS:
            raise ValidationError("unsupported sort field", detail={"allowed": list(SORT_FIELDS)})
        if sort_order not in SORT_ORDERS:
            raise ValidationError("unsupported sort order", detail={"allowed": list(SORT_ORDERS)})
        status_filter = None
        if status:
            try:
                status_filter = AdminRequestStatus(status.upper())
            except ValueError as exc:
                raise ValidationError(
                    "unsupported status", detail={"allowed": [s.value for s in AdminRequestStatus]}
                ) from exc
        return self.store.list_admin_requests(
            status=status_filter, page=page, limit=limit, sort_by=sort_by, sort_order=sort_order
        )

    def counts(self) -> Dict[str, int]:
        return self.store.count_admin_requests()

    def get(self, request_id: str) -> AdminRequest:
        request = self.store.get_admin_request(request_id)
        if request is None:
            raise NotFoundError("Request not found")
        return request

    def _pending(self, request_id: str) -> AdminRequest:
        request = self.store.get_admin_request(request_id)
        if request is None:
            raise NotFoundError("Request not found")
        if request.status.is_terminal:
            raise _already_processed(request.status)
        return request

    def _translate(self, request_id: str, exc: ConstraintViolation) -> Exception:
        """Map a store-level rejection raised inside the transition transaction."""
        if exc.message == "admin request not found":
            return NotFoundError("Request not found")
        if exc.message == "admin request already processed":
            current = self.store.get_admin_request(request_id)
            status = current.status if current else AdminRequestStatus.APPROVED
            return _already_processed(status)
        if exc.detail.get("field") == "email":
            return ConflictError(ALREADY_ADMIN_MESSAGE)
        return ConflictError(exc.message, detail=exc.detail)

    def approve(self, request_id: str, reviewer: AuthContext) -> Dict[str, Any]:
        request = self._pending(request_id)
        temporary_password = generate_temporary_password()
        pwd_hash, algo = self.passwords.hash_password(temporary_password)
        # invited_by_id only links to an administrator that still exists
        administrator = self.store.get_account(Role.ADMINISTRATOR, reviewer.user_id)
        invited_by_id = administrator.id if administrator else None
        try:
            request, admin = self.store.approve_admin_request(
                request_id,
                password_hash=pwd_hash,
                password_algo=algo,
                reviewed_by_id=invited_by_id,
                invited_by_id=invited_by_id,
            )
        except ConstraintViolation as exc:
            raise self._translate(request_id, exc) from exc

        self.notifications.enqueue(
            self.email.admin_approved_email(request.email, request.full_name, temporary_password)
        )
        logger.info(
            "admin_request_approved",
            request_id=request.id,
            admin_id=admin.id,
            reviewer_id=reviewer.user_id,
        )
        return {"message": f"Admin account created for {request.email}", "admin_id": admin.id}

    def reject(
        self, request_id: str, reviewer: AuthContext, reason: Optional[str] = None
    ) -> Dict[str, Any]:
        request = self._pending(request_id)
        reason = (reason or "").strip() or None
        administrator = self.store.get_account(Role.ADMINISTRATOR, reviewer.user_id)
        try:
            request = self.store.reject_admin_request(
                request.id,
                reason=reason,
                reviewed_by_id=administrator.id if administrator else None,
            )
        except ConstraintViolation as exc:
            raise self._translate(request_id, exc) from exc

        self.notifications.enqueue(
            self.email.admin_rejected_email(request.email, request.full_name, reason)
        )
        logger.info("admin_request_rejected", request_id=request.id, reviewer_id=reviewer.user_id)
        return {"message": REJECTED_MESSAGE}
