from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from sakalsense.service.passwords import MAX_PASSWORD_LENGTH, MIN_PASSWORD_LENGTH

MAX_NAME_LENGTH = 120
MAX_REASON_LENGTH = 2000
MAX_SUBJECT_LENGTH = 200
MAX_BODY_LENGTH = 10000


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Uniform API result: ``status == "ok"`` carries data, ``"error"`` carries error."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


def _validate_name(value: str) -> str:
    cleaned = _normalize_unicode(value).strip()
    if not cleaned:
        raise ValueError("full name is required")
    return cleaned


# -- auth


class RegisterRequest(BaseModel):
    full_name: str = Field(..., max_length=MAX_NAME_LENGTH)
    email: str
    password: str

    @field_validator("full_name")
    @classmethod
    def _validate_full_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class CredentialsRequest(BaseModel):
    """Email and password; used for login and the credential-gated session routes."""

    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class UserResponse(BaseModel):
    id: str
    full_name: str
    email: str
    avatar_link: Optional[str] = None
    role: Optional[str] = None


class AuthResponse(BaseModel):
    user: UserResponse


class SessionResponse(BaseModel):
    session_id: str
    device: str
    ip: str
    user_agent: str
    location: Optional[str] = None
    login_at: datetime
    last_active_at: datetime


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class MessageResponse(BaseModel):
    message: str


# -- admin requests


class AdminRequestSubmit(BaseModel):
    full_name: str = Field(..., max_length=MAX_NAME_LENGTH)
    email: str
    reason: Optional[str] = Field(default=None, max_length=MAX_REASON_LENGTH)

    @field_validator("full_name")
    @classmethod
    def _validate_full_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class AdminRequestResponse(BaseModel):
    id: str
    email: str
    full_name: str
    reason: Optional[str] = None
    status: Literal["PENDING", "APPROVED", "REJECTED"]
    created_at: datetime
    updated_at: datetime
    reviewed_by_id: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_note: Optional[str] = None


class AdminRequestListResponse(BaseModel):
    requests: List[AdminRequestResponse]
    total: int
    page: int
    total_pages: int


class AdminRequestCounts(BaseModel):
    pending: int
    approved: int
    rejected: int
    total: int


class AdminRequestReject(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=MAX_REASON_LENGTH)


class AdminApprovalResponse(BaseModel):
    message: str
    admin_id: str


# -- mail


class TrialMailRequest(BaseModel):
    to: str
    subject: str = Field(default="Test Email", min_length=1, max_length=MAX_SUBJECT_LENGTH)
    body: str = Field(
        default="This is a test email.", min_length=1, max_length=MAX_BODY_LENGTH
    )

    @field_validator("to")
    @classmethod
    def _validate_recipient(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("subject")
    @classmethod
    def _validate_subject(cls, value: str) -> str:
        if "\r" in value or "\n" in value:
            raise ValueError("subject must be a single line")
        return value


class MailSendResponse(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class MailLogListResponse(BaseModel):
    logs: List[Dict[str, Any]]


class MailStatsResponse(BaseModel):
    total: int
    sent: int
    failed: int
