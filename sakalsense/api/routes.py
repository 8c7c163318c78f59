from __future__ import annotations

from typing import Any, Callable, Literal, Optional

from fastapi import APIRouter, Depends, Path, Query, Request, Response

from sakalsense.api.schemas import (
    AdminApprovalResponse,
    AdminRequestCounts,
    AdminRequestListResponse,
    AdminRequestReject,
    AdminRequestResponse,
    AdminRequestSubmit,
    AuthResponse,
    CredentialsRequest,
    Envelope,
    ForgotPasswordRequest,
    MailLogListResponse,
    MailSendResponse,
    MailStatsResponse,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    RegisterRequest,
    SessionListResponse,
    SessionResponse,
    TrialMailRequest,
    UserResponse,
)
from sakalsense.config import AUTH_COOKIE, Role
from sakalsense.logging import get_correlation_id, get_logger
from sakalsense.service.admin_requests import SUBMITTED_MESSAGE
from sakalsense.service.auth import AuthContext, LoginResult
from sakalsense.service.errors import RateLimitedError
from sakalsense.service.runtime import Runtime, get_runtime
from sakalsense.service.sessions import ClientInfo
from sakalsense.storage.models import SessionRecord

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

RATE_LIMITED_MESSAGE = "Too many requests. Please try again later."

Stakeholder = Literal["user", "admin", "administrator"]


def _ok(data: Any = None) -> Envelope:
    cid = get_correlation_id()
    if cid:
        return Envelope(status="ok", data=data, request_id=cid)
    return Envelope(status="ok", data=data)


# -- request context


def _client_ip(request: Request, runtime: Runtime) -> str:
    if runtime.settings.trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()
    return request.client.host if request.client else "unknown"


def get_client(request: Request, runtime: Runtime = Depends(get_runtime)) -> ClientInfo:
    return ClientInfo.from_request_values(
        _client_ip(request, runtime), request.headers.get("User-Agent")
    )


def rate_limited(policy: str) -> Callable:
    """Dependency factory consuming one slot of ``policy`` for the client IP."""

    async def _enforce(request: Request, runtime: Runtime = Depends(get_runtime)) -> None:
        result = await runtime.rate_limiter.consume(_client_ip(request, runtime), policy)
        # applied by middleware so error responses carry them too
        request.state.rate_limit_headers = {
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(result.reset_at),
        }
        if not result.allowed:
            raise RateLimitedError(
                RATE_LIMITED_MESSAGE,
                retry_after=result.retry_after,
                detail={"retry_after": result.retry_after},
            )

    return _enforce


def _token_from_request(request: Request, role: Role) -> Optional[str]:
    cookie = request.cookies.get(AUTH_COOKIE[role])
    if cookie:
        return cookie
    authorization = request.headers.get("Authorization") or ""
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


async def _authenticate(request: Request, runtime: Runtime, role: Role) -> AuthContext:
    ctx = await runtime.auth.authenticate(role, _token_from_request(request, role))
    request.state.stakeholder = role.value
    request.state.stakeholder_id = ctx.user_id
    return ctx


def stakeholder_role(stakeholder: Stakeholder = Path(...)) -> Role:
    return Role.from_slug(stakeholder)


async def get_principal(
    request: Request,
    role: Role = Depends(stakeholder_role),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    return await _authenticate(request, runtime, role)


async def get_administrator(
    request: Request, runtime: Runtime = Depends(get_runtime)
) -> AuthContext:
    return await _authenticate(request, runtime, Role.ADMINISTRATOR)


# -- cookies


def _set_auth_cookie(response: Response, runtime: Runtime, role: Role, token: str) -> None:
    response.set_cookie(
        AUTH_COOKIE[role],
        token,
        max_age=runtime.settings.session_ttl_seconds,
        path="/",
        httponly=True,
        samesite="lax",
        secure=runtime.settings.cookie_secure,
    )


def _clear_auth_cookie(response: Response, runtime: Runtime, role: Role) -> None:
    response.delete_cookie(
        AUTH_COOKIE[role],
        path="/",
        httponly=True,
        samesite="lax",
        secure=runtime.settings.cookie_secure,
    )


def _auth_payload(result: LoginResult) -> AuthResponse:
    return AuthResponse(user=UserResponse(**result.account.public_view(), role=result.account.role.value))


def _session_view(session: SessionRecord) -> SessionResponse:
    return SessionResponse(
        session_id=session.session_id,
        device=session.device,
        ip=session.ip,
        user_agent=session.user_agent,
        location=session.location,
        login_at=session.login_at,
        last_active_at=session.last_active_at,
    )


# -- auth


@router.post(
    "/auth/user/register",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(rate_limited("auth"))],
)
async def register(
    body: RegisterRequest,
    response: Response,
    client: ClientInfo = Depends(get_client),
    runtime: Runtime = Depends(get_runtime),
):
    """Self-registration for the user domain.

    Raises:
        409: If the email is already registered
        429: If the auth rate limit is exhausted for this IP
    """
    result = await runtime.auth.register(body.full_name, body.email, body.password, client)
    _set_auth_cookie(response, runtime, Role.USER, result.token)
    return _ok(_auth_payload(result))


@router.post(
    "/auth/{stakeholder}/login",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limited("auth"))],
)
async def login(
    body: CredentialsRequest,
    response: Response,
    role: Role = Depends(stakeholder_role),
    client: ClientInfo = Depends(get_client),
    runtime: Runtime = Depends(get_runtime),
):
    """Authenticate with email and password and set the role cookie.

    Raises:
        401: If credentials are invalid
        409: If the role's concurrent session limit is reached; details carry
            the active sessions so the caller can terminate one
    """
    result = await runtime.auth.login(role, body.email, body.password, client)
    _set_auth_cookie(response, runtime, role, result.token)
    return _ok(_auth_payload(result))


@router.post("/auth/{stakeholder}/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.logout(principal)
    _clear_auth_cookie(response, runtime, principal.role)
    return _ok(MessageResponse(message="Logged out successfully"))


@router.get("/auth/{stakeholder}/me", response_model=Envelope, tags=["auth"])
async def me(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    return _ok(UserResponse(**runtime.auth.profile(principal)))


@router.post(
    "/auth/{stakeholder}/sessions",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limited("strict"))],
)
async def list_sessions(
    body: CredentialsRequest,
    role: Role = Depends(stakeholder_role),
    runtime: Runtime = Depends(get_runtime),
):
    """List live sessions. Gated on credentials so a locked-out caller can free a slot."""
    sessions = await runtime.auth.list_sessions(role, body.email, body.password)
    return _ok(SessionListResponse(sessions=[_session_view(s) for s in sessions]))


@router.post(
    "/auth/{stakeholder}/sessions/{session_id}/terminate",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limited("strict"))],
)
async def terminate_session(
    body: CredentialsRequest,
    session_id: str = Path(..., min_length=1, max_length=128),
    role: Role = Depends(stakeholder_role),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.terminate_session(role, body.email, body.password, session_id)
    return _ok(MessageResponse(message="Session terminated"))


@router.patch(
    "/auth/{stakeholder}/update-password",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limited("default"))],
)
async def update_password(
    body: PasswordChangeRequest,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Change the password; other sessions of this identity are signed out."""
    await runtime.auth.update_password(principal, body.current_password, body.new_password)
    return _ok(MessageResponse(message="Password updated successfully"))


@router.post(
    "/auth/{stakeholder}/forgot-password",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limited("strict"))],
)
async def forgot_password(
    body: ForgotPasswordRequest,
    role: Role = Depends(stakeholder_role),
    runtime: Runtime = Depends(get_runtime),
):
    message = await runtime.auth.forgot_password(role, body.email)
    return _ok(MessageResponse(message=message))


@router.post(
    "/auth/reset-password",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limited("strict"))],
)
async def reset_password(
    body: PasswordResetConfirm,
    runtime: Runtime = Depends(get_runtime),
):
    """Complete a reset with the emailed token. The token prefix selects the role."""
    await runtime.auth.reset_password(body.token, body.new_password)
    return _ok(MessageResponse(message="Password has been reset successfully"))


# -- admin requests


@router.post(
    "/admin-requests",
    response_model=Envelope,
    status_code=201,
    tags=["admin-requests"],
    dependencies=[Depends(rate_limited("auth"))],
)
async def submit_admin_request(
    body: AdminRequestSubmit,
    runtime: Runtime = Depends(get_runtime),
):
    runtime.admin_requests.submit(body.full_name, body.email, body.reason)
    return _ok(MessageResponse(message=SUBMITTED_MESSAGE))


@router.get(
    "/admin-requests",
    response_model=Envelope,
    tags=["admin-requests"],
    dependencies=[Depends(rate_limited("default"))],
)
async def list_admin_requests(
    status: Optional[Literal["PENDING", "APPROVED", "REJECTED"]] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: Literal["created_at", "updated_at"] = Query("created_at"),
    sort_order: Literal["asc", "desc"] = Query("desc"),
    principal: AuthContext = Depends(get_administrator),
    runtime: Runtime = Depends(get_runtime),
):
    result = runtime.admin_requests.list(
        status=status, page=page, limit=limit, sort_by=sort_by, sort_order=sort_order
    )
    return _ok(AdminRequestListResponse(**result.to_dict()))


@router.get(
    "/admin-requests/counts",
    response_model=Envelope,
    tags=["admin-requests"],
    dependencies=[Depends(rate_limited("default"))],
)
async def admin_request_counts(
    principal: AuthContext = Depends(get_administrator),
    runtime: Runtime = Depends(get_runtime),
):
    return _ok(AdminRequestCounts(**runtime.admin_requests.counts()))


@router.get(
    "/admin-requests/{request_id}",
    response_model=Envelope,
    tags=["admin-requests"],
    dependencies=[Depends(rate_limited("default"))],
)
async def get_admin_request(
    request_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_administrator),
    runtime: Runtime = Depends(get_runtime),
):
    request = runtime.admin_requests.get(request_id)
    return _ok(AdminRequestResponse(**request.to_dict()))


@router.post(
    "/admin-requests/{request_id}/approve",
    response_model=Envelope,
    tags=["admin-requests"],
    dependencies=[Depends(rate_limited("default"))],
)
async def approve_admin_request(
    request_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_administrator),
    runtime: Runtime = Depends(get_runtime),
):
    """Approve a pending request, creating the admin account.

    Raises:
        404: If the request does not exist
        409: If the request was already approved or rejected
    """
    result = runtime.admin_requests.approve(request_id, principal)
    return _ok(AdminApprovalResponse(**result))


@router.post(
    "/admin-requests/{request_id}/reject",
    response_model=Envelope,
    tags=["admin-requests"],
    dependencies=[Depends(rate_limited("default"))],
)
async def reject_admin_request(
    body: Optional[AdminRequestReject] = None,
    request_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_administrator),
    runtime: Runtime = Depends(get_runtime),
):
    result = runtime.admin_requests.reject(
        request_id, principal, body.reason if body else None
    )
    return _ok(MessageResponse(**result))


# -- mail


@router.post(
    "/mail/test",
    response_model=Envelope,
    tags=["mail"],
    dependencies=[Depends(rate_limited("strict"))],
)
async def send_test_mail(
    body: TrialMailRequest,
    principal: AuthContext = Depends(get_administrator),
    runtime: Runtime = Depends(get_runtime),
):
    """Send one test email directly, bypassing the queue and its retries."""
    email = runtime.email.test_email(body.to, body.subject, body.body)
    result = await runtime.notification_worker.send_now(email)
    return _ok(
        MailSendResponse(success=result.success, message_id=result.message_id, error=result.error)
    )


@router.get(
    "/mail/logs",
    response_model=Envelope,
    tags=["mail"],
    dependencies=[Depends(rate_limited("default"))],
)
async def mail_logs(
    limit: int = Query(50, ge=1, le=100),
    principal: AuthContext = Depends(get_administrator),
    runtime: Runtime = Depends(get_runtime),
):
    return _ok(MailLogListResponse(logs=await runtime.mail_log.recent(limit)))


@router.get(
    "/mail/stats",
    response_model=Envelope,
    tags=["mail"],
    dependencies=[Depends(rate_limited("default"))],
)
async def mail_stats(
    principal: AuthContext = Depends(get_administrator),
    runtime: Runtime = Depends(get_runtime),
):
    return _ok(MailStatsResponse(**await runtime.mail_log.stats()))
