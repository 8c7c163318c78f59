from __future__ import annotations

import asyncio
import hashlib
import json
import secrets
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Set

from sakalsense.config import PREFIX_TO_ROLE, RESET_TOKEN_PREFIX, Role, Settings
from sakalsense.logging import get_logger
from sakalsense.service.email import EmailService
from sakalsense.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from sakalsense.service.notifications import NotificationQueue
from sakalsense.service.passwords import MIN_PASSWORD_LENGTH, Passwords
from sakalsense.service.sessions import ClientInfo, SessionManager
from sakalsense.service.tokens import TokenPayload, TokenService
from sakalsense.storage.errors import ConstraintViolation
from sakalsense.storage.models import Account, SessionRecord, utcnow
from sakalsense.storage.redis_cache import CacheStore

logger = get_logger(__name__)

AUTH_REQUIRED_MESSAGE = "Authentication required"
FORGOT_PASSWORD_MESSAGE = "If that email exists, a password reset link has been sent"
INVALID_RESET_TOKEN_MESSAGE = "Invalid or expired reset token"


class AccountStore(Protocol):
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
    ) -> Account: ...

    def get_account(self, role: Role, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, role: Role, email: str) -> Optional[Account]: ...

    def update_password(
        self, role: Role, account_id: str, password_hash: str, password_algo: str = "argon2id"
    ) -> bool: ...


@dataclass
class AuthContext:
    """The authenticated caller, rebuilt from the token on every request."""

    user_id: str
    email: str
    full_name: str
    role: Role
    session_id: str
    avatar_link: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: TokenPayload) -> "AuthContext":
        return cls(
            user_id=payload.user_id,
            email=payload.email,
            full_name=payload.full_name,
            role=payload.role,
            session_id=payload.session_id,
            avatar_link=payload.avatar_link,
        )


@dataclass
class LoginResult:
    account: Account
    session: SessionRecord
    token: str


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()[:16]


def _validate_new_password(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"New password must be at least {MIN_PASSWORD_LENGTH} characters")


class AuthService:
    """Per-role login, registration, session bookkeeping and password flows."""

    def __init__(
        self,
        store: AccountStore,
        cache: CacheStore,
        settings: Settings,
        *,
        sessions: SessionManager,
        tokens: TokenService,
        passwords: Passwords,
        email: EmailService,
        notifications: NotificationQueue,
    ) -> None:
        self.store: AccountStore = store
        self.cache = cache
        self.settings = settings
        self.sessions = sessions
        self.tokens = tokens
        self.passwords = passwords
        self.email = email
        self.notifications = notifications
        self.logger = logger
        # strong refs so fire-and-forget refreshes are not collected mid-flight
        self._background: Set[asyncio.Task] = set()

    # -- credentials

    def _check_credentials(self, role: Role, email: str, password: str) -> Account:
        if not email or not password:
            raise ValidationError("Email and password required")
        account = self.store.get_account_by_email(role, normalize_email(email))
        if not account or not account.is_active:
            self.logger.info("login_unknown_account", role=role.value, email_hash=_email_hash(normalize_email(email)))
            raise AuthenticationError("Invalid credentials")
        if not self.passwords.verify_password(account.password_hash, account.password_algo, password):
            self.logger.info("login_bad_password", role=role.value, account_id=account.id)
            raise AuthenticationError("Invalid credentials")
        return account

    def _issue_token(self, account: Account, session: SessionRecord) -> str:
        return self.tokens.sign(
            TokenPayload(
                user_id=account.id,
                email=account.email,
                full_name=account.full_name,
                role=account.role,
                session_id=session.session_id,
                avatar_link=account.avatar_link,
            )
        )

    # -- login / registration

    async def register(
        self, full_name: str, email: str, password: str, client: ClientInfo
    ) -> LoginResult:
        """Self-registration. Only the USER domain registers; others are invited or seeded."""
        full_name = (full_name or "").strip()
        email = normalize_email(email)
        if not full_name:
            raise ValidationError("Full name is required")
        _validate_new_password(password)
        if self.store.get_account_by_email(Role.USER, email):
            raise ConflictError("Email already registered")
        pwd_hash, algo = self.passwords.hash_password(password)
        try:
            account = self.store.create_account(Role.USER, email, full_name, pwd_hash, algo)
        except ConstraintViolation as exc:
            raise ConflictError("Email already registered") from exc
        created = await self.sessions.create_session(
            account.email, Role.USER, client.device, client.ip, client.user_agent, client.location
        )
        self.logger.info("user_registered", account_id=account.id)
        return LoginResult(account=account, session=created.session, token=self._issue_token(account, created.session))

    async def login(
        self, role: Role, email: str, password: str, client: ClientInfo
    ) -> LoginResult:
        account = self._check_credentials(role, email, password)
        created = await self.sessions.create_session(
            account.email, role, client.device, client.ip, client.user_agent, client.location
        )
        if created.limit_exceeded:
            raise ConflictError(
                "Session limit exceeded",
                detail={
                    "session_limit_exceeded": True,
                    "active_sessions": [s.to_dict() for s in created.active_sessions],
                },
            )
        self.logger.info("login_succeeded", role=role.value, account_id=account.id, device=client.device.value)
        return LoginResult(account=account, session=created.session, token=self._issue_token(account, created.session))

    async def authenticate(self, role: Role, token: Optional[str]) -> AuthContext:
        """Resolve a token into a live session for ``role``.

        Every failure surfaces as the same generic 401; the cause is only logged.
        """
        payload = self.tokens.verify(token)
        if payload is None:
            self.logger.info("auth_token_invalid", role=role.value, present=bool(token))
            raise AuthenticationError(AUTH_REQUIRED_MESSAGE)
        if payload.role is not role:
            self.logger.info("auth_role_mismatch", expected=role.value, actual=payload.role.value)
            raise AuthenticationError(AUTH_REQUIRED_MESSAGE)
        if not await self.sessions.validate_session(payload.session_id, payload.email, role):
            self.logger.info("auth_session_missing", role=role.value, session_id=payload.session_id)
            raise AuthenticationError(AUTH_REQUIRED_MESSAGE)

        task = asyncio.create_task(self._refresh_activity(payload.session_id, payload.email, role))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return AuthContext.from_payload(payload)

    async def _refresh_activity(self, session_id: str, identity: str, role: Role) -> None:
        try:
            await self.sessions.update_session_activity(session_id, identity, role)
        except Exception as exc:
            self.logger.warning(
                "session_activity_refresh_failed",
                role=role.value,
                session_id=session_id,
                error=str(exc),
            )

    async def logout(self, ctx: AuthContext) -> None:
        await self.sessions.invalidate_session(ctx.session_id, ctx.email, ctx.role)
        self.logger.info("logout", role=ctx.role.value, session_id=ctx.session_id)

    def profile(self, ctx: AuthContext) -> Dict[str, Any]:
        account = self.store.get_account(ctx.role, ctx.user_id)
        if not account or not account.is_active:
            raise NotFoundError("User not found")
        return {**account.public_view(), "role": account.role.value}

    # -- credential-gated session management

    async def list_sessions(self, role: Role, email: str, password: str) -> List[SessionRecord]:
        account = self._check_credentials(role, email, password)
        return await self.sessions.get_active_sessions(account.email, role)

    async def terminate_session(
        self, role: Role, email: str, password: str, session_id: str
    ) -> None:
        if not session_id:
            raise ValidationError("Session ID required")
        account = self._check_credentials(role, email, password)
        if not await self.sessions.invalidate_session(session_id, account.email, role):
            raise NotFoundError("Session not found")

    # -- passwords

    async def update_password(self, ctx: AuthContext, current_password: str, new_password: str) -> None:
        if not current_password or not new_password:
            raise ValidationError("Current password and new password are required")
        _validate_new_password(new_password)
        account = self.store.get_account(ctx.role, ctx.user_id)
        if not account or not account.is_active:
            raise NotFoundError("User not found")
        if not self.passwords.verify_password(account.password_hash, account.password_algo, current_password):
            raise AuthenticationError("Current password is incorrect")
        if self.passwords.verify_password(account.password_hash, account.password_algo, new_password):
            raise ValidationError("New password must be different from current password")
        pwd_hash, algo = self.passwords.hash_password(new_password)
        self.store.update_password(ctx.role, account.id, pwd_hash, algo)
        revoked = await self.sessions.invalidate_all_sessions(
            account.email, ctx.role, except_session_id=ctx.session_id
        )
        self.logger.info("password_updated", role=ctx.role.value, account_id=account.id, sessions_revoked=revoked)

    @staticmethod
    def _reset_key(token: str) -> str:
        return f"password_reset:{token}"

    async def forgot_password(self, role: Role, email: str) -> str:
        """Start a reset. The response never reveals whether the account exists."""
        email = normalize_email(email)
        if not email:
            raise ValidationError("Email is required")
        account = self.store.get_account_by_email(role, email)
        if not account or not account.is_active:
            self.logger.info("password_reset_unknown_account", role=role.value, email_hash=_email_hash(email))
            return FORGOT_PASSWORD_MESSAGE

        token = f"{RESET_TOKEN_PREFIX[role]}_{secrets.token_hex(32)}"
        record = {"email": account.email, "stakeholder": role.value, "created_at": utcnow().isoformat()}
        await self.cache.set(
            self._reset_key(token),
            json.dumps(record, separators=(",", ":")),
            ttl_seconds=self.settings.password_reset_ttl_seconds,
        )
        self.notifications.enqueue(self.email.password_reset_email(account.email, account.full_name, token))
        self.logger.info("password_reset_requested", role=role.value, account_id=account.id)
        return FORGOT_PASSWORD_MESSAGE

    async def _resolve_reset_token(self, token: str) -> tuple[Role, Dict[str, Any]]:
        prefix, _, raw = (token or "").partition("_")
        role = PREFIX_TO_ROLE.get(prefix)
        if role is None or not raw:
            raise ValidationError(INVALID_RESET_TOKEN_MESSAGE)
        stored = await self.cache.get(self._reset_key(token))
        if stored is None:
            self.logger.warning("password_reset_invalid_token", token_prefix=prefix)
            raise ValidationError(INVALID_RESET_TOKEN_MESSAGE)
        try:
            record = json.loads(stored)
        except ValueError as exc:
            raise ValidationError(INVALID_RESET_TOKEN_MESSAGE) from exc
        if record.get("stakeholder") != role.value:
            self.logger.warning("password_reset_role_mismatch", token_prefix=prefix)
            raise ValidationError(INVALID_RESET_TOKEN_MESSAGE)
        return role, record

    async def reset_password(self, token: str, new_password: str) -> None:
        if not token or not new_password:
            raise ValidationError("Token and new password are required")
        _validate_new_password(new_password)
        role, record = await self._resolve_reset_token(token)
        account = self.store.get_account_by_email(role, record.get("email", ""))
        if not account or not account.is_active:
            raise NotFoundError("User not found")
        if self.passwords.verify_password(account.password_hash, account.password_algo, new_password):
            raise ValidationError("New password must be different from current password")
        pwd_hash, algo = self.passwords.hash_password(new_password)
        self.store.update_password(role, account.id, pwd_hash, algo)
        await self.cache.delete(self._reset_key(token))
        revoked = await self.sessions.invalidate_all_sessions(account.email, role)
        self.logger.info("password_reset_completed", role=role.value, account_id=account.id, sessions_revoked=revoked)

    async def drain_background(self) -> None:
        """Wait for pending activity refreshes. Used at shutdown."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
