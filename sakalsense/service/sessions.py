"""Per-(role, identity) login sessions kept in the cache store.

Key layout: ``session:{role}:{identity}:{session_id}`` holding the JSON
record with a fixed TTL. Enumeration is a prefix scan followed by a bulk
fetch, which stays cheap only because each identity holds at most
``SESSION_LIMIT[role]`` keys.

Concurrent logins for the same identity near the limit can both observe the
same active count before either writes, so the limit may be exceeded by the
number of racing requests. Serial callers never exceed it.
"""

from __future__ import annotations

import ipaddress
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sakalsense.config import SESSION_LIMIT, SESSION_TTL_SECONDS, DeviceType, Role
from sakalsense.logging import get_logger
from sakalsense.storage.models import SessionRecord, utcnow
from sakalsense.storage.redis_cache import CacheStore

logger = get_logger(__name__)


def detect_device(user_agent: Optional[str]) -> DeviceType:
    ua = (user_agent or "").lower()
    if not ua:
        return DeviceType.UNKNOWN
    if "mobile" in ua:
        return DeviceType.MOBILE
    if "tablet" in ua or "ipad" in ua:
        return DeviceType.TABLET
    if "laptop" in ua or "macbook" in ua:
        return DeviceType.LAPTOP
    return DeviceType.DESKTOP


def location_label(ip: str) -> Optional[str]:
    """Coarse location without an external lookup service."""
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return None
    if addr.is_private or addr.is_loopback:
        return "Local Network"
    return None


@dataclass(frozen=True)
class ClientInfo:
    ip: str
    user_agent: str
    device: DeviceType
    location: Optional[str] = None

    @classmethod
    def from_request_values(cls, ip: str, user_agent: Optional[str]) -> "ClientInfo":
        if ip.startswith("::ffff:"):
            ip = ip[len("::ffff:") :]
        elif ip == "::1":
            ip = "127.0.0.1"
        return cls(
            ip=ip,
            user_agent=user_agent or "",
            device=detect_device(user_agent),
            location=location_label(ip),
        )


@dataclass
class SessionCreateResult:
    session: SessionRecord
    limit_exceeded: bool
    active_sessions: List[SessionRecord] = field(default_factory=list)


class SessionManager:
    """Creates, validates, refreshes and revokes sessions.

    Store failures propagate to the caller; retries, if any, belong to the
    cache adapter.
    """

    def __init__(
        self,
        cache: CacheStore,
        *,
        ttl_seconds: int = SESSION_TTL_SECONDS,
        limits: Optional[Dict[Role, int]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.limits = dict(limits or SESSION_LIMIT)
        self._clock = clock

    @staticmethod
    def _prefix(identity: str, role: Role) -> str:
        return f"session:{role.value}:{identity}:"

    def _key(self, session_id: str, identity: str, role: Role) -> str:
        return f"{self._prefix(identity, role)}{session_id}"

    def limit_for(self, role: Role) -> int:
        return self.limits[role]

    async def create_session(
        self,
        identity: str,
        role: Role,
        device: str,
        ip: str,
        user_agent: str,
        location: Optional[str] = None,
    ) -> SessionCreateResult:
        """Persist a new session unless the role's concurrent limit is reached.

        At or above the limit the fresh session is returned but not stored, and
        ``limit_exceeded`` is set; rejecting or evicting is the caller's call.
        """
        now = self._clock()
        session = SessionRecord(
            session_id=secrets.token_hex(16),
            identity=identity,
            role=role,
            device=str(getattr(device, "value", device)),
            ip=ip,
            user_agent=user_agent,
            location=location,
            login_at=now,
            last_active_at=now,
        )
        active = await self.get_active_sessions(identity, role)
        if len(active) >= self.limit_for(role):
            logger.info(
                "session_limit_exceeded",
                role=role.value,
                active_count=len(active),
                limit=self.limit_for(role),
            )
            return SessionCreateResult(session=session, limit_exceeded=True, active_sessions=active)

        await self.cache.set(
            self._key(session.session_id, identity, role),
            session.to_json(),
            ttl_seconds=self.ttl_seconds,
        )
        logger.info("session_created", role=role.value, session_id=session.session_id, device=session.device)
        return SessionCreateResult(
            session=session, limit_exceeded=False, active_sessions=[session, *active]
        )

    async def get_active_sessions(self, identity: str, role: Role) -> List[SessionRecord]:
        """Live sessions for (identity, role), newest login first."""
        keys = await self.cache.keys_with_prefix(self._prefix(identity, role))
        if not keys:
            return []
        sessions: List[SessionRecord] = []
        for key, raw in zip(keys, await self.cache.mget(keys)):
            if raw is None:
                # expired between scan and fetch
                continue
            try:
                sessions.append(SessionRecord.from_json(raw))
            except (ValueError, KeyError) as exc:
                logger.warning("session_record_corrupt", key=key, error=str(exc))
        sessions.sort(key=lambda s: s.login_at, reverse=True)
        return sessions

    async def validate_session(self, session_id: str, identity: str, role: Role) -> bool:
        """Existence check only; the stored payload is not inspected."""
        return await self.cache.exists(self._key(session_id, identity, role))

    async def update_session_activity(self, session_id: str, identity: str, role: Role) -> bool:
        """Refresh the TTL. ``last_active_at`` in the stored record is left as is."""
        return await self.cache.expire(self._key(session_id, identity, role), self.ttl_seconds)

    async def invalidate_session(self, session_id: str, identity: str, role: Role) -> bool:
        removed = await self.cache.delete(self._key(session_id, identity, role))
        if removed:
            logger.info("session_invalidated", role=role.value, session_id=session_id)
        return bool(removed)

    async def invalidate_all_sessions(
        self, identity: str, role: Role, *, except_session_id: Optional[str] = None
    ) -> int:
        keys = await self.cache.keys_with_prefix(self._prefix(identity, role))
        if except_session_id:
            keep = self._key(except_session_id, identity, role)
            keys = [key for key in keys if key != keep]
        removed = await self.cache.delete(*keys) if keys else 0
        logger.info("sessions_invalidated", role=role.value, count=removed)
        return removed
