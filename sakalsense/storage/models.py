from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sakalsense.config import Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AdminRequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self is not AdminRequestStatus.PENDING


@dataclass
class Account:
    """A credentialed identity in one of the role domains."""

    id: str
    email: str
    full_name: str
    role: Role
    password_hash: str
    password_algo: str = "argon2id"
    avatar_link: Optional[str] = None
    invited_by_id: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    def public_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "avatar_link": self.avatar_link,
        }


@dataclass
class AdminRequest:
    id: str
    email: str
    full_name: str
    reason: Optional[str] = None
    status: AdminRequestStatus = AdminRequestStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    # audit fields, written once by the terminal transition
    reviewed_by_id: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("created_at", "updated_at", "reviewed_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class AdminRequestPage:
    requests: List[AdminRequest]
    total: int
    page: int
    total_pages: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requests": [req.to_dict() for req in self.requests],
            "total": self.total,
            "page": self.page,
            "total_pages": self.total_pages,
        }


@dataclass
class SessionRecord:
    """Ephemeral login session stored as a JSON blob in the cache."""

    session_id: str
    identity: str
    role: Role
    device: str
    ip: str
    user_agent: str
    login_at: datetime
    last_active_at: datetime
    location: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "identity": self.identity,
            "role": self.role.value,
            "device": self.device,
            "ip": self.ip,
            "user_agent": self.user_agent,
            "location": self.location,
            "login_at": self.login_at.isoformat(),
            "last_active_at": self.last_active_at.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "SessionRecord":
        data = json.loads(raw)
        return cls(
            session_id=data["session_id"],
            identity=data["identity"],
            role=Role(data["role"]),
            device=data.get("device") or "unknown",
            ip=data.get("ip") or "",
            user_agent=data.get("user_agent") or "",
            location=data.get("location"),
            login_at=datetime.fromisoformat(data["login_at"]),
            last_active_at=datetime.fromisoformat(data["last_active_at"]),
        )
