from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional

from sakalsense.config import Role
from sakalsense.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenPayload:
    """Claims carried in the role cookie; never persisted server-side."""

    user_id: str
    email: str
    full_name: str
    role: Role
    session_id: str
    avatar_link: Optional[str] = None

    def to_claims(self) -> dict[str, Any]:
        claims = asdict(self)
        claims["role"] = self.role.value
        return claims

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "TokenPayload":
        return cls(
            user_id=str(claims["user_id"]),
            email=str(claims["email"]),
            full_name=str(claims["full_name"]),
            role=Role(claims["role"]),
            session_id=str(claims["session_id"]),
            avatar_link=claims.get("avatar_link"),
        )


class TokenService:
    """Signs and verifies HS256 JWTs.

    ``verify`` returns ``None`` for anything it cannot trust (malformed,
    wrong algorithm, bad signature, wrong issuer, expired) so callers can treat
    the result as "unauthenticated" without exception handling.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def sign(self, payload: TokenPayload) -> str:
        now = int(self._clock())
        claims = {
            **payload.to_claims(),
            "iss": self.issuer,
            "iat": now,
            "exp": now + self.ttl_seconds,
        }
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(claims, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: Optional[str]) -> Optional[TokenPayload]:
        if not token:
            return None
        if not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode("ascii"), sig_b64.encode("ascii")):
            return None
        try:
            claims = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(claims, dict) or claims.get("iss") != self.issuer:
            return None
        try:
            exp_ts = float(claims["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self._clock():
            return None
        try:
            return TokenPayload.from_claims(claims)
        except (KeyError, ValueError):
            logger.warning("jwt_claims_invalid")
            return None
