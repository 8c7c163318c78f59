from __future__ import annotations

import secrets
from typing import Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sakalsense.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


class Passwords:
    """argon2id hashing for account credentials."""

    def __init__(self) -> None:
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, stored_hash: str, algo: str, password: str) -> bool:
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False


def generate_temporary_password() -> str:
    """16 hex characters from the OS CSPRNG."""
    return secrets.token_hex(8)
