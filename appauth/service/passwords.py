from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from appauth.logging import get_logger

logger = get_logger(__name__)

ARGON2_PREFIX = "$argon2"


class PasswordHashing:
    """Argon2id hashing with an idempotent ``ensure_hashed`` save hook."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    @staticmethod
    def is_hashed(value: Optional[str]) -> bool:
        return bool(value) and value.startswith(ARGON2_PREFIX)

    def ensure_hashed(self, value: Optional[str]) -> Optional[str]:
        """Hash ``value`` unless it already is an argon2 digest."""
        if value is None or self.is_hashed(value):
            return value
        return self.hash(value)

    def verify(self, stored_hash: Optional[str], candidate: str) -> bool:
        if not stored_hash or candidate is None:
            return False
        try:
            return self._hasher.verify(stored_hash, candidate)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as exc:
            logger.warning("password_hash_unverifiable", error=str(exc))
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHashError:
            return True
