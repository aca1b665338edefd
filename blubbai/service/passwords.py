from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from blubbai.logging import get_logger

logger = get_logger(__name__)


class PasswordService:
    """argon2id password hashing with a per-hash random salt."""

    algorithm = "argon2id"

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # Burned on unknown usernames so lookups cost the same as real checks
        self._dummy_hash = self._pwd_hasher.hash("not-a-real-password")

    def hash(self, plaintext: str) -> str:
        return self._pwd_hasher.hash(plaintext)

    def verify(self, plaintext: str, hash_string: str) -> bool:
        if not hash_string:
            return False
        try:
            return self._pwd_hasher.verify(hash_string, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def burn(self, plaintext: str) -> None:
        """Spend one verification worth of work without a real hash."""
        self.verify(plaintext, self._dummy_hash)
