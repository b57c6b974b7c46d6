from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from chatauth.logging import get_logger

logger = get_logger(__name__)

ALGORITHM = "argon2id"


class PasswordService:
    """argon2id hashing with a per-call random salt embedded in the PHC string."""

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Spent on unknown identifiers so they cost as much as a wrong password
        self._dummy_hash = self._hasher.hash("chatauth-timing-equalizer")

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, password_hash: str) -> bool:
        """Return True only when ``plaintext`` matches ``password_hash``.

        Mismatches and malformed hashes both come back as False; which one it
        was is only visible in the debug log.
        """
        if not password_hash or not password_hash.startswith(f"${ALGORITHM}$"):
            logger.debug("password_hash_unrecognized")
            self.verify_dummy(plaintext)
            return False
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError, ValueError) as exc:
            logger.debug("password_hash_invalid", error_type=type(exc).__name__)
            return False

    def verify_dummy(self, plaintext: str) -> None:
        try:
            self._hasher.verify(self._dummy_hash, plaintext)
        except VerificationError:
            pass

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except (InvalidHashError, ValueError):
            return False
