from __future__ import annotations

from typing import Any, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tokenward.logging import get_logger

PASSWORD_ALGO = "argon2id"


class CredentialVerifier:
    """One-way password hashing and comparison (argon2id)."""

    def __init__(self, **hasher_options: Any) -> None:
        self.logger = get_logger(__name__)
        self._pwd_hasher = PasswordHasher(type=Type.ID, **hasher_options)
        # Verified against when the user does not exist so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash("tokenward-dummy-password")

    def hash(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify(self, record: Optional[Tuple[str, str]], password: str) -> bool:
        """Compare ``password`` with a stored ``(hash, algo)`` record."""
        if not record:
            self.verify_dummy(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify_dummy(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            pass

    def needs_rehash(self, stored_hash: str) -> bool:
        return self._pwd_hasher.check_needs_rehash(stored_hash)
