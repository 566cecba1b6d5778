from __future__ import annotations

from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from sessionledger.logging import get_logger

logger = get_logger(__name__)


class PasswordComparator(Protocol):
    def matches(self, raw_password: str, stored_hash: Optional[str]) -> bool: ...


class MemberDirectory(Protocol):
    """Member registry as seen by the engine."""

    def canonical(self, subject: str) -> str: ...

    def get_password_hash(self, subject: str) -> Optional[str]: ...

    def remove(self, subject: str) -> bool: ...


class Argon2PasswordComparator:
    """argon2id hashing and constant-time comparison."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, raw_password: str) -> str:
        return self._hasher.hash(raw_password)

    def matches(self, raw_password: str, stored_hash: Optional[str]) -> bool:
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, raw_password)
        except VerificationError:
            return False
        except InvalidHash:
            logger.warning("password_hash_invalid")
            return False
