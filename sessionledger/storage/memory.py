from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Protocol

from sessionledger.logging import get_logger
from sessionledger.storage.errors import ConstraintViolation
from sessionledger.storage.models import Member


class MemoryCache:
    """In-process expiring key-value store.

    Mirrors the Redis contract: entries vanish once their TTL elapses and every
    read re-checks expiry against the clock. Only safe for a single process,
    so it backs development and test runs.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._entries: Dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _live(self, key: str, now: float) -> Optional[tuple[str, float]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= now:
            self._entries.pop(key, None)
            return None
        return entry

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key, self._clock())
            return entry[0] if entry else None

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def incr(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                self._entries[key] = ("1", now + max(1, int(ttl_seconds)))
                return 1
            count = int(entry[0]) + 1
            self._entries[key] = (str(count), entry[1])
            return count

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()


class _Hasher(Protocol):
    def hash(self, raw_password: str) -> str: ...


class MemoryMemberDirectory:
    """Thread-safe in-memory member registry used by development and test runtimes."""

    def __init__(self, hasher: _Hasher) -> None:
        self.logger = get_logger(__name__)
        self._hasher = hasher
        self._members: Dict[str, Member] = {}
        self._lock = threading.RLock()

    @staticmethod
    def canonical(email: str) -> str:
        """Key every lookup and credential under the same spelling."""
        return email.strip().lower()

    def register(self, email: str, password: str) -> Member:
        key = self.canonical(email)
        with self._lock:
            if key in self._members:
                raise ConstraintViolation("email already registered", {"email": key})
            member = Member(email=key, password_hash=self._hasher.hash(password))
            self._members[key] = member
        self.logger.info("member_registered")
        return member

    def get_password_hash(self, subject: str) -> Optional[str]:
        with self._lock:
            member = self._members.get(self.canonical(subject))
            return member.password_hash if member else None

    def remove(self, subject: str) -> bool:
        with self._lock:
            return self._members.pop(self.canonical(subject), None) is not None
