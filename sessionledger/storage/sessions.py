from __future__ import annotations

import hashlib
import math
from typing import Optional, Protocol

from sessionledger.storage.models import RevocationEntry


class ExpiringStore(Protocol):
    """Shared cache with atomic single-key set/get/delete and TTL expiry."""

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def incr(self, key: str, ttl_seconds: int) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class RefreshSessionStore:
    """Holds the single live renewal credential for each subject."""

    KEY_PREFIX = "auth:refresh:"

    def __init__(self, cache: ExpiringStore) -> None:
        self.cache = cache

    def _key(self, subject: str) -> str:
        return f"{self.KEY_PREFIX}{subject}"

    async def put(self, subject: str, refresh_token: str, ttl_seconds: int) -> None:
        # Unconditional overwrite: the newest login or rotation wins
        await self.cache.set(self._key(subject), refresh_token, ttl_seconds)

    async def get(self, subject: str) -> Optional[str]:
        return await self.cache.get(self._key(subject))

    async def discard(self, subject: str) -> None:
        await self.cache.delete(self._key(subject))


class RevocationLedger:
    """Bearer credentials rejected before their natural expiry.

    Entries are keyed on a digest of the credential string and expire together
    with the credential they block, so the ledger never needs eviction.
    """

    KEY_PREFIX = "auth:revoked:"

    def __init__(self, cache: ExpiringStore) -> None:
        self.cache = cache

    def _key(self, credential: str) -> str:
        digest = hashlib.sha256(credential.encode()).hexdigest()
        return f"{self.KEY_PREFIX}{digest}"

    @staticmethod
    def entry_for(credential: str, subject: str, remaining_seconds: float) -> Optional[RevocationEntry]:
        """Build the ledger entry for a credential, or None when it is already dead."""
        if remaining_seconds <= 0:
            return None
        return RevocationEntry(
            credential=credential,
            subject=subject,
            ttl_seconds=max(1, math.ceil(remaining_seconds)),
        )

    async def record(self, entry: RevocationEntry) -> None:
        await self.cache.set(self._key(entry.credential), entry.subject, entry.ttl_seconds)

    async def is_revoked(self, credential: str) -> bool:
        return await self.cache.get(self._key(credential)) is not None
