from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class CredentialKind(str, Enum):
    """Which of the two credential families a signed token belongs to."""

    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class DecodedCredential:
    subject: str
    kind: CredentialKind
    issued_at: float
    expires_at: float
    jti: str

    def remaining_seconds(self, now: float) -> float:
        return self.expires_at - now


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: float
    refresh_expires_at: float
    token_type: str = "bearer"

    @property
    def access_expires_at_dt(self) -> datetime:
        return datetime.fromtimestamp(self.access_expires_at, tz=timezone.utc)

    @property
    def refresh_expires_at_dt(self) -> datetime:
        return datetime.fromtimestamp(self.refresh_expires_at, tz=timezone.utc)


@dataclass(frozen=True)
class RevocationEntry:
    """A bearer credential killed at logout, kept only as long as it would have lived."""

    credential: str
    subject: str
    ttl_seconds: int


@dataclass
class Member:
    email: str
    password_hash: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
