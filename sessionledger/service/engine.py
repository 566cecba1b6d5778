from __future__ import annotations

import contextlib
import hmac
import time
from typing import Callable, Iterator

from sessionledger.logging import fingerprint, get_logger
from sessionledger.service.codec import CredentialCodec, CredentialDecodeError
from sessionledger.service.errors import (
    AuthenticationFailedError,
    CredentialMismatchError,
    CredentialRejectedError,
    InvalidCredentialError,
    SessionExpiredError,
    StoreUnavailableError,
)
from sessionledger.service.passwords import MemberDirectory, PasswordComparator
from sessionledger.storage.errors import StoreUnavailable
from sessionledger.storage.models import CredentialKind, DecodedCredential, TokenPair
from sessionledger.storage.sessions import RefreshSessionStore, RevocationLedger

logger = get_logger(__name__)


class CredentialEngine:
    """Issues, rotates and revokes credentials for member sessions.

    The engine keeps no session state of its own. Every decision re-reads the
    shared store, so any number of engine instances can serve the same subject:

    * ``login`` overwrites the subject's renewal credential (last write wins).
    * ``logout`` records the bearer credential in the revocation ledger for its
      remaining lifetime and drops the renewal credential. Both writes are
      idempotent and independent; a partial logout can simply be retried.
    * ``reissue`` only honours the renewal credential currently on record and
      rotates it once its remaining life falls below the reissue threshold.
    * ``validate`` consults the ledger on every call and fails closed when the
      store cannot answer.

    Subjects are passed through ``members.canonical`` before they are minted
    into a credential or used as a store key.
    """

    def __init__(
        self,
        refresh_sessions: RefreshSessionStore,
        ledger: RevocationLedger,
        codec: CredentialCodec,
        comparator: PasswordComparator,
        members: MemberDirectory,
        *,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        reissue_threshold_seconds: int,
        clock_skew_leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.refresh_sessions = refresh_sessions
        self.ledger = ledger
        self.codec = codec
        self.comparator = comparator
        self.members = members
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.reissue_threshold_seconds = reissue_threshold_seconds
        self.clock_skew_leeway_seconds = clock_skew_leeway_seconds
        self._clock = clock

    @contextlib.contextmanager
    def _store_guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except StoreUnavailable as exc:
            logger.error("session_store_unavailable", operation=operation, error=exc.message)
            raise StoreUnavailableError(exc.message, detail={"operation": operation}) from exc

    def _decode(self, credential: str, operation: str) -> DecodedCredential:
        try:
            return self.codec.decode(credential)
        except CredentialDecodeError as exc:
            logger.info("credential_decode_failed", operation=operation, reason=str(exc))
            raise InvalidCredentialError(detail={"operation": operation}) from exc

    def _mint_access(self, subject: str, now: float) -> tuple[str, float]:
        token = self.codec.mint(subject, self.access_ttl_seconds, CredentialKind.ACCESS)
        return token, now + self.access_ttl_seconds

    def _mint_refresh(self, subject: str, now: float) -> tuple[str, float]:
        token = self.codec.mint(subject, self.refresh_ttl_seconds, CredentialKind.REFRESH)
        return token, now + self.refresh_ttl_seconds

    async def _issue_pair(self, subject: str, operation: str) -> TokenPair:
        now = self._clock()
        access_token, access_exp = self._mint_access(subject, now)
        refresh_token, refresh_exp = self._mint_refresh(subject, now)
        with self._store_guard(operation):
            await self.refresh_sessions.put(subject, refresh_token, self.refresh_ttl_seconds)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def subject_of(self, credential: str) -> str:
        """Subject named by a credential's verified claims."""
        return self._decode(credential, "subject_lookup").subject

    async def login(self, subject: str, password: str) -> TokenPair:
        subject = self.members.canonical(subject)
        stored_hash = self.members.get_password_hash(subject)
        if not self.comparator.matches(password, stored_hash):
            logger.info("login_failed", known_subject=stored_hash is not None)
            raise AuthenticationFailedError()
        pair = await self._issue_pair(subject, "login")
        logger.info("login_succeeded", jti=fingerprint(pair.refresh_token))
        return pair

    async def logout(self, access_token: str, subject: str) -> None:
        subject = self.members.canonical(subject)
        decoded = self._decode(access_token, "logout")
        if decoded.kind is not CredentialKind.ACCESS or decoded.subject != subject:
            logger.warning(
                "logout_credential_not_owned",
                kind=decoded.kind.value,
                subject_matches=decoded.subject == subject,
            )
            raise InvalidCredentialError(detail={"operation": "logout"})

        entry = self.ledger.entry_for(
            access_token, subject, decoded.remaining_seconds(self._clock())
        )
        with self._store_guard("logout"):
            if entry is not None:
                await self.ledger.record(entry)
            else:
                logger.info("logout_ledger_skipped_expired", jti=decoded.jti)
            await self.refresh_sessions.discard(subject)
        logger.info(
            "logout_completed",
            jti=decoded.jti,
            ledger_ttl=entry.ttl_seconds if entry else 0,
        )

    async def withdraw(self, access_token: str, subject: str, password: str) -> None:
        """Close the member's account after re-checking their password."""
        subject = self.members.canonical(subject)
        if not self.comparator.matches(password, self.members.get_password_hash(subject)):
            logger.info("withdraw_password_rejected")
            raise AuthenticationFailedError()
        await self.logout(access_token, subject)
        removed = self.members.remove(subject)
        logger.info("member_withdrawn", removed=removed)

    async def reissue(self, refresh_token: str, subject: str) -> TokenPair:
        subject = self.members.canonical(subject)
        with self._store_guard("reissue"):
            stored = await self.refresh_sessions.get(subject)
        if stored is None:
            logger.info("reissue_session_missing")
            raise SessionExpiredError()
        if not hmac.compare_digest(stored.encode(), refresh_token.encode()):
            # Either a stolen credential or one superseded by a newer login
            logger.warning(
                "renewal_credential_mismatch",
                presented=fingerprint(refresh_token),
                on_record=fingerprint(stored),
            )
            raise CredentialMismatchError()

        decoded = self._decode(refresh_token, "reissue")
        now = self._clock()
        remaining = decoded.remaining_seconds(now)
        if remaining <= -self.clock_skew_leeway_seconds:
            logger.info("reissue_refresh_expired", jti=decoded.jti)
            raise SessionExpiredError()

        if remaining < self.reissue_threshold_seconds:
            pair = await self._issue_pair(subject, "reissue")
            logger.info("reissue_rotated", previous=decoded.jti, remaining=int(remaining))
            return pair

        access_token, access_exp = self._mint_access(subject, now)
        logger.info("reissue_reused", jti=decoded.jti, remaining=int(remaining))
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=decoded.expires_at,
        )

    async def validate(self, access_token: str) -> str:
        try:
            decoded = self.codec.decode(access_token)
        except CredentialDecodeError as exc:
            raise CredentialRejectedError(detail={"reason": "invalid"}) from exc
        if decoded.kind is not CredentialKind.ACCESS:
            raise CredentialRejectedError(detail={"reason": "wrong_kind"})
        if decoded.remaining_seconds(self._clock()) <= -self.clock_skew_leeway_seconds:
            raise CredentialRejectedError(detail={"reason": "expired"})
        try:
            revoked = await self.ledger.is_revoked(access_token)
        except StoreUnavailable as exc:
            # Fail closed: an unanswered ledger lookup is a rejection
            logger.error("revocation_check_failed", jti=decoded.jti, error=exc.message)
            raise CredentialRejectedError(detail={"reason": "store_unavailable"}) from exc
        if revoked:
            logger.info("credential_rejected_revoked", jti=decoded.jti)
            raise CredentialRejectedError(detail={"reason": "revoked"})
        return decoded.subject
