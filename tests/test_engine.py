"""Engine tests for login, logout, reissue and the per-request gate.

Every test drives the engine against the in-memory store with a shared fake
clock, so credential expiry and ledger TTLs can be stepped deterministically.
"""

import pytest

from sessionledger.service.errors import (
    AuthenticationFailedError,
    CredentialMismatchError,
    CredentialRejectedError,
    InvalidCredentialError,
    SessionExpiredError,
    StoreUnavailableError,
)
from sessionledger.storage.errors import StoreUnavailable
from sessionledger.storage.models import CredentialKind

SUBJECT = "a@x.com"
PASSWORD = "correct-horse-battery"
DAY = 24 * 60 * 60


class TestLogin:
    async def test_login_returns_pair_that_validates(self, engine, codec, clock):
        pair = await engine.login(SUBJECT, PASSWORD)

        assert await engine.validate(pair.access_token) == SUBJECT
        access = codec.decode(pair.access_token)
        refresh = codec.decode(pair.refresh_token)
        assert access.kind is CredentialKind.ACCESS
        assert refresh.kind is CredentialKind.REFRESH
        assert pair.access_expires_at == clock.now + engine.access_ttl_seconds
        assert pair.refresh_expires_at == clock.now + engine.refresh_ttl_seconds
        assert pair.token_type == "bearer"

    async def test_login_stores_refresh_credential_under_subject(self, engine):
        pair = await engine.login(SUBJECT, PASSWORD)

        assert await engine.refresh_sessions.get(SUBJECT) == pair.refresh_token

    async def test_login_does_not_touch_ledger(self, engine, cache):
        await engine.login(SUBJECT, PASSWORD)

        assert not any(key.startswith("auth:revoked:") for key in cache._entries)

    async def test_wrong_password_fails(self, engine):
        with pytest.raises(AuthenticationFailedError):
            await engine.login(SUBJECT, "not-the-password")
        assert await engine.refresh_sessions.get(SUBJECT) is None

    async def test_unknown_subject_fails_like_wrong_password(self, engine):
        with pytest.raises(AuthenticationFailedError) as excinfo:
            await engine.login("nobody@x.com", PASSWORD)
        assert excinfo.value.public_message == "not authenticated"

    async def test_second_login_supersedes_first_renewal(self, engine):
        first = await engine.login(SUBJECT, PASSWORD)
        second = await engine.login(SUBJECT, PASSWORD)

        assert first.refresh_token != second.refresh_token
        with pytest.raises(CredentialMismatchError):
            await engine.reissue(first.refresh_token, SUBJECT)
        reissued = await engine.reissue(second.refresh_token, SUBJECT)
        assert await engine.validate(reissued.access_token) == SUBJECT

    async def test_login_under_other_casing_supersedes_same_session(self, engine, codec):
        first = await engine.login(SUBJECT, PASSWORD)
        second = await engine.login("  A@X.com ", PASSWORD)

        assert codec.decode(second.access_token).subject == SUBJECT
        assert codec.decode(second.refresh_token).subject == SUBJECT
        assert await engine.refresh_sessions.get(SUBJECT) == second.refresh_token
        assert await engine.refresh_sessions.get("A@X.com") is None
        with pytest.raises(CredentialMismatchError):
            await engine.reissue(first.refresh_token, SUBJECT)
        with pytest.raises(CredentialMismatchError):
            await engine.reissue(first.refresh_token, "A@X.com")

    async def test_second_login_leaves_first_bearer_valid(self, engine):
        first = await engine.login(SUBJECT, PASSWORD)
        await engine.login(SUBJECT, PASSWORD)

        assert await engine.validate(first.access_token) == SUBJECT

    async def test_login_surfaces_store_outage(self, engine, monkeypatch):
        async def _fail(*args, **kwargs):
            raise StoreUnavailable("redis set failed", {"op": "set"})

        monkeypatch.setattr(engine.refresh_sessions.cache, "set", _fail)
        with pytest.raises(StoreUnavailableError) as excinfo:
            await engine.login(SUBJECT, PASSWORD)
        assert excinfo.value.status_code == 503
        assert excinfo.value.public_message == "authentication error"


class TestLogout:
    async def test_logout_rejects_bearer_immediately(self, engine):
        pair = await engine.login(SUBJECT, PASSWORD)

        await engine.logout(pair.access_token, SUBJECT)

        with pytest.raises(CredentialRejectedError) as excinfo:
            await engine.validate(pair.access_token)
        assert excinfo.value.detail == {"reason": "revoked"}

    async def test_logout_ends_renewal_session(self, engine):
        pair = await engine.login(SUBJECT, PASSWORD)

        await engine.logout(pair.access_token, SUBJECT)

        assert await engine.refresh_sessions.get(SUBJECT) is None
        with pytest.raises(SessionExpiredError):
            await engine.reissue(pair.refresh_token, SUBJECT)

    async def test_double_logout_is_idempotent(self, engine):
        pair = await engine.login(SUBJECT, PASSWORD)

        await engine.logout(pair.access_token, SUBJECT)
        await engine.logout(pair.access_token, SUBJECT)

        with pytest.raises(CredentialRejectedError):
            await engine.validate(pair.access_token)

    async def test_ledger_entry_lives_exactly_as_long_as_bearer(self, engine, cache, clock):
        pair = await engine.login(SUBJECT, PASSWORD)
        clock.advance(600)

        await engine.logout(pair.access_token, SUBJECT)

        key = engine.ledger._key(pair.access_token)
        value, expires_at = cache._entries[key]
        assert value == SUBJECT
        assert expires_at == pair.access_expires_at
        clock.advance(engine.access_ttl_seconds - 600)
        assert await engine.ledger.is_revoked(pair.access_token) is False

    async def test_logout_of_expired_bearer_skips_ledger(self, engine, cache, clock):
        pair = await engine.login(SUBJECT, PASSWORD)
        clock.advance(engine.access_ttl_seconds + 1)

        await engine.logout(pair.access_token, SUBJECT)

        assert engine.ledger._key(pair.access_token) not in cache._entries
        assert await engine.refresh_sessions.get(SUBJECT) is None

    async def test_logout_with_tampered_bearer_is_invalid(self, engine):
        pair = await engine.login(SUBJECT, PASSWORD)
        header, payload, signature = pair.access_token.split(".")
        tampered = f"{header}.{payload}.{signature[::-1]}"

        with pytest.raises(InvalidCredentialError):
            await engine.logout(tampered, SUBJECT)
        assert await engine.refresh_sessions.get(SUBJECT) == pair.refresh_token

    async def test_logout_with_garbage_is_invalid(self, engine):
        with pytest.raises(InvalidCredentialError):
            await engine.logout("not-a-credential", SUBJECT)

    async def test_logout_rejects_another_subjects_bearer(self, engine, members):
        members.register("b@x.com", "another-long-password")
        pair = await engine.login(SUBJECT, PASSWORD)

        with pytest.raises(InvalidCredentialError):
            await engine.logout(pair.access_token, "b@x.com")

    async def test_logout_rejects_renewal_credential_as_bearer(self, engine):
        pair = await engine.login(SUBJECT, PASSWORD)

        with pytest.raises(InvalidCredentialError):
            await engine.logout(pair.refresh_token, SUBJECT)

    async def test_logout_store_outage_is_reported(self, engine, monkeypatch):
        pair = await engine.login(SUBJECT, PASSWORD)

        async def _fail(*args, **kwargs):
            raise StoreUnavailable("redis delete failed", {"op": "delete"})

        monkeypatch.setattr(engine.refresh_sessions.cache, "delete", _fail)
        with pytest.raises(StoreUnavailableError):
            await engine.logout(pair.access_token, SUBJECT)
        # The ledger write landed before the failing delete
        assert await engine.ledger.is_revoked(pair.access_token) is True


class TestReissue:
    async def test_reissue_without_login_is_session_expired(self, engine):
        with pytest.raises(SessionExpiredError) as excinfo:
            await engine.reissue("whatever", SUBJECT)
        assert excinfo.value.error_code == "session_expired"

    async def test_immediate_reissue_keeps_renewal_credential(self, engine):
        pair = await engine.login(SUBJECT, PASSWORD)

        first = await engine.reissue(pair.refresh_token, SUBJECT)
        second = await engine.reissue(pair.refresh_token, SUBJECT)

        assert first.refresh_token == pair.refresh_token
        assert second.refresh_token == pair.refresh_token
        assert first.refresh_expires_at == pair.refresh_expires_at
        assert first.access_token != pair.access_token
        assert await engine.validate(first.access_token) == SUBJECT

    async def test_reissue_above_threshold_does_not_write_store(self, engine, monkeypatch):
        pair = await engine.login(SUBJECT, PASSWORD)
        writes = []
        original_put = engine.refresh_sessions.put

        async def _recording_put(*args, **kwargs):
            writes.append(args)
            await original_put(*args, **kwargs)

        monkeypatch.setattr(engine.refresh_sessions, "put", _recording_put)
        await engine.reissue(pair.refresh_token, SUBJECT)

        assert writes == []

    async def test_reissue_below_threshold_rotates(self, engine, clock):
        pair = await engine.login(SUBJECT, PASSWORD)
        clock.advance(5 * DAY)

        rotated = await engine.reissue(pair.refresh_token, SUBJECT)

        assert rotated.refresh_token != pair.refresh_token
        assert await engine.refresh_sessions.get(SUBJECT) == rotated.refresh_token
        assert rotated.refresh_expires_at == clock.now + engine.refresh_ttl_seconds
        with pytest.raises(CredentialMismatchError):
            await engine.reissue(pair.refresh_token, SUBJECT)

    async def test_rotation_boundary(self, engine, clock):
        pair = await engine.login(SUBJECT, PASSWORD)
        # Exactly at the threshold the renewal credential is kept
        clock.advance(engine.refresh_ttl_seconds - engine.reissue_threshold_seconds)
        kept = await engine.reissue(pair.refresh_token, SUBJECT)
        assert kept.refresh_token == pair.refresh_token

        clock.advance(1)
        rotated = await engine.reissue(pair.refresh_token, SUBJECT)
        assert rotated.refresh_token != pair.refresh_token

    async def test_mismatch_does_not_disturb_session_on_record(self, engine, codec):
        pair = await engine.login(SUBJECT, PASSWORD)
        forged = codec.mint(SUBJECT, engine.refresh_ttl_seconds, CredentialKind.REFRESH)

        with pytest.raises(CredentialMismatchError) as excinfo:
            await engine.reissue(forged, SUBJECT)
        assert excinfo.value.public_message == "not authenticated"
        assert await engine.refresh_sessions.get(SUBJECT) == pair.refresh_token

    async def test_reissue_after_refresh_expiry_is_session_expired(self, engine, clock):
        pair = await engine.login(SUBJECT, PASSWORD)
        clock.advance(engine.refresh_ttl_seconds + 1)

        with pytest.raises(SessionExpiredError):
            await engine.reissue(pair.refresh_token, SUBJECT)

    async def test_reissue_store_outage_is_not_session_expired(self, engine, monkeypatch):
        pair = await engine.login(SUBJECT, PASSWORD)

        async def _fail(*args, **kwargs):
            raise StoreUnavailable("redis get failed", {"op": "get"})

        monkeypatch.setattr(engine.refresh_sessions.cache, "get", _fail)
        with pytest.raises(StoreUnavailableError):
            await engine.reissue(pair.refresh_token, SUBJECT)

    async def test_subject_of_reads_verified_claims(self, engine):
        pair = await engine.login(SUBJECT, PASSWORD)

        assert engine.subject_of(pair.refresh_token) == SUBJECT
        with pytest.raises(InvalidCredentialError):
            engine.subject_of("a.b.c")


class TestValidate:
    async def test_validate_rejects_after_ttl(self, engine, clock):
        pair = await engine.login(SUBJECT, PASSWORD)
        clock.advance(engine.access_ttl_seconds - 1)
        assert await engine.validate(pair.access_token) == SUBJECT

        clock.advance(1)
        with pytest.raises(CredentialRejectedError) as excinfo:
            await engine.validate(pair.access_token)
        assert excinfo.value.detail == {"reason": "expired"}

    async def test_leeway_extends_acceptance(self, engine, clock):
        engine.clock_skew_leeway_seconds = 30
        pair = await engine.login(SUBJECT, PASSWORD)
        clock.advance(engine.access_ttl_seconds + 10)

        assert await engine.validate(pair.access_token) == SUBJECT

    async def test_validate_rejects_renewal_credential(self, engine):
        pair = await engine.login(SUBJECT, PASSWORD)

        with pytest.raises(CredentialRejectedError) as excinfo:
            await engine.validate(pair.refresh_token)
        assert excinfo.value.detail == {"reason": "wrong_kind"}

    async def test_validate_rejects_foreign_signature(self, engine, clock):
        from sessionledger.service.codec import HmacCredentialCodec

        foreign = HmacCredentialCodec(
            "some-other-secret-entirely-0123456789",
            issuer="sessionledger",
            audience="membership-clients",
            clock=clock,
        )
        token = foreign.mint(SUBJECT, 60, CredentialKind.ACCESS)

        with pytest.raises(CredentialRejectedError):
            await engine.validate(token)

    async def test_validate_fails_closed_when_ledger_unreachable(self, engine, monkeypatch):
        pair = await engine.login(SUBJECT, PASSWORD)

        async def _fail(*args, **kwargs):
            raise StoreUnavailable("redis get failed", {"op": "get"})

        monkeypatch.setattr(engine.ledger.cache, "get", _fail)
        with pytest.raises(CredentialRejectedError) as excinfo:
            await engine.validate(pair.access_token)
        assert excinfo.value.detail == {"reason": "store_unavailable"}

    async def test_validate_consults_ledger_for_fresh_credential(self, engine, monkeypatch):
        pair = await engine.login(SUBJECT, PASSWORD)
        lookups = []
        original = engine.ledger.is_revoked

        async def _recording(credential):
            lookups.append(credential)
            return await original(credential)

        monkeypatch.setattr(engine.ledger, "is_revoked", _recording)
        await engine.validate(pair.access_token)
        await engine.validate(pair.access_token)

        assert lookups == [pair.access_token, pair.access_token]


class TestWithdraw:
    async def test_withdraw_removes_member_and_session(self, engine, members):
        pair = await engine.login(SUBJECT, PASSWORD)

        await engine.withdraw(pair.access_token, SUBJECT, PASSWORD)

        assert members.get_password_hash(SUBJECT) is None
        assert await engine.refresh_sessions.get(SUBJECT) is None
        with pytest.raises(CredentialRejectedError):
            await engine.validate(pair.access_token)
        with pytest.raises(AuthenticationFailedError):
            await engine.login(SUBJECT, PASSWORD)

    async def test_withdraw_under_other_casing_ends_canonical_session(self, engine, members):
        pair = await engine.login(SUBJECT, PASSWORD)

        await engine.withdraw(pair.access_token, "A@X.COM", PASSWORD)

        assert members.get_password_hash(SUBJECT) is None
        assert await engine.refresh_sessions.get(SUBJECT) is None
        with pytest.raises(CredentialRejectedError):
            await engine.validate(pair.access_token)

    async def test_withdraw_requires_password(self, engine, members):
        pair = await engine.login(SUBJECT, PASSWORD)

        with pytest.raises(AuthenticationFailedError):
            await engine.withdraw(pair.access_token, SUBJECT, "wrong-password")
        assert members.get_password_hash(SUBJECT) is not None
        assert await engine.validate(pair.access_token) == SUBJECT


class TestScenarios:
    async def test_login_validate_logout_reissue(self, engine):
        pair = await engine.login(SUBJECT, PASSWORD)
        assert await engine.validate(pair.access_token) == SUBJECT

        await engine.logout(pair.access_token, SUBJECT)

        with pytest.raises(CredentialRejectedError):
            await engine.validate(pair.access_token)
        with pytest.raises(SessionExpiredError):
            await engine.reissue(pair.refresh_token, SUBJECT)

    async def test_login_then_immediate_reissue(self, engine):
        pair = await engine.login(SUBJECT, PASSWORD)

        reissued = await engine.reissue(pair.refresh_token, SUBJECT)

        assert reissued.refresh_token == pair.refresh_token
        assert reissued.access_token != pair.access_token
        assert await engine.validate(reissued.access_token) == SUBJECT
