from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Callable, Optional, Protocol

from sessionledger.logging import get_logger
from sessionledger.storage.models import CredentialKind, DecodedCredential

logger = get_logger(__name__)


class CredentialDecodeError(Exception):
    """Credential is malformed, for another audience, or its signature does not verify."""


class CredentialCodec(Protocol):
    def mint(self, subject: str, ttl_seconds: int, kind: CredentialKind) -> str: ...

    def decode(self, credential: str) -> DecodedCredential: ...


class HmacCredentialCodec:
    """HS256 JWT codec.

    ``decode`` checks signature, algorithm, issuer and audience but deliberately
    does not reject expired credentials: logout and reissue need the embedded
    expiry of a credential regardless of whether it is still alive.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("codec secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self._clock = clock

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def mint(self, subject: str, ttl_seconds: int, kind: CredentialKind) -> str:
        now = self._clock()
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "token_type": CredentialKind(kind).value,
            # jti keeps two credentials minted in the same second distinct
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + ttl_seconds,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _load_json(self, segment: str) -> Optional[dict[str, Any]]:
        try:
            value = json.loads(self._decode_segment(segment))
        except (ValueError, TypeError):
            return None
        return value if isinstance(value, dict) else None

    def decode(self, credential: str) -> DecodedCredential:
        if not credential or not isinstance(credential, str):
            raise CredentialDecodeError("empty credential")
        try:
            header_b64, payload_b64, sig_b64 = credential.split(".")
        except ValueError:
            raise CredentialDecodeError("credential is not a three-part token") from None

        header = self._load_json(header_b64)
        # Reject anything but HS256 to rule out algorithm confusion
        if header is None or header.get("alg") != "HS256":
            logger.warning("credential_invalid_algorithm")
            raise CredentialDecodeError("unsupported credential header")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            raise CredentialDecodeError("signature mismatch")

        payload = self._load_json(payload_b64)
        if payload is None:
            logger.warning("credential_payload_decode_failed")
            raise CredentialDecodeError("unreadable payload")
        if payload.get("iss") != self.issuer:
            raise CredentialDecodeError("unexpected issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise CredentialDecodeError("unexpected audience")

        subject = payload.get("sub")
        jti = payload.get("jti")
        if not isinstance(subject, str) or not subject or not isinstance(jti, str):
            raise CredentialDecodeError("missing subject or jti")
        try:
            kind = CredentialKind(payload.get("token_type"))
            issued_at = float(payload["iat"])
            expires_at = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise CredentialDecodeError("missing or invalid claims") from None
        return DecodedCredential(
            subject=subject,
            kind=kind,
            issued_at=issued_at,
            expires_at=expires_at,
            jti=jti,
        )
