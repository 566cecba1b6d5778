from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from sessionledger.api.schemas import (
    Envelope,
    JoinRequest,
    LoginRequest,
    MemberResponse,
    ReissueRequest,
    SubjectResponse,
    TokenResponse,
    WithdrawRequest,
)
from sessionledger.service.errors import ConflictError, RateLimitedError
from sessionledger.service.runtime import check_rate_limit, get_runtime
from sessionledger.storage.errors import ConstraintViolation

router = APIRouter(prefix="/v1")

_BEARER_PREFIX = "bearer "


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.lower().startswith(_BEARER_PREFIX):
        return None
    token = authorization[len(_BEARER_PREFIX):].strip()
    return token or None


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    if not await check_rate_limit(runtime, key, limit, window_seconds):
        raise RateLimitedError(detail={"key": key, "limit": limit})


@dataclass(frozen=True)
class Principal:
    subject: str
    access_token: str


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    access_token = _extract_bearer(authorization)
    if not access_token:
        raise _http_error("unauthorized", "not authenticated", status_code=401)
    subject = await get_runtime().engine.validate(access_token)
    return Principal(subject=subject, access_token=access_token)


async def get_logout_principal(authorization: Optional[str] = Header(None)) -> Principal:
    """Signature-checked bearer for logout, without the revocation gate.

    A bearer that is already in the ledger must still be able to log out, so
    repeat and retried logouts succeed.
    """
    access_token = _extract_bearer(authorization)
    if not access_token:
        raise _http_error("unauthorized", "not authenticated", status_code=401)
    subject = get_runtime().engine.subject_of(access_token)
    return Principal(subject=subject, access_token=access_token)


@router.post("/auth/join", response_model=Envelope, status_code=201, tags=["auth"])
async def join(body: JoinRequest):
    """Register a member so they can log in.

    Raises:
        409: If the email is already registered
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"join:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    try:
        member = runtime.members.register(body.email, body.password)
    except ConstraintViolation as exc:
        raise ConflictError(exc.message, detail=exc.detail) from exc
    return Envelope(
        status="ok",
        data=MemberResponse(email=member.email, created_at=member.created_at),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange email and password for a bearer and renewal credential.

    Raises:
        401: If credentials are invalid
        429: If rate limit exceeded for this email
        503: If the session store is unavailable
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    pair = await runtime.engine.login(body.email, body.password)
    return Envelope(status="ok", data=TokenResponse.from_pair(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: Principal = Depends(get_logout_principal)):
    runtime = get_runtime()
    await runtime.engine.logout(principal.access_token, principal.subject)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/reissue", response_model=Envelope, tags=["auth"])
async def reissue(
    body: Optional[ReissueRequest] = None,
    refresh_header: Optional[str] = Header(
        None, alias="RefreshToken", convert_underscores=False
    ),
):
    """Trade the renewal credential on record for a fresh bearer credential.

    The renewal credential is read from the ``RefreshToken`` header, or from
    ``refresh_token`` in the JSON body when the header is absent.
    """
    refresh_token = refresh_header or (body.refresh_token if body else None)
    if not refresh_token:
        raise _http_error("unauthorized", "not authenticated", status_code=401)
    runtime = get_runtime()
    subject = runtime.engine.subject_of(refresh_token)
    pair = await runtime.engine.reissue(refresh_token, subject)
    return Envelope(status="ok", data=TokenResponse.from_pair(pair))


@router.post("/auth/withdraw", response_model=Envelope, tags=["auth"])
async def withdraw(body: WithdrawRequest, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.engine.withdraw(principal.access_token, principal.subject, body.password)
    return Envelope(status="ok", data={"message": "member withdrawn"})


@router.get("/health", response_model=Envelope, tags=["auth"])
async def authenticated_health(principal: Principal = Depends(get_principal)):
    return Envelope(status="ok", data=SubjectResponse(subject=principal.subject))
