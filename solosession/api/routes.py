from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Request

from solosession.api.schemas import (
    Envelope,
    SessionCreateRequest,
    SessionCreateResponse,
    SessionOut,
    SessionRemovedResponse,
)
from solosession.logging import get_logger, session_hint
from solosession.service.errors import (
    AuthenticationError,
    ForbiddenError,
    ServiceUnavailableError,
    SessionExpiredError,
)
from solosession.service.runtime import get_runtime
from solosession.service.sessions import SessionErrorCode
from solosession.storage.models import SessionRecord

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# Transient verdicts; the client should retry rather than sign in again
_RETRYABLE_CODES = frozenset({SessionErrorCode.UPDATE_FAILED, SessionErrorCode.VALIDATION_ERROR})


def _session_out(record: SessionRecord) -> SessionOut:
    return SessionOut.model_validate(record.to_dict())


async def require_issuer(
    x_session_issuer_key: Optional[str] = Header(
        None, convert_underscores=False, alias="X-Session-Issuer-Key"
    ),
) -> None:
    """Only the login service, holding the shared issuer secret, may start sessions."""
    secret = get_runtime().settings.session_issuer_secret
    if not secret:
        raise ForbiddenError("session issuing over HTTP is disabled")
    if not x_session_issuer_key or not hmac.compare_digest(
        x_session_issuer_key.encode("utf-8"), secret.encode("utf-8")
    ):
        logger.warning("session_issuer_rejected", key_present=bool(x_session_issuer_key))
        raise AuthenticationError("invalid session issuer credentials")


async def require_session(
    x_user_id: Optional[str] = Header(None, convert_underscores=False, alias="X-User-ID"),
    session_id: Optional[str] = Header(None, convert_underscores=False),
) -> SessionRecord:
    """Resolve the caller's session, refreshing its activity and TTLs.

    Clients that only hold the session token may omit X-User-ID; the owner is
    then resolved through the reverse index.
    """
    runtime = get_runtime()
    if session_id and not x_user_id:
        verdict = await runtime.sessions.validate_session_id(session_id)
    else:
        verdict = await runtime.sessions.validate_session(x_user_id, session_id)
    if verdict.is_valid and verdict.session is not None:
        return verdict.session

    code = verdict.error or SessionErrorCode.VALIDATION_ERROR
    message = verdict.message or ""
    detail = {"reason": code.value}
    if code in _RETRYABLE_CODES:
        raise ServiceUnavailableError(message, detail=detail)
    if code == SessionErrorCode.SESSION_EXPIRED:
        raise SessionExpiredError(message, detail=detail)
    raise AuthenticationError(message, detail=detail)


@router.post(
    "/sessions",
    response_model=Envelope,
    status_code=201,
    tags=["sessions"],
    dependencies=[Depends(require_issuer)],
)
async def create_session(body: SessionCreateRequest, request: Request):
    """Start a session for a user the login service has already authenticated.

    Any session the user holds elsewhere is revoked. Metadata not supplied in
    the body is taken from the request.
    """
    runtime = get_runtime()
    metadata = dict(body.metadata or {})
    if body.user_agent is not None:
        metadata["userAgent"] = body.user_agent
    if body.ip_address is not None:
        metadata["ipAddress"] = body.ip_address
    if body.device_info is not None:
        metadata["deviceInfo"] = body.device_info
    metadata.setdefault("userAgent", request.headers.get("user-agent", ""))
    metadata.setdefault("ipAddress", request.client.host if request.client else "")

    created = await runtime.sessions.create_session(body.user_id, metadata)
    return Envelope(
        status="ok",
        data=SessionCreateResponse(
            session_id=created.session_id,
            expires_in=created.expires_in,
            session=_session_out(created.record),
        ),
    )


@router.get("/sessions/current", response_model=Envelope, tags=["sessions"])
async def current_session(session: SessionRecord = Depends(require_session)):
    return Envelope(status="ok", data=_session_out(session))


@router.delete("/sessions/current", response_model=Envelope, tags=["sessions"])
async def logout(session: SessionRecord = Depends(require_session)):
    """Revoke the presented session; a newer session of the same user survives."""
    runtime = get_runtime()
    removed = await runtime.sessions.remove_session(session.user_id, session.session_id)
    return Envelope(
        status="ok",
        data=SessionRemovedResponse(user_id=session.user_id, removed=removed),
    )


@router.delete("/users/{user_id}/sessions", response_model=Envelope, tags=["sessions"])
async def purge_user_sessions(
    user_id: str = Path(..., min_length=1, max_length=128),
    session: SessionRecord = Depends(require_session),
):
    """Remove every session slot of a user, e.g. on account deletion."""
    if session.user_id != user_id:
        logger.warning(
            "purge_forbidden",
            caller=session.user_id,
            target=user_id,
            session_hint=session_hint(session.session_id),
        )
        raise ForbiddenError("cannot remove another user's sessions")
    runtime = get_runtime()
    if not await runtime.sessions.remove_all_user_sessions(user_id):
        raise ServiceUnavailableError("session store unavailable, retry the purge")
    return Envelope(status="ok", data=SessionRemovedResponse(user_id=user_id, removed=True))
