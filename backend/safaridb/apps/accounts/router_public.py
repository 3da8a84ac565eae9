# backend/safaridb/apps/accounts/router_public.py

from __future__ import annotations

import logging
from typing import Union

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session

from safaridb.database import get_db
from . import schemas, services
from .dependencies import get_policy_provider, get_rate_limiter
from .policy import PolicyProvider
from .rate_limit import LoginRateLimiter
from .services import RejectReason

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

_REJECTION_STATUS = {
    RejectReason.INVALID_INPUT: status.HTTP_400_BAD_REQUEST,
    RejectReason.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    RejectReason.INVALID_CREDENTIALS: status.HTTP_401_UNAUTHORIZED,
    RejectReason.ACCOUNT_DISABLED: status.HTTP_403_FORBIDDEN,
    RejectReason.ACCOUNT_LOCKED: status.HTTP_423_LOCKED,
    RejectReason.CREDENTIALS_EXPIRED: status.HTTP_403_FORBIDDEN,
    RejectReason.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _client_ip(request: Request) -> str | None:
    try:
        return request.client.host if request.client else None
    except Exception:
        return None


def _rejection_exception(outcome: services.LoginRejected) -> HTTPException:
    headers = {"X-Login-Reject-Reason": outcome.reason.value}
    if outcome.retry_after_seconds is not None:
        headers["Retry-After"] = str(outcome.retry_after_seconds)
    if outcome.reason == RejectReason.INVALID_CREDENTIALS:
        headers["WWW-Authenticate"] = "Bearer"
    return HTTPException(
        status_code=_REJECTION_STATUS[outcome.reason],
        detail=outcome.message,
        headers=headers,
    )


# ---------------------------------------------------------------------------
# LOGIN
# ---------------------------------------------------------------------------


@router.post(
    "/login",
    response_model=Union[schemas.LoginResponse, schemas.MfaRequiredResponse],
    summary="Login with username or email and password",
    responses={
        status.HTTP_202_ACCEPTED: {"model": schemas.MfaRequiredResponse},
        status.HTTP_401_UNAUTHORIZED: {"description": "Invalid username or password"},
        status.HTTP_423_LOCKED: {"description": "Account locked"},
        status.HTTP_429_TOO_MANY_REQUESTS: {"description": "Too many login attempts"},
    },
)
def login(
    payload: schemas.LoginRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    policy_provider: PolicyProvider = Depends(get_policy_provider),
    rate_limiter: LoginRateLimiter = Depends(get_rate_limiter),
):
    """
    Password login.

    - `identifier` = username, or email when it contains `@`
    - `password`   = user password

    Returns tokens (200), or a short-lived MFA token (202) when the account
    has a confirmed second factor. The MFA token must be exchanged at the
    second-factor step; it is not accepted as an access token.
    """
    service = services.build_login_service(
        db,
        policy_provider=policy_provider,
        rate_limiter=rate_limiter,
    )
    outcome = service.login(payload.identifier, payload.password)

    if isinstance(outcome, services.LoginRejected):
        logger.info(
            "Login attempt rejected",
            extra={"client_ip": _client_ip(request), "reason": outcome.reason.value},
        )
        raise _rejection_exception(outcome)

    if isinstance(outcome, services.MfaRequired):
        response.status_code = status.HTTP_202_ACCEPTED
        return schemas.MfaRequiredResponse(temp_token=outcome.temp_token)

    tokens = outcome.tokens
    return schemas.LoginResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        access_token_expires_in=tokens.access_expires_in,
        refresh_token_expires_in=tokens.refresh_expires_in,
        access_token_expires_at=tokens.access_expires_at,
        refresh_token_expires_at=tokens.refresh_expires_at,
    )
