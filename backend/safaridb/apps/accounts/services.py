from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, Union

from sqlalchemy.orm import Session

from safaridb.security import IssuedTokens, JwtTokenIssuer, StoredPasswordVerifier

from . import lockout
from .policy import PolicyProvider
from .rate_limit import LoginRateLimiter
from .store import ProfileStore, SecurityProfile, SqlAlchemyProfileStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

# Unknown user and wrong password share one message so responses do not
# reveal which accounts exist.
MSG_INVALID_CREDENTIALS = "Invalid username or password."
MSG_MISSING_IDENTIFIER = "Email or Username must be provided."
MSG_MISSING_PASSWORD = "Password must be provided."
MSG_RATE_LIMITED = "Too many login attempts. Please try again later."
MSG_ACCOUNT_DISABLED = (
    "Your account is disabled or your email is not verified. "
    "Please contact support or request a new verification email."
)
MSG_ACCOUNT_LOCKED = "Your account is locked. Please try again later or contact support."
MSG_CREDENTIALS_EXPIRED = "Your password has expired. Please change or reset your password."
MSG_INTERNAL_ERROR = "Login is temporarily unavailable. Please try again later."


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class RejectReason(str, enum.Enum):
    INVALID_INPUT = "INVALID_INPUT"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCOUNT_DISABLED = "ACCOUNT_DISABLED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    CREDENTIALS_EXPIRED = "CREDENTIALS_EXPIRED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass(frozen=True)
class LoginSuccess:
    tokens: IssuedTokens


@dataclass(frozen=True)
class MfaRequired:
    temp_token: str


@dataclass(frozen=True)
class LoginRejected:
    reason: RejectReason
    message: str
    retry_after_seconds: Optional[int] = None


LoginOutcome = Union[LoginSuccess, MfaRequired, LoginRejected]


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class CredentialVerifier(Protocol):
    def verify(self, username: str, password: str) -> bool: ...


class TokenIssuer(Protocol):
    def issue_access_and_refresh(self, subject: str) -> IssuedTokens: ...

    def issue_mfa_token(self, subject: str) -> str: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Login orchestrator
# ---------------------------------------------------------------------------


class LoginService:
    """
    Runs one login attempt end to end and returns a LoginOutcome.

    Order of checks:
    input -> rate limit -> lookup -> enabled -> counter reset -> lock
    (with lazy unlock) -> credential expiry -> password -> MFA / tokens.

    `login` never raises. Failures of the store, policy provider, verifier or
    token issuer come back as INTERNAL_ERROR and never count as a failed
    attempt. The rate limiter fails open on its own.
    """

    def __init__(
        self,
        *,
        store: ProfileStore,
        policy_provider: PolicyProvider,
        verifier: CredentialVerifier,
        token_issuer: TokenIssuer,
        rate_limiter: LoginRateLimiter,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.policy_provider = policy_provider
        self.verifier = verifier
        self.token_issuer = token_issuer
        self.rate_limiter = rate_limiter
        self.clock = clock

    def login(self, identifier: Optional[str], password: Optional[str]) -> LoginOutcome:
        if not identifier or not identifier.strip():
            return LoginRejected(RejectReason.INVALID_INPUT, MSG_MISSING_IDENTIFIER)
        if not password:
            return LoginRejected(RejectReason.INVALID_INPUT, MSG_MISSING_PASSWORD)

        identifier = identifier.strip()

        if not self.rate_limiter.allow(identifier):
            return LoginRejected(RejectReason.RATE_LIMITED, MSG_RATE_LIMITED)

        try:
            outcome = self._authenticate(identifier, password)
        except Exception:
            logger.exception(
                "Error during login",
                extra={"identifier": identifier},
            )
            return LoginRejected(RejectReason.INTERNAL_ERROR, MSG_INTERNAL_ERROR)

        if isinstance(outcome, LoginRejected):
            logger.info(
                "Login rejected",
                extra={"identifier": identifier, "reason": outcome.reason.value},
            )
        return outcome

    # ------------------------------------------------------------------

    def _authenticate(self, identifier: str, password: str) -> LoginOutcome:
        profile = self.store.find(identifier)
        if profile is None:
            return LoginRejected(RejectReason.INVALID_CREDENTIALS, MSG_INVALID_CREDENTIALS)

        if not profile.enabled:
            return LoginRejected(RejectReason.ACCOUNT_DISABLED, MSG_ACCOUNT_DISABLED)

        policy = self.policy_provider.current()
        now = self.clock()

        if lockout.reset_counter_if_stale(self.store, profile, policy, now):
            profile = self._reload(profile)

        if profile.locked and not policy.lockout_policy_enabled:
            # Locks from an enabled period hold until an admin or a sweep clears them.
            return LoginRejected(RejectReason.ACCOUNT_LOCKED, MSG_ACCOUNT_LOCKED)

        if profile.locked:
            # Reload either way: the sweeper may have unlocked it meanwhile.
            lockout.unlock_if_expired(self.store, profile, policy, now)
            profile = self._reload(profile)
            if profile.locked:
                expires_at = lockout.lock_expires_at(profile, policy)
                retry_after = (
                    max(0, int((expires_at - now).total_seconds()))
                    if expires_at
                    else None
                )
                return LoginRejected(
                    RejectReason.ACCOUNT_LOCKED,
                    MSG_ACCOUNT_LOCKED,
                    retry_after_seconds=retry_after,
                )

        if profile.credentials_expire_at is not None and profile.credentials_expire_at < now:
            return LoginRejected(RejectReason.CREDENTIALS_EXPIRED, MSG_CREDENTIALS_EXPIRED)

        if not self.verifier.verify(profile.username, password):
            if policy.lockout_policy_enabled:
                lockout.record_failure(self.store, profile, policy, now)
            return LoginRejected(RejectReason.INVALID_CREDENTIALS, MSG_INVALID_CREDENTIALS)

        lockout.record_success(self.store, profile)

        if profile.mfa_enabled and profile.mfa_confirmed:
            logger.info("Password verified, MFA required for user: %s", profile.key)
            return MfaRequired(temp_token=self.token_issuer.issue_mfa_token(profile.username))

        tokens = self.token_issuer.issue_access_and_refresh(profile.username)
        logger.info("Login succeeded for user: %s", profile.key)
        return LoginSuccess(tokens=tokens)

    def _reload(self, profile: SecurityProfile) -> SecurityProfile:
        current = self.store.get(profile.user_id)
        if current is None:
            raise LookupError(f"User {profile.user_id} disappeared during login")
        return current


def build_login_service(
    db: Session,
    *,
    policy_provider: PolicyProvider,
    rate_limiter: LoginRateLimiter,
    token_issuer: Optional[TokenIssuer] = None,
) -> LoginService:
    """Wire the engine to the SQL store and the stored-password verifier."""
    return LoginService(
        store=SqlAlchemyProfileStore(db),
        policy_provider=policy_provider,
        verifier=StoredPasswordVerifier(db),
        token_issuer=token_issuer or JwtTokenIssuer(),
        rate_limiter=rate_limiter,
    )
