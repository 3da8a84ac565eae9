# backend/safaridb/security.py

"""
Security helpers for safaridb.

Responsibilities:
- Password hashing and verification (credential verifier for the login engine)
- JWT creation and decoding, with a token type claim (access / refresh / mfa)
- MFA handoff token issuance and validation
- FastAPI dependencies for current user / admin checks
"""

from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from argon2 import PasswordHasher
from argon2.exceptions import VerifyMismatchError, VerificationError, InvalidHash
import bcrypt

from .database import get_db
from safaridb.apps.accounts import models as account_models

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# CONFIG
# ---------------------------------------------------------------------------

# In production, ALWAYS override these via environment variables.
SECRET_KEY = os.getenv("SECRET_KEY", "CHANGE_ME_IN_PRODUCTION")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

try:
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(
        os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "180")
    )
except ValueError:
    ACCESS_TOKEN_EXPIRE_MINUTES = 180

try:
    REFRESH_TOKEN_EXPIRE_MINUTES: int = int(
        os.getenv("REFRESH_TOKEN_EXPIRE_MINUTES", "1440")
    )
except ValueError:
    REFRESH_TOKEN_EXPIRE_MINUTES = 1440

try:
    MFA_TOKEN_EXPIRE_SECONDS: int = int(
        os.getenv("MFA_TOKEN_EXPIRE_SECONDS", "300")
    )
except ValueError:
    MFA_TOKEN_EXPIRE_SECONDS = 300

MFA_TOKEN_AUDIENCE = "mfa"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


class TokenType(str, enum.Enum):
    ACCESS = "access"      # Can access any endpoint
    REFRESH = "refresh"    # Only for obtaining new access tokens
    MFA = "mfa"            # Only for MFA verification


class InvalidTokenTypeError(Exception):
    """Raised when a token is used for an operation its type does not allow."""

    def __init__(
        self,
        message: str,
        *,
        expected_type: TokenType,
        actual_type: Optional[str],
    ) -> None:
        super().__init__(message)
        self.expected_type = expected_type
        self.actual_type = actual_type


# ---------------------------------------------------------------------------
# PASSWORD HASHING
# ---------------------------------------------------------------------------

# Argon2id (argon2-cffi) password hasher.
_pwd_hasher = PasswordHasher(
    time_cost=int(os.getenv("ARGON2_TIME_COST", "3")),
    memory_cost=int(os.getenv("ARGON2_MEMORY_COST", "65536")),  # KiB (64MB)
    parallelism=int(os.getenv("ARGON2_PARALLELISM", "2")),
    hash_len=int(os.getenv("ARGON2_HASH_LEN", "32")),
    salt_len=int(os.getenv("ARGON2_SALT_LEN", "16")),
)


def _is_argon2_hash(hashed_password: str) -> bool:
    return isinstance(hashed_password, str) and hashed_password.startswith("$argon2")


def _is_bcrypt_hash(hashed_password: str) -> bool:
    return isinstance(hashed_password, str) and hashed_password.startswith(("$2a$", "$2b$", "$2y$"))


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Return True if the plain password matches the hash."""
    if not plain_password or not hashed_password:
        return False

    if _is_argon2_hash(hashed_password):
        try:
            return _pwd_hasher.verify(hashed_password, plain_password)
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return False

    # Backward compatibility: bcrypt hashes migrated from the previous system
    if _is_bcrypt_hash(hashed_password):
        try:
            return bcrypt.checkpw(
                plain_password.encode("utf-8"),
                hashed_password.encode("utf-8"),
            )
        except ValueError:
            return False

    # Unknown hash format
    return False


def get_password_hash(password: str) -> str:
    """Hash a password for storing in the database (Argon2id)."""
    return _pwd_hasher.hash(password)


class StoredPasswordVerifier:
    """
    Credential verifier backed by `users.hashed_password`.

    Returns False for a wrong password or unknown user. Database errors are
    not caught: the login engine reports them as internal errors and does not
    count them as failed attempts.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def verify(self, username: str, password: str) -> bool:
        hashed = (
            self.db.query(account_models.User.hashed_password)
            .filter(account_models.User.username == username)
            .scalar()
        )
        if hashed is None:
            return False
        return verify_password(password, hashed)


# ---------------------------------------------------------------------------
# JWT TOKENS
# ---------------------------------------------------------------------------


def create_token(
    *,
    subject: str,
    token_type: TokenType,
    expires_delta: timedelta,
    extra_claims: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> str:
    """Create a signed JWT carrying `sub`, `type`, `iat` and `exp`."""
    issued_at = now or datetime.now(timezone.utc)
    to_encode = dict(extra_claims or {})
    to_encode.update(
        {
            "sub": subject,
            "type": token_type.value,
            "iat": issued_at,
            "exp": issued_at + expires_delta,
        }
    )
    return jwt.encode(to_encode, SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_token(
    token: str,
    *,
    expected_type: TokenType,
    audience: Optional[str] = None,
) -> dict:
    """
    Verify signature and expiry, then require the `type` claim to match.

    Raises JWTError for invalid tokens and InvalidTokenTypeError for a valid
    token of the wrong kind. Tokens without a `type` claim are rejected.
    """
    options = {"verify_aud": audience is not None}
    payload = jwt.decode(
        token,
        SECRET_KEY,
        algorithms=[JWT_ALGORITHM],
        audience=audience,
        options=options,
    )
    actual = payload.get("type")
    if actual != expected_type.value:
        raise InvalidTokenTypeError(
            f"Expected a {expected_type.value} token",
            expected_type=expected_type,
            actual_type=actual,
        )
    return payload


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    access_expires_in: int  # seconds
    refresh_expires_in: int  # seconds
    access_expires_at: datetime
    refresh_expires_at: datetime


class JwtTokenIssuer:
    """Token issuer used by the login engine."""

    def __init__(
        self,
        *,
        access_ttl: Optional[timedelta] = None,
        refresh_ttl: Optional[timedelta] = None,
        mfa_ttl: Optional[timedelta] = None,
    ) -> None:
        self.access_ttl = access_ttl or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        self.refresh_ttl = refresh_ttl or timedelta(minutes=REFRESH_TOKEN_EXPIRE_MINUTES)
        self.mfa_ttl = mfa_ttl or timedelta(seconds=MFA_TOKEN_EXPIRE_SECONDS)

    def issue_access_and_refresh(self, subject: str) -> IssuedTokens:
        now = datetime.now(timezone.utc)
        return IssuedTokens(
            access_token=create_token(
                subject=subject,
                token_type=TokenType.ACCESS,
                expires_delta=self.access_ttl,
                now=now,
            ),
            refresh_token=create_token(
                subject=subject,
                token_type=TokenType.REFRESH,
                expires_delta=self.refresh_ttl,
                now=now,
            ),
            access_expires_in=int(self.access_ttl.total_seconds()),
            refresh_expires_in=int(self.refresh_ttl.total_seconds()),
            access_expires_at=now + self.access_ttl,
            refresh_expires_at=now + self.refresh_ttl,
        )

    def issue_mfa_token(self, subject: str) -> str:
        """Short-lived token proving "password verified, second factor pending"."""
        return create_token(
            subject=subject,
            token_type=TokenType.MFA,
            expires_delta=self.mfa_ttl,
            extra_claims={"aud": MFA_TOKEN_AUDIENCE, "purpose": "mfa_verify"},
        )


def validate_mfa_token(token: str) -> Optional[str]:
    """
    Return the subject of a valid MFA handoff token, or None.

    Used by the second-factor step. A valid access or refresh token is
    rejected here, so it cannot stand in for the handoff token.
    """
    try:
        payload = decode_token(
            token,
            expected_type=TokenType.MFA,
            audience=MFA_TOKEN_AUDIENCE,
        )
    except InvalidTokenTypeError as exc:
        logger.warning(
            "Attempt to use MFA step with wrong token type: %s", exc.actual_type
        )
        return None
    except JWTError:
        return None
    if payload.get("purpose") != "mfa_verify":
        return None
    return payload.get("sub")


# ---------------------------------------------------------------------------
# USER LOOKUP HELPERS
# ---------------------------------------------------------------------------


def get_user_by_username(
    db: Session,
    username: Union[str, None],
) -> Optional[account_models.User]:
    if username is None:
        return None
    return (
        db.query(account_models.User)
        .filter(account_models.User.username == str(username).strip())
        .first()
    )


# ---------------------------------------------------------------------------
# FASTAPI DEPENDENCIES
# ---------------------------------------------------------------------------


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> account_models.User:
    """
    Decode an ACCESS token and return the corresponding User.

    Refresh and MFA tokens are refused here even when correctly signed.
    """
    try:
        payload = decode_token(token, expected_type=TokenType.ACCESS)
    except (JWTError, InvalidTokenTypeError):
        raise _credentials_exception()

    user = get_user_by_username(db, payload.get("sub"))
    if user is None:
        raise _credentials_exception()
    return user


def get_current_active_user(
    current_user: account_models.User = Depends(get_current_user),
) -> account_models.User:
    if not current_user.is_enabled:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Inactive user account",
        )
    return current_user


def require_admin(
    current_user: account_models.User = Depends(get_current_active_user),
) -> account_models.User:
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient privileges",
        )
    return current_user
