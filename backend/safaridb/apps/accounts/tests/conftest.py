from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from safaridb.database import Base
from safaridb.security import JwtTokenIssuer, StoredPasswordVerifier, get_password_hash
from safaridb.apps.accounts import models
from safaridb.apps.accounts.policy import SecurityPolicy, StaticPolicyProvider
from safaridb.apps.accounts.rate_limit import LoginRateLimiter
from safaridb.apps.accounts.services import LoginService
from safaridb.apps.accounts.store import SqlAlchemyProfileStore

PASSWORD = "CorrectHorse1!"
T0 = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)

# Hashing is slow; every test user shares one hash.
_PASSWORD_HASH = get_password_hash(PASSWORD)


class FakeClock:
    """Controllable UTC clock for the login engine and lockout helpers."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeMonotonic:
    """Controllable monotonic clock (seconds) for the rate limiter."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def monotonic():
    return FakeMonotonic()


@pytest.fixture()
def policy_provider():
    return StaticPolicyProvider(SecurityPolicy())


@pytest.fixture()
def store(db_session):
    return SqlAlchemyProfileStore(db_session)


@pytest.fixture()
def file_session_factory(tmp_path):
    """Session factory over a file database, for tests that use several threads."""
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'accounts.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(
        bind=engine,
        tables=[models.User.__table__, models.SecuritySetting.__table__],
    )
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    try:
        yield factory
    finally:
        engine.dispose()


def create_user(
    db,
    *,
    username: str = "alice",
    email: Optional[str] = None,
    is_enabled: bool = True,
    is_admin: bool = False,
    locked: bool = False,
    locked_at: Optional[datetime] = None,
    failed_attempts: int = 0,
    last_failure_at: Optional[datetime] = None,
    credentials_expire_at: Optional[datetime] = None,
    mfa_enabled: bool = False,
    mfa_confirmed: bool = False,
) -> models.User:
    user = models.User(
        username=username,
        email=email or f"{username}@example.com",
        first_name=username.title(),
        last_name="Tester",
        is_admin=is_admin,
        is_enabled=is_enabled,
        hashed_password=_PASSWORD_HASH,
        locked=locked,
        locked_at=locked_at,
        failed_attempts=failed_attempts,
        last_failure_at=last_failure_at,
        credentials_expire_at=credentials_expire_at,
        mfa_enabled=mfa_enabled,
        mfa_confirmed=mfa_confirmed,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture()
def make_user(db_session):
    def _make(**kwargs) -> models.User:
        return create_user(db_session, **kwargs)

    return _make


@pytest.fixture()
def user_factory():
    """`create_user(db, **kwargs)` for tests that manage their own sessions."""
    return create_user


@pytest.fixture()
def rate_limiter(policy_provider, monotonic):
    return LoginRateLimiter(policy_provider, clock=monotonic)


@pytest.fixture()
def login_service(db_session, store, policy_provider, rate_limiter, clock):
    return LoginService(
        store=store,
        policy_provider=policy_provider,
        verifier=StoredPasswordVerifier(db_session),
        token_issuer=JwtTokenIssuer(),
        rate_limiter=rate_limiter,
        clock=clock,
    )
