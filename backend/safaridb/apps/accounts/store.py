# backend/safaridb/apps/accounts/store.py
"""
Security profile persistence.

`SecurityProfile` is an immutable snapshot of the login security columns of a
user. The store applies every lockout transition as a single conditional
UPDATE (compare-and-set on the columns the transition depends on), so two
requests or a request and the sweeper can race on the same user without
losing an increment or applying an unlock twice.

Every transition method returns True when its UPDATE matched the row, False
when the row was no longer in the expected state.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class SecurityProfile:
    user_id: str
    username: str
    email: str
    enabled: bool = True
    locked: bool = False
    locked_at: Optional[datetime] = None
    failed_attempts: int = 0
    last_failure_at: Optional[datetime] = None
    credentials_expire_at: Optional[datetime] = None
    mfa_enabled: bool = False
    mfa_confirmed: bool = False

    @classmethod
    def from_user(cls, user: models.User) -> "SecurityProfile":
        return cls(
            user_id=user.id,
            username=user.username,
            email=user.email,
            enabled=bool(user.is_enabled),
            locked=bool(user.locked),
            locked_at=_as_utc(user.locked_at),
            failed_attempts=int(user.failed_attempts or 0),
            last_failure_at=_as_utc(user.last_failure_at),
            credentials_expire_at=_as_utc(user.credentials_expire_at),
            mfa_enabled=bool(user.mfa_enabled),
            mfa_confirmed=bool(user.mfa_confirmed),
        )

    @property
    def key(self) -> str:
        return self.username


class ProfileStore(Protocol):
    def find(self, identifier: str) -> Optional[SecurityProfile]: ...

    def get(self, user_id: str) -> Optional[SecurityProfile]: ...

    def save(self, profile: SecurityProfile) -> None: ...

    def list_locked(self) -> List[SecurityProfile]: ...

    def list_with_failures(self) -> List[SecurityProfile]: ...

    def increment_failures(self, user_id: str, *, now: datetime, below: int) -> bool: ...

    def lock(self, user_id: str, *, now: datetime, at_least: int) -> bool: ...

    def unlock_if_expired(self, user_id: str, *, locked_before: datetime) -> bool: ...

    def reset_if_stale(self, user_id: str, *, failed_before: datetime) -> bool: ...

    def clear_failures(self, user_id: str) -> bool: ...

    def force_unlock(self, user_id: str) -> bool: ...

    def rollback(self) -> None: ...


class SqlAlchemyProfileStore:
    """Profile store over the `users` table. Commits after every mutation."""

    def __init__(self, db: Session) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find(self, identifier: str) -> Optional[SecurityProfile]:
        """Email lookup when the identifier contains '@', username otherwise."""
        value = (identifier or "").strip()
        if not value:
            return None
        if "@" in value:
            criterion = func.lower(models.User.email) == value.lower()
        else:
            criterion = models.User.username == value
        user = self.db.query(models.User).populate_existing().filter(criterion).first()
        return SecurityProfile.from_user(user) if user else None

    def get(self, user_id: str) -> Optional[SecurityProfile]:
        user = self.db.get(models.User, user_id)
        if user is None:
            return None
        self.db.refresh(user)
        return SecurityProfile.from_user(user)

    def list_locked(self) -> List[SecurityProfile]:
        users = (
            self.db.query(models.User)
            .populate_existing()
            .filter(models.User.locked.is_(True))
            .order_by(models.User.id)
            .all()
        )
        return [SecurityProfile.from_user(u) for u in users]

    def list_with_failures(self) -> List[SecurityProfile]:
        users = (
            self.db.query(models.User)
            .populate_existing()
            .filter(models.User.failed_attempts > 0)
            .order_by(models.User.id)
            .all()
        )
        return [SecurityProfile.from_user(u) for u in users]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _execute(self, stmt) -> bool:
        try:
            result = self.db.execute(stmt.execution_options(synchronize_session=False))
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return (result.rowcount or 0) > 0

    def save(self, profile: SecurityProfile) -> None:
        """Unconditional write of every profile column (administrative use)."""
        self._execute(
            update(models.User)
            .where(models.User.id == profile.user_id)
            .values(
                is_enabled=profile.enabled,
                locked=profile.locked,
                locked_at=profile.locked_at,
                failed_attempts=profile.failed_attempts,
                last_failure_at=profile.last_failure_at,
                credentials_expire_at=profile.credentials_expire_at,
                mfa_enabled=profile.mfa_enabled,
                mfa_confirmed=profile.mfa_confirmed,
            )
        )

    def increment_failures(self, user_id: str, *, now: datetime, below: int) -> bool:
        return self._execute(
            update(models.User)
            .where(
                models.User.id == user_id,
                models.User.locked.is_(False),
                models.User.failed_attempts < below,
            )
            .values(
                failed_attempts=models.User.failed_attempts + 1,
                last_failure_at=now,
            )
        )

    def lock(self, user_id: str, *, now: datetime, at_least: int) -> bool:
        return self._execute(
            update(models.User)
            .where(
                models.User.id == user_id,
                models.User.locked.is_(False),
                models.User.failed_attempts >= at_least,
            )
            .values(locked=True, locked_at=now)
        )

    def unlock_if_expired(self, user_id: str, *, locked_before: datetime) -> bool:
        return self._execute(
            update(models.User)
            .where(
                models.User.id == user_id,
                models.User.locked.is_(True),
                models.User.locked_at.is_not(None),
                models.User.locked_at < locked_before,
            )
            .values(
                locked=False,
                locked_at=None,
                failed_attempts=0,
                last_failure_at=None,
            )
        )

    def reset_if_stale(self, user_id: str, *, failed_before: datetime) -> bool:
        return self._execute(
            update(models.User)
            .where(
                models.User.id == user_id,
                models.User.failed_attempts > 0,
                models.User.last_failure_at.is_not(None),
                models.User.last_failure_at < failed_before,
            )
            .values(failed_attempts=0, last_failure_at=None)
        )

    def clear_failures(self, user_id: str) -> bool:
        return self._execute(
            update(models.User)
            .where(models.User.id == user_id)
            .values(failed_attempts=0, last_failure_at=None)
        )

    def force_unlock(self, user_id: str) -> bool:
        return self._execute(
            update(models.User)
            .where(models.User.id == user_id)
            .values(
                locked=False,
                locked_at=None,
                failed_attempts=0,
                last_failure_at=None,
            )
        )

    def rollback(self) -> None:
        self.db.rollback()
