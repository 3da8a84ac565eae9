# backend/safaridb/apps/accounts/models.py

from __future__ import annotations

import enum
import secrets
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
)

from safaridb.database import Base


def _new_user_id() -> str:
    return f"USR-{secrets.token_hex(4).upper()}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# ENUMS
# ---------------------------------------------------------------------------


class SettingDataType(str, enum.Enum):
    """How a security setting value is parsed."""

    INTEGER = "INTEGER"
    BOOLEAN = "BOOLEAN"
    STRING = "STRING"


# ---------------------------------------------------------------------------
# USERS
# ---------------------------------------------------------------------------


class User(Base):
    """
    Back-office user account.

    The login security columns (enabled / locked / failed attempt counter /
    credential expiry / MFA flags) form the user's security profile. They are
    only ever mutated through `apps.accounts.store.SqlAlchemyProfileStore`,
    which applies each lockout transition as one conditional UPDATE.
    """

    __tablename__ = "users"
    __table_args__ = (
        Index("idx_users_locked", "locked"),
        Index("idx_users_failed_attempts", "failed_attempts"),
    )

    id = Column(
        String(36),
        primary_key=True,
        default=_new_user_id,
    )

    username = Column(String(64), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)

    first_name = Column(String(128), nullable=True)
    last_name = Column(String(128), nullable=True)

    is_admin = Column(Boolean, nullable=False, default=False)

    # Security: password + lockout + MFA
    hashed_password = Column(String(255), nullable=False)
    is_enabled = Column(
        Boolean,
        nullable=False,
        default=True,
        doc="False while the email is unverified or after deactivation.",
    )
    locked = Column(Boolean, nullable=False, default=False)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    failed_attempts = Column(Integer, nullable=False, default=0)
    last_failure_at = Column(DateTime(timezone=True), nullable=True)
    credentials_expire_at = Column(
        DateTime(timezone=True),
        nullable=True,
        doc="Password expiry; NULL means the password never expires.",
    )
    mfa_enabled = Column(Boolean, nullable=False, default=False)
    mfa_confirmed = Column(Boolean, nullable=False, default=False)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    def __repr__(self) -> str:
        return f"<User {self.username} locked={self.locked}>"


# ---------------------------------------------------------------------------
# SECURITY SETTINGS
# ---------------------------------------------------------------------------


class SecuritySetting(Base):
    """
    Database-driven security setting (one row per key).

    Rows override the environment defaults while `active` is true. Editing a
    row takes effect on the next login attempt; nothing is cached.
    """

    __tablename__ = "security_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    setting_key = Column(String(100), unique=True, nullable=False, index=True)
    setting_value = Column(Text, nullable=False)
    data_type = Column(
        Enum(SettingDataType, name="security_setting_data_type_enum"),
        nullable=False,
        default=SettingDataType.STRING,
    )
    description = Column(Text, nullable=True)
    category = Column(String(50), nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    is_system_default = Column(Boolean, nullable=False, default=False)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    def __repr__(self) -> str:
        return f"<SecuritySetting {self.setting_key}={self.setting_value!r}>"
