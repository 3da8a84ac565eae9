# backend/safaridb/apps/accounts/policy.py
"""
Login security policy.

The policy is a plain value (`SecurityPolicy`) fetched from a provider on
every decision. Nothing in the engine keeps a copy between calls, so edits to
the `security_settings` table apply to the next login attempt without a
restart.

Resolution order for each key:
1. An active row in `security_settings` with a parsable value.
2. The environment default (SECURITY_* variables).
3. The built-in default.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Protocol

from sqlalchemy.orm import Session

from . import models
from .models import SettingDataType

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Setting keys
# ---------------------------------------------------------------------------

KEY_MAX_FAILED_ATTEMPTS = "accountLockout.maxFailedAttempts"
KEY_LOCKOUT_DURATION_MINUTES = "accountLockout.lockoutDurationMinutes"
KEY_COUNTER_RESET_HOURS = "accountLockout.counterResetHours"
KEY_LOCKOUT_ENABLED = "accountLockout.enabled"
KEY_RATE_LIMIT_CAPACITY = "loginAttempts.maxCapacity"
KEY_RATE_LIMIT_REFILL_RATE = "loginAttempts.refillRate"
KEY_RATE_LIMIT_REFILL_MINUTES = "loginAttempts.refillDurationMinutes"
KEY_RATE_LIMIT_ENABLED = "loginAttempts.enabled"


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


@dataclass(frozen=True)
class SettingDefinition:
    key: str
    data_type: SettingDataType
    default: object
    description: str
    category: str
    # Smallest accepted value for integer settings
    minimum: Optional[int] = None


def _definitions() -> Dict[str, SettingDefinition]:
    """Defaults are read from the environment each time so tests can patch them."""
    defs = [
        SettingDefinition(
            KEY_MAX_FAILED_ATTEMPTS,
            SettingDataType.INTEGER,
            _env_int("SECURITY_MAX_FAILED_ATTEMPTS", 5),
            "Number of failed login attempts before lockout",
            "ACCOUNT_LOCKOUT",
            minimum=1,
        ),
        SettingDefinition(
            KEY_LOCKOUT_DURATION_MINUTES,
            SettingDataType.INTEGER,
            _env_int("SECURITY_LOCKOUT_DURATION_MINUTES", 30),
            "Account lockout duration in minutes",
            "ACCOUNT_LOCKOUT",
            minimum=1,
        ),
        SettingDefinition(
            KEY_COUNTER_RESET_HOURS,
            SettingDataType.INTEGER,
            _env_int("SECURITY_COUNTER_RESET_HOURS", 24),
            "Failed attempt counter reset time in hours (0 = never reset)",
            "ACCOUNT_LOCKOUT",
            minimum=0,
        ),
        SettingDefinition(
            KEY_LOCKOUT_ENABLED,
            SettingDataType.BOOLEAN,
            _env_bool("SECURITY_LOCKOUT_ENABLED", True),
            "Whether account lockout is enabled",
            "ACCOUNT_LOCKOUT",
        ),
        SettingDefinition(
            KEY_RATE_LIMIT_CAPACITY,
            SettingDataType.INTEGER,
            _env_int("SECURITY_RATE_LIMIT_CAPACITY", 5),
            "Maximum login attempts (token bucket capacity)",
            "LOGIN_RATE_LIMIT",
            minimum=1,
        ),
        SettingDefinition(
            KEY_RATE_LIMIT_REFILL_RATE,
            SettingDataType.INTEGER,
            _env_int("SECURITY_RATE_LIMIT_REFILL_RATE", 5),
            "Number of tokens to refill for login attempts",
            "LOGIN_RATE_LIMIT",
            minimum=0,
        ),
        SettingDefinition(
            KEY_RATE_LIMIT_REFILL_MINUTES,
            SettingDataType.INTEGER,
            _env_int("SECURITY_RATE_LIMIT_REFILL_MINUTES", 1),
            "Duration in minutes for login attempt token refill",
            "LOGIN_RATE_LIMIT",
            minimum=1,
        ),
        SettingDefinition(
            KEY_RATE_LIMIT_ENABLED,
            SettingDataType.BOOLEAN,
            _env_bool("SECURITY_RATE_LIMIT_ENABLED", True),
            "Whether login rate limiting is enabled",
            "LOGIN_RATE_LIMIT",
        ),
    ]
    return {d.key: d for d in defs}


# ---------------------------------------------------------------------------
# Policy value
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SecurityPolicy:
    max_failed_attempts: int = 5
    lockout_duration: timedelta = timedelta(minutes=30)
    # timedelta(0) disables automatic counter reset (manual only)
    counter_reset_window: timedelta = timedelta(hours=24)
    lockout_policy_enabled: bool = True
    rate_limit_policy_enabled: bool = True
    bucket_capacity: int = 5
    bucket_refill_rate: int = 5
    bucket_refill_window: timedelta = timedelta(minutes=1)

    @property
    def lock_threshold(self) -> int:
        """
        Failed-attempt count at which the next failure locks the account.

        The triggering failure is recorded by the lock itself, so an account
        locks when its stored counter has already reached max - 1.
        """
        return max(self.max_failed_attempts - 1, 0)

    @classmethod
    def from_values(cls, values: Dict[str, object]) -> "SecurityPolicy":
        return cls(
            max_failed_attempts=max(int(values[KEY_MAX_FAILED_ATTEMPTS]), 1),
            lockout_duration=timedelta(
                minutes=max(int(values[KEY_LOCKOUT_DURATION_MINUTES]), 1)
            ),
            counter_reset_window=timedelta(hours=max(int(values[KEY_COUNTER_RESET_HOURS]), 0)),
            lockout_policy_enabled=bool(values[KEY_LOCKOUT_ENABLED]),
            rate_limit_policy_enabled=bool(values[KEY_RATE_LIMIT_ENABLED]),
            bucket_capacity=max(int(values[KEY_RATE_LIMIT_CAPACITY]), 1),
            bucket_refill_rate=max(int(values[KEY_RATE_LIMIT_REFILL_RATE]), 0),
            bucket_refill_window=timedelta(
                minutes=max(int(values[KEY_RATE_LIMIT_REFILL_MINUTES]), 1)
            ),
        )


def default_policy() -> SecurityPolicy:
    return SecurityPolicy.from_values({key: d.default for key, d in _definitions().items()})


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class PolicyProvider(Protocol):
    def current(self) -> SecurityPolicy: ...


class StaticPolicyProvider:
    """Holds a policy value that callers may replace at any time."""

    def __init__(self, policy: Optional[SecurityPolicy] = None) -> None:
        self.policy = policy or default_policy()

    def current(self) -> SecurityPolicy:
        return self.policy


def _parse_value(raw: str, data_type: SettingDataType) -> object:
    if data_type == SettingDataType.INTEGER:
        return int(raw.strip())
    if data_type == SettingDataType.BOOLEAN:
        v = raw.strip().lower()
        if v in ("true", "1", "yes", "on"):
            return True
        if v in ("false", "0", "no", "off"):
            return False
        raise ValueError(f"Not a boolean: {raw!r}")
    return raw


def parse_setting(definition: SettingDefinition, raw: str) -> object:
    """Parse a stored or submitted value, rejecting integers below the minimum."""
    value = _parse_value(raw, definition.data_type)
    if definition.minimum is not None and value < definition.minimum:
        raise ValueError(f"{definition.key} must be at least {definition.minimum}")
    return value


def _format_value(value: object) -> str:
    return str(value).lower() if isinstance(value, bool) else str(value)


def resolve_settings(db: Session) -> Dict[str, object]:
    """Return the effective value of every known key."""
    definitions = _definitions()
    rows = (
        db.query(models.SecuritySetting)
        .filter(models.SecuritySetting.setting_key.in_(list(definitions)))
        .all()
    )
    by_key = {row.setting_key: row for row in rows}

    values: Dict[str, object] = {}
    for key, definition in definitions.items():
        row = by_key.get(key)
        if row is None or not row.active:
            values[key] = definition.default
            continue
        try:
            values[key] = parse_setting(definition, row.setting_value)
        except ValueError:
            logger.warning(
                "Invalid security setting value, using default",
                extra={"setting_key": key, "setting_value": row.setting_value},
            )
            values[key] = definition.default
    return values


class DatabasePolicyProvider:
    """
    Reads the policy from `security_settings` on every call.

    Each read opens its own short-lived session from `session_factory`, so the
    provider can be shared process-wide (rate limiter, sweeper, login route).
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def current(self) -> SecurityPolicy:
        db = self._session_factory()
        try:
            return SecurityPolicy.from_values(resolve_settings(db))
        finally:
            db.close()


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------


def seed_security_settings(db: Session) -> int:
    """
    Insert default rows for keys that have none. Existing rows are never
    overwritten. Returns the number of rows created.
    """
    definitions = _definitions()
    existing = {
        key
        for (key,) in db.query(models.SecuritySetting.setting_key)
        .filter(models.SecuritySetting.setting_key.in_(list(definitions)))
        .all()
    }

    created = 0
    for key, definition in definitions.items():
        if key in existing:
            logger.debug("Security setting already exists, skipping: %s", key)
            continue
        value = definition.default
        db.add(
            models.SecuritySetting(
                setting_key=key,
                setting_value=_format_value(value),
                data_type=definition.data_type,
                description=definition.description,
                category=definition.category,
                active=True,
                is_system_default=True,
            )
        )
        created += 1
        logger.info("Security setting initialized: %s = %s", key, value)

    db.commit()
    return created


def reset_security_settings(db: Session, category: Optional[str] = None) -> int:
    """
    Write the configured defaults back into existing rows, optionally for one
    category only. Missing rows are left for `seed_security_settings`.
    Returns the number of rows reset.
    """
    definitions = _definitions()
    keys = [
        key
        for key, definition in definitions.items()
        if category is None or definition.category == category
    ]
    rows = (
        db.query(models.SecuritySetting)
        .filter(models.SecuritySetting.setting_key.in_(keys))
        .all()
    )

    for row in rows:
        row.setting_value = _format_value(definitions[row.setting_key].default)
        row.is_system_default = True
        db.add(row)

    db.commit()
    logger.info(
        "Security settings reset to defaults",
        extra={"category": category or "ALL", "count": len(rows)},
    )
    return len(rows)


def setting_categories() -> List[str]:
    return sorted({d.category for d in _definitions().values()})
