from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from safaridb.apps.accounts import models, policy
from safaridb.apps.accounts.policy import (
    DatabasePolicyProvider,
    SecurityPolicy,
    default_policy,
    reset_security_settings,
    resolve_settings,
    seed_security_settings,
)


@pytest.fixture()
def provider(db_session):
    return DatabasePolicyProvider(sessionmaker(bind=db_session.get_bind()))


def _set(db, key, value, active=True):
    row = (
        db.query(models.SecuritySetting)
        .filter(models.SecuritySetting.setting_key == key)
        .one()
    )
    row.setting_value = value
    row.active = active
    db.commit()


def test_defaults_without_settings_rows(provider):
    current = provider.current()

    assert current == SecurityPolicy()
    assert current.lock_threshold == 4


def test_seed_creates_every_key_once(db_session):
    assert seed_security_settings(db_session) == 8
    assert seed_security_settings(db_session) == 0

    rows = {r.setting_key: r for r in db_session.query(models.SecuritySetting).all()}
    assert rows[policy.KEY_MAX_FAILED_ATTEMPTS].setting_value == "5"
    assert rows[policy.KEY_LOCKOUT_ENABLED].setting_value == "true"
    assert rows[policy.KEY_RATE_LIMIT_ENABLED].category == "LOGIN_RATE_LIMIT"
    assert all(r.is_system_default for r in rows.values())


def test_seed_does_not_overwrite_existing_values(db_session):
    seed_security_settings(db_session)
    _set(db_session, policy.KEY_MAX_FAILED_ATTEMPTS, "3")

    seed_security_settings(db_session)

    assert resolve_settings(db_session)[policy.KEY_MAX_FAILED_ATTEMPTS] == 3


def test_settings_rows_apply_on_next_read(db_session, provider):
    seed_security_settings(db_session)
    assert provider.current().max_failed_attempts == 5

    _set(db_session, policy.KEY_MAX_FAILED_ATTEMPTS, "3")
    _set(db_session, policy.KEY_LOCKOUT_DURATION_MINUTES, "10")
    _set(db_session, policy.KEY_RATE_LIMIT_ENABLED, "false")

    current = provider.current()
    assert current.max_failed_attempts == 3
    assert current.lockout_duration == timedelta(minutes=10)
    assert current.rate_limit_policy_enabled is False


def test_inactive_row_falls_back_to_default(db_session, provider):
    seed_security_settings(db_session)
    _set(db_session, policy.KEY_COUNTER_RESET_HOURS, "1", active=False)

    assert provider.current().counter_reset_window == timedelta(hours=24)


def test_invalid_value_falls_back_to_default(db_session, provider, caplog):
    seed_security_settings(db_session)
    _set(db_session, policy.KEY_RATE_LIMIT_CAPACITY, "lots")
    _set(db_session, policy.KEY_LOCKOUT_ENABLED, "maybe")

    current = provider.current()

    assert current.bucket_capacity == 5
    assert current.lockout_policy_enabled is True
    assert "Invalid security setting value" in caplog.text


def test_environment_overrides_builtin_defaults(monkeypatch):
    monkeypatch.setenv("SECURITY_MAX_FAILED_ATTEMPTS", "7")
    monkeypatch.setenv("SECURITY_RATE_LIMIT_ENABLED", "off")
    monkeypatch.setenv("SECURITY_LOCKOUT_DURATION_MINUTES", "not-a-number")

    current = default_policy()

    assert current.max_failed_attempts == 7
    assert current.rate_limit_policy_enabled is False
    assert current.lockout_duration == timedelta(minutes=30)


def test_out_of_range_values_are_clamped():
    values = {key: d.default for key, d in policy._definitions().items()}
    values[policy.KEY_MAX_FAILED_ATTEMPTS] = 0
    values[policy.KEY_COUNTER_RESET_HOURS] = -4
    values[policy.KEY_RATE_LIMIT_REFILL_MINUTES] = 0
    values[policy.KEY_LOCKOUT_DURATION_MINUTES] = -30

    current = SecurityPolicy.from_values(values)

    assert current.max_failed_attempts == 1
    assert current.lock_threshold == 0
    assert current.counter_reset_window == timedelta(0)
    assert current.bucket_refill_window == timedelta(minutes=1)
    assert current.lockout_duration == timedelta(minutes=1)


@pytest.mark.parametrize(
    "key, value",
    [
        (policy.KEY_LOCKOUT_DURATION_MINUTES, "0"),
        (policy.KEY_LOCKOUT_DURATION_MINUTES, "-30"),
        (policy.KEY_MAX_FAILED_ATTEMPTS, "0"),
        (policy.KEY_RATE_LIMIT_CAPACITY, "-1"),
    ],
)
def test_stored_value_below_minimum_falls_back_to_default(db_session, provider, key, value):
    seed_security_settings(db_session)
    _set(db_session, key, value)

    assert provider.current() == SecurityPolicy()


def test_reset_security_settings_restores_defaults(db_session):
    seed_security_settings(db_session)
    _set(db_session, policy.KEY_MAX_FAILED_ATTEMPTS, "3")
    _set(db_session, policy.KEY_RATE_LIMIT_CAPACITY, "20")

    assert reset_security_settings(db_session, "ACCOUNT_LOCKOUT") == 4

    values = resolve_settings(db_session)
    assert values[policy.KEY_MAX_FAILED_ATTEMPTS] == 5
    assert values[policy.KEY_RATE_LIMIT_CAPACITY] == 20

    assert reset_security_settings(db_session) == 8
    assert resolve_settings(db_session)[policy.KEY_RATE_LIMIT_CAPACITY] == 5
