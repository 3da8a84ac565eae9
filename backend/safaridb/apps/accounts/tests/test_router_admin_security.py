from __future__ import annotations

from datetime import datetime, timezone

import pytest
from fastapi import HTTPException

from safaridb.apps.accounts import policy, router_admin, schemas
from safaridb.apps.accounts.policy import StaticPolicyProvider, seed_security_settings
from safaridb.apps.accounts.rate_limit import LoginRateLimiter

T0 = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture()
def admin(make_user):
    return make_user(username="root", is_admin=True)


def test_list_security_settings(db_session, admin):
    seed_security_settings(db_session)

    rows = router_admin.list_security_settings(db=db_session, current_user=admin)

    assert len(rows) == 8
    assert {r.category for r in rows} == {"ACCOUNT_LOCKOUT", "LOGIN_RATE_LIMIT"}


def test_update_security_setting(db_session, admin):
    seed_security_settings(db_session)

    row = router_admin.update_security_setting(
        policy.KEY_MAX_FAILED_ATTEMPTS,
        schemas.SecuritySettingUpdate(setting_value=" 3 "),
        db=db_session,
        current_user=admin,
    )

    assert row.setting_value == "3"
    assert row.is_system_default is False
    assert policy.resolve_settings(db_session)[policy.KEY_MAX_FAILED_ATTEMPTS] == 3


def test_deactivate_security_setting(db_session, admin):
    seed_security_settings(db_session)

    row = router_admin.update_security_setting(
        policy.KEY_RATE_LIMIT_ENABLED,
        schemas.SecuritySettingUpdate(active=False),
        db=db_session,
        current_user=admin,
    )

    assert row.active is False
    assert row.setting_value == "true"


def test_update_rejects_unparsable_value(db_session, admin):
    seed_security_settings(db_session)

    with pytest.raises(HTTPException) as exc_info:
        router_admin.update_security_setting(
            policy.KEY_LOCKOUT_ENABLED,
            schemas.SecuritySettingUpdate(setting_value="sometimes"),
            db=db_session,
            current_user=admin,
        )

    assert exc_info.value.status_code == 400


def test_update_unknown_setting_is_not_found(db_session, admin):
    with pytest.raises(HTTPException) as exc_info:
        router_admin.update_security_setting(
            "accountLockout.colour",
            schemas.SecuritySettingUpdate(setting_value="blue"),
            db=db_session,
            current_user=admin,
        )

    assert exc_info.value.status_code == 404


def test_unlock_user(db_session, admin, make_user):
    user = make_user(locked=True, locked_at=T0, failed_attempts=4, last_failure_at=T0)

    profile = router_admin.unlock_user(user.id, db=db_session, current_user=admin)

    assert profile.locked is False
    assert profile.locked_at is None
    assert profile.failed_attempts == 0


def test_reset_failed_attempts_keeps_lock(db_session, admin, make_user):
    user = make_user(locked=True, locked_at=T0, failed_attempts=4, last_failure_at=T0)

    profile = router_admin.reset_failed_attempts(user.id, db=db_session, current_user=admin)

    assert profile.failed_attempts == 0
    assert profile.locked is True


def test_read_security_profile(db_session, admin, make_user):
    user = make_user(failed_attempts=2, last_failure_at=T0)

    profile = router_admin.read_security_profile(user.id, db=db_session, current_user=admin)
    body = schemas.SecurityProfileRead.model_validate(profile)

    assert body.username == "alice"
    assert body.failed_attempts == 2


def test_unknown_user_is_not_found(db_session, admin):
    with pytest.raises(HTTPException) as exc_info:
        router_admin.unlock_user("USR-MISSING", db=db_session, current_user=admin)

    assert exc_info.value.status_code == 404


def test_rate_limit_stats(admin, monotonic):
    limiter = LoginRateLimiter(StaticPolicyProvider(), clock=monotonic, max_buckets=50)
    for _ in range(6):
        limiter.allow("alice")

    stats = router_admin.rate_limit_stats(current_user=admin, rate_limiter=limiter)

    assert stats == {"buckets": 1, "throttled": 1, "max_buckets": 50}


def test_effective_policy(admin):
    body = router_admin.read_effective_policy(
        current_user=admin,
        policy_provider=StaticPolicyProvider(),
    )

    assert body["max_failed_attempts"] == 5
    assert body["lockout_duration_minutes"] == 30
    assert body["counter_reset_hours"] == 24
    assert body["bucket_refill_minutes"] == 1


@pytest.mark.parametrize(
    "key, value",
    [
        (policy.KEY_LOCKOUT_DURATION_MINUTES, "-30"),
        (policy.KEY_LOCKOUT_DURATION_MINUTES, "0"),
        (policy.KEY_MAX_FAILED_ATTEMPTS, "0"),
    ],
)
def test_update_rejects_out_of_range_value(db_session, admin, key, value):
    seed_security_settings(db_session)

    with pytest.raises(HTTPException) as exc_info:
        router_admin.update_security_setting(
            key,
            schemas.SecuritySettingUpdate(setting_value=value),
            db=db_session,
            current_user=admin,
        )

    assert exc_info.value.status_code == 400
    assert policy.resolve_settings(db_session)[key] == policy._definitions()[key].default


def test_reset_settings_to_defaults_by_category(db_session, admin):
    seed_security_settings(db_session)
    for key, value in [
        (policy.KEY_LOCKOUT_DURATION_MINUTES, "10"),
        (policy.KEY_RATE_LIMIT_CAPACITY, "20"),
    ]:
        router_admin.update_security_setting(
            key,
            schemas.SecuritySettingUpdate(setting_value=value),
            db=db_session,
            current_user=admin,
        )

    rows = router_admin.reset_security_settings_to_defaults(
        category="ACCOUNT_LOCKOUT", db=db_session, current_user=admin
    )

    by_key = {r.setting_key: r for r in rows}
    assert set(by_key) == {
        policy.KEY_MAX_FAILED_ATTEMPTS,
        policy.KEY_LOCKOUT_DURATION_MINUTES,
        policy.KEY_COUNTER_RESET_HOURS,
        policy.KEY_LOCKOUT_ENABLED,
    }
    assert by_key[policy.KEY_LOCKOUT_DURATION_MINUTES].setting_value == "30"
    assert by_key[policy.KEY_LOCKOUT_DURATION_MINUTES].is_system_default is True
    # other categories keep their values
    assert policy.resolve_settings(db_session)[policy.KEY_RATE_LIMIT_CAPACITY] == 20


def test_reset_all_settings_to_defaults(db_session, admin):
    seed_security_settings(db_session)
    router_admin.update_security_setting(
        policy.KEY_RATE_LIMIT_ENABLED,
        schemas.SecuritySettingUpdate(setting_value="false"),
        db=db_session,
        current_user=admin,
    )

    rows = router_admin.reset_security_settings_to_defaults(
        category=None, db=db_session, current_user=admin
    )

    assert len(rows) == 8
    assert all(r.is_system_default for r in rows)
    assert policy.resolve_settings(db_session)[policy.KEY_RATE_LIMIT_ENABLED] is True


def test_reset_settings_rejects_unknown_category(db_session, admin):
    with pytest.raises(HTTPException) as exc_info:
        router_admin.reset_security_settings_to_defaults(
            category="PASSWORD_POLICY", db=db_session, current_user=admin
        )

    assert exc_info.value.status_code == 400
