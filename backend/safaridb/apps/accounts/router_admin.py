# backend/safaridb/apps/accounts/router_admin.py

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from safaridb.database import get_db
from safaridb.security import require_admin
from . import lockout, models, schemas
from .dependencies import get_policy_provider, get_rate_limiter
from .policy import (
    PolicyProvider,
    _definitions,
    parse_setting,
    reset_security_settings,
    setting_categories,
)
from .rate_limit import LoginRateLimiter
from .store import SecurityProfile, SqlAlchemyProfileStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/accounts/admin", tags=["accounts_admin"])


def _get_profile_or_404(store: SqlAlchemyProfileStore, user_id: str) -> SecurityProfile:
    profile = store.get(user_id)
    if profile is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found.",
        )
    return profile


# ---------------------------------------------------------------------------
# SECURITY SETTINGS
# ---------------------------------------------------------------------------


@router.get(
    "/security-settings",
    response_model=List[schemas.SecuritySettingRead],
    summary="List login security settings",
)
def list_security_settings(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_admin),
):
    return (
        db.query(models.SecuritySetting)
        .order_by(models.SecuritySetting.category, models.SecuritySetting.setting_key)
        .all()
    )


@router.put(
    "/security-settings/{setting_key}",
    response_model=schemas.SecuritySettingRead,
    summary="Update a login security setting",
)
def update_security_setting(
    setting_key: str,
    payload: schemas.SecuritySettingUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_admin),
):
    """
    Change a setting value or toggle it active.

    Changes apply to the next login attempt; no restart is needed.
    Inactive settings fall back to the environment defaults.
    """
    definition = _definitions().get(setting_key)
    if definition is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown security setting {setting_key!r}.",
        )

    setting = (
        db.query(models.SecuritySetting)
        .filter(models.SecuritySetting.setting_key == setting_key)
        .first()
    )
    if setting is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Security setting {setting_key!r} has not been initialised.",
        )

    if payload.setting_value is not None:
        try:
            parse_setting(definition, payload.setting_value)
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid value for {setting_key}: {exc}",
            )
        setting.setting_value = payload.setting_value.strip()
        setting.is_system_default = False
    if payload.active is not None:
        setting.active = payload.active

    db.add(setting)
    db.commit()
    db.refresh(setting)

    logger.info(
        "Security setting updated",
        extra={
            "setting_key": setting_key,
            "setting_value": setting.setting_value,
            "active": setting.active,
            "updated_by": current_user.username,
        },
    )
    return setting


@router.post(
    "/security-settings/reset-to-defaults",
    response_model=List[schemas.SecuritySettingRead],
    summary="Reset login security settings to their defaults",
)
def reset_security_settings_to_defaults(
    category: Optional[str] = Query(None, description="ACCOUNT_LOCKOUT or LOGIN_RATE_LIMIT"),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_admin),
):
    """
    Overwrite setting values with the configured defaults.

    Only existing rows are touched; the active flag is left as it is.
    """
    if category is not None and category not in setting_categories():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown security setting category {category!r}.",
        )

    count = reset_security_settings(db, category)
    logger.info(
        "Security settings reset by administrator",
        extra={"category": category or "ALL", "count": count, "admin": current_user.username},
    )

    query = db.query(models.SecuritySetting)
    if category is not None:
        query = query.filter(models.SecuritySetting.category == category)
    return query.order_by(
        models.SecuritySetting.category, models.SecuritySetting.setting_key
    ).all()


# ---------------------------------------------------------------------------
# ACCOUNT LOCKOUT
# ---------------------------------------------------------------------------


@router.get(
    "/users/{user_id}/security",
    response_model=schemas.SecurityProfileRead,
    summary="Show a user's lockout state",
)
def read_security_profile(
    user_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_admin),
):
    return _get_profile_or_404(SqlAlchemyProfileStore(db), user_id)


@router.post(
    "/users/{user_id}/unlock",
    response_model=schemas.SecurityProfileRead,
    summary="Unlock a user account immediately",
)
def unlock_user(
    user_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_admin),
):
    store = SqlAlchemyProfileStore(db)
    profile = _get_profile_or_404(store, user_id)
    lockout.force_unlock(store, profile)
    logger.info(
        "Account unlocked by administrator",
        extra={"user": profile.key, "admin": current_user.username},
    )
    return store.get(user_id)


@router.post(
    "/users/{user_id}/reset-failed-attempts",
    response_model=schemas.SecurityProfileRead,
    summary="Reset a user's failed login counter",
)
def reset_failed_attempts(
    user_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_admin),
):
    """Manual counter reset; the only reset when counterResetHours is 0."""
    store = SqlAlchemyProfileStore(db)
    profile = _get_profile_or_404(store, user_id)
    lockout.reset_failures(store, profile)
    logger.info(
        "Failed attempt counter reset by administrator",
        extra={"user": profile.key, "admin": current_user.username},
    )
    return store.get(user_id)


@router.get(
    "/rate-limit/stats",
    response_model=schemas.RateLimitStats,
    summary="Login rate limiter statistics for this process",
)
def rate_limit_stats(
    current_user: models.User = Depends(require_admin),
    rate_limiter: LoginRateLimiter = Depends(get_rate_limiter),
):
    return rate_limiter.stats()


@router.get(
    "/security-policy",
    summary="Effective login security policy",
)
def read_effective_policy(
    current_user: models.User = Depends(require_admin),
    policy_provider: PolicyProvider = Depends(get_policy_provider),
):
    policy = policy_provider.current()
    return {
        "max_failed_attempts": policy.max_failed_attempts,
        "lockout_duration_minutes": int(policy.lockout_duration.total_seconds() // 60),
        "counter_reset_hours": int(policy.counter_reset_window.total_seconds() // 3600),
        "lockout_policy_enabled": policy.lockout_policy_enabled,
        "rate_limit_policy_enabled": policy.rate_limit_policy_enabled,
        "bucket_capacity": policy.bucket_capacity,
        "bucket_refill_rate": policy.bucket_refill_rate,
        "bucket_refill_minutes": int(policy.bucket_refill_window.total_seconds() // 60),
    }
