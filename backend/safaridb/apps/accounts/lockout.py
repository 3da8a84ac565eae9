# backend/safaridb/apps/accounts/lockout.py
"""
Account lockout state machine and failed-attempt counter reset policy.

States are UNLOCKED and LOCKED. Transitions:

- failure below threshold:   failed_attempts += 1, last_failure_at = now
- failure at threshold:      locked = True, locked_at = now
                             (counter stays at max - 1; the lock records
                             the triggering failure)
- lock expired:              unlocked, counter and last_failure_at cleared
- success:                   counter and last_failure_at cleared

The counter reset policy is separate: a counter whose last failure is older
than `counter_reset_window` is cleared, whether or not the account is locked.
Lock expiry and counter expiry use different windows and may diverge; that is
intended.

All functions take the current time explicitly and apply changes through the
store's conditional UPDATEs, so calling them twice is harmless.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime
from typing import Optional

from .policy import SecurityPolicy
from .store import ProfileStore, SecurityProfile

logger = logging.getLogger(__name__)

# Bounded retries for the failure transition. Each retry follows a lost race
# (the row moved between our increment and lock attempts).
MAX_FAILURE_CAS_ATTEMPTS = 5


class LockState(str, enum.Enum):
    UNLOCKED = "UNLOCKED"
    LOCKED = "LOCKED"


def lock_expires_at(profile: SecurityProfile, policy: SecurityPolicy) -> Optional[datetime]:
    if not profile.locked or profile.locked_at is None:
        return None
    return profile.locked_at + policy.lockout_duration


def is_lock_expired(profile: SecurityProfile, policy: SecurityPolicy, now: datetime) -> bool:
    expires_at = lock_expires_at(profile, policy)
    return expires_at is not None and now > expires_at


def is_counter_stale(profile: SecurityProfile, policy: SecurityPolicy, now: datetime) -> bool:
    if profile.failed_attempts <= 0 or profile.last_failure_at is None:
        return False
    if policy.counter_reset_window.total_seconds() <= 0:
        return False
    return now > profile.last_failure_at + policy.counter_reset_window


def unlock_if_expired(
    store: ProfileStore,
    profile: SecurityProfile,
    policy: SecurityPolicy,
    now: datetime,
) -> bool:
    """
    Apply LOCKED -> UNLOCKED when the lock has run for longer than
    `lockout_duration`. Returns True only when this call performed the unlock.
    """
    if not is_lock_expired(profile, policy, now):
        return False
    unlocked = store.unlock_if_expired(
        profile.user_id,
        locked_before=now - policy.lockout_duration,
    )
    if unlocked:
        logger.info("Account automatically unlocked for user: %s", profile.key)
    return unlocked


def reset_counter_if_stale(
    store: ProfileStore,
    profile: SecurityProfile,
    policy: SecurityPolicy,
    now: datetime,
) -> bool:
    """
    Clear the failed-attempt counter when the last failure is older than
    `counter_reset_window`. A zero window means counters are only reset
    manually. Returns True only when this call performed the reset.
    """
    if not is_counter_stale(profile, policy, now):
        return False
    reset = store.reset_if_stale(
        profile.user_id,
        failed_before=now - policy.counter_reset_window,
    )
    if reset:
        logger.info("Failed attempt counter reset for user: %s", profile.key)
    return reset


def record_failure(
    store: ProfileStore,
    profile: SecurityProfile,
    policy: SecurityPolicy,
    now: datetime,
) -> LockState:
    """
    Apply the failure transition for one failed attempt.

    The increment only matches while the stored counter is below the lock
    threshold and the lock only matches once it has reached it, so concurrent
    failures each land on exactly one of the two. If neither matches, the row
    changed under us (locked by another request, or reset by the sweeper)
    and we try again against the new state.
    """
    threshold = policy.lock_threshold
    for _ in range(MAX_FAILURE_CAS_ATTEMPTS):
        if store.increment_failures(profile.user_id, now=now, below=threshold):
            logger.info(
                "Failed login attempt recorded",
                extra={"user": profile.key, "threshold": threshold},
            )
            return LockState.UNLOCKED
        if store.lock(profile.user_id, now=now, at_least=threshold):
            logger.warning(
                "Account locked after repeated failed login attempts: %s",
                profile.key,
            )
            return LockState.LOCKED
        current = store.get(profile.user_id)
        if current is None:
            raise LookupError(f"User {profile.user_id} disappeared during login")
        if current.locked:
            return LockState.LOCKED
    raise RuntimeError(
        f"Could not record failed attempt for {profile.key} after "
        f"{MAX_FAILURE_CAS_ATTEMPTS} attempts"
    )


def record_success(store: ProfileStore, profile: SecurityProfile) -> None:
    """Success always clears the counter, whatever its value."""
    store.clear_failures(profile.user_id)


def reset_failures(store: ProfileStore, profile: SecurityProfile) -> None:
    """Administrative counter reset; an existing lock is left in place."""
    store.clear_failures(profile.user_id)
    logger.info("Failed attempt counter manually reset for user: %s", profile.key)


def force_unlock(store: ProfileStore, profile: SecurityProfile) -> bool:
    """Administrative unlock; ignores the lockout duration."""
    unlocked = store.force_unlock(profile.user_id)
    if unlocked:
        logger.info("Account manually unlocked for user: %s", profile.key)
    return unlocked
