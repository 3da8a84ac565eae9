# backend/safaridb/apps/accounts/sweeper.py
"""
Reconciliation passes for lockout state.

Both passes apply the same time-based transitions as the login path, without
waiting for a login attempt:

- unlock pass: every locked profile whose lock has expired is unlocked.
- counter-reset pass: every profile with a stale failure counter is reset.

A failure on one profile is rolled back, logged and counted; the pass moves on
to the next profile. Both passes are idempotent and safe to run while logins
are in flight.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from . import lockout
from .policy import PolicyProvider
from .store import ProfileStore

logger = logging.getLogger(__name__)


def run_unlock_sweep(
    store: ProfileStore,
    policy_provider: PolicyProvider,
    *,
    now: Optional[datetime] = None,
) -> dict:
    now = now or datetime.now(timezone.utc)
    policy = policy_provider.current()
    summary = {"checked": 0, "unlocked": 0, "skipped": 0, "errors": 0}

    for profile in store.list_locked():
        summary["checked"] += 1
        if profile.locked_at is None:
            logger.warning(
                "Locked account without lock timestamp, leaving for manual review: %s",
                profile.key,
            )
            summary["skipped"] += 1
            continue
        try:
            if lockout.unlock_if_expired(store, profile, policy, now):
                summary["unlocked"] += 1
        except Exception:
            store.rollback()
            summary["errors"] += 1
            logger.exception("Error unlocking account for user: %s", profile.key)

    logger.info("Unlock sweep completed", extra={"summary": summary})
    return summary


def run_counter_reset_sweep(
    store: ProfileStore,
    policy_provider: PolicyProvider,
    *,
    now: Optional[datetime] = None,
) -> dict:
    now = now or datetime.now(timezone.utc)
    policy = policy_provider.current()
    summary = {"checked": 0, "reset": 0, "errors": 0}

    if policy.counter_reset_window.total_seconds() <= 0:
        logger.debug("Counter reset disabled (counterResetHours = 0), skipping sweep")
        return summary

    for profile in store.list_with_failures():
        summary["checked"] += 1
        try:
            if lockout.reset_counter_if_stale(store, profile, policy, now):
                summary["reset"] += 1
        except Exception:
            store.rollback()
            summary["errors"] += 1
            logger.exception("Error resetting failed attempts for user: %s", profile.key)

    logger.info("Counter reset sweep completed", extra={"summary": summary})
    return summary
