# backend/safaridb/scheduler.py
"""
In-process scheduler for the account maintenance sweeps.

Disabled with SWEEPER_ENABLED=false when the sweeps run from cron instead
(see safaridb/jobs/account_maintenance.py).
"""

from __future__ import annotations

import logging
import os

from apscheduler.schedulers.background import BackgroundScheduler

from .jobs import account_maintenance

logger = logging.getLogger(__name__)

UNLOCK_JOB_ID = "account_unlock_sweep"
COUNTER_RESET_JOB_ID = "account_counter_reset_sweep"


def _env_seconds(name: str, default: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


def sweeper_enabled() -> bool:
    return os.getenv("SWEEPER_ENABLED", "true").lower() in {"1", "true", "yes", "on"}


def build_scheduler() -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        account_maintenance.run_unlock,
        "interval",
        seconds=_env_seconds("SWEEP_UNLOCK_INTERVAL_SECONDS", 300),
        id=UNLOCK_JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        account_maintenance.run_counter_reset,
        "interval",
        seconds=_env_seconds("SWEEP_COUNTER_RESET_INTERVAL_SECONDS", 600),
        id=COUNTER_RESET_JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    return scheduler
