"""Account lockout maintenance job.

Run from cron/Task Scheduler, or let the in-process scheduler call it, to:
 - unlock accounts whose lockout duration has passed (every 5 minutes)
 - reset stale failed-attempt counters (every 10 minutes)

Usage:
    python -m safaridb.jobs.account_maintenance unlock|reset|all
"""

from __future__ import annotations

import argparse
import logging

from safaridb.database import WriteSessionLocal
from safaridb.apps.accounts import sweeper
from safaridb.apps.accounts.dependencies import get_policy_provider
from safaridb.apps.accounts.store import SqlAlchemyProfileStore

logger = logging.getLogger(__name__)


def run_unlock() -> dict:
    """Execute one unlock pass and return a summary dict."""
    db = WriteSessionLocal()
    try:
        summary = sweeper.run_unlock_sweep(
            SqlAlchemyProfileStore(db),
            get_policy_provider(),
        )
        logger.info("Unlock sweep finished", extra=summary)
        return summary
    finally:
        db.close()


def run_counter_reset() -> dict:
    """Execute one counter-reset pass and return a summary dict."""
    db = WriteSessionLocal()
    try:
        summary = sweeper.run_counter_reset_sweep(
            SqlAlchemyProfileStore(db),
            get_policy_provider(),
        )
        logger.info("Counter reset sweep finished", extra=summary)
        return summary
    finally:
        db.close()


def run() -> dict:
    return {"unlock": run_unlock(), "counter_reset": run_counter_reset()}


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Account lockout maintenance.")
    parser.add_argument("task", choices=["unlock", "reset", "all"], nargs="?", default="all")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    if args.task == "unlock":
        result = run_unlock()
    elif args.task == "reset":
        result = run_counter_reset()
    else:
        result = run()
    print("Account maintenance completed:", result)
