from __future__ import annotations

from datetime import datetime, timedelta, timezone

from safaridb import scheduler
from safaridb.apps.accounts.policy import StaticPolicyProvider
from safaridb.apps.accounts.store import SqlAlchemyProfileStore
from safaridb.jobs import account_maintenance


def test_jobs_run_against_write_session(monkeypatch, file_session_factory, user_factory):
    long_ago = datetime.now(timezone.utc) - timedelta(days=3)
    setup = file_session_factory()
    try:
        locked_id = user_factory(
            setup, username="locked", locked=True, locked_at=long_ago, failed_attempts=4
        ).id
        stale_id = user_factory(
            setup, username="stale", failed_attempts=2, last_failure_at=long_ago
        ).id
    finally:
        setup.close()

    monkeypatch.setattr(account_maintenance, "WriteSessionLocal", file_session_factory)
    monkeypatch.setattr(account_maintenance, "get_policy_provider", StaticPolicyProvider)

    result = account_maintenance.run()

    assert result["unlock"]["unlocked"] == 1
    assert result["counter_reset"]["reset"] == 1

    db = file_session_factory()
    try:
        store = SqlAlchemyProfileStore(db)
        assert store.get(locked_id).locked is False
        assert store.get(stale_id).failed_attempts == 0
    finally:
        db.close()


def test_scheduler_registers_both_sweeps(monkeypatch):
    monkeypatch.setenv("SWEEP_UNLOCK_INTERVAL_SECONDS", "120")
    monkeypatch.setenv("SWEEP_COUNTER_RESET_INTERVAL_SECONDS", "bogus")

    jobs = {job.id: job for job in scheduler.build_scheduler().get_jobs()}

    assert set(jobs) == {scheduler.UNLOCK_JOB_ID, scheduler.COUNTER_RESET_JOB_ID}
    assert jobs[scheduler.UNLOCK_JOB_ID].trigger.interval == timedelta(seconds=120)
    assert jobs[scheduler.COUNTER_RESET_JOB_ID].trigger.interval == timedelta(seconds=600)
    assert jobs[scheduler.UNLOCK_JOB_ID].max_instances == 1
