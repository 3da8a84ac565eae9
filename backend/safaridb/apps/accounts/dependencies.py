# backend/safaridb/apps/accounts/dependencies.py
"""
Process-wide login engine collaborators.

The rate limiter keeps its buckets in memory, so there must be exactly one
per process. The policy provider holds no state of its own (it reads the
settings table on each call) and is shared for convenience.
"""

from __future__ import annotations

from safaridb.database import ReadSessionLocal

from .policy import DatabasePolicyProvider, PolicyProvider
from .rate_limit import LoginRateLimiter

_POLICY_PROVIDER = DatabasePolicyProvider(ReadSessionLocal)
_LOGIN_RATE_LIMITER = LoginRateLimiter(_POLICY_PROVIDER)


def get_policy_provider() -> PolicyProvider:
    return _POLICY_PROVIDER


def get_rate_limiter() -> LoginRateLimiter:
    return _LOGIN_RATE_LIMITER
