# backend/safaridb/apps/accounts/__init__.py
"""
Accounts app

Responsible for:
- User accounts and their login security profile
- Database-driven security settings (lockout and login rate limit policy)
- Login engine: rate limiting, account lockout, credential and MFA checks
- Lockout maintenance sweeps (automatic unlock, failed-attempt counter reset)
- Public auth endpoint (login) and admin endpoints (settings, unlock, reset)
"""

from . import models, schemas, services  # noqa: F401

__all__ = ["models", "schemas", "services"]
