# backend/safaridb/__init__.py
"""
Import ORM models so that Alembic and Base.metadata.create_all() see all tables.

The model classes live in safaridb/apps/*/models.py.
"""

from .apps.accounts import models as accounts_models          # users + security settings

__all__ = [
    "accounts_models",
]
