"""Create the first admin user and the default security settings.

Usage:
    SEED_ADMIN_PASSWORD=... python -m safaridb.scripts.seed_superuser
"""

import os

from sqlalchemy.orm import Session

from safaridb.database import SessionLocal
from safaridb.security import get_password_hash
from safaridb.apps.accounts.models import User
from safaridb.apps.accounts.policy import seed_security_settings

USERNAME = os.getenv("SEED_ADMIN_USERNAME", "admin")
EMAIL = os.getenv("SEED_ADMIN_EMAIL", "admin@safaridb.local")
PASSWORD = os.getenv("SEED_ADMIN_PASSWORD")
FIRST_NAME = "System"
LAST_NAME = "Administrator"


def ensure_superuser(db: Session) -> User:
    email = EMAIL.lower().strip()
    existing = (
        db.query(User)
        .filter((User.username == USERNAME) | (User.email == email))
        .first()
    )
    if existing:
        # Ensure flags are correct
        existing.is_admin = True
        existing.is_enabled = True
        db.add(existing)
        db.commit()
        db.refresh(existing)
        return existing

    if not PASSWORD:
        raise SystemExit("SEED_ADMIN_PASSWORD must be set to create the admin user.")

    user = User(
        username=USERNAME,
        email=email,
        first_name=FIRST_NAME,
        last_name=LAST_NAME,
        is_admin=True,
        is_enabled=True,
        hashed_password=get_password_hash(PASSWORD),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def main() -> None:
    db = SessionLocal()
    try:
        created = seed_security_settings(db)
        user = ensure_superuser(db)
        print("OK:", user.username, "admin =", user.is_admin, "settings created =", created)
    finally:
        db.close()


if __name__ == "__main__":
    main()
