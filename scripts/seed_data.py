"""Seed default roles and create an initial admin user.

The default admin user's username, e-mail and password can be configured via
the ``INITIAL_ADMIN_USERNAME``, ``INITIAL_ADMIN_EMAIL`` and
``INITIAL_ADMIN_PASSWORD`` environment variables.  If the user already exists
it is simply granted ``Admin`` on every system.
"""

import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash


def _get_models():
    """Import and return the models module lazily."""

    suite_dir = Path(__file__).resolve().parent.parent / "suite"
    if str(suite_dir) not in sys.path:
        sys.path.insert(0, str(suite_dir))
    import models

    return models


def seed_roles(session, models) -> None:
    """Ensure all default roles exist."""
    for name, description in models.DEFAULT_ROLES.items():
        if not session.query(models.Role).filter_by(name=name).first():
            session.add(models.Role(name=name, description=description))
    session.flush()


def seed_admin_user(session, models):
    """Create the initial admin user and grant it ``Admin`` on ``*``."""

    username = os.getenv("INITIAL_ADMIN_USERNAME", "admin")
    email = os.getenv("INITIAL_ADMIN_EMAIL", f"{username}@example.com")
    password = os.getenv("INITIAL_ADMIN_PASSWORD")

    admin = session.query(models.User).filter_by(username=username).first()
    if not admin:
        admin = models.User(username=username, email=email, name="Administrator")
        if password:
            admin.password_hash = generate_password_hash(password)
        session.add(admin)
        session.flush()

    admin_role = session.query(models.Role).filter_by(name=models.ADMIN_ROLE).first()
    exists = (
        session.query(models.Permission)
        .filter_by(user_id=admin.id, system_id=models.GLOBAL_SYSTEM_ID, role_id=admin_role.id)
        .first()
    )
    if not exists:
        session.add(
            models.Permission(
                user_id=admin.id,
                system_id=models.GLOBAL_SYSTEM_ID,
                role_id=admin_role.id,
                created_by=models.SYSTEM_ACTOR,
            )
        )
    return admin


def seed(database_url: str | None = None) -> None:
    """Create tables if needed and seed default data."""

    models = _get_models()
    database = models.Database(database_url or os.environ.get("DATABASE_URL", "sqlite:///suite.db"))

    # Ensure all tables exist before attempting to seed data.
    database.create_all()

    session = database.session()
    try:
        seed_roles(session, models)
        seed_admin_user(session, models)
        session.commit()
    finally:
        session.close()
        database.dispose()


if __name__ == "__main__":
    seed()
