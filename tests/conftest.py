import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

repo_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(repo_root))
sys.path.insert(0, str(repo_root / "suite"))

import models  # noqa: E402
from app import create_app  # noqa: E402
from auth import issue_session_token  # noqa: E402
from caching import TTLCache  # noqa: E402
from notifications import NotificationDispatcher  # noqa: E402


@pytest.fixture()
def queue():
    return MagicMock()


@pytest.fixture()
def app(tmp_path, queue):
    application = create_app(
        {
            "DATABASE_URL": f"sqlite:///{tmp_path / 'test.db'}",
            "SECRET_KEY": "test-secret",
            "TESTING": True,
            "WTF_CSRF_ENABLED": False,
            "UPLOADS_DIR": str(tmp_path / "uploads"),
            "CACHE": TTLCache(),
            "NOTIFIER": NotificationDispatcher(queue, app_url="http://testserver"),
        }
    )
    database = application.extensions["suite.db"]
    database.create_all()
    yield application
    database.drop_all()
    database.dispose()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def db(app):
    session = app.extensions["suite.db"].session()
    yield session
    session.close()


@pytest.fixture()
def roles(db):
    created = {}
    for name, description in models.DEFAULT_ROLES.items():
        role = models.Role(name=name, description=description)
        db.add(role)
        created[name] = role
    db.commit()
    return created


def make_user(db, username, status=models.UserStatus.ACTIVE, **kwargs):
    user = models.User(
        username=username,
        email=kwargs.pop("email", f"{username}@example.com"),
        name=kwargs.pop("name", username.title()),
        status=status,
        **kwargs,
    )
    db.add(user)
    db.commit()
    return user


def grant(db, user, system_id, role, expiry=None):
    perm = models.Permission(user_id=user.id, system_id=system_id, role_id=role.id, expiry=expiry)
    db.add(perm)
    db.commit()
    return perm


def auth_headers(app, user, remember_me=False):
    with app.app_context():
        token, _ = issue_session_token(user, remember_me)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def admin(db, roles):
    user = make_user(db, "admin")
    grant(db, user, "admin", roles["manage_users"])
    return user


@pytest.fixture()
def admin_headers(app, admin):
    return auth_headers(app, admin)
