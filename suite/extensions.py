"""Request-scoped access to the services built by :func:`app.create_app`."""

from flask import current_app, g

from permissions import PermissionResolver


def get_database():
    return current_app.extensions["suite.db"]


def get_session():
    """Database session shared by the guard and the view of one request."""
    if "db_session" not in g:
        g.db_session = get_database().session()
    return g.db_session


def close_session(exc=None):
    session = g.pop("db_session", None)
    if session is not None:
        if exc is not None:
            session.rollback()
        session.close()


def get_cache():
    return current_app.extensions["suite.cache"]


def get_resolver() -> PermissionResolver:
    if "resolver" not in g:
        g.resolver = PermissionResolver(
            get_session(),
            cache=get_cache(),
            clock=current_app.extensions["suite.clock"],
            ttl=current_app.config["PERMISSION_CACHE_TTL"],
        )
    return g.resolver


def get_notifier():
    return current_app.extensions["suite.notifier"]


def get_storage():
    return current_app.extensions["suite.storage"]
