import logging
import os
from pathlib import Path

from flask import Flask, jsonify
from flask_wtf.csrf import CSRFProtect

from admin_routes import admin_bp
from auth import auth_bp
from auth import init_app as auth_init
from caching import TTLCache
from document_routes import create_document_blueprint, downloads_bp
from documents import DocumentKind
from errors import register_error_handlers
from extensions import close_session
from invites import invites_bp
from models import Database, utcnow
from notifications import NotificationDispatcher
from storage import UploadStorage

REPO_ROOT = Path(__file__).resolve().parent.parent


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


def load_config() -> dict:
    """Settings read from the environment once per application."""
    return {
        "DATABASE_URL": os.environ.get("DATABASE_URL", "sqlite:///suite.db"),
        "SECRET_KEY": os.environ.get("SECRET_KEY", "dev"),
        "REDIS_URL": os.environ.get("REDIS_URL"),
        "CACHE_TTL": int(os.environ.get("CACHE_TTL", "300")),
        "PERMISSION_CACHE_TTL": int(os.environ.get("PERMISSION_CACHE_TTL", "30")),
        "UPLOADS_DIR": os.environ.get("UPLOADS_DIR", os.path.join(os.getcwd(), "public", "uploads")),
        "APP_URL": os.environ.get("APP_URL", "http://localhost:5000"),
        "INVITE_EXPIRY_DAYS": int(os.environ.get("INVITE_EXPIRY_DAYS", "7")),
        "WTF_CSRF_ENABLED": _env_flag("CSRF_ENABLED", "true"),
        "SESSION_COOKIE_SECURE": _env_flag("SESSION_COOKIE_SECURE", "false"),
        "LOG_LEVEL": os.environ.get("LOG_LEVEL", "INFO"),
        "AUTO_MIGRATE": _env_flag("AUTO_MIGRATE", "false"),
    }


# Automatically run database migrations in non-SQLite environments.
def run_migrations(db_url: str) -> None:
    if db_url.startswith("sqlite"):
        return
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(REPO_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(REPO_ROOT / "alembic"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    cfg.attributes["database_url"] = db_url
    command.upgrade(cfg, "head")


def create_app(config: dict | None = None) -> Flask:
    """Build the application and the services it hands to every request.

    ``config`` overrides the environment; tests pass a database URL, a fake
    notification queue and so on.  Recognised service overrides are
    ``DATABASE`` (a :class:`models.Database`), ``CACHE``, ``NOTIFIER`` and
    ``CLOCK``.
    """
    settings = load_config()
    settings.update(config or {})

    app = Flask(__name__)
    app.secret_key = settings["SECRET_KEY"]
    app.config.update({k: v for k, v in settings.items() if k.isupper()})
    app.config.update(SESSION_COOKIE_HTTPONLY=True, SESSION_COOKIE_SAMESITE="Lax")

    logging.basicConfig(
        level=getattr(logging, str(settings["LOG_LEVEL"]).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.logger.setLevel(str(settings["LOG_LEVEL"]).upper())

    if settings["AUTO_MIGRATE"]:
        run_migrations(settings["DATABASE_URL"])

    database = settings.get("DATABASE") or Database(settings["DATABASE_URL"])
    cache = settings.get("CACHE") or TTLCache.from_url(settings["REDIS_URL"], settings["CACHE_TTL"])
    notifier = settings.get("NOTIFIER") or NotificationDispatcher.from_url(
        settings["REDIS_URL"], settings["APP_URL"]
    )
    app.extensions["suite.db"] = database
    app.extensions["suite.cache"] = cache
    app.extensions["suite.notifier"] = notifier
    app.extensions["suite.storage"] = UploadStorage(settings["UPLOADS_DIR"])
    app.extensions["suite.clock"] = settings.get("CLOCK") or utcnow

    @app.after_request
    def set_security_headers(response):
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        return response

    app.teardown_appcontext(close_session)

    CSRFProtect(app)
    auth_init(app)
    register_error_handlers(app)

    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(invites_bp)
    app.register_blueprint(downloads_bp)
    for kind in DocumentKind:
        app.register_blueprint(create_document_blueprint(kind))

    @app.get("/health")
    def health():
        return jsonify(status="ok")

    app.logger.info("Application configured for %s", database.engine.url.render_as_string(hide_password=True))
    return app


if __name__ == "__main__":
    application = create_app()
    bind = os.environ.get("BIND", "127.0.0.1:5000")
    host, _, port = bind.partition(":")
    application.run(host=host, port=int(port or 5000), debug=_env_flag("DEBUG", "false"))
