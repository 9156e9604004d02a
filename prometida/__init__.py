"""Flask application factory."""

import os
import secrets
from datetime import timedelta
from pathlib import Path

import redis
from dotenv import load_dotenv
from flask import Flask
from flask_session import Session
from sqlalchemy.pool import NullPool

from .config import load_config
from .extensions import db
from .runtime import StoreRuntime
from .services.local_cache import LocalCache


def _resolve_secret_key() -> str:
    """Return a secret key for Flask sessions.

    ``FLASK_SECRET_KEY`` (or the legacy ``SECRET_KEY``) is expected in
    production. Without it a temporary key is generated so the app can still
    boot locally.
    """

    for name in ("FLASK_SECRET_KEY", "SECRET_KEY"):
        value = os.environ.get(name)
        if value:
            return value

    return secrets.token_hex(32)


def _bool_from_env(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def create_app() -> Flask:
    """Configure and return the Flask application."""

    load_dotenv()

    app = Flask(__name__)

    config = load_config()
    app.prometida_config = config
    app.local_cache = LocalCache(config.data_dir, config.redis_url)
    app.store_runtime = StoreRuntime(
        config,
        app.local_cache,
        realtime=_bool_from_env("REALTIME_ENABLED", True),
    )

    app.config["SECRET_KEY"] = _resolve_secret_key()

    # --- Session configuration -----------------------------------------
    flask_env = os.environ.get("FLASK_ENV", "").lower()
    is_production = flask_env in {"production", "prod"}

    same_site_env = os.environ.get("SESSION_COOKIE_SAMESITE")
    same_site_default = "Lax"
    if same_site_env and same_site_env.lower() == "none":
        same_site_default = "None"

    app.config.update(
        SESSION_PERMANENT=True,
        PERMANENT_SESSION_LIFETIME=timedelta(
            days=int(os.environ.get("SESSION_LIFETIME_DAYS", "30"))
        ),
        SESSION_COOKIE_SECURE=_bool_from_env("SESSION_COOKIE_SECURE", is_production),
        SESSION_COOKIE_SAMESITE=os.environ.get("SESSION_COOKIE_SAMESITE", same_site_default),
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_NAME=os.environ.get("SESSION_COOKIE_NAME", "prometida_session"),
        SESSION_COOKIE_DOMAIN=os.environ.get("SESSION_COOKIE_DOMAIN"),
        SESSION_USE_SIGNER=False,
    )

    if config.redis_url:
        app.config.update(
            SESSION_TYPE="redis",
            SESSION_REDIS=redis.from_url(config.redis_url),
        )
    else:
        app.config.update(
            SESSION_TYPE="sqlalchemy",
            SESSION_SQLALCHEMY=db,
            SESSION_SQLALCHEMY_TABLE=os.environ.get("SESSION_TABLE", "sessions"),
        )

    default_sqlite_path = Path(app.instance_path) / "sessions.db"
    database_uri = os.environ.get("SESSION_DATABASE_URI")
    if not database_uri:
        default_sqlite_path.parent.mkdir(parents=True, exist_ok=True)
        database_uri = f"sqlite:///{default_sqlite_path}"

    app.config["SQLALCHEMY_DATABASE_URI"] = database_uri
    engine_options = {"pool_pre_ping": True}
    if _bool_from_env("DATABASE_NULL_POOL", False):
        engine_options["poolclass"] = NullPool
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options
    app.config.setdefault("SQLALCHEMY_TRACK_MODIFICATIONS", False)

    db.init_app(app)

    # Flask-Session declares its table on the shared metadata; a second app in
    # the same process would otherwise fail on the duplicate definition.
    if "sessions" in db.metadata.tables:
        db.metadata.remove(db.metadata.tables["sessions"])

    Session(app)

    if app.config["SESSION_TYPE"] == "sqlalchemy" and not is_production:
        with app.app_context():
            db.create_all()

    config.log_status()

    from .routes import main_bp

    app.register_blueprint(main_bp)

    return app
