"""
Merchandising Operations Platform: projection reconciliation engine.

    from merchops import create_app
    app = create_app()           # APP_ENV, else "development"
    app = create_app("testing")
"""

import logging
import os

import click
from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as sa_engine
from sqlalchemy import event as sa_event

from merchops.config import config
from merchops.models import db
from merchops.middleware.logging_config import configure_logging
from merchops.middleware.rate_limiter import init_rate_limits
from merchops.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

APP_NAME = "Merchandising Operations Platform"

migrate = Migrate()
# Limits are attached per route; nothing global.
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


@sa_event.listens_for(sa_engine.Engine, "connect")
def _sqlite_foreign_keys(dbapi_conn, connection_record):
    """SQLite ignores FOREIGN KEY clauses unless asked per connection."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_app(config_name=None):
    """Build the Flask app for *config_name* (development, testing or production)."""
    config_name = config_name or os.getenv("APP_ENV", "development")
    settings = config[config_name]

    app = Flask(__name__, instance_relative_config=True)
    # Production validates its environment on instantiation.
    app.config.from_object(settings() if config_name == "production" else settings)

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    origins = [o.strip() for o in app.config.get("CORS_ORIGINS", "*").split(",") if o.strip()]
    CORS(app, origins=origins if origins and origins != ["*"] else "*")

    init_request_timing(app)
    _register_request_guards(app)
    _create_tables(app)
    _register_blueprints(app)
    _register_cli(app)
    _register_http_errors(app)

    # Needs the blueprints in place.
    init_rate_limits(app, limiter)
    return app


def _register_request_guards(app):
    @app.before_request
    def _guard_request():
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and (request.content_length or 0) > max_len:
            abort(413, description="Request body too large")
        writes_json_api = request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/")
        if writes_json_api and request.data and "json" not in (request.content_type or ""):
            abort(415, description="Content-Type must be application/json")


def _create_tables(app):
    # Mapped classes must be imported before create_all sees them.
    from merchops.models import audit, projection, purchasing  # noqa: F401

    with app.app_context():
        try:
            db.create_all()
        except Exception as exc:
            app.logger.warning("Schema bootstrap skipped: %s", exc)


def _register_blueprints(app):
    from merchops.blueprints.expired_projection_bp import expired_projection_bp
    from merchops.blueprints.health_bp import health_bp
    from merchops.blueprints.projection_bp import projection_bp

    for blueprint in (projection_bp, expired_projection_bp, health_bp):
        app.register_blueprint(blueprint)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": APP_NAME}


def _register_cli(app):
    @app.cli.command("check-expired-projections")
    @click.option("--as-of", "as_of", default=None, help="Scan as of this date (YYYY-MM-DD).")
    def check_expired_projections_cmd(as_of):
        """Snapshot open projections whose order window has closed (cron entry point)."""
        from merchops.services.expiration_scanner import check_expired_projections
        from merchops.utils.helpers import parse_date

        today = parse_date(as_of) if as_of else None
        if as_of and today is None:
            raise click.BadParameter("expected YYYY-MM-DD", param_hint="--as-of")
        result = check_expired_projections(today=today)
        click.echo(
            f"Expired {result['expiredCount']} projections "
            f"({result['regularExpired']} regular, {result['spoExpired']} mto/spo), "
            f"{len(result['errors'])} errors"
        )
        for message in result["errors"]:
            click.echo(f"  ! {message}", err=True)


def _register_http_errors(app):
    """JSON bodies for errors raised outside the blueprints' domain handlers."""

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed", "path": request.path}, 405

    @app.errorhandler(413)
    @app.errorhandler(415)
    def rejected_body(e):
        return {"error": e.description}, e.code

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("Unhandled error on %s %s", request.method, request.path, exc_info=True)
        return {"error": "Internal server error"}, 500
