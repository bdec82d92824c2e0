from flask import Flask, current_app
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from config import Config

from . import models  # ensure models are registered with SQLAlchemy
from .errors import Unauthorized
from .extensions import db, login_manager
from .routes import (
    activity_logs,
    alerts,
    auth,
    categories,
    dashboard,
    errors,
    health,
    locations,
    movements,
    repairs,
    reports,
    stock_items,
    subcategories,
    suppliers,
    users,
)
from .utils.logging import configure_logging


def _ensure_superuser_account(admin_email: str, admin_password: str, admin_name: str) -> None:
    """Create the bootstrap administrator when no account uses its email."""

    if not admin_email or not admin_password:
        return

    for attempt in range(3):
        try:
            user = models.User.query.filter_by(email=admin_email).first()
            if user is not None:
                return

            user = models.User(
                name=admin_name or "Administrator",
                email=admin_email,
                role=models.UserRole.ADMIN,
                status=models.ACTIVE,
            )
            user.set_password(admin_password)
            db.session.add(user)
            db.session.commit()
            current_app.logger.info("Created bootstrap administrator %s", admin_email)
            return
        except IntegrityError:
            # Another worker created it first.
            db.session.rollback()
            if attempt == 2:
                raise


def _ping_database() -> None:
    """Raise :class:`OperationalError` when the configured database is unreachable."""

    with db.engine.connect() as connection:
        connection.execute(text("SELECT 1"))


def _configure_engine_options(app: Flask) -> None:
    database_uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
    if not database_uri.startswith("sqlite"):
        return

    engine_options = app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", {})
    connect_args = engine_options.setdefault("connect_args", {})
    connect_args.setdefault("check_same_thread", False)
    # pysqlite waits this long for the database write lock before failing.
    connect_args.setdefault("timeout", float(app.config.get("LOCK_TIMEOUT_SECONDS", 5)))
    if database_uri.startswith("sqlite:///:memory:"):
        engine_options.setdefault("poolclass", StaticPool)


def create_app(config_override=None):
    app = Flask(__name__)

    # load configuration from environment variables
    app.config.from_object(Config)
    if config_override:
        app.config.update(config_override)

    app.config.setdefault("DATABASE_AVAILABLE", True)
    app.config.setdefault("DATABASE_ERROR", None)
    app.json.sort_keys = bool(app.config.get("JSON_SORT_KEYS", False))

    configure_logging(app)
    _configure_engine_options(app)

    db.init_app(app)
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id: str):
        if not user_id:
            return None
        try:
            user = db.session.get(models.User, int(user_id))
        except (TypeError, ValueError):
            return None
        except OperationalError:
            current_app.logger.warning(
                "Skipped user lookup during login_manager load because the database is unavailable."
            )
            return None
        if user is None or not user.is_active:
            return None
        return user

    @login_manager.unauthorized_handler
    def unauthorized():
        raise Unauthorized("Authentication required")

    database_available = True
    database_error_message: str | None = None

    with app.app_context():
        try:
            _ping_database()
        except OperationalError as exc:
            database_available = False
            details = str(getattr(exc, "orig", exc)).strip()
            database_error_message = (
                "Unable to connect to the configured database. Start the "
                "PostgreSQL service or update the DB_URL setting, then restart."
            )
            if details:
                database_error_message += f" (Error: {details})"
            current_app.logger.error(
                "Database connection unavailable during startup%s",
                f": {details}" if details else "",
                exc_info=current_app.debug,
            )
            db.session.remove()
            db.engine.dispose()
        else:
            try:
                db.create_all()
                _ensure_superuser_account(
                    app.config.get("ADMIN_EMAIL", ""),
                    app.config.get("ADMIN_PASSWORD", ""),
                    app.config.get("ADMIN_NAME", "Administrator"),
                )
            except SQLAlchemyError:
                database_available = False
                database_error_message = (
                    "The database schema could not be initialized. Review the logs "
                    "for details and restart once resolved."
                )
                current_app.logger.exception("Database initialization error")
                db.session.remove()

    app.config["DATABASE_AVAILABLE"] = database_available
    app.config["DATABASE_ERROR"] = database_error_message

    # register blueprints
    app.register_blueprint(errors.bp)
    app.register_blueprint(health.bp)
    app.register_blueprint(auth.bp)
    app.register_blueprint(stock_items.bp)
    app.register_blueprint(movements.bp)
    app.register_blueprint(categories.bp)
    app.register_blueprint(subcategories.bp)
    app.register_blueprint(locations.bp)
    app.register_blueprint(suppliers.bp)
    app.register_blueprint(users.bp)
    app.register_blueprint(repairs.bp)
    app.register_blueprint(activity_logs.bp)
    app.register_blueprint(dashboard.bp)
    app.register_blueprint(alerts.bp)
    app.register_blueprint(reports.bp)

    return app


def shutdown_app(app: Flask) -> None:
    """Release pooled database connections owned by ``app``."""

    with app.app_context():
        db.session.remove()
        db.engine.dispose()
