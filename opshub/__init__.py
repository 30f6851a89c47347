import click
from flask import Flask, current_app, request
from flask_login import current_user
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from config import Config

from . import models  # ensure models are registered with SQLAlchemy
from .audit import record_access_event, resolve_client_ip
from .errors import AuthenticationError
from .extensions import db, login_manager
from .health import HealthChecker
from .permissions import ROLE_DESCRIPTIONS
from .routes import (
    admin,
    auth,
    collections,
    design_boards,
    errors,
    health as health_routes,
    manufacturers,
    orders,
    portal,
    production,
)
from .security import apply_security_headers
from .services.presence import prune_stale_presence
from .services.rate_limit import apply_rate_limit_headers
from .services.scheduler import initialize_presence_scheduler
from .utils.logging import assign_request_id, configure_logging, get_request_id


def _ensure_core_roles() -> None:
    """Make sure the built-in RBAC roles exist for assignment."""

    existing_roles = {
        role.name: role
        for role in models.Role.query.filter(models.Role.name.in_(ROLE_DESCRIPTIONS)).all()
    }

    changed = False
    for role_name, description in ROLE_DESCRIPTIONS.items():
        role = existing_roles.get(role_name)
        if role is None:
            db.session.add(models.Role(name=role_name, description=description))
            changed = True
        elif role.description != description:
            role.description = description
            changed = True

    if changed:
        db.session.commit()


def _ensure_superuser_account(admin_username: str, admin_password: str, admin_email: str) -> None:
    """Create or update the configured superuser account."""

    if not admin_username:
        return

    for attempt in range(3):
        try:
            super_role = models.Role.query.filter_by(name="super_admin").first()
            if super_role is None:
                super_role = models.Role(
                    name="super_admin", description=ROLE_DESCRIPTIONS["super_admin"]
                )
                db.session.add(super_role)

            user = models.User.query.filter_by(username=admin_username).first()
            if user is None:
                user = models.User(username=admin_username, user_type="Super Admin")
                db.session.add(user)

            if admin_password:
                user.set_password(admin_password)
            if admin_email and not user.email:
                user.email = admin_email

            if super_role not in user.roles:
                user.roles.append(super_role)

            db.session.commit()
            return
        except IntegrityError:
            db.session.rollback()
            if attempt == 2:
                raise


def _ping_database() -> None:
    """Raise :class:`OperationalError` when the configured database is unreachable."""

    with db.engine.connect() as connection:
        connection.execute(text("SELECT 1"))


def create_app(config_override=None):
    app = Flask(__name__)

    app.config.from_object(Config)
    if config_override:
        app.config.update(config_override)

    app.config.setdefault("DATABASE_AVAILABLE", True)
    app.config.setdefault("DATABASE_ERROR", None)

    database_uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
    if database_uri.startswith("sqlite:///:memory:"):
        engine_options = app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", {})
        connect_args = engine_options.setdefault("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        engine_options.setdefault("poolclass", StaticPool)

    configure_logging(app)
    app.extensions["opshub_health"] = HealthChecker(app.config)

    db.init_app(app)
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id: str):
        if not user_id:
            return None
        try:
            return db.session.get(models.User, int(user_id))
        except (TypeError, ValueError):
            return None
        except OperationalError:
            current_app.logger.warning(
                "Skipped user lookup during login because the database is unavailable."
            )
            return None

    @login_manager.unauthorized_handler
    def unauthorized():
        raise AuthenticationError()

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
                "PostgreSQL service or update the DB_URL setting, then restart "
                "the service."
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
                _ensure_core_roles()
                _ensure_superuser_account(
                    app.config.get("ADMIN_USER", "superuser"),
                    app.config.get("ADMIN_PASSWORD", ""),
                    app.config.get("ADMIN_EMAIL", ""),
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

    if database_available and not app.config.get("TESTING"):
        initialize_presence_scheduler(app)

    app.register_blueprint(errors.bp)
    app.register_blueprint(auth.bp)
    app.register_blueprint(orders.bp)
    app.register_blueprint(production.bp)
    app.register_blueprint(collections.bp)
    app.register_blueprint(manufacturers.bp)
    app.register_blueprint(portal.bp)
    app.register_blueprint(admin.bp)
    app.register_blueprint(design_boards.bp)
    app.register_blueprint(health_routes.bp)

    @app.before_request
    def _assign_request_id():
        assign_request_id()

    def _should_log_request() -> bool:
        if not request.endpoint:
            return False
        if request.method == "OPTIONS":
            return False
        if request.endpoint.startswith("static"):
            return False
        # event streams stay open until the client disconnects
        if request.endpoint == "design_boards.board_events":
            return False
        return True

    @app.after_request
    def _record_request_log(response):
        if _should_log_request():
            path = request.full_path or request.path
            if path.endswith("?"):
                path = path[:-1]

            user_id = None
            username = None
            if current_user.is_authenticated:
                user_id = current_user.id
                username = current_user.username

            record_access_event(
                event_type=models.AccessLog.EVENT_REQUEST,
                user_id=user_id,
                username=username,
                ip_address=resolve_client_ip(),
                user_agent=request.user_agent.string if request.user_agent else None,
                method=request.method,
                path=path,
                endpoint=request.endpoint,
                status_code=response.status_code,
            )

        return response

    @app.after_request
    def _finalize_headers(response):
        apply_security_headers(response)
        apply_rate_limit_headers(response)
        request_id = get_request_id()
        if request_id:
            response.headers["X-Request-ID"] = request_id
        return response

    @app.cli.command("prune-presence")
    @click.option(
        "--max-age",
        type=int,
        default=None,
        help="Seconds since last activity before a presence row is deactivated.",
    )
    def prune_presence_command(max_age):
        """Deactivate design board presence rows that went stale."""

        count = prune_stale_presence(max_age)
        click.echo(f"Deactivated {count} stale presence row(s).")

    return app
