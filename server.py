import atexit
import logging
import os

import click
from flask import Flask, jsonify
from flask_cors import CORS

from app_config import config
from auth_routes import auth_bp
from errors import register_error_handlers
from extensions import limiter
from models import db
from notifications import EmailNotifier
from payment_gateway import StripeGateway
from repair_service import RepairLifecycleManager
from reservation_service import ReservationManager
from routes import repairs_bp, properties_bp, products_bp, orders_bp, payments_bp, webhook_bp
from scheduler import init_scheduler

_startup_logger = logging.getLogger("tajer.startup")

_CRITICAL_ENV_VARS = [
    "JWT_SECRET",
    "SECRET_KEY",
    "DATABASE_URL",
]

_RECOMMENDED_ENV_VARS = [
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_CONNECT_WEBHOOK_SECRET",
    "CORS_ORIGINS",
    "APP_BASE_URL",
]


def _configure_logging(app):
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger().setLevel(level)


def _init_sentry(app):
    """Sentry error monitoring (optional -- only active when SENTRY_DSN is set)."""
    dsn = app.config.get("SENTRY_DSN")
    if not dsn:
        return
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    sentry_sdk.init(
        dsn=dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.1,
    )


def _startup_checks(config_name):
    if config_name in ("development", "testing"):
        return
    missing_critical = [v for v in _CRITICAL_ENV_VARS if not os.environ.get(v)]
    missing_recommended = [v for v in _RECOMMENDED_ENV_VARS if not os.environ.get(v)]
    if missing_critical:
        _startup_logger.critical(
            "MISSING CRITICAL ENV VARS (app may not work correctly): %s",
            ", ".join(missing_critical),
        )
    if missing_recommended:
        _startup_logger.warning(
            "Missing recommended env vars: %s",
            ", ".join(missing_recommended),
        )
    if not os.environ.get("SENTRY_DSN"):
        _startup_logger.warning("SENTRY_DSN is not set -- error monitoring is disabled.")


def _cors_origins(app, config_name):
    raw = app.config.get("CORS_ORIGINS", "")
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    if "*" in origins:
        if config_name == "production":
            _startup_logger.critical(
                "CORS_ORIGINS is set to '*' in production! Falling back to the frontend origin."
            )
            return [app.config["FRONTEND_URL"]]
        return "*"
    return origins


def create_app(config_name=None, gateway=None, notifier=None):
    """Flask application factory.

    ``gateway`` and ``notifier`` replace the Stripe gateway and the email
    notifier built from config (tests pass recording fakes).
    """
    if config_name is None:
        config_name = os.getenv("FLASK_ENV", "development")
    if config_name not in config:
        config_name = "default"

    app = Flask(__name__)
    app.config.from_object(config[config_name])

    _configure_logging(app)
    _init_sentry(app)
    _startup_checks(config_name)

    # -----------------------------------------------------------------------
    # Extensions
    # -----------------------------------------------------------------------
    db.init_app(app)
    CORS(app, resources={r"/api/*": {"origins": _cors_origins(app, config_name)}})
    limiter.init_app(app)
    register_error_handlers(app)

    # -----------------------------------------------------------------------
    # Services
    # -----------------------------------------------------------------------
    gateway = gateway or StripeGateway.from_config(app.config)
    notifier = notifier or EmailNotifier.from_config(app.config)
    app.extensions["gateway"] = gateway
    app.extensions["notifier"] = notifier
    app.extensions["repairs"] = RepairLifecycleManager.from_config(app.config, gateway, notifier)
    app.extensions["reservations"] = ReservationManager.from_config(app.config, gateway, notifier)
    if not gateway.live:
        _startup_logger.warning("STRIPE_SECRET_KEY is not set -- payments run in dev mode.")

    # -----------------------------------------------------------------------
    # Blueprints
    # -----------------------------------------------------------------------
    app.register_blueprint(auth_bp)
    app.register_blueprint(repairs_bp)
    app.register_blueprint(properties_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhook_bp)

    @app.route("/api/health", methods=["GET"])
    @limiter.exempt
    def health_check():
        """Health check endpoint (exempt from rate limiting)"""
        return jsonify({"status": "healthy", "service": "Tajer API"}), 200

    # -----------------------------------------------------------------------
    # Security headers
    # -----------------------------------------------------------------------
    @app.after_request
    def set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
        if config_name == "production":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    # -----------------------------------------------------------------------
    # Flask CLI command:  flask init-db
    # -----------------------------------------------------------------------
    @app.cli.command("init-db")
    def cli_init_db():
        """Create all database tables."""
        db.create_all()
        click.echo("Tajer tables created at {}".format(app.config["SQLALCHEMY_DATABASE_URI"]))

    if not app.config.get("TESTING"):
        with app.app_context():
            db.create_all()

    scheduler = init_scheduler(app)

    def _shutdown():
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        gateway.shutdown()

    atexit.register(_shutdown)

    return app
