import os
import atexit

from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from outbound.api import api_bp
from outbound.auth.routes import auth_bp

# database imports
from outbound.models import db

# scheduler imports
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.executors.pool import ThreadPoolExecutor
from outbound.logging_config import BatchContext, configure_logging, get_logger

logger = get_logger(__name__)


def _run_schedule_job(app):
    from outbound.pipeline import get_scheduler
    with app.app_context():
        get_scheduler().run()


def _run_dispatch_job(app):
    from outbound.pipeline import get_dispatcher
    with app.app_context():
        get_dispatcher().drain(rounds=app.config.get("DISPATCH_DRAIN_ROUNDS", 5))


def _run_sweep_job(app):
    from outbound.pipeline import get_dispatcher
    with app.app_context():
        with BatchContext("sweep"):
            get_dispatcher().reclaim_stale()


def init_scheduler(app):
    """Start the background jobs that schedule, dispatch and sweep tasks."""

    if not app.config.get("SCHEDULER_ENABLED"):
        logger.info("Background scheduler disabled")
        return None

    # --- Prevent scheduler duplication in multi-worker environments ---
    # Only run the scheduler on one instance
    if os.environ.get("WERKZEUG_RUN_MAIN") != "true" and not os.environ.get("IS_SCHEDULER_WORKER"):
        logger.info("Skipping scheduler startup on this worker")
        return None

    # --- Configure scheduler ---
    executors = {"default": ThreadPoolExecutor(3)}
    job_defaults = {"coalesce": True, "max_instances": 1}
    scheduler = BackgroundScheduler(executors=executors, job_defaults=job_defaults)

    scheduler.add_job(
        func=_run_schedule_job,
        args=[app],
        trigger="interval",
        minutes=app.config.get("SCHEDULE_INTERVAL_MINUTES", 60),
        id="schedule_notifications",
        replace_existing=True,
    )
    scheduler.add_job(
        func=_run_dispatch_job,
        args=[app],
        trigger="interval",
        minutes=app.config.get("DISPATCH_INTERVAL_MINUTES", 1),
        id="dispatch_tasks",
        replace_existing=True,
    )
    scheduler.add_job(
        func=_run_sweep_job,
        args=[app],
        trigger="interval",
        minutes=app.config.get("SWEEP_INTERVAL_MINUTES", 5),
        id="reclaim_stale_tasks",
        replace_existing=True,
    )

    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))

    logger.info("Scheduler started", jobs=[job.id for job in scheduler.get_jobs()])
    return scheduler


def create_app(config_overrides=None):
    """
    Application factory.

    Args:
        config_overrides: optional dict applied on top of the environment's
            config class before any extension is bound (used by tests)
    """
    # Import config after dotenv is loaded
    from outbound.config import get_config
    from outbound.db_config import configure_database

    config_class = get_config()

    app = Flask(__name__)
    app.config.from_object(config_class)
    if config_overrides:
        app.config.update(config_overrides)

    configure_logging(log_level=app.config.get("LOG_LEVEL", "INFO"), log_file=app.config.get("LOG_FILE"))

    # Configure database separately
    configure_database(app, app.config.get("ENV"))

    logger.info(f"Starting application in {app.config.get('ENV')} environment")
    logger.info("Database configured", dialect=app.config["SQLALCHEMY_DATABASE_URI"].split(":", 1)[0])

    # Get allowed origins from environment variable
    allowed_origins = app.config.get("CORS_ORIGINS", "*")
    if allowed_origins != "*":
        # Parse comma-separated list if provided
        allowed_origins = [origin.strip() for origin in allowed_origins.split(",")]

    CORS(app,
         resources={r"/api/*": {"origins": allowed_origins}},
         supports_credentials=True,
         allow_headers=["Content-Type", "Authorization"],
         methods=["GET", "POST", "OPTIONS"])

    db.init_app(app)

    # Built once here so request threads and scheduler jobs share one dispatcher
    from outbound.pipeline import EXTENSION_KEY, build_services
    app.extensions[EXTENSION_KEY] = build_services(app.config)

    @app.route("/health")
    def health():
        return jsonify({"status": "ok"}), 200

    # Register blueprints
    app.register_blueprint(auth_bp)
    app.register_blueprint(api_bp, url_prefix="/api")

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Return JSON for every unhandled error."""
        if isinstance(e, HTTPException):
            return jsonify({"success": False, "error": e.description}), e.code

        logger.error("Unhandled exception", error=str(e), exc_info=True)
        return jsonify({
            "success": False,
            "error": "An error occurred processing your request",
        }), 500

    # Initialize scheduler safely
    try:
        init_scheduler(app)
    except Exception as e:
        logger.error("Failed to start scheduler", error=str(e))

    return app
