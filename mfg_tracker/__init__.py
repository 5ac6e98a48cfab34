from flask import Flask, jsonify, send_from_directory
from flask_cors import CORS

from mfg_tracker.logging_config import configure_logging, get_logger
from mfg_tracker.models import db

logger = get_logger(__name__)


def create_app(config_overrides=None):
    # Import config after dotenv is loaded
    from mfg_tracker.api import api_bp
    from mfg_tracker.api.helpers import register_error_handlers
    from mfg_tracker.config import get_config
    from mfg_tracker.db_config import configure_database
    from mfg_tracker.storage import get_blob_store, init_blob_store
    # Registers the built-in trigger table entries
    from mfg_tracker.workorders import side_effects  # noqa: F401

    # Get the appropriate config class based on environment
    config_class = get_config()

    app = Flask(__name__)
    app.config.from_object(config_class)
    if config_overrides:
        app.config.update(config_overrides)

    configure_logging(log_level=app.config["LOG_LEVEL"], log_file=app.config.get("LOG_FILE"))

    # Configure database separately; must happen before db.init_app
    configure_database(app, config_overrides)

    # Log the environment being used
    logger.info("Starting application", environment=config_class.ENV)
    logger.info("Database configured", uri=app.config.get("SQLALCHEMY_DATABASE_URI", "Not set")[:50])

    # Get allowed origins from environment variable
    allowed_origins = app.config.get("CORS_ORIGINS", "*")
    if allowed_origins != "*":
        # Parse comma-separated list if provided
        allowed_origins = [origin.strip() for origin in allowed_origins.split(",")]

    CORS(app,
         resources={r"/*": {"origins": allowed_origins}},
         allow_headers=["Content-Type", "Authorization"],
         methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"])

    db.init_app(app)
    init_blob_store(app)
    register_error_handlers(app)
    app.register_blueprint(api_bp)

    @app.route("/")
    def index():
        return jsonify({"status": "ok", "service": "mfg_tracker"}), 200

    @app.route("/api/uploads/<path:handle>")
    def serve_upload(handle):
        """Public blob URL returned in attachment and document records."""
        return send_from_directory(get_blob_store().root, handle)

    @app.cli.command("init-db")
    def init_db():
        """Create all tables."""
        db.create_all()
        logger.info("Database tables created")

    return app
