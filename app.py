# app.py

import logging
import os

from dotenv import load_dotenv
from flask import Flask, Response, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

# Load environment variables from .env file first
load_dotenv()

# Module imports after load_dotenv() - E402 is intentional
from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from config.monitoring import (  # noqa: E402
    DevelopmentMonitoringConfig,
    ProductionMonitoringConfig,
    TestingMonitoringConfig,
)
from config.validation import validate_and_exit  # noqa: E402
from crm_app.importer import init_importer  # noqa: E402
from crm_app.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)


def _load_config(app: Flask, flask_env: str) -> None:
    if flask_env == "production":
        app.config.from_object(ProductionConfig)
        app.config.from_object(ProductionMonitoringConfig)
    elif flask_env == "testing":
        app.config.from_object(TestingConfig)
        app.config.from_object(TestingMonitoringConfig)
    else:
        app.config.from_object(DevelopmentConfig)
        app.config.from_object(DevelopmentMonitoringConfig)


def create_app(overrides=None) -> Flask:
    """
    Build the Flask application for the configured ``FLASK_ENV``.

    ``overrides`` are applied after the environment classes and before the
    importer extension initialises.
    """
    flask_env = os.environ.get("FLASK_ENV", "development")

    # Validate environment variables (only in production)
    if flask_env == "production":
        validate_and_exit(flask_env)

    flask_app = Flask(__name__)
    _load_config(flask_app, flask_env)
    if overrides:
        flask_app.config.update(overrides)

    setup_logging(flask_app)
    init_importer(flask_app)

    metrics_endpoint = flask_app.config.get("METRICS_ENDPOINT", "/metrics")

    @flask_app.get(metrics_endpoint)
    def prometheus_metrics():
        return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)

    @flask_app.errorhandler(404)
    def not_found_error(error):
        return jsonify({"error": "Not found."}), 404

    @flask_app.errorhandler(413)
    def payload_too_large(error):
        return jsonify({"error": "Upload exceeds maximum size limit."}), 413

    @flask_app.errorhandler(500)
    def internal_error(error):
        flask_app.logger.error("Unhandled server error: %s", error)
        return jsonify({"error": "Internal server error."}), 500

    return flask_app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
