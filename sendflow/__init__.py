"""
SendFlow App - Campaign workflow execution engine
"""
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from dotenv import load_dotenv
import logging

db = SQLAlchemy()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(config_name='default', **overrides):
    app = Flask(__name__)
    load_dotenv()  # Load .env file

    from sendflow.config import config
    app.config.from_object(config[config_name])
    app.config.update(overrides)

    db.init_app(app)

    with app.app_context():
        # Import models so the tables are registered on the metadata
        from sendflow import models  # noqa: F401

        blueprints = [
            ('workflow_controller', 'workflow_bp', 'Workflows'),
            ('tracking_controller', 'tracking_bp', 'Tracking'),
        ]

        for module, bp_name, label in blueprints:
            mod = __import__(f'sendflow.controllers.{module}', fromlist=[bp_name])
            app.register_blueprint(getattr(mod, bp_name))
            logger.debug(f"Registered blueprint: {label}")

        if app.config.get('AUTO_CREATE_TABLES'):
            db.create_all()

    register_error_handlers(app)

    return app


def register_error_handlers(app):
    from sendflow.exceptions import (
        SendFlowError, WorkflowValidationError, ConfigError,
        NotFoundError, EnrollmentError
    )

    @app.errorhandler(WorkflowValidationError)
    def handle_validation_error(e):
        return jsonify({
            'success': False,
            'error': str(e),
            'errors': [err.to_dict() for err in e.errors]
        }), 400

    @app.errorhandler(ConfigError)
    def handle_config_error(e):
        return jsonify({'success': False, 'error': str(e)}), 400

    @app.errorhandler(NotFoundError)
    def handle_not_found(e):
        return jsonify({'success': False, 'error': str(e)}), 404

    @app.errorhandler(EnrollmentError)
    def handle_enrollment_error(e):
        return jsonify({'success': False, 'error': str(e)}), 409

    @app.errorhandler(SendFlowError)
    def handle_sendflow_error(e):
        logger.error(f"Unhandled workflow error: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500
