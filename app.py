import logging
import logging.handlers
import os

from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from audit_log import setup_audit_file_logging
from config import Config
from database import db
from errors import MarketplaceError
from marketplace import Marketplace
from routes import api


def _setup_file_logging(app):
    log_dir = app.config.get('LOG_DIR')
    if not log_dir:
        return
    os.makedirs(log_dir, exist_ok=True)

    handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, 'app.log'),
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding='utf-8'
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s [%(name)s] %(message)s'))
    app.logger.addHandler(handler)
    logging.getLogger().addHandler(handler)
    setup_audit_file_logging(log_dir)


def _register_error_handlers(app):

    @app.errorhandler(MarketplaceError)
    def handle_marketplace_error(e):
        if e.status_code >= 500:
            app.logger.error(f"{type(e).__name__}: {e.message}")
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({'error': e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        app.logger.error(f"Unhandled error: {str(e)}", exc_info=True)
        db.session.rollback()
        return jsonify({'error': 'Internal server error'}), 500


def create_app(config_object=None, gateway=None, notifier=None):
    """
    Build the Flask application.

    ``gateway`` and ``notifier`` override the configured collaborators,
    which is how tests run without a live payment gateway.
    """
    app = Flask(__name__)
    app.config.from_object(config_object or Config)

    logging.basicConfig(level=logging.INFO)
    _setup_file_logging(app)

    # Secure CORS configuration - restrict to specific origins in production
    CORS(app,
         origins=app.config['ALLOWED_ORIGINS'],
         supports_credentials=True,
         max_age=3600)

    db.init_app(app)
    with app.app_context():
        import models  # noqa: F401 - register tables
        db.create_all()

    app.extensions['marketplace'] = Marketplace(app.config, gateway=gateway, notifier=notifier)
    app.register_blueprint(api)
    _register_error_handlers(app)

    if app.config.get('ENABLE_SCHEDULER'):
        from scheduled_jobs import init_scheduler
        init_scheduler(app)

    return app


if __name__ == '__main__':
    application = create_app()
    port = int(os.environ.get('PORT', 5000))
    application.run(host='0.0.0.0', port=port, debug=os.environ.get('FLASK_DEBUG', 'False') == 'True')
