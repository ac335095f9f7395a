"""
Remedara FHIR linking service
Flask application factory
"""
from flask_login import LoginManager
from flask_wtf.csrf import CSRFProtect
from flask_migrate import Migrate
import os
import logging
import click
from flask import Flask, jsonify, redirect, request
from flask.cli import AppGroup
from flask_sqlalchemy import SQLAlchemy
from werkzeug.middleware.proxy_fix import ProxyFix

# Root logging for web and CLI processes
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Extensions are bound to the app in create_app
db = SQLAlchemy()
login_manager = LoginManager()
csrf = CSRFProtect()
migrate = Migrate()


def create_app(config_name=None):
    """Create and configure Flask application"""
    from config.settings import config

    config_name = config_name or os.environ.get('FLASK_ENV', 'development')
    app = Flask(__name__)
    app.config.from_object(config.get(config_name, config['default']))

    # redirect_uri and callback URLs are built from forwarded headers
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    # Refuse to start without a usable ENCRYPTION_KEY and client id
    from utils.secrets_validator import validate_secrets_on_startup, SecretsValidationError

    try:
        validate_secrets_on_startup(config_name)
    except SecretsValidationError as e:
        logger.error(f"Secrets validation failed: {e}")
        raise

    # Bind extensions
    db.init_app(app)
    login_manager.init_app(app)
    csrf.init_app(app)
    migrate.init_app(app, db)

    @login_manager.user_loader
    def load_user(user_id):
        from models import User
        user = db.session.get(User, int(user_id))
        if user and user.is_active_user:
            return user
        return None

    @login_manager.unauthorized_handler
    def unauthorized():
        if request.path.startswith('/api/'):
            return jsonify({'error': 'Unauthorized'}), 401
        return redirect(f"{app.config['LOGIN_URL']}?next={request.path}")

    register_blueprints(app)
    register_error_handlers(app)
    register_cli(app)

    with app.app_context():
        import models  # noqa: F401
        db.create_all()
        logger.info(f"Database ready ({config_name})")

    return app


def register_blueprints(app):
    """Register all blueprints"""
    from routes import init_routes

    init_routes(app, csrf)


def register_error_handlers(app):
    """Register JSON error handlers"""
    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({'error': 'Bad request'}), 400

    @app.errorhandler(401)
    def unauthorized(error):
        return jsonify({'error': 'Unauthorized'}), 401

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'error': 'Not found'}), 404

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        return jsonify({'error': 'Internal server error'}), 500


def register_cli(app):
    """Register maintenance commands under `flask fhir ...`"""
    fhir_cli = AppGroup('fhir', help='Provider linking and sync maintenance')

    @fhir_cli.command('purge-sessions')
    def purge_sessions():
        """Delete expired or consumed provider linking sessions"""
        from services.linking_session_cleanup import LinkingSessionCleanupService

        result = LinkingSessionCleanupService.purge_stale_sessions()
        click.echo(f"Deleted {result['deleted']} linking sessions ({result['remaining']} pending)")

    @fhir_cli.command('sync-user')
    @click.argument('user_id', type=int)
    @click.option('--incremental', is_flag=True, help='Only fetch resources updated since the last sync')
    def sync_user(user_id, incremental):
        """Synchronously sync every active provider of a user"""
        from emr.exceptions import NoLinkedProvidersError
        from services.fhir_sync_service import fhir_sync_service

        try:
            result = fhir_sync_service.sync_user_providers(user_id, incremental=incremental)
        except NoLinkedProvidersError as e:
            raise click.ClickException(e.message)
        summary = result['summary']
        click.echo(f"Synced {summary['totalRecordsSynced']} records from {summary['providersProcessed']} "
                   f"providers with {summary['totalErrors']} errors")

    app.cli.add_command(fhir_cli)
