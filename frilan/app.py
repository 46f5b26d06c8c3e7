import logging
import os

from flask import Flask, jsonify
from pydantic import ValidationError as PydanticValidationError
from werkzeug.exceptions import HTTPException

from shared.event_bus import EntityEventBus
from .config import config
from .errors import FrilanError, ValidationError
from .event_registry import EventRegistry
from .models import db
from .registration_manager import RegistrationManager
from .team_manager import TeamManager
from .tournament_registry import TournamentRegistry
from .user_registry import UserRegistry

logger = logging.getLogger(__name__)


def configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )
    logging.getLogger('frilan').setLevel(getattr(logging, str(level).upper(), logging.INFO))


def create_app(config_name: str = None) -> Flask:
    """Application factory for the FriLAN API."""
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])
    configure_logging(app.config['LOG_LEVEL'])

    if app.config.get('REQUIRE_JWT_SECRET') and not os.getenv('JWT_SECRET'):
        raise RuntimeError("JWT_SECRET must be set in production")

    # Initialize extensions
    db.init_app(app)

    # Create tables
    with app.app_context():
        db.create_all()

    # Initialize services, sharing one event bus
    bus = EntityEventBus()
    app.bus = bus
    app.users = UserRegistry(bus)
    app.events = EventRegistry(bus)
    app.registrations = RegistrationManager(bus, app.users, app.events)
    app.tournaments = TournamentRegistry(bus, app.events)
    app.teams = TeamManager(bus)

    register_error_handlers(app)
    register_blueprints(app)

    logger.info(f"FriLAN API ready ({config_name})")
    return app


def register_blueprints(app: Flask):
    from .routes import auth, events, registrations, subscribe, teams, tournaments, users

    for module in (auth, users, events, registrations, tournaments, teams, subscribe):
        app.register_blueprint(module.bp)

    @app.route('/health')
    def health_check():
        """Health check endpoint."""
        try:
            db.session.execute(db.text('SELECT 1'))
            db_ok = True
        except Exception:
            logger.exception("Database health check failed")
            db_ok = False

        status = 'healthy' if db_ok else 'unhealthy'
        return jsonify({
            'status': status,
            'database': 'ok' if db_ok else 'error',
            'listeners': app.bus.listener_count(),
        }), 200 if db_ok else 503


def register_error_handlers(app: Flask):

    @app.errorhandler(FrilanError)
    def handle_frilan_error(e: FrilanError):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(PydanticValidationError)
    def handle_payload_error(e: PydanticValidationError):
        error = ValidationError('; '.join(err['msg'] for err in e.errors()))
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        return jsonify({'error': e.name.replace(' ', ''), 'message': e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(e: Exception):
        logger.exception("Unhandled error")
        error = FrilanError()
        return jsonify(error.to_dict()), error.status_code
