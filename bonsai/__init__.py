"""
Flask application factory.

Creates and configures the Flask application with all blueprints and extensions.
"""
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from bonsai.config import settings
from bonsai.errors import WidgetError
from bonsai.models.base import init_db


def create_app(config_override: dict = None) -> Flask:
    """
    Create and configure the Flask application.

    Args:
        config_override: Optional dictionary to override settings

    Returns:
        Configured Flask application instance

    Usage:
        app = create_app()
        app.run()
    """
    app = Flask(__name__)

    # Configure Flask
    app.config['SECRET_KEY'] = settings.secret_key
    app.config['DEBUG'] = settings.debug

    # Apply any config overrides (useful for testing)
    if config_override:
        app.config.update(config_override)

    # Initialize database
    try:
        init_db(settings.get_database_url())
        app.logger.info("Database initialized successfully")
    except Exception as e:
        app.logger.warning("Could not initialize database: %s", e)
        app.logger.warning("The application will start but database operations will fail.")

    # Register blueprints
    from bonsai.api import health_bp, widget_bp, admin_bp
    app.register_blueprint(health_bp)
    app.register_blueprint(widget_bp)
    app.register_blueprint(admin_bp)

    # Register error handlers
    register_error_handlers(app)

    # Widgets run on third-party pages; routes that echo a specific origin set their own headers
    @app.after_request
    def after_request(response):
        response.headers.setdefault('Access-Control-Allow-Origin', '*')
        response.headers.setdefault('Access-Control-Allow-Headers', 'Content-Type,X-API-Key')
        response.headers.setdefault('Access-Control-Allow-Methods', 'GET,POST,PUT,PATCH,DELETE,OPTIONS')
        return response

    @app.route('/')
    def index():
        """Root endpoint with API information."""
        return jsonify({
            'name': 'Bonsai Widget API',
            'version': '1.0.0',
            'description': 'Branching video widget runtime and operator API',
            'endpoints': {
                'health': '/health',
                'ping': '/ping',
                'widget_init': '/widget/init',
                'widget_navigate': '/widget/navigate',
                'widget_resolve': '/widget/resolve',
                'widget_events': '/widget/events',
                'widget_config': '/widget/config/<project_id>',
                'admin': '/api/v1/admin',
            },
        })

    return app


def register_error_handlers(app: Flask) -> None:
    """
    Register global error handlers.

    Args:
        app: Flask application instance
    """

    @app.errorhandler(WidgetError)
    def handle_widget_error(e):
        """Handle errors raised by the widget services."""
        if e.status_code >= 500:
            app.logger.error("Widget request failed: %s", e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        """Handle HTTP exceptions."""
        return jsonify({
            'error': e.name,
            'message': e.description,
            'status_code': e.code
        }), e.code

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Handle unexpected exceptions."""
        app.logger.error(f"Unhandled exception: {str(e)}", exc_info=True)

        # Don't reveal internal errors in production
        if settings.is_production:
            return jsonify({
                'error': 'Internal server error',
                'message': 'An unexpected error occurred'
            }), 500
        else:
            return jsonify({
                'error': 'Internal server error',
                'message': str(e),
                'type': type(e).__name__
            }), 500

    @app.errorhandler(404)
    def handle_not_found(e):
        """Handle 404 errors."""
        return jsonify({
            'error': 'Not found',
            'message': 'The requested resource was not found'
        }), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(e):
        """Handle 405 errors."""
        return jsonify({
            'error': 'Method not allowed',
            'message': 'The method is not allowed for the requested URL'
        }), 405
