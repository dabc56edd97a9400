"""
Flask application factory.

Creates and configures the Flask app, registers all blueprints.
"""
from flask import Flask, jsonify


def create_app(create_tables: bool = True):
    """Create and configure the Flask application."""
    from repopulse.logging_config import configure_logging

    app = Flask(__name__)

    configure_logging(app)

    if create_tables:
        from repopulse.database import init_db
        init_db()

    from repopulse.routes.analysis import bp as analysis_bp
    app.register_blueprint(analysis_bp)

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok'})

    return app
