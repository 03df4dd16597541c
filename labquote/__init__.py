import os
import logging
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from .config import Config

db = SQLAlchemy()


def create_app(config_object=None):
    """Flask application factory for the quote coordination service."""
    from flask import g, session
    from labquote.errors import QuoteError
    from labquote.models.user import User

    def load_current_user():
        user_id = session.get("user_id")
        if not user_id:
            g.current_user = None
            return

        user = db.session.get(User, user_id)
        if not user or not getattr(user, "is_active", True):
            session.clear()
            g.current_user = None
        else:
            g.current_user = user

    # logging
    debug_mode = os.environ.get("FLASK_DEBUG", "0") == "1"
    logging.basicConfig(
        level=logging.DEBUG if debug_mode else logging.INFO,
        format='[%(asctime)s] %(levelname)s in %(module)s: %(message)s',
    )

    app = Flask(__name__)
    app.config.from_object(config_object or Config)
    app.logger.setLevel(logging.DEBUG if debug_mode else logging.INFO)
    app.logger.info("[DB] Using database uri: %s", app.config["SQLALCHEMY_DATABASE_URI"])

    @app.errorhandler(QuoteError)
    def quote_error(e):
        if e.status_code >= 500:
            app.logger.error("[ERROR] %s: %s", e.code, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(401)
    def unauthorized(e):
        return jsonify({"error": "unauthorized", "message": "login required"}), 401

    @app.errorhandler(403)
    def forbidden(e):
        return jsonify({"error": "forbidden", "message": "forbidden"}), 403

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "not_found", "message": "not found"}), 404

    @app.errorhandler(500)
    def internal_error(e):
        return jsonify({"error": "internal_error", "message": "internal server error"}), 500

    app.before_request(load_current_user)

    db.init_app(app)

    with app.app_context():
        from labquote import models  # noqa: F401  registers every table
        db.create_all()

    # outbound collaborators (tests replace these entries)
    from labquote.services.carrier import build_carrier_client
    from labquote.services.notifications import build_mailer

    app.extensions["labquote.carrier"] = build_carrier_client(app.config)
    app.extensions["labquote.mailer"] = build_mailer(app.config)

    # Blueprints
    from labquote.routes.main import main_bp
    from labquote.routes.auth import auth_bp
    from labquote.routes.quote import quote_bp
    from labquote.routes.tracking import tracking_bp
    from labquote.routes.payment_method import payment_method_bp
    from labquote.routes.email_template import template_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(quote_bp)
    app.register_blueprint(tracking_bp)
    app.register_blueprint(payment_method_bp)
    app.register_blueprint(template_bp)

    from labquote.cli import register_commands
    register_commands(app)

    def log_routes():
        app.logger.debug("[Flask routes] URL map:")
        for rule in app.url_map.iter_rules():
            app.logger.debug("%s %s -> %s", ",".join(sorted(rule.methods)), rule.rule, rule.endpoint)

    with app.app_context():
        log_routes()

    app.logger.info("[BOOT] create_app completed")
    return app
