# backend/marketcore/__init__.py
from flask import Flask, jsonify, request
from werkzeug.middleware.proxy_fix import ProxyFix

from .config import Config
from .extensions import db, migrate
from .validation import MarketError



def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    # Client addresses (audit trail, webhook allowlist, rate limits) come
    # from remote_addr; only configured proxy hops are unwrapped.
    proxy_count = app.config.get("TRUSTED_PROXY_COUNT", 0)
    if proxy_count:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=proxy_count, x_proto=proxy_count)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.cart import cart_bp
    from .routes.checkout import checkout_bp
    from .routes.orders import orders_bp
    from .routes.payments import payments_bp
    from .routes.subscriptions import subscriptions_bp
    from .routes.plans import plans_bp
    from .routes.inventory import inventory_bp
    from .routes.admin import admin_bp
    from .routes.cron import cron_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(cart_bp)
    app.register_blueprint(checkout_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(subscriptions_bp)
    app.register_blueprint(plans_bp)
    app.register_blueprint(inventory_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(cron_bp)

    @app.errorhandler(MarketError)
    def handle_market_error(exc: MarketError):
        return jsonify(exc.to_dict()), exc.status_code

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-User-Id, X-User-Email, X-User-Name, Idempotency-Key"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
