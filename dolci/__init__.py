import os

from flask import Flask, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from dolci.config import Config
from dolci.errors import EscrowError
from dolci.extensions import db, migrate, cors
from dolci import models  # noqa: F401  registers tables on db.metadata
from dolci.segments.segment_bookings import bookings_bp
from dolci.segments.segment_payments import payments_bp
from dolci.segments.segment_payment_webhooks import webhooks_bp
from dolci.segments.segment_wallets import wallets_bp
from dolci.segments.segment_reconciliation_admin import recon_bp


def create_app(overrides: dict | None = None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    env = (app.config.get("ENV") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (app.config.get("SECRET_KEY") or "").strip()
        if not secret or secret == "dev-secret" or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")
        if not (app.config.get("GATEWAY_SECRET") or "").strip():
            raise RuntimeError("GATEWAY_SECRET must be set in production")

    # Ensure instance dir exists for SQLite paths
    os.makedirs(Config.INSTANCE_DIR, exist_ok=True)

    # CORS configuration
    cors_origins = (app.config.get("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db)

    @app.errorhandler(EscrowError)
    def _escrow_error(e: EscrowError):
        if e.http_status >= 500:
            app.logger.error("%s: %s", e.code, e.message)
        return jsonify(e.to_dict()), e.http_status

    # Register API routes
    app.register_blueprint(bookings_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(wallets_bp)
    app.register_blueprint(recon_bp)

    # Health check
    @app.get("/api/health")
    def health():
        db_state = "ok"
        try:
            db.session.execute(text("SELECT 1"))
        except SQLAlchemyError:
            db_state = "fail"
        return jsonify({
            "ok": True,
            "service": "dolci-escrow",
            "env": env,
            "db": db_state,
        })

    return app
