import os
import logging

import click
from flask import Flask, jsonify
from flask_wtf.csrf import generate_csrf
from werkzeug.exceptions import HTTPException

from leadmarket.config import config_by_name
from leadmarket.errors import ServiceError
from leadmarket.extensions import db, migrate, login_manager, csrf, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from leadmarket import models  # noqa: F401

    # --- Register blueprints ---
    from leadmarket.blueprints.service_requests import requests_bp
    from leadmarket.blueprints.providers import providers_bp
    from leadmarket.blueprints.leads import leads_bp
    from leadmarket.blueprints.admin import admin_bp
    from leadmarket.blueprints.notifications import notifications_bp
    from leadmarket.blueprints.webhooks import webhooks_bp

    app.register_blueprint(requests_bp)
    app.register_blueprint(providers_bp)
    app.register_blueprint(leads_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(notifications_bp)
    app.register_blueprint(webhooks_bp)

    # Exempt webhooks from CSRF — raw body needed for Stripe signature verification
    csrf.exempt(webhooks_bp)

    # --- Root routes ---
    @app.route("/")
    def index():
        return jsonify(ok=True, service="leadmarket")

    @app.route("/api/csrf-token")
    def csrf_token():
        """Token for the X-CSRFToken header on session-authenticated writes."""
        return jsonify(ok=True, csrfToken=generate_csrf())

    # --- Error handlers ---
    @app.errorhandler(ServiceError)
    def service_error(e):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def http_error(e):
        codes = {
            401: "UNAUTHENTICATED",
            403: "FORBIDDEN",
            404: "NOT_FOUND",
            405: "METHOD_NOT_ALLOWED",
            429: "RATE_LIMITED",
        }
        code = codes.get(e.code, e.name.upper().replace(" ", "_"))
        return jsonify(ok=False, error=e.description, code=code), e.code

    @app.errorhandler(500)
    def server_error(e):
        return jsonify(ok=False, error="Internal server error.", code="INTERNAL_ERROR"), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON API — nothing to render, nothing to embed
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        # Strict Transport Security (only in production)
        if not app.debug and not app.testing:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-admin")
    @click.option("--email", default="admin@leadmarket.local", help="Admin email")
    @click.option("--super", "is_super", is_flag=True, help="Create a super admin")
    def seed_admin(email, is_super):
        """Create an admin user.

        Usage:
            flask seed-admin
            flask seed-admin --email admin@example.com --super
        """
        from leadmarket.models.user import User

        role = User.ROLE_SUPER_ADMIN if is_super else User.ROLE_ADMIN
        existing = User.query.filter_by(email=email).first()
        if existing:
            existing.role = role
            db.session.commit()
            click.echo(f"Admin user already exists: {email} (role set to {role})")
            return

        admin = User(email=email, full_name="Admin", role=role)
        db.session.add(admin)
        db.session.commit()
        click.echo(f"Created {role} user: {email} (id: {admin.id})")

    @app.cli.command("expire-requests")
    def expire_requests():
        """Expire PENDING/MATCHED requests older than REQUEST_EXPIRY_HOURS."""
        from leadmarket.services.scheduler_service import expire_old_requests

        count = expire_old_requests()
        click.echo(f"Expired {count} service request(s).")

    @app.cli.command("auto-approve")
    def auto_approve():
        """Approve unreviewed COMPLETED requests older than AUTO_APPROVE_HOURS."""
        from leadmarket.services.scheduler_service import auto_approve_completed_services

        count = auto_approve_completed_services()
        click.echo(f"Auto-approved {count} service request(s).")

    @app.cli.command("run-scheduler")
    def run_scheduler():
        """Run both sweeps on their intervals until interrupted.

        Usage (as its own process, one per deployment):
            flask run-scheduler
        """
        from leadmarket.services.scheduler_service import SweepScheduler

        scheduler = SweepScheduler(app)
        click.echo(
            f"Sweeps every {app.config['EXPIRY_SWEEP_SECONDS']}s (expiry) and "
            f"{app.config['AUTO_APPROVE_SWEEP_SECONDS']}s (auto-approve). Ctrl+C to stop."
        )
        scheduler.start()
        try:
            scheduler.wait()
        except KeyboardInterrupt:
            click.echo("Stopping scheduler...")
        finally:
            scheduler.stop()
