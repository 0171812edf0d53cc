"""Application factory, clean entry point for the Flask application."""

from __future__ import annotations

import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import (
    Flask,
    flash,
    g,
    redirect,
    render_template,
    request,
    send_from_directory,
    session,
    url_for,
)
from sqlalchemy import event

from cli import register_cli
from config import enable_sqlite_fks, load_config
from extensions import csrf, db, limiter
from models import ROLE_PERMISSIONS, User
from routes import register_blueprints
from services.api import error_response
from services.auth import ensure_admin_user, gate_decision

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _is_api_request() -> bool:
    return request.path.startswith("/api/")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app():
    """Create and configure the Flask application."""
    app_cfg, billing_cfg, media_cfg, db_uri = load_config()

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.secret_key = app_cfg.secret_key
    app.config["APP_CONFIG"] = app_cfg
    app.config["BILLING_CONFIG"] = billing_cfg
    app.config["MEDIA_CONFIG"] = media_cfg
    # Max video size plus multipart overhead
    app.config["MAX_CONTENT_LENGTH"] = media_cfg.video_max_bytes + 1024 * 1024

    # Session security
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["SESSION_COOKIE_SECURE"] = (
        os.environ.get("FLASK_ENV", "") != "development"
    )
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)

    # Initialize extensions
    csrf.init_app(app)
    limiter.init_app(app)
    db.init_app(app)

    # SQLite foreign key enforcement
    if "sqlite" in db_uri:
        with app.app_context():
            event.listen(db.engine, "connect", enable_sqlite_fks)

    with app.app_context():
        db.create_all()
        ensure_admin_user(app_cfg.admin_email)

    register_blueprints(app)
    register_cli(app)

    logger.info(
        "Deskly admin ready (billing provider=%s, media backend=%s)",
        billing_cfg.provider,
        media_cfg.backend,
    )

    # ------------------------------------------------------------------
    # Request hooks
    # ------------------------------------------------------------------

    @app.before_request
    def load_current_user():
        """Set ``g.current_user`` from the session."""
        g.current_user = None
        user_id = session.get("user_id")
        if user_id:
            user = db.session.get(User, user_id)
            if user and user.is_active:
                g.current_user = user
            else:
                session.clear()

    @app.before_request
    def enforce_admin_gate():
        """Admin-only boundary for ``/admin`` and ``/api``."""
        decision = gate_decision(request.path, g.current_user)
        if decision is None:
            return None
        if decision == "login":
            if _is_api_request():
                return error_response("Unauthorized", 401)
            return redirect(url_for("auth.login"))
        if _is_api_request():
            return error_response("Forbidden", 403)
        flash("You do not have permission to access the admin console.", "danger")
        return redirect(url_for("auth.home"))

    @app.context_processor
    def inject_globals():
        """Inject common variables into every template."""
        user = getattr(g, "current_user", None)
        return {
            "app_config": app_cfg,
            "site_name": app_cfg.name,
            "current_user": user,
            "user_permissions": ROLE_PERMISSIONS.get(user.role, set()) if user else set(),
        }

    # ------------------------------------------------------------------
    # Media served from local storage
    # ------------------------------------------------------------------

    @app.route("/media/<path:filename>")
    def media(filename):
        return send_from_directory(os.path.abspath(media_cfg.root), filename)

    # ------------------------------------------------------------------
    # Security headers
    # ------------------------------------------------------------------

    @app.after_request
    def set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "0"
        response.headers["Referrer-Policy"] = (
            "strict-origin-when-cross-origin"
        )
        response.headers["Permissions-Policy"] = (
            "geolocation=(), camera=(), microphone=()"
        )
        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; "
            "script-src 'self'; "
            "style-src 'self' 'unsafe-inline'; "
            "img-src 'self' data: https:; "
            "media-src 'self' https:; "
            "connect-src 'self'; "
            "frame-ancestors 'none'"
        )
        if os.environ.get("FLASK_ENV") == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------

    @app.errorhandler(404)
    def not_found(_error):
        if _is_api_request():
            return error_response("Not found", 404)
        return (
            render_template("error.html", code=404, message="Page not found."),
            404,
        )

    @app.errorhandler(413)
    def too_large(_error):
        if _is_api_request():
            return error_response("Upload is too large", 413)
        return (
            render_template("error.html", code=413, message="Upload is too large."),
            413,
        )

    @app.errorhandler(500)
    def server_error(_error):
        if _is_api_request():
            return error_response("Internal server error", 500)
        return (
            render_template("error.html", code=500, message="Internal server error."),
            500,
        )

    @app.errorhandler(429)
    def ratelimit_handler(_error):
        if _is_api_request():
            return error_response("Too many requests", 429)
        flash("Too many attempts. Please try again later.", "danger")
        return render_template("login.html"), 429

    return app


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app = create_app()
    debug_mode = os.environ.get("FLASK_DEBUG", "false").lower() in (
        "true",
        "1",
        "yes",
    )
    host = os.environ.get("FLASK_HOST", "127.0.0.1")
    port = int(os.environ.get("FLASK_PORT", 5000))
    logger.info("Starting application on %s:%s (debug=%s)", host, port, debug_mode)
    app.run(host=host, port=port, debug=debug_mode)
