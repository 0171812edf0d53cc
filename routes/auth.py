"""Authentication routes."""

from flask import (
    Blueprint,
    flash,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from werkzeug.security import check_password_hash

from extensions import db, limiter
from models import User
from services.audit import log_action
from services.auth import get_current_user, has_permission

auth_bp = Blueprint("auth", __name__)


@auth_bp.route("/")
def home():
    user = get_current_user()
    if has_permission(user, "manage_all"):
        return redirect(url_for("dashboard.index"))
    return render_template("index.html")


@auth_bp.route("/login", methods=["GET", "POST"])
@limiter.limit("5 per minute")
def login():
    if request.method == "POST":
        email = request.form.get("email", "").strip().lower()
        password = request.form.get("password", "")
        user = User.query.filter_by(email=email).first()
        if (
            user
            and user.is_active
            and user.password_hash
            and check_password_hash(user.password_hash, password)
        ):
            session.clear()
            session["user_id"] = user.id
            session.permanent = True
            log_action("login", "user", user.id, "user logged in")
            db.session.commit()
            flash("Signed in successfully.", "success")
            if user.is_admin:
                return redirect(url_for("dashboard.index"))
            return redirect(url_for("auth.home"))
        flash("Invalid email or password.", "danger")
    return render_template("login.html")


@auth_bp.route("/logout", methods=["POST"])
def logout():
    user = get_current_user()
    if user:
        log_action("logout", "user", user.id, "user logged out")
        db.session.commit()
    session.clear()
    return redirect(url_for("auth.login"))
