"""Dashboard routes."""

from flask import Blueprint, render_template

from services.api import handle_api_errors, success_response
from services.auth import role_required
from services.dashboard import dashboard_stats

dashboard_bp = Blueprint("dashboard", __name__)
dashboard_api_bp = Blueprint("dashboard_api", __name__, url_prefix="/api/admin")


@dashboard_bp.route("/admin")
@role_required("manage_all")
def index():
    return render_template("admin/dashboard.html", stats=dashboard_stats())


@dashboard_api_bp.route("/dashboard")
@handle_api_errors
def stats():
    return success_response(dashboard_stats())
