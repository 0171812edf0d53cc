"""Customer and admin account routes."""

from flask import Blueprint, current_app, flash, redirect, render_template, request, url_for

from extensions import db
from services.api import handle_api_errors, success_response
from services.auth import get_current_user, role_required
from services.customers import customer_detail, delete_admin, delete_customer, list_users
from services.errors import DesklyError
from services.listing import ListState

customers_bp = Blueprint("customers", __name__)
customers_api_bp = Blueprint("customers_api", __name__, url_prefix="/api")


def _super_admin_email() -> str:
    return current_app.config["APP_CONFIG"].super_admin_email


# ---------------------------------------------------------------------------
# JSON API
# ---------------------------------------------------------------------------

@customers_api_bp.route("/customers", methods=["GET"])
@handle_api_errors
def api_list_customers():
    rows, meta = list_users(False, request.args)
    return success_response(rows, meta=meta)


@customers_api_bp.route("/customers/<customer_id>", methods=["GET"])
@handle_api_errors
def api_customer_detail(customer_id):
    return success_response(customer_detail(customer_id))


@customers_api_bp.route("/customers", methods=["DELETE"])
@handle_api_errors
def api_delete_customer():
    customer_id = request.args.get("id")
    delete_customer(customer_id)
    return success_response({"deleted": True, "id": customer_id})


@customers_api_bp.route("/admins", methods=["GET"])
@handle_api_errors
def api_list_admins():
    rows, meta = list_users(True, request.args)
    return success_response(rows, meta=meta)


@customers_api_bp.route("/admins", methods=["DELETE"])
@handle_api_errors
def api_delete_admin():
    admin_id = request.args.get("id")
    delete_admin(admin_id, get_current_user(), _super_admin_email())
    return success_response({"deleted": True, "id": admin_id})


# ---------------------------------------------------------------------------
# Admin screens
# ---------------------------------------------------------------------------

def _render_user_list(admins: bool):
    state = ListState.from_args(request.args)
    rows, meta = list_users(admins, state.to_args())
    selected = None
    open_id = request.args.get("open")
    if open_id:
        try:
            selected = customer_detail(open_id)
        except DesklyError as exc:
            flash(exc.message, "danger")
    return render_template(
        "admin/users.html",
        admins=admins,
        rows=rows,
        state=state,
        window=state.window(meta["total"]),
        selected=selected,
    )


@customers_bp.route("/admin/customers")
@role_required("manage_all")
def customer_list():
    return _render_user_list(admins=False)


@customers_bp.route("/admin/admins")
@role_required("manage_all")
def admin_list():
    return _render_user_list(admins=True)


@customers_bp.route("/admin/customers/<user_id>/delete", methods=["GET", "POST"])
@role_required("manage_all")
def delete_customer_screen(user_id):
    return _delete_screen(user_id, admins=False)


@customers_bp.route("/admin/admins/<user_id>/delete", methods=["GET", "POST"])
@role_required("manage_all")
def delete_admin_screen(user_id):
    return _delete_screen(user_id, admins=True)


def _delete_screen(user_id: str, admins: bool):
    endpoint = "customers.admin_list" if admins else "customers.customer_list"
    state = ListState.from_args(request.args)

    if request.method == "GET":
        try:
            detail = customer_detail(user_id)
        except DesklyError as exc:
            flash(exc.message, "danger")
            return redirect(url_for(endpoint, **state.to_args()))
        return render_template(
            "confirm.html",
            title="Delete admin" if admins else "Delete customer",
            message=f"Are you sure you want to delete {detail['name']} ({detail['email']})? "
                    "This cannot be undone.",
            action_url=url_for(request.endpoint, user_id=user_id, **state.to_args()),
            cancel_url=url_for(endpoint, open=user_id, **state.to_args()),
            confirm_label="Delete",
        )

    try:
        if admins:
            delete_admin(user_id, get_current_user(), _super_admin_email())
        else:
            delete_customer(user_id)
    except DesklyError as exc:
        db.session.rollback()
        flash(exc.message, "danger")
        return redirect(url_for(endpoint, open=user_id, **state.to_args()))

    flash("Admin deleted." if admins else "Customer deleted.", "success")
    return redirect(url_for(endpoint, **state.to_args()))
