"""Delivery-order routes."""

from flask import Blueprint, flash, redirect, render_template, request, url_for

from extensions import db
from services import delivery_status
from services.api import handle_api_errors, json_body, success_response
from services.auth import role_required
from services.delivery_orders import (
    DELIVERY_ORDER_SORT_COLUMNS,
    delivery_order_detail,
    get_delivery_order_or_404,
    list_delivery_orders,
    update_delivery_order_status,
)
from services.errors import DesklyError
from services.listing import ListState

delivery_orders_bp = Blueprint("delivery_orders", __name__)
delivery_orders_api_bp = Blueprint("delivery_orders_api", __name__, url_prefix="/api/admin")


@delivery_orders_api_bp.route("/delivery-orders", methods=["GET"])
@handle_api_errors
def api_list():
    rows, meta = list_delivery_orders(request.args)
    return success_response(rows, meta=meta)


@delivery_orders_api_bp.route("/delivery-orders/<order_id>", methods=["GET"])
@handle_api_errors
def api_detail(order_id):
    return success_response(delivery_order_detail(get_delivery_order_or_404(order_id)))


@delivery_orders_api_bp.route("/delivery-orders/<order_id>", methods=["PATCH"])
@handle_api_errors
def api_update_status(order_id):
    order = update_delivery_order_status(order_id, json_body())
    return success_response(delivery_order_detail(order))


# ---------------------------------------------------------------------------
# Admin screens
# ---------------------------------------------------------------------------

def _list_state() -> ListState:
    return ListState.from_args(
        request.args,
        filter_keys=("status", "subscription_id"),
        sort_columns=DELIVERY_ORDER_SORT_COLUMNS,
        default_sort="created_at",
    )


@delivery_orders_bp.route("/admin/delivery-orders")
@role_required("manage_all")
def order_list():
    state = _list_state()
    rows, meta = list_delivery_orders(state.to_args())
    selected = None
    open_id = request.args.get("open")
    if open_id:
        try:
            selected = delivery_order_detail(get_delivery_order_or_404(open_id))
        except DesklyError as exc:
            flash(exc.message, "danger")
    return render_template(
        "admin/delivery_orders.html",
        rows=rows,
        state=state,
        window=state.window(meta["total"]),
        selected=selected,
        statuses=delivery_status.STATUS_ORDER,
        status_labels=delivery_status.STATUS_LABELS,
    )


@delivery_orders_bp.route("/admin/delivery-orders/<order_id>/status", methods=["POST"])
@role_required("manage_all")
def update_status(order_id):
    state = _list_state()
    payload = {
        "do_status": request.form.get("do_status", ""),
        "failure_reason": request.form.get("failure_reason", ""),
        "cancelled_reason": request.form.get("cancelled_reason", ""),
        "rescheduled_at": request.form.get("rescheduled_at", ""),
    }
    try:
        order = update_delivery_order_status(order_id, payload)
    except DesklyError as exc:
        db.session.rollback()
        flash(exc.message, "danger")
    else:
        label = delivery_status.STATUS_LABELS.get(order.do_status, order.do_status)
        flash(f"Delivery order updated to {label}.", "success")
    return redirect(url_for("delivery_orders.order_list", open=order_id, **state.to_args()))
