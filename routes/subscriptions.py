"""Subscription routes: listing, detail, delivery edits and billing actions."""

from flask import Blueprint, flash, redirect, render_template, request, url_for

from extensions import db
from services.api import handle_api_errors, json_body, success_response
from services.auth import role_required
from services.errors import DesklyError
from services.listing import ListState
from services.subscriptions import (
    ADMIN_SUBSCRIPTION_STATUSES,
    BILLING_ACTION_LABELS,
    BILLING_ACTIONS,
    SUBSCRIPTION_SORT_COLUMNS,
    get_subscription_or_404,
    list_subscriptions,
    run_billing_action,
    subscription_detail,
    update_subscription,
)

subscriptions_bp = Blueprint("subscriptions", __name__)
subscriptions_api_bp = Blueprint("subscriptions_api", __name__, url_prefix="/api/admin")


# ---------------------------------------------------------------------------
# JSON API
# ---------------------------------------------------------------------------

@subscriptions_api_bp.route("/subscriptions", methods=["GET"])
@handle_api_errors
def api_list():
    rows, meta = list_subscriptions(request.args)
    return success_response(rows, meta=meta)


@subscriptions_api_bp.route("/subscriptions/<subscription_id>", methods=["GET"])
@handle_api_errors
def api_detail(subscription_id):
    return success_response(subscription_detail(get_subscription_or_404(subscription_id)))


@subscriptions_api_bp.route("/subscriptions/<subscription_id>", methods=["PATCH"])
@handle_api_errors
def api_update(subscription_id):
    subscription = update_subscription(subscription_id, json_body())
    return success_response(subscription_detail(subscription))


@subscriptions_api_bp.route("/subscriptions/<subscription_id>/billing-actions", methods=["POST"])
@handle_api_errors
def api_billing_action(subscription_id):
    payload = json_body()
    subscription = run_billing_action(subscription_id, payload.get("action"), payload.get("confirm"))
    return success_response(subscription_detail(subscription))


# ---------------------------------------------------------------------------
# Admin screens
# ---------------------------------------------------------------------------

def _list_state() -> ListState:
    return ListState.from_args(
        request.args,
        filter_keys=("status", "user_id"),
        sort_columns=SUBSCRIPTION_SORT_COLUMNS,
        default_sort="created_at",
    )


@subscriptions_bp.route("/admin/subscriptions")
@role_required("manage_all")
def subscription_list():
    state = _list_state()
    rows, meta = list_subscriptions(state.to_args())
    selected = None
    open_id = request.args.get("open")
    if open_id:
        try:
            selected = subscription_detail(get_subscription_or_404(open_id))
        except DesklyError as exc:
            flash(exc.message, "danger")
    return render_template(
        "admin/subscriptions.html",
        rows=rows,
        state=state,
        window=state.window(meta["total"]),
        selected=selected,
        statuses=ADMIN_SUBSCRIPTION_STATUSES,
        action_labels=BILLING_ACTION_LABELS,
    )


@subscriptions_bp.route(
    "/admin/subscriptions/<subscription_id>/billing-actions/<action>",
    methods=["GET", "POST"],
)
@role_required("manage_all")
def billing_action(subscription_id, action):
    state = _list_state()
    back_url = url_for("subscriptions.subscription_list", open=subscription_id, **state.to_args())
    if action not in BILLING_ACTIONS:
        flash("Unknown billing action.", "danger")
        return redirect(back_url)

    if request.method == "GET":
        return render_template(
            "confirm.html",
            title="Confirm billing action",
            message=f"Are you sure you want to {BILLING_ACTION_LABELS[action]} "
                    "for this Stripe subscription?",
            action_url=url_for(
                "subscriptions.billing_action",
                subscription_id=subscription_id,
                action=action,
                **state.to_args(),
            ),
            cancel_url=back_url,
            confirm_label=BILLING_ACTION_LABELS[action].capitalize(),
        )

    try:
        run_billing_action(subscription_id, action, True)
    except DesklyError as exc:
        db.session.rollback()
        flash(exc.message, "danger")
    else:
        flash(f"Billing action {BILLING_ACTION_LABELS[action]} completed.", "success")
    return redirect(back_url)
