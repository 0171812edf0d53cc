"""Billing routes: runtime config, catalog sync, invoice mirror and the Stripe webhook."""

import logging

from flask import Blueprint, current_app, flash, render_template, request

from extensions import csrf, db
from models import VALID_INVOICE_STATUSES, VALID_WEBHOOK_EVENT_STATUSES
from services.api import handle_api_errors, json_body, success_response
from services.auth import role_required
from services.billing import (
    backfill_invoices,
    list_invoices,
    list_webhook_events,
    sync_catalog,
)
from services.billing_providers import get_billing_provider
from services.errors import DesklyError
from services.listing import ListState
from services.money import sst_quote
from services.stripe_billing import handle_stripe_webhook
from utils import optional_float

logger = logging.getLogger(__name__)

billing_bp = Blueprint("billing", __name__)
billing_api_bp = Blueprint("billing_api", __name__, url_prefix="/api")

SAMPLE_QUOTE_SUBTOTAL = 100


def _billing_config():
    return current_app.config["BILLING_CONFIG"]


def runtime_config(subtotal=None) -> dict:
    config = _billing_config()
    amount = optional_float(subtotal)
    data = config.snapshot()
    data["sst_quote"] = sst_quote(
        SAMPLE_QUOTE_SUBTOTAL if amount is None else amount, config.currency, config.sst_rate
    )
    return data


# ---------------------------------------------------------------------------
# JSON API
# ---------------------------------------------------------------------------

@billing_api_bp.route("/billing/config", methods=["GET"])
@handle_api_errors
def api_config():
    return success_response(runtime_config(request.args.get("subtotal")))


@billing_api_bp.route("/billing/catalog/sync", methods=["POST"])
@handle_api_errors
def api_catalog_sync():
    config = _billing_config()
    result = sync_catalog(get_billing_provider(config), config, json_body())
    return success_response(result)


@billing_api_bp.route("/admin/billing/invoices", methods=["GET"])
@handle_api_errors
def api_invoices():
    rows, meta = list_invoices(request.args)
    return success_response(rows, meta=meta)


@billing_api_bp.route("/admin/billing/webhook-events", methods=["GET"])
@handle_api_errors
def api_webhook_events():
    rows, meta = list_webhook_events(request.args)
    return success_response(rows, meta=meta)


@billing_api_bp.route("/admin/billing/invoices/backfill", methods=["POST"])
@handle_api_errors
def api_backfill():
    provider = get_billing_provider(_billing_config())
    return success_response(backfill_invoices(provider, json_body()))


@billing_api_bp.route("/webhooks/stripe", methods=["POST"])
@csrf.exempt
@handle_api_errors
def webhook_stripe():
    """Handle Stripe webhook events."""
    payload = request.get_data()
    sig_header = request.headers.get("Stripe-Signature")
    return success_response(handle_stripe_webhook(payload, sig_header, _billing_config()))


# ---------------------------------------------------------------------------
# Admin screens
# ---------------------------------------------------------------------------

@billing_bp.route("/admin/settings")
@role_required("manage_all")
def settings():
    return render_template("admin/settings.html", billing=runtime_config(), sync_result=None)


@billing_bp.route("/admin/settings/catalog-sync", methods=["POST"])
@role_required("manage_all")
def catalog_sync():
    config = _billing_config()
    payload = {
        "dry_run": request.form.get("mode") != "apply",
        "currency": request.form.get("currency") or None,
    }
    result = None
    try:
        result = sync_catalog(get_billing_provider(config), config, payload)
    except DesklyError as exc:
        db.session.rollback()
        flash(exc.message, "danger")
    else:
        verb = "Dry run" if result["dry_run"] else "Sync"
        flash(
            f"{verb} finished: {result['created_count']} created, "
            f"{result['skipped_count']} skipped.",
            "success",
        )
    return render_template("admin/settings.html", billing=runtime_config(), sync_result=result)


def _invoice_state() -> ListState:
    return ListState.from_args(request.args, filter_keys=("status", "provider"))


@billing_bp.route("/admin/invoices")
@role_required("manage_all")
def invoices():
    state = _invoice_state()
    rows, meta = list_invoices(state.to_args())
    events, _ = list_webhook_events({"limit": 10})
    return render_template(
        "admin/invoices.html",
        rows=rows,
        events=events,
        state=state,
        window=state.window(meta["total"]),
        statuses=VALID_INVOICE_STATUSES,
        event_statuses=VALID_WEBHOOK_EVENT_STATUSES,
        backfill_result=None,
    )


@billing_bp.route("/admin/invoices/backfill", methods=["POST"])
@role_required("manage_all")
def invoice_backfill():
    payload = {
        "limit": request.form.get("limit"),
        "dry_run": request.form.get("mode") != "apply",
    }
    result = None
    try:
        result = backfill_invoices(get_billing_provider(_billing_config()), payload)
    except DesklyError as exc:
        db.session.rollback()
        flash(exc.message, "danger")
    else:
        flash(
            f"Backfill fetched {result['fetched_count']} invoices, "
            f"mirrored {result['mirrored_count']}.",
            "success",
        )
    state = _invoice_state()
    rows, meta = list_invoices(state.to_args())
    events, _ = list_webhook_events({"limit": 10})
    return render_template(
        "admin/invoices.html",
        rows=rows,
        events=events,
        state=state,
        window=state.window(meta["total"]),
        statuses=VALID_INVOICE_STATUSES,
        event_statuses=VALID_WEBHOOK_EVENT_STATUSES,
        backfill_result=result,
    )
