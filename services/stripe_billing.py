"""Stripe webhook ingestion: signature check, idempotency, lifecycle updates."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional

import stripe

from config_models import BillingConfig
from extensions import db
from models import BillingInvoice, BillingWebhookEvent, Subscription
from services.billing import (
    find_billing_customer_id,
    invoice_mirror_fields,
    upsert_invoice,
)
from services.errors import DesklyError, ValidationError
from utils import from_unix_timestamp, parse_uuid, utc_now

logger = logging.getLogger(__name__)

PROVIDER = "stripe"

SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)
PAID_INVOICE_EVENTS = ("invoice.paid", "invoice.payment_succeeded")


class WebhookError(DesklyError):
    status_code = 500


@dataclass
class WebhookOutcome:
    subscription_id: Optional[str]
    handled: bool


def map_stripe_subscription_status(status: Optional[str]) -> str:
    if status in ("active", "trialing"):
        return "active"
    if status in ("past_due", "unpaid"):
        return "payment_failed"
    if status == "canceled":
        return "cancelled"
    return "pending_payment"


def verify_event(payload: bytes, sig_header: Optional[str], config: BillingConfig) -> dict:
    """Verify the ``Stripe-Signature`` header and return the event as a plain dict."""
    if not config.stripe_webhook_secret:
        raise WebhookError("STRIPE_WEBHOOK_SECRET is not configured")
    try:
        stripe.Webhook.construct_event(payload, sig_header or "", config.stripe_webhook_secret)
    except (ValueError, stripe.SignatureVerificationError) as exc:
        logger.warning("Stripe webhook verification failed: %s", exc)
        raise ValidationError("Invalid Stripe webhook signature") from exc
    try:
        event = json.loads(payload)
    except ValueError as exc:
        raise ValidationError("Invalid webhook payload") from exc
    if not isinstance(event, dict):
        raise ValidationError("Invalid webhook payload")
    return event


# ---------------------------------------------------------------------------
# Event processing
# ---------------------------------------------------------------------------

def _text(value) -> Optional[str]:
    return value if isinstance(value, str) and value.strip() else None


def find_subscription(
    internal_subscription_id: Optional[str],
    provider_subscription_id: Optional[str],
    checkout_session_id: Optional[str],
    provider_invoice_id: Optional[str],
) -> Optional[Subscription]:
    """Resolve the local subscription an event refers to, most specific reference first."""
    internal_id = parse_uuid(internal_subscription_id)
    if internal_id:
        subscription = db.session.get(Subscription, internal_id)
        if subscription is not None:
            return subscription
    if provider_subscription_id:
        subscription = Subscription.query.filter_by(
            billing_provider=PROVIDER, provider_subscription_id=provider_subscription_id
        ).first()
        if subscription is not None:
            return subscription
    if checkout_session_id:
        subscription = Subscription.query.filter_by(
            billing_provider=PROVIDER, provider_checkout_session_id=checkout_session_id
        ).first()
        if subscription is not None:
            return subscription
    if provider_invoice_id:
        invoice = BillingInvoice.query.filter_by(
            provider=PROVIDER, provider_invoice_id=provider_invoice_id
        ).first()
        if invoice is not None and invoice.subscription_id:
            return db.session.get(Subscription, invoice.subscription_id)
    return None


def _mirror_invoice(event_type: str, obj: dict, subscription: Optional[Subscription]) -> bool:
    provider_invoice_id = _text(obj.get("id"))
    if not provider_invoice_id:
        return False
    billing_customer_id = (
        subscription.billing_customer_id if subscription and subscription.billing_customer_id
        else find_billing_customer_id(PROVIDER, _text(obj.get("customer")))
    )
    upsert_invoice(
        PROVIDER,
        provider_invoice_id,
        invoice_mirror_fields(obj, event_type),
        subscription.id if subscription else None,
        billing_customer_id,
    )
    return True


def process_stripe_event(event: dict) -> WebhookOutcome:
    event_type = event.get("type") or ""
    data = event.get("data") if isinstance(event.get("data"), dict) else {}
    obj = data.get("object") if isinstance(data.get("object"), dict) else {}
    metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}

    if event_type.startswith("customer.subscription"):
        provider_subscription_id = _text(obj.get("id"))
    else:
        provider_subscription_id = _text(obj.get("subscription"))
    checkout_session_id = _text(obj.get("id")) if event_type.startswith("checkout.session") else None
    provider_invoice_id = _text(obj.get("id")) if event_type.startswith("invoice.") else None

    subscription = find_subscription(
        _text(metadata.get("internal_subscription_id")),
        provider_subscription_id,
        checkout_session_id,
        provider_invoice_id,
    )
    mirrored = False
    if event_type.startswith("invoice."):
        mirrored = _mirror_invoice(event_type, obj, subscription)

    if subscription is None:
        return WebhookOutcome(subscription_id=None, handled=mirrored)

    if event_type == "checkout.session.completed":
        subscription.status = "active" if obj.get("payment_status") == "paid" else "pending_payment"
        subscription.provider_checkout_session_id = checkout_session_id
        subscription.provider_subscription_id = _text(obj.get("subscription"))
        handled = True
    elif event_type in SUBSCRIPTION_EVENTS:
        if event_type == "customer.subscription.deleted":
            subscription.status = "cancelled"
        else:
            subscription.status = map_stripe_subscription_status(_text(obj.get("status")))
        subscription.provider_subscription_id = provider_subscription_id
        # Commitment end stays authoritative; the period end is only a fallback
        subscription.end_date = (
            subscription.end_date
            or subscription.commitment_end_at
            or from_unix_timestamp(obj.get("current_period_end"))
        )
        handled = True
    elif event_type == "invoice.payment_failed":
        subscription.status = "payment_failed"
        handled = True
    elif event_type in PAID_INVOICE_EVENTS:
        subscription.status = "active"
        handled = True
    else:
        handled = mirrored

    return WebhookOutcome(subscription_id=subscription.id, handled=handled)


def handle_stripe_webhook(payload: bytes, sig_header: Optional[str], config: BillingConfig) -> dict:
    """Verify, record and process one webhook delivery.

    Already-processed events are acknowledged as duplicates.  A processing
    failure marks the event ``failed`` and re-raises as a 500.
    """
    event = verify_event(payload, sig_header, config)
    event_id = _text(event.get("id"))
    event_type = _text(event.get("type"))
    if not event_id or not event_type:
        raise ValidationError("Missing event id or type")

    record = BillingWebhookEvent.query.filter_by(provider=PROVIDER, event_id=event_id).first()
    if record is not None and record.status == "processed":
        logger.info("Duplicate Stripe event %s ignored", event_id)
        return {"received": True, "duplicate": True}
    if record is None:
        record = BillingWebhookEvent(
            provider=PROVIDER,
            event_id=event_id,
            event_type=event_type,
            payload=event,
            status="received",
        )
        db.session.add(record)
        db.session.commit()

    try:
        outcome = process_stripe_event(event)
        record.status = "processed"
        record.subscription_id = outcome.subscription_id
        record.processed_at = utc_now()
        record.error_message = None
        db.session.commit()
    except Exception as exc:
        db.session.rollback()
        logger.exception("Stripe event %s (%s) failed", event_id, event_type)
        record = BillingWebhookEvent.query.filter_by(provider=PROVIDER, event_id=event_id).first()
        if record is not None:
            record.status = "failed"
            record.error_message = str(exc) or "Webhook processing failed"
            db.session.commit()
        raise WebhookError(str(exc) or "Webhook processing failed") from exc

    logger.info(
        "Processed Stripe event %s (%s) handled=%s subscription=%s",
        event_id, event_type, outcome.handled, outcome.subscription_id,
    )
    return {
        "received": True,
        "processed": outcome.handled,
        "subscription_id": outcome.subscription_id,
    }
