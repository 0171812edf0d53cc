"""Subscription listing, detail, billing actions and fulfillment upkeep."""

from __future__ import annotations

import logging
from typing import Optional

from flask import current_app

from extensions import db
from models import Subscription, SubscriptionFulfillment
from services.audit import log_action
from services.billing_providers import get_billing_provider
from services.customers import compose_address, customer_label
from services.errors import ConflictError, NotFoundError, ValidationError
from services.listing import Pagination, apply_sort, matches_search, parse_sort
from services.money import money_float
from utils import clean_text, compact_id, format_date, isoformat, parse_uuid, to_snake_case, utc_now

logger = logging.getLogger(__name__)

ADMIN_SUBSCRIPTION_STATUSES = (
    "active",
    "pending",
    "pending_payment",
    "payment_failed",
    "incomplete",
    "cancelled",
    "completed",
)
SUBSCRIPTION_SORT_COLUMNS = ("created_at", "monthly_total", "status")

BILLING_ACTIONS = ("cancel_now", "cancel_at_period_end")
BILLING_ACTION_LABELS = {"cancel_now": "cancel now", "cancel_at_period_end": "cancel at period end"}
ACTIONABLE_BILLING_STATUSES = ("active", "pending_payment", "payment_failed")

BILLING_FIELDS_READONLY_ERROR = "Billing fields are managed by Stripe and cannot be edited manually."
LOCKED_BILLING_FIELDS = {
    "status",
    "billing_status",
    "subscription_status",
    "monthly_total",
    "monthly_rate",
    "start_date",
    "end_date",
}
EDITABLE_DELIVERY_FIELDS = (
    "delivery_company_name",
    "delivery_address",
    "delivery_city",
    "delivery_zip_postal",
    "delivery_contact_name",
    "delivery_contact_phone",
)


# ---------------------------------------------------------------------------
# Mapping helpers
# ---------------------------------------------------------------------------

def _item_quantity(raw) -> int:
    try:
        quantity = int(raw)
    except (TypeError, ValueError):
        return 1
    return quantity if quantity > 0 else 1


def items_summary(subscription: Optional[Subscription]) -> str:
    """``"Chairs x 2, Desks x 1"``; falls back to the bundle name."""
    if subscription is None:
        return "No items captured"
    grouped: dict[str, int] = {}
    for item in subscription.items:
        label = clean_text(item.category) or clean_text(item.product_name) or "Item"
        grouped[label] = grouped.get(label, 0) + _item_quantity(item.quantity)
    if grouped:
        return ", ".join(f"{label} x {qty}" for label, qty in sorted(grouped.items()))
    if subscription.bundle and subscription.bundle.name:
        return subscription.bundle.name
    return "No items captured"


def subscription_row(subscription: Subscription) -> dict:
    return {
        "id": subscription.id,
        "customer": customer_label(subscription.user, subscription.user_id),
        "items": items_summary(subscription),
        "total": money_float(subscription.monthly_total)
        if subscription.monthly_total is not None else None,
        "billing_status": subscription.status,
        "status": subscription.status,
        "date": format_date(subscription.created_at),
    }


def available_actions(subscription: Subscription) -> list[str]:
    if subscription.status not in ACTIONABLE_BILLING_STATUSES:
        return []
    if not clean_text(subscription.provider_subscription_id):
        return []
    return list(BILLING_ACTIONS)


def subscription_detail(subscription: Subscription) -> dict:
    user = subscription.user
    profile = user.profile if user else None
    company = user.company if user else None
    fulfillment = subscription.fulfillment
    bundle = subscription.bundle

    office_address = None
    fallback_delivery = None
    if company is not None:
        office_address = compose_address(company.address, company.office_city, company.office_zip_postal)
        fallback_delivery = compose_address(
            company.delivery_address or company.address,
            company.delivery_city or company.office_city,
            company.delivery_zip_postal or company.office_zip_postal,
        )
    delivery_address = compose_address(
        subscription.delivery_address, subscription.delivery_city, subscription.delivery_zip_postal
    ) or fallback_delivery

    items = [
        {
            "productName": clean_text(item.product_name) or clean_text(item.category) or "Item",
            "category": clean_text(item.category),
            "monthlyPrice": money_float(item.monthly_price) if item.monthly_price is not None else None,
            "durationMonths": item.duration_months if item.duration_months and item.duration_months > 0 else None,
            "quantity": _item_quantity(item.quantity),
            "imageUrl": item.product.image_url if item.product else None,
        }
        for item in subscription.items
    ]

    return {
        "id": subscription.id,
        "userId": subscription.user_id,
        "bundleId": subscription.bundle_id,
        "billingStatus": subscription.status,
        "status": subscription.status,
        "billingProvider": subscription.billing_provider,
        "providerSubscriptionId": subscription.provider_subscription_id,
        "total": money_float(subscription.monthly_total) if subscription.monthly_total is not None else None,
        "subtotalAmount": money_float(subscription.subtotal_amount)
        if subscription.subtotal_amount is not None else None,
        "taxAmount": money_float(subscription.tax_amount) if subscription.tax_amount is not None else None,
        "createdAt": isoformat(subscription.created_at),
        "startDate": isoformat(subscription.start_date),
        "endDate": isoformat(subscription.end_date),
        "commitmentEndAt": isoformat(subscription.commitment_end_at),
        "serviceState": fulfillment.service_state if fulfillment else None,
        "collectionStatus": fulfillment.collection_status if fulfillment else None,
        "firstDeliveryAt": isoformat(fulfillment.first_delivery_at) if fulfillment else None,
        "itemsSummary": items_summary(subscription),
        "items": items,
        "customer": {
            "id": profile.id if profile else None,
            "name": clean_text(subscription.delivery_contact_name)
            or customer_label(user, subscription.user_id),
            "phoneNumber": clean_text(subscription.delivery_contact_phone)
            or (profile.phone_number if profile else None),
            "jobTitle": profile.job_title if profile else None,
            "companyName": clean_text(subscription.delivery_company_name)
            or (company.company_name if company else None),
            "industry": company.industry if company else None,
            "teamSize": company.team_size if company else None,
            "officeAddress": office_address,
            "deliveryAddress": delivery_address,
        },
        "bundle": {
            "id": bundle.id if bundle else None,
            "name": bundle.name if bundle else None,
            "description": bundle.description if bundle else None,
            "imageUrl": bundle.image_url if bundle else None,
            "monthlyPrice": money_float(bundle.monthly_price) if bundle and bundle.monthly_price is not None else None,
        },
        "availableActions": available_actions(subscription),
    }


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def list_subscriptions(args) -> tuple[list[dict], dict]:
    pagination = Pagination.from_args(args)
    sort_by, sort_dir = parse_sort(args, SUBSCRIPTION_SORT_COLUMNS, "created_at")

    query = Subscription.query
    status = (args.get("status") or "").strip().lower()
    if status in ADMIN_SUBSCRIPTION_STATUSES:
        query = query.filter(Subscription.status == status)
    user_id = parse_uuid(args.get("user_id"))
    if user_id:
        query = query.filter(Subscription.user_id == user_id)
    query = apply_sort(query, getattr(Subscription, sort_by), sort_dir)

    search = (args.get("search") or "").strip()
    if search:
        rows = [subscription_row(sub) for sub in query.all()]
        rows = [row for row in rows if _row_matches(row, search)]
        return pagination.slice(rows), pagination.meta(len(rows))

    total = query.count()
    subscriptions = query.offset(pagination.offset).limit(pagination.limit).all()
    return [subscription_row(sub) for sub in subscriptions], pagination.meta(total)


def _row_matches(row: dict, search: str) -> bool:
    compact = compact_id(row["id"])
    return matches_search(
        search,
        row["id"],
        compact,
        f"#{compact}",
        row["customer"],
        row["items"],
        row["billing_status"],
        row["date"],
    )


def get_subscription_or_404(raw_id) -> Subscription:
    subscription_id = parse_uuid(raw_id)
    if not subscription_id:
        raise ValidationError("Invalid subscription ID format")
    subscription = db.session.get(Subscription, subscription_id)
    if subscription is None:
        raise NotFoundError("Subscription not found")
    return subscription


# ---------------------------------------------------------------------------
# Fulfillment
# ---------------------------------------------------------------------------

def upsert_fulfillment(subscription: Subscription, **fields) -> SubscriptionFulfillment:
    fulfillment = subscription.fulfillment
    if fulfillment is None:
        fulfillment = SubscriptionFulfillment(subscription_id=subscription.id)
        subscription.fulfillment = fulfillment
    for key, value in fields.items():
        setattr(fulfillment, key, value)
    return fulfillment


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

def find_locked_billing_fields(payload: dict) -> list[str]:
    return [key for key in payload if to_snake_case(str(key)) in LOCKED_BILLING_FIELDS]


def update_subscription(raw_id, payload: dict) -> Subscription:
    """Edit delivery-contact fields; billing fields belong to the provider."""
    if find_locked_billing_fields(payload):
        raise ConflictError(BILLING_FIELDS_READONLY_ERROR)
    subscription = get_subscription_or_404(raw_id)

    changes = {}
    for key, value in payload.items():
        field = to_snake_case(str(key))
        if field in EDITABLE_DELIVERY_FIELDS:
            changes[field] = clean_text(value)
    if not changes:
        raise ValidationError("No valid fields provided")

    for field, value in changes.items():
        setattr(subscription, field, value)
    log_action("edit", "subscription", subscription.id, ", ".join(sorted(changes)))
    db.session.commit()
    return subscription


def run_billing_action(raw_id, action, confirm) -> Subscription:
    """Cancel a subscription with its billing provider and mirror the result."""
    if action not in BILLING_ACTIONS:
        raise ValidationError(f"Invalid action. Must be one of: {', '.join(BILLING_ACTIONS)}")
    if confirm is not True:
        raise ValidationError("Confirmation is required for billing actions")

    subscription = get_subscription_or_404(raw_id)
    if subscription.status not in ACTIONABLE_BILLING_STATUSES:
        raise ConflictError(
            f"Billing actions are not available for subscriptions with status {subscription.status}"
        )
    provider_subscription_id = clean_text(subscription.provider_subscription_id)
    if not provider_subscription_id:
        raise ConflictError("Cannot run billing action because provider_subscription_id is missing")

    provider = get_billing_provider(
        current_app.config["BILLING_CONFIG"], subscription.billing_provider
    )
    logger.info(
        "Running %s for subscription %s via %s", action, subscription.id, provider.name
    )
    if action == "cancel_now":
        snapshot = provider.cancel_now(provider_subscription_id)
        subscription.status = "cancelled"
        subscription.end_date = snapshot.cancelled_at or utc_now()
        upsert_fulfillment(subscription, service_state="offboarding_requested")
    else:
        snapshot = provider.cancel_at_period_end(provider_subscription_id)
        if snapshot.current_period_end is not None:
            subscription.end_date = snapshot.current_period_end

    log_action(
        action,
        "subscription",
        subscription.id,
        f"provider_status={snapshot.provider_status}",
    )
    db.session.commit()
    return subscription
