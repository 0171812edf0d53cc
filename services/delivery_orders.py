"""Delivery-order listing, detail and status transitions."""

from __future__ import annotations

import logging

from extensions import db
from models import DeliveryOrder
from services import delivery_status
from services.audit import log_action
from services.customers import customer_label
from services.errors import ConflictError, NotFoundError, ValidationError
from services.listing import Pagination, apply_sort, matches_search, parse_sort
from services.subscriptions import items_summary, upsert_fulfillment
from utils import compact_id, format_date, isoformat, parse_uuid, utc_now

logger = logging.getLogger(__name__)

DELIVERY_ORDER_SORT_COLUMNS = ("created_at", "updated_at", "do_status")
BLOCKED_SERVICE_STATES = ("offboarding_requested", "closed")


def delivery_order_row(order: DeliveryOrder) -> dict:
    subscription = order.subscription
    fulfillment = subscription.fulfillment if subscription else None
    if subscription is None:
        customer = f"Subscription {compact_id(order.subscription_id)}"
    else:
        customer = customer_label(subscription.user, subscription.user_id)
    return {
        "id": order.id,
        "subscription_id": order.subscription_id,
        "customer": customer,
        "items": items_summary(subscription),
        "do_status": order.do_status,
        "billing_status": subscription.status if subscription else None,
        "service_state": fulfillment.service_state if fulfillment else None,
        "collection_status": fulfillment.collection_status if fulfillment else None,
        "failure_reason": order.failure_reason,
        "rescheduled_at": isoformat(order.rescheduled_at),
        "cancelled_reason": order.cancelled_reason,
        "date": format_date(order.created_at),
        "updated_at": isoformat(order.updated_at),
    }


def delivery_order_detail(order: DeliveryOrder) -> dict:
    detail = delivery_order_row(order)
    detail["allowed_transitions"] = list(delivery_status.allowed_transitions(order.do_status))
    return detail


def _row_matches(row: dict, search: str) -> bool:
    compact = compact_id(row["id"])
    subscription_compact = compact_id(row["subscription_id"])
    return matches_search(
        search,
        row["id"],
        compact,
        f"#{compact}",
        row["subscription_id"],
        subscription_compact,
        f"#{subscription_compact}",
        row["customer"],
        row["items"],
        row["do_status"],
        row["billing_status"],
        row["service_state"],
        row["date"],
    )


def list_delivery_orders(args) -> tuple[list[dict], dict]:
    pagination = Pagination.from_args(args)
    sort_by, sort_dir = parse_sort(args, DELIVERY_ORDER_SORT_COLUMNS, "created_at")

    query = DeliveryOrder.query
    status = delivery_status.normalize_status(args.get("status"))
    if status:
        query = query.filter(DeliveryOrder.do_status == status)
    subscription_id = parse_uuid(args.get("subscription_id"))
    if subscription_id:
        query = query.filter(DeliveryOrder.subscription_id == subscription_id)
    query = apply_sort(query, getattr(DeliveryOrder, sort_by), sort_dir)

    search = (args.get("search") or "").strip()
    if search:
        rows = [delivery_order_row(order) for order in query.all()]
        rows = [row for row in rows if _row_matches(row, search)]
        return pagination.slice(rows), pagination.meta(len(rows))

    total = query.count()
    orders = query.offset(pagination.offset).limit(pagination.limit).all()
    return [delivery_order_row(order) for order in orders], pagination.meta(total)


def get_delivery_order_or_404(raw_id) -> DeliveryOrder:
    order_id = parse_uuid(raw_id)
    if not order_id:
        raise ValidationError("Invalid delivery order ID format")
    order = db.session.get(DeliveryOrder, order_id)
    if order is None:
        raise NotFoundError("Delivery order not found")
    return order


def _check_dispatch_allowed(order: DeliveryOrder) -> None:
    subscription = order.subscription
    if subscription is None or subscription.status != "active":
        raise ConflictError("Cannot dispatch: subscription billing status must be active")
    fulfillment = subscription.fulfillment
    if fulfillment and fulfillment.service_state in BLOCKED_SERVICE_STATES:
        raise ConflictError(
            f"Cannot dispatch: subscription service state is {fulfillment.service_state}"
        )


def _mark_delivered(order: DeliveryOrder) -> None:
    subscription = order.subscription
    if subscription is None:
        return
    fulfillment = subscription.fulfillment
    fields = {}
    if fulfillment is None:
        fields["collection_status"] = "not_collected"
    if fulfillment is None or fulfillment.service_state not in BLOCKED_SERVICE_STATES:
        fields["service_state"] = "in_service"
    if fulfillment is None or fulfillment.first_delivery_at is None:
        fields["first_delivery_at"] = utc_now()
    upsert_fulfillment(subscription, **fields)


def update_delivery_order_status(raw_id, payload: dict) -> DeliveryOrder:
    """Apply a status change; side fields not owned by the new status are cleared.

    ``status`` is accepted in place of ``do_status``.  A disallowed move is
    rejected before the new status's required fields are checked.
    """
    order_id = parse_uuid(raw_id)
    if not order_id:
        raise ValidationError("Invalid delivery order ID format")
    status = delivery_status.require_status(payload.get("do_status") or payload.get("status"))
    order = get_delivery_order_or_404(order_id)

    if order.do_status == status:
        return order
    if not delivery_status.can_transition(order.do_status, status):
        logger.warning(
            "Rejected delivery order %s transition %s -> %s",
            order.id, order.do_status, status,
        )
        raise ConflictError(f"Invalid transition: {order.do_status} -> {status}")
    target = delivery_status.build_status(status, payload)
    if target.name == "dispatched":
        _check_dispatch_allowed(order)

    previous = order.do_status
    order.do_status = target.name
    for column, value in delivery_status.side_fields(target).items():
        setattr(order, column, value)
    order.updated_at = utc_now()
    if target.name in delivery_status.DELIVERED_STATUSES:
        _mark_delivered(order)

    log_action("status_change", "delivery_order", order.id, f"{previous} -> {target.name}")
    db.session.commit()
    logger.info("Delivery order %s moved %s -> %s", order.id, previous, target.name)
    return order
