"""Dashboard statistics."""

from __future__ import annotations

from sqlalchemy import func

from extensions import db
from models import DeliveryOrder, Product, Subscription, User
from services.customers import resolve_user_name
from services.money import money_float
from utils import compact_id, isoformat

RECENT_ORDER_COUNT = 3


def _recent_order(order: DeliveryOrder) -> dict:
    subscription = order.subscription
    if subscription is None:
        customer = f"Subscription {compact_id(order.subscription_id)}"
        item = "Rental plan"
    else:
        customer = resolve_user_name(subscription.user) or f"User {compact_id(subscription.user_id)}"
        item = subscription.bundle.name if subscription.bundle and subscription.bundle.name else "Rental plan"
    return {
        "id": order.id,
        "customerName": customer,
        "itemName": item,
        "status": order.do_status,
        "createdAt": isoformat(order.created_at),
    }


def dashboard_stats() -> dict:
    revenue = (
        db.session.query(func.coalesce(func.sum(Subscription.monthly_total), 0))
        .filter(Subscription.status == "active")
        .scalar()
    )
    recent = (
        DeliveryOrder.query.order_by(DeliveryOrder.created_at.desc())
        .limit(RECENT_ORDER_COUNT)
        .all()
    )
    return {
        "totalRevenue": money_float(revenue),
        "activeRentals": Subscription.query.filter_by(status="active").count(),
        "totalProducts": Product.query.count(),
        "totalUsers": User.query.filter(User.role != "admin").count(),
        "recentOrders": [_recent_order(order) for order in recent],
    }
