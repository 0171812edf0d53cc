"""Billing back office: runtime config, catalog sync, invoice mirror and backfill."""

from __future__ import annotations

import logging
from typing import Optional

from extensions import db
from config_models import BillingConfig
from models import (
    VALID_INVOICE_STATUSES,
    VALID_WEBHOOK_EVENT_STATUSES,
    BillingCatalogPrice,
    BillingCustomer,
    BillingInvoice,
    BillingWebhookEvent,
    Product,
    Subscription,
)
from services.audit import log_action
from services.billing_providers import BillingProvider
from services.errors import ValidationError
from services.listing import Pagination
from services.money import from_minor_unit, money_float, to_money
from utils import from_unix_timestamp, isoformat, parse_bool, parse_uuid, strict_int, utc_now

logger = logging.getLogger(__name__)

CATALOG_SYNC_SOURCE = "deskly-catalog-sync"

DEFAULT_BACKFILL_LIMIT = 200
MAX_BACKFILL_LIMIT = 1000
PROVIDER_PAGE_LIMIT = 100
UNRESOLVED_SAMPLE_SIZE = 20

MIRRORED_INVOICE_STATUSES = ("draft", "open", "paid", "void", "uncollectible")
EVENT_INVOICE_STATUSES = {
    "invoice.payment_failed": "payment_failed",
    "invoice.voided": "void",
    "invoice.marked_uncollectible": "uncollectible",
    "invoice.paid": "paid",
    "invoice.payment_succeeded": "paid",
}


def _text(value) -> Optional[str]:
    return value if isinstance(value, str) and value.strip() else None


def _number(value):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _mapping(value) -> dict:
    return value if isinstance(value, dict) else {}


# ---------------------------------------------------------------------------
# Invoice mirror
# ---------------------------------------------------------------------------

def normalize_invoice_status(raw_status, paid, event_type: Optional[str] = None) -> str:
    """Mirror status for a provider invoice.

    The event type wins (``invoice.voided`` -> ``void``), then the paid flag,
    then the raw status; anything else is ``unknown``.
    """
    if event_type in EVENT_INVOICE_STATUSES:
        return EVENT_INVOICE_STATUSES[event_type]
    if paid is True:
        return "paid"
    if raw_status in MIRRORED_INVOICE_STATUSES:
        return raw_status
    return "unknown"


def _invoice_period(invoice: dict) -> tuple:
    start = _number(invoice.get("period_start"))
    end = _number(invoice.get("period_end"))
    if start is not None or end is not None:
        return from_unix_timestamp(start), from_unix_timestamp(end)
    lines = _mapping(invoice.get("lines")).get("data") or []
    period = _mapping(_mapping(lines[0]).get("period")) if lines else {}
    return from_unix_timestamp(period.get("start")), from_unix_timestamp(period.get("end"))


def invoice_mirror_fields(invoice: dict, event_type: Optional[str] = None) -> dict:
    """Column values for ``BillingInvoice`` from a provider invoice object (amounts in minor units)."""
    subtotal = _number(invoice.get("subtotal"))
    total = _number(invoice.get("total"))
    tax = _number(invoice.get("tax"))
    if tax is None:
        tax = _number(invoice.get("amount_tax"))
    if tax is None and subtotal is not None and total is not None:
        tax = total - subtotal
    period_start, period_end = _invoice_period(invoice)
    currency = _text(invoice.get("currency"))
    paid = invoice.get("paid")

    return {
        "provider_subscription_id": _text(invoice.get("subscription")),
        "invoice_number": _text(invoice.get("number")),
        "status": normalize_invoice_status(
            _text(invoice.get("status")), paid if isinstance(paid, bool) else None, event_type
        ),
        "currency": currency.lower() if currency else "myr",
        "subtotal_amount": from_minor_unit(subtotal) if subtotal is not None else None,
        "tax_amount": from_minor_unit(tax) if tax is not None else None,
        "total_amount": from_minor_unit(total) if total is not None else None,
        "amount_paid": from_minor_unit(invoice.get("amount_paid"))
        if _number(invoice.get("amount_paid")) is not None else None,
        "amount_due": from_minor_unit(invoice.get("amount_due"))
        if _number(invoice.get("amount_due")) is not None else None,
        "hosted_invoice_url": _text(invoice.get("hosted_invoice_url")),
        "invoice_pdf": _text(invoice.get("invoice_pdf")),
        "payment_intent_id": _text(invoice.get("payment_intent")),
        "due_date": from_unix_timestamp(invoice.get("due_date")),
        "paid_at": from_unix_timestamp(_mapping(invoice.get("status_transitions")).get("paid_at")),
        "period_start_at": period_start,
        "period_end_at": period_end,
        "raw_payload": dict(invoice),
    }


def upsert_invoice(
    provider: str,
    provider_invoice_id: str,
    fields: dict,
    subscription_id: Optional[str],
    billing_customer_id: Optional[str],
) -> BillingInvoice:
    """Insert or update the mirror row keyed on ``(provider, provider_invoice_id)``."""
    invoice = BillingInvoice.query.filter_by(
        provider=provider, provider_invoice_id=provider_invoice_id
    ).first()
    if invoice is None:
        invoice = BillingInvoice(provider=provider, provider_invoice_id=provider_invoice_id)
        db.session.add(invoice)
    for key, value in fields.items():
        setattr(invoice, key, value)
    invoice.subscription_id = subscription_id
    invoice.billing_customer_id = billing_customer_id
    invoice.updated_at = utc_now()
    return invoice


def find_billing_customer_id(provider: str, provider_customer_id: Optional[str]) -> Optional[str]:
    if not provider_customer_id:
        return None
    customer = BillingCustomer.query.filter_by(
        provider=provider, provider_customer_id=provider_customer_id
    ).first()
    return customer.id if customer else None


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------

def invoice_to_dict(invoice: BillingInvoice) -> dict:
    def amount(value):
        return money_float(value) if value is not None else None

    return {
        "id": invoice.id,
        "provider": invoice.provider,
        "provider_invoice_id": invoice.provider_invoice_id,
        "provider_subscription_id": invoice.provider_subscription_id,
        "subscription_id": invoice.subscription_id,
        "billing_customer_id": invoice.billing_customer_id,
        "invoice_number": invoice.invoice_number,
        "status": invoice.status,
        "currency": invoice.currency,
        "subtotal_amount": amount(invoice.subtotal_amount),
        "tax_amount": amount(invoice.tax_amount),
        "total_amount": amount(invoice.total_amount),
        "amount_paid": amount(invoice.amount_paid),
        "amount_due": amount(invoice.amount_due),
        "hosted_invoice_url": invoice.hosted_invoice_url,
        "invoice_pdf": invoice.invoice_pdf,
        "payment_intent_id": invoice.payment_intent_id,
        "due_date": isoformat(invoice.due_date),
        "paid_at": isoformat(invoice.paid_at),
        "period_start_at": isoformat(invoice.period_start_at),
        "period_end_at": isoformat(invoice.period_end_at),
        "created_at": isoformat(invoice.created_at),
        "updated_at": isoformat(invoice.updated_at),
    }


def webhook_event_to_dict(event: BillingWebhookEvent) -> dict:
    return {
        "id": event.id,
        "provider": event.provider,
        "event_id": event.event_id,
        "event_type": event.event_type,
        "status": event.status,
        "subscription_id": event.subscription_id,
        "processed_at": isoformat(event.processed_at),
        "error_message": event.error_message,
        "created_at": isoformat(event.created_at),
    }


def list_invoices(args) -> tuple[list[dict], dict]:
    pagination = Pagination.from_args(args)
    query = BillingInvoice.query
    status = (args.get("status") or "").strip().lower()
    if status in VALID_INVOICE_STATUSES:
        query = query.filter(BillingInvoice.status == status)
    provider = (args.get("provider") or "").strip().lower()
    if provider:
        query = query.filter(BillingInvoice.provider == provider)
    search = (args.get("search") or "").strip()
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            BillingInvoice.provider_invoice_id.ilike(pattern)
            | BillingInvoice.invoice_number.ilike(pattern)
            | BillingInvoice.subscription_id.ilike(pattern)
        )
    total = query.count()
    invoices = (
        query.order_by(BillingInvoice.created_at.desc())
        .offset(pagination.offset)
        .limit(pagination.limit)
        .all()
    )
    return [invoice_to_dict(invoice) for invoice in invoices], pagination.meta(total)


def list_webhook_events(args) -> tuple[list[dict], dict]:
    pagination = Pagination.from_args(args)
    query = BillingWebhookEvent.query
    status = (args.get("status") or "").strip().lower()
    if status in VALID_WEBHOOK_EVENT_STATUSES:
        query = query.filter(BillingWebhookEvent.status == status)
    event_type = (args.get("event_type") or "").strip()
    if event_type:
        query = query.filter(BillingWebhookEvent.event_type == event_type)
    search = (args.get("search") or "").strip()
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            BillingWebhookEvent.event_id.ilike(pattern)
            | BillingWebhookEvent.event_type.ilike(pattern)
        )
    total = query.count()
    events = (
        query.order_by(BillingWebhookEvent.created_at.desc())
        .offset(pagination.offset)
        .limit(pagination.limit)
        .all()
    )
    return [webhook_event_to_dict(event) for event in events], pagination.meta(total)


# ---------------------------------------------------------------------------
# Catalog sync
# ---------------------------------------------------------------------------

def _normalize_currency(raw, fallback: str) -> str:
    if not isinstance(raw, str):
        return fallback
    return raw.strip().lower() or fallback


def _catalog_result(product: Product, action: str, product_id: str, price_id: str, amount, currency) -> dict:
    return {
        "product_id": product.id,
        "product_name": product.name,
        "action": action,
        "provider_product_id": product_id,
        "provider_price_id": price_id,
        "unit_amount": float(to_money(amount)),
        "currency": currency,
    }


def sync_catalog(provider: BillingProvider, config: BillingConfig, payload: dict) -> dict:
    """Make sure every active product has a provider price at its current amount.

    A product whose active mapping already matches (same currency, same
    amount to the cent) is ``skipped``; otherwise a new price is ``created``.
    Each new mapping is committed as soon as its provider price exists.
    Dry runs report the same outcomes without calling the provider or writing.
    """
    currency = _normalize_currency(payload.get("currency"), config.currency)
    dry_run = parse_bool(payload.get("dry_run"), default=False)
    requested_ids = []
    if isinstance(payload.get("product_ids"), list):
        requested_ids = [pid for pid in (parse_uuid(raw) for raw in payload["product_ids"]) if pid]

    query = Product.query.filter(Product.is_active.is_(True))
    if requested_ids:
        query = query.filter(Product.id.in_(requested_ids))
    products = query.order_by(Product.name.asc()).all()
    if not products:
        return {
            "provider": provider.name,
            "dry_run": dry_run,
            "total_products": 0,
            "created_count": 0,
            "skipped_count": 0,
            "synced": [],
        }

    existing_by_product: dict[str, list] = {}
    existing_rows = (
        BillingCatalogPrice.query.filter(
            BillingCatalogPrice.provider == provider.name,
            BillingCatalogPrice.product_id.in_([p.id for p in products]),
        )
        .order_by(BillingCatalogPrice.created_at.desc())
        .all()
    )
    for row in existing_rows:
        existing_by_product.setdefault(row.product_id, []).append(row)

    for product in products:
        if product.monthly_price is None or to_money(product.monthly_price) <= 0:
            raise ValidationError(f"Product {product.id} has invalid monthly_price")

    results = []
    for product in products:
        amount = to_money(product.monthly_price)
        rows = existing_by_product.get(product.id, [])

        match = next(
            (
                row for row in rows
                if row.is_active and row.currency == currency and to_money(row.unit_amount) == amount
            ),
            None,
        )
        if match is not None:
            results.append(_catalog_result(
                product, "skipped", match.provider_product_id, match.provider_price_id,
                match.unit_amount, match.currency,
            ))
            continue

        latest_product_id = next((row.provider_product_id for row in rows if row.provider_product_id), None)
        if dry_run:
            results.append(_catalog_result(
                product, "created", latest_product_id or f"pending_{product.id}",
                f"pending_price_{product.id}", amount, currency,
            ))
            continue

        created = provider.ensure_catalog_price(
            internal_product_id=product.id,
            name=product.name,
            currency=currency,
            monthly_amount=amount,
            description=product.description,
            metadata={"source": CATALOG_SYNC_SOURCE},
            existing_provider_product_id=latest_product_id,
        )
        db.session.add(
            BillingCatalogPrice(
                product_id=product.id,
                provider=provider.name,
                provider_product_id=created.provider_product_id,
                provider_price_id=created.provider_price_id,
                currency=created.currency,
                unit_amount=created.unit_amount,
                interval=created.interval,
                interval_count=created.interval_count,
                is_active=True,
                metadata_json={"source": CATALOG_SYNC_SOURCE},
            )
        )
        # Mapping is committed before the next provider call.
        db.session.commit()
        results.append(_catalog_result(
            product, "created", created.provider_product_id, created.provider_price_id,
            created.unit_amount, created.currency,
        ))

    created_count = sum(1 for result in results if result["action"] == "created")
    if not dry_run and created_count:
        log_action("catalog_sync", "billing_catalog_price", None, f"created={created_count}")
        db.session.commit()
    logger.info(
        "Catalog sync via %s (dry_run=%s): %d created, %d skipped",
        provider.name, dry_run, created_count, len(results) - created_count,
    )
    return {
        "provider": provider.name,
        "dry_run": dry_run,
        "total_products": len(products),
        "created_count": created_count,
        "skipped_count": len(results) - created_count,
        "synced": results,
    }


# ---------------------------------------------------------------------------
# Invoice backfill
# ---------------------------------------------------------------------------

def parse_backfill_limit(raw) -> int:
    value = strict_int(raw)
    if value is None or value <= 0:
        return DEFAULT_BACKFILL_LIMIT
    return min(value, MAX_BACKFILL_LIMIT)


def fetch_provider_invoices(provider: BillingProvider, limit: int) -> tuple[list, bool]:
    """Page through the provider's invoices until *limit* are collected."""
    invoices: list = []
    starting_after = None
    has_more_after_fetch = False
    while len(invoices) < limit:
        page = provider.list_invoices(
            limit=min(PROVIDER_PAGE_LIMIT, limit - len(invoices)), starting_after=starting_after
        )
        if not page.invoices:
            has_more_after_fetch = False
            break
        invoices.extend(invoice for invoice in page.invoices if isinstance(invoice, dict))
        if not page.has_more or len(invoices) >= limit:
            has_more_after_fetch = page.has_more
            break
        starting_after = _text(page.invoices[-1].get("id"))
        if not starting_after:
            has_more_after_fetch = False
            break
    return invoices, has_more_after_fetch


def _subscription_for_invoice(provider: str, invoice: dict) -> Optional[Subscription]:
    metadata = _mapping(invoice.get("metadata"))
    internal_id = parse_uuid(metadata.get("internal_subscription_id"))
    if internal_id:
        subscription = db.session.get(Subscription, internal_id)
        if subscription is not None:
            return subscription
    provider_subscription_id = _text(invoice.get("subscription"))
    if provider_subscription_id:
        return Subscription.query.filter_by(
            billing_provider=provider, provider_subscription_id=provider_subscription_id
        ).first()
    return None


def backfill_invoices(provider: BillingProvider, payload: dict) -> dict:
    """Mirror historical provider invoices; ``dry_run`` only when literally ``true``."""
    requested_limit = parse_backfill_limit(payload.get("limit"))
    dry_run = payload.get("dry_run") is True

    invoices, has_more = fetch_provider_invoices(provider, requested_limit)
    unresolved: list[str] = []
    mirrored = 0
    linked_subscriptions = 0
    linked_customers = 0

    for invoice in invoices:
        provider_invoice_id = _text(invoice.get("id"))
        if not provider_invoice_id:
            continue
        subscription = _subscription_for_invoice(provider.name, invoice)
        billing_customer_id = (
            subscription.billing_customer_id if subscription and subscription.billing_customer_id
            else find_billing_customer_id(provider.name, _text(invoice.get("customer")))
        )
        if subscription is not None:
            linked_subscriptions += 1
        else:
            unresolved.append(provider_invoice_id)
        if billing_customer_id:
            linked_customers += 1

        if not dry_run:
            upsert_invoice(
                provider.name,
                provider_invoice_id,
                invoice_mirror_fields(invoice),
                subscription.id if subscription else None,
                billing_customer_id,
            )
        mirrored += 1

    if not dry_run and mirrored:
        log_action("backfill", "billing_invoice", None, f"mirrored={mirrored}")
        db.session.commit()
    logger.info(
        "Invoice backfill via %s (dry_run=%s): fetched=%d mirrored=%d unresolved=%d",
        provider.name, dry_run, len(invoices), mirrored, len(unresolved),
    )
    return {
        "provider": provider.name,
        "dry_run": dry_run,
        "requested_limit": requested_limit,
        "fetched_count": len(invoices),
        "mirrored_count": mirrored,
        "linked_subscription_count": linked_subscriptions,
        "linked_billing_customer_count": linked_customers,
        "unresolved_invoice_ids": unresolved[:UNRESOLVED_SAMPLE_SIZE],
        "unresolved_total": len(unresolved),
        "has_more_available": has_more,
    }
