"""Billing provider adapters: Stripe and a deterministic mock."""

from __future__ import annotations

import datetime
import hashlib
import logging
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Optional

import stripe

from config_models import BillingConfig
from services.errors import ProviderError
from services.money import to_minor_unit, to_money
from utils import from_unix_timestamp, isoformat, utc_now

logger = logging.getLogger(__name__)


@dataclass
class CatalogPrice:
    provider_product_id: str
    provider_price_id: str
    currency: str
    unit_amount: Decimal
    interval: str = "month"
    interval_count: int = 1


@dataclass
class CancellationSnapshot:
    provider_subscription_id: str
    provider_status: Optional[str] = None
    current_period_end: Optional[datetime.datetime] = None
    cancelled_at: Optional[datetime.datetime] = None
    cancel_at_period_end: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data["current_period_end"] = isoformat(self.current_period_end)
        data["cancelled_at"] = isoformat(self.cancelled_at)
        return data


@dataclass
class InvoicePage:
    invoices: list = field(default_factory=list)
    has_more: bool = False


class BillingProvider:
    name = ""

    def ensure_catalog_price(
        self,
        internal_product_id: str,
        name: str,
        currency: str,
        monthly_amount,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
        existing_provider_product_id: Optional[str] = None,
    ) -> CatalogPrice:
        raise NotImplementedError

    def cancel_now(self, provider_subscription_id: str) -> CancellationSnapshot:
        raise NotImplementedError

    def cancel_at_period_end(self, provider_subscription_id: str) -> CancellationSnapshot:
        raise NotImplementedError

    def list_invoices(self, limit: int, starting_after: Optional[str] = None) -> InvoicePage:
        raise NotImplementedError


def _require_subscription_id(provider_subscription_id: str) -> str:
    normalized = (provider_subscription_id or "").strip()
    if not normalized:
        raise ProviderError("Provider subscription ID is required")
    return normalized


# ---------------------------------------------------------------------------
# Mock provider
# ---------------------------------------------------------------------------

def hash_id(prefix: str, seed: str) -> str:
    """``<prefix>_<first 16 hex of sha256(seed)>``."""
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()[:16]
    return f"{prefix}_{digest}"


class MockBillingProvider(BillingProvider):
    """Offline provider: stable ids derived from the inputs, no network."""

    name = "mock"

    def ensure_catalog_price(
        self,
        internal_product_id,
        name,
        currency,
        monthly_amount,
        description=None,
        metadata=None,
        existing_provider_product_id=None,
    ):
        amount = to_money(monthly_amount)
        product_id = existing_provider_product_id or hash_id(
            "mock_prod", f"{internal_product_id}:{name}"
        )
        return CatalogPrice(
            provider_product_id=product_id,
            provider_price_id=hash_id("mock_price", f"{product_id}:{currency}:{amount}"),
            currency=currency,
            unit_amount=amount,
        )

    def cancel_now(self, provider_subscription_id):
        subscription_id = _require_subscription_id(provider_subscription_id)
        return CancellationSnapshot(
            provider_subscription_id=subscription_id,
            provider_status="canceled",
            cancelled_at=utc_now(),
        )

    def cancel_at_period_end(self, provider_subscription_id):
        subscription_id = _require_subscription_id(provider_subscription_id)
        return CancellationSnapshot(
            provider_subscription_id=subscription_id,
            provider_status="active",
            current_period_end=utc_now() + datetime.timedelta(days=30),
            cancel_at_period_end=True,
        )

    def list_invoices(self, limit, starting_after=None):
        return InvoicePage()


# ---------------------------------------------------------------------------
# Stripe provider
# ---------------------------------------------------------------------------

def _period_end(subscription) -> Optional[datetime.datetime]:
    value = subscription.get("current_period_end")
    if value is None:
        # Newer API versions report the period on the subscription items
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            value = items[0].get("current_period_end")
    return from_unix_timestamp(value)


def _snapshot(subscription, fallback_id: str) -> CancellationSnapshot:
    return CancellationSnapshot(
        provider_subscription_id=subscription.get("id") or fallback_id,
        provider_status=subscription.get("status"),
        current_period_end=_period_end(subscription),
        cancelled_at=from_unix_timestamp(subscription.get("canceled_at")),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
    )


class StripeBillingProvider(BillingProvider):
    name = "stripe"

    def __init__(self, secret_key: str):
        self.secret_key = secret_key

    def _get_stripe(self):
        if not self.secret_key:
            raise ProviderError("STRIPE_SECRET_KEY is not configured")
        stripe.api_key = self.secret_key
        return stripe

    def _create_product(self, client, internal_product_id, name, description, metadata):
        params = {
            "name": name,
            "metadata": {"internal_product_id": internal_product_id, **(metadata or {})},
        }
        if description:
            params["description"] = description
        product = client.Product.create(**params)
        return product["id"]

    def ensure_catalog_price(
        self,
        internal_product_id,
        name,
        currency,
        monthly_amount,
        description=None,
        metadata=None,
        existing_provider_product_id=None,
    ):
        client = self._get_stripe()
        try:
            product_id = existing_provider_product_id or self._create_product(
                client, internal_product_id, name, description, metadata
            )
            price = client.Price.create(
                product=product_id,
                currency=currency,
                unit_amount=to_minor_unit(monthly_amount),
                recurring={"interval": "month", "interval_count": 1},
                metadata={"internal_product_id": internal_product_id, **(metadata or {})},
            )
        except stripe.StripeError as exc:
            logger.error("Stripe price creation failed for product %s: %s", internal_product_id, exc)
            raise ProviderError(exc.user_message or str(exc)) from exc
        return CatalogPrice(
            provider_product_id=product_id,
            provider_price_id=price["id"],
            currency=currency,
            unit_amount=to_money(monthly_amount),
        )

    def cancel_now(self, provider_subscription_id):
        subscription_id = _require_subscription_id(provider_subscription_id)
        client = self._get_stripe()
        try:
            subscription = client.Subscription.cancel(subscription_id)
        except stripe.StripeError as exc:
            logger.error("Stripe cancel failed for %s: %s", subscription_id, exc)
            raise ProviderError(exc.user_message or str(exc)) from exc
        logger.info("Cancelled Stripe subscription %s", subscription_id)
        return _snapshot(subscription, subscription_id)

    def cancel_at_period_end(self, provider_subscription_id):
        subscription_id = _require_subscription_id(provider_subscription_id)
        client = self._get_stripe()
        try:
            subscription = client.Subscription.modify(subscription_id, cancel_at_period_end=True)
        except stripe.StripeError as exc:
            logger.error("Stripe cancel-at-period-end failed for %s: %s", subscription_id, exc)
            raise ProviderError(exc.user_message or str(exc)) from exc
        logger.info("Stripe subscription %s set to cancel at period end", subscription_id)
        return _snapshot(subscription, subscription_id)

    def list_invoices(self, limit, starting_after=None):
        client = self._get_stripe()
        params = {"limit": limit}
        if starting_after:
            params["starting_after"] = starting_after
        try:
            page = client.Invoice.list(**params)
        except stripe.StripeError as exc:
            logger.error("Stripe invoice listing failed: %s", exc)
            raise ProviderError(exc.user_message or str(exc)) from exc
        return InvoicePage(invoices=list(page.get("data") or []), has_more=bool(page.get("has_more")))


def get_billing_provider(config: BillingConfig, name: Optional[str] = None) -> BillingProvider:
    """Provider named *name* (or the configured default); unknown names use the mock."""
    selected = (name or config.provider or "").strip().lower()
    if selected == "stripe":
        return StripeBillingProvider(config.stripe_secret_key)
    return MockBillingProvider()
