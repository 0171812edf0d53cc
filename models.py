"""SQLAlchemy models and role-permission mapping."""

from __future__ import annotations

from extensions import db
from utils import new_id, utc_now

# ---------------------------------------------------------------------------
# Role / Permission mapping
# ---------------------------------------------------------------------------

ROLE_PERMISSIONS: dict[str, set[str]] = {
    "admin": {"manage_all"},
    "customer": {"view_own"},
}

VALID_ROLES = list(ROLE_PERMISSIONS.keys())
ROLE_LABELS = {"admin": "Admin", "customer": "Customer"}


# ---------------------------------------------------------------------------
# Users, profiles, companies
# ---------------------------------------------------------------------------

class User(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255))
    role = db.Column(db.String(30), nullable=False, default="customer")
    # Identity-provider metadata (signup form name), used when no profile exists
    full_name = db.Column(db.String(160))
    display_name = db.Column(db.String(160))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    profile = db.relationship(
        "Profile", backref="user", uselist=False, cascade="all, delete-orphan"
    )
    company = db.relationship(
        "Company", backref="user", uselist=False, cascade="all, delete-orphan"
    )

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class Profile(db.Model):
    id = db.Column(db.String(36), db.ForeignKey("user.id"), primary_key=True)
    full_name = db.Column(db.String(160))
    phone_number = db.Column(db.String(60))
    job_title = db.Column(db.String(120))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)


class Company(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    profile_id = db.Column(
        db.String(36), db.ForeignKey("user.id"), unique=True, nullable=False
    )
    company_name = db.Column(db.String(160))
    registration_number = db.Column(db.String(60))
    industry = db.Column(db.String(120))
    team_size = db.Column(db.String(40))
    address = db.Column(db.String(255))
    office_city = db.Column(db.String(120))
    office_zip_postal = db.Column(db.String(20))
    delivery_address = db.Column(db.String(255))
    delivery_city = db.Column(db.String(120))
    delivery_zip_postal = db.Column(db.String(20))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

PRODUCT_CATEGORIES = ("Chairs", "Desks", "Storage", "Meeting", "Accessories")
VALID_PRODUCT_STATUSES = ("draft", "active", "inactive")
VALID_PRICING_MODES = ("fixed", "tiered")


class Product(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    product_code = db.Column(db.String(40), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    category = db.Column(db.String(40), nullable=False)
    monthly_price = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    pricing_mode = db.Column(db.String(20), nullable=False, default="fixed")
    image_url = db.Column(db.String(500))
    video_url = db.Column(db.String(500))
    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="draft")
    is_active = db.Column(db.Boolean, default=False)
    published_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    pricing_tiers = db.relationship(
        "ProductPricingTier",
        backref="product",
        cascade="all, delete-orphan",
        order_by="ProductPricingTier.min_months",
    )

    __table_args__ = (
        db.Index("ix_product_name", "name"),
        db.Index("ix_product_category_status", "category", "status"),
    )


class ProductPricingTier(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    product_id = db.Column(db.String(36), db.ForeignKey("product.id"), nullable=False)
    min_months = db.Column(db.Integer, nullable=False)
    monthly_price = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)

    __table_args__ = (
        db.UniqueConstraint("product_id", "min_months", name="uq_product_tier_months"),
    )


class Bundle(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    image_url = db.Column(db.String(500))
    monthly_price = db.Column(db.Numeric(10, 2, asdecimal=True), default=0.0)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)


# ---------------------------------------------------------------------------
# Subscriptions & fulfillment
# ---------------------------------------------------------------------------

VALID_BILLING_STATUSES = ("pending_payment", "active", "payment_failed", "cancelled")
VALID_SERVICE_STATES = ("pending_delivery", "in_service", "offboarding_requested", "closed")
VALID_COLLECTION_STATUSES = ("not_collected", "scheduled", "collected")


class Subscription(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey("user.id"), nullable=False, index=True)
    bundle_id = db.Column(db.String(36), db.ForeignKey("bundle.id"))
    status = db.Column(db.String(30), nullable=False, default="pending_payment")
    monthly_total = db.Column(db.Numeric(10, 2, asdecimal=True))
    subtotal_amount = db.Column(db.Numeric(10, 2, asdecimal=True))
    tax_amount = db.Column(db.Numeric(10, 2, asdecimal=True))
    start_date = db.Column(db.DateTime)
    end_date = db.Column(db.DateTime)
    commitment_end_at = db.Column(db.DateTime)
    billing_provider = db.Column(db.String(20), default="mock")
    provider_subscription_id = db.Column(db.String(120), index=True)
    provider_checkout_session_id = db.Column(db.String(120))
    billing_customer_id = db.Column(db.String(36), db.ForeignKey("billing_customer.id"))
    delivery_company_name = db.Column(db.String(160))
    delivery_address = db.Column(db.String(255))
    delivery_city = db.Column(db.String(120))
    delivery_zip_postal = db.Column(db.String(20))
    delivery_contact_name = db.Column(db.String(160))
    delivery_contact_phone = db.Column(db.String(60))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    user = db.relationship("User", backref="subscriptions")
    bundle = db.relationship("Bundle")
    items = db.relationship(
        "SubscriptionItem",
        backref="subscription",
        cascade="all, delete-orphan",
        order_by="SubscriptionItem.created_at",
    )
    fulfillment = db.relationship(
        "SubscriptionFulfillment",
        backref="subscription",
        uselist=False,
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.Index("ix_subscription_status", "status"),
        db.Index("ix_subscription_created_at", "created_at"),
    )


class SubscriptionItem(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    subscription_id = db.Column(
        db.String(36), db.ForeignKey("subscription.id"), nullable=False, index=True
    )
    product_id = db.Column(db.String(36), db.ForeignKey("product.id"))
    product_name = db.Column(db.String(200))
    category = db.Column(db.String(40))
    monthly_price = db.Column(db.Numeric(10, 2, asdecimal=True))
    duration_months = db.Column(db.Integer)
    quantity = db.Column(db.Integer, default=1)
    created_at = db.Column(db.DateTime, default=utc_now)

    product = db.relationship("Product")


class SubscriptionFulfillment(db.Model):
    subscription_id = db.Column(
        db.String(36), db.ForeignKey("subscription.id"), primary_key=True
    )
    service_state = db.Column(db.String(40), nullable=False, default="pending_delivery")
    collection_status = db.Column(db.String(40), nullable=False, default="not_collected")
    first_delivery_at = db.Column(db.DateTime)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)


VALID_DELIVERY_ORDER_STATUSES = (
    "confirmed",
    "dispatched",
    "delivered",
    "partially_delivered",
    "failed",
    "rescheduled",
    "cancelled",
)


class DeliveryOrder(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    subscription_id = db.Column(
        db.String(36), db.ForeignKey("subscription.id"), nullable=False, index=True
    )
    do_status = db.Column(db.String(30), nullable=False, default="confirmed")
    failure_reason = db.Column(db.Text)
    rescheduled_at = db.Column(db.DateTime)
    cancelled_reason = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    subscription = db.relationship("Subscription", backref="delivery_orders")

    __table_args__ = (
        db.Index("ix_delivery_order_status", "do_status"),
        db.Index("ix_delivery_order_created_at", "created_at"),
    )


# ---------------------------------------------------------------------------
# Billing mirror
# ---------------------------------------------------------------------------

VALID_INVOICE_STATUSES = (
    "draft", "open", "paid", "payment_failed", "void", "uncollectible", "unknown",
)
VALID_INVOICE_PROVIDERS = ("stripe", "mock")
VALID_WEBHOOK_EVENT_STATUSES = ("received", "processed", "failed")


class BillingCustomer(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey("user.id"), index=True)
    provider = db.Column(db.String(20), nullable=False)
    provider_customer_id = db.Column(db.String(120), nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.UniqueConstraint(
            "provider", "provider_customer_id", name="uq_billing_customer_provider"
        ),
    )


class BillingCatalogPrice(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    product_id = db.Column(db.String(36), db.ForeignKey("product.id"), nullable=False)
    provider = db.Column(db.String(20), nullable=False)
    provider_product_id = db.Column(db.String(120), nullable=False)
    provider_price_id = db.Column(db.String(120), nullable=False)
    currency = db.Column(db.String(10), nullable=False)
    unit_amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    interval = db.Column(db.String(10), nullable=False, default="month")
    interval_count = db.Column(db.Integer, nullable=False, default=1)
    is_active = db.Column(db.Boolean, default=True)
    metadata_json = db.Column("metadata", db.JSON)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.Index("ix_catalog_price_product_provider", "product_id", "provider"),
    )


class BillingInvoice(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    provider = db.Column(db.String(20), nullable=False)
    provider_invoice_id = db.Column(db.String(120), nullable=False)
    provider_subscription_id = db.Column(db.String(120))
    billing_customer_id = db.Column(db.String(36), db.ForeignKey("billing_customer.id"))
    subscription_id = db.Column(db.String(36), db.ForeignKey("subscription.id"), index=True)
    invoice_number = db.Column(db.String(60))
    status = db.Column(db.String(30), nullable=False, default="unknown")
    currency = db.Column(db.String(10), nullable=False, default="myr")
    subtotal_amount = db.Column(db.Numeric(10, 2, asdecimal=True))
    tax_amount = db.Column(db.Numeric(10, 2, asdecimal=True))
    total_amount = db.Column(db.Numeric(10, 2, asdecimal=True))
    amount_paid = db.Column(db.Numeric(10, 2, asdecimal=True))
    amount_due = db.Column(db.Numeric(10, 2, asdecimal=True))
    hosted_invoice_url = db.Column(db.String(500))
    invoice_pdf = db.Column(db.String(500))
    payment_intent_id = db.Column(db.String(120))
    due_date = db.Column(db.DateTime)
    paid_at = db.Column(db.DateTime)
    period_start_at = db.Column(db.DateTime)
    period_end_at = db.Column(db.DateTime)
    raw_payload = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        db.UniqueConstraint(
            "provider", "provider_invoice_id", name="uq_billing_invoice_provider"
        ),
        db.Index("ix_billing_invoice_created_at", "created_at"),
    )


class BillingWebhookEvent(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    provider = db.Column(db.String(20), nullable=False, default="stripe")
    event_id = db.Column(db.String(120), nullable=False)
    event_type = db.Column(db.String(120), nullable=False)
    payload = db.Column(db.JSON)
    status = db.Column(db.String(20), nullable=False, default="received")
    subscription_id = db.Column(db.String(36), db.ForeignKey("subscription.id"))
    processed_at = db.Column(db.DateTime)
    error_message = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.UniqueConstraint("provider", "event_id", name="uq_webhook_event_provider"),
        db.Index("ix_webhook_event_created_at", "created_at"),
    )


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey("user.id", ondelete="SET NULL"))
    action = db.Column(db.String(80), nullable=False)
    entity_type = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.String(36))
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)

    user = db.relationship("User")

    __table_args__ = (
        db.Index("ix_audit_entity", "entity_type", "entity_id"),
    )
