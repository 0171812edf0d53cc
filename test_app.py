"""Comprehensive test suite for the Deskly admin console.

Tests cover: app creation, the admin gate, every admin listing and its JSON
API, product CSV import/export, media uploads, delivery-order transitions,
Stripe billing actions, catalog sync, invoice backfill and webhooks.
"""

import datetime
import io
import json
import os
import tempfile
from decimal import Decimal
from unittest.mock import patch

import pytest

os.environ["DATABASE_URI"] = "sqlite://"  # In-memory database for tests
os.environ["APP_SECRET_KEY"] = "test-secret-key"
os.environ["ADMIN_EMAIL"] = "admin@deskly.local"
os.environ["SUPER_ADMIN_EMAIL"] = "root@deskly.local"
os.environ["BILLING_PROVIDER"] = "mock"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["MEDIA_ROOT"] = tempfile.mkdtemp(prefix="deskly-media-")

from app import create_app
from config import load_billing_config
from extensions import db
from models import (
    AuditLog,
    BillingCatalogPrice,
    BillingCustomer,
    BillingInvoice,
    BillingWebhookEvent,
    Bundle,
    Company,
    DeliveryOrder,
    Product,
    Profile,
    Subscription,
    SubscriptionFulfillment,
    SubscriptionItem,
    User,
)
from services import delivery_status
from services.auth import gate_decision
from services.billing import invoice_mirror_fields, normalize_invoice_status
from services.billing_providers import (
    InvoicePage,
    MockBillingProvider,
    StripeBillingProvider,
    get_billing_provider,
)
from services.errors import ProviderError, ValidationError
from services.listing import ListState, PageWindow, Pagination, matches_search
from services.money import from_minor_unit, sst_quote, to_minor_unit, to_money
from services.stripe_billing import map_stripe_subscription_status
from utils import (
    clean_text,
    compact_id,
    from_unix_timestamp,
    isoformat,
    optional_float,
    parse_bool,
    parse_iso_datetime,
    parse_uuid,
    strict_int,
    to_snake_case,
)
from werkzeug.security import generate_password_hash

TEST_PASSWORD = "testpassword"
ADMIN_EMAIL = "admin@deskly.local"
MISSING_ID = "00000000-0000-4000-8000-000000000000"


@pytest.fixture
def app():
    """Create application for testing."""
    application = create_app()
    application.config["TESTING"] = True
    application.config["WTF_CSRF_ENABLED"] = False
    application.config["RATELIMIT_ENABLED"] = False
    with application.app_context():
        admin = User.query.filter_by(email=ADMIN_EMAIL).first()
        if admin:
            admin.password_hash = generate_password_hash(TEST_PASSWORD)
            db.session.commit()
    yield application


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def logged_in_client(client, app):
    """Create test client with logged-in admin session."""
    with app.app_context():
        user = User.query.filter_by(email=ADMIN_EMAIL).first()
        with client.session_transaction() as sess:
            sess["user_id"] = user.id
    return client


@pytest.fixture
def customer_client(app):
    """Test client signed in as a non-admin customer."""
    client = app.test_client()
    with app.app_context():
        user = User(
            email="shopper@example.com",
            password_hash=generate_password_hash(TEST_PASSWORD),
            role="customer",
        )
        db.session.add(user)
        db.session.commit()
        with client.session_transaction() as sess:
            sess["user_id"] = user.id
    return client


@pytest.fixture
def sample_data(app):
    """Create sample data for tests. Returns dict of IDs to avoid detached instance errors."""
    with app.app_context():
        customer_a = User(
            email="aisyah@lumen.my",
            password_hash=generate_password_hash(TEST_PASSWORD),
            role="customer",
            full_name="Aisyah R.",
        )
        customer_b = User(email="daniel@kopi.co", role="customer", full_name="Daniel Tan")
        db.session.add_all([customer_a, customer_b])
        db.session.flush()
        customer_a.profile = Profile(
            full_name="Aisyah Rahman", phone_number="+60 12-345 6789", job_title="Operations Lead"
        )
        customer_a.company = Company(
            company_name="Lumen Analytics",
            industry="Technology",
            team_size="11-50",
            address="Level 8, Menara Deskly",
            office_city="Kuala Lumpur",
            office_zip_postal="50450",
        )

        chair = Product(
            product_code="CHAIR-000001",
            name="Ergonomic Chair",
            category="Chairs",
            monthly_price=Decimal("45.00"),
            stock_quantity=10,
            status="active",
            is_active=True,
        )
        desk = Product(
            product_code="DESK-000001",
            name="Standing Desk",
            category="Desks",
            monthly_price=Decimal("89.00"),
            stock_quantity=5,
            status="active",
            is_active=True,
        )
        pedestal = Product(
            product_code="STORAGE-000001",
            name="Mobile Pedestal",
            category="Storage",
            monthly_price=Decimal("19.00"),
            stock_quantity=30,
            status="draft",
            is_active=False,
        )
        bundle = Bundle(name="Starter Workstation", monthly_price=Decimal("119.00"))
        db.session.add_all([chair, desk, pedestal, bundle])
        db.session.flush()

        billing_customer = BillingCustomer(
            user_id=customer_a.id, provider="mock", provider_customer_id="mock_cus_test"
        )
        db.session.add(billing_customer)
        db.session.flush()

        now = datetime.datetime.now(datetime.timezone.utc)
        active = Subscription(
            user_id=customer_a.id,
            status="active",
            monthly_total=Decimal("134.00"),
            subtotal_amount=Decimal("134.00"),
            start_date=now,
            commitment_end_at=now + datetime.timedelta(days=365),
            billing_provider="mock",
            provider_subscription_id="mock_sub_0001",
            billing_customer_id=billing_customer.id,
        )
        for product in (chair, desk):
            active.items.append(
                SubscriptionItem(
                    product_id=product.id,
                    product_name=product.name,
                    category=product.category,
                    monthly_price=product.monthly_price,
                    duration_months=12,
                    quantity=1,
                )
            )
        active.fulfillment = SubscriptionFulfillment(service_state="pending_delivery")

        cancelled = Subscription(
            user_id=customer_a.id,
            status="cancelled",
            monthly_total=Decimal("45.00"),
            billing_provider="mock",
            provider_subscription_id="mock_sub_0002",
        )
        pending = Subscription(
            user_id=customer_a.id,
            status="pending_payment",
            monthly_total=Decimal("19.00"),
            billing_provider="stripe",
        )
        db.session.add_all([active, cancelled, pending])
        db.session.flush()

        order = DeliveryOrder(subscription_id=active.id, do_status="confirmed")
        blocked_order = DeliveryOrder(subscription_id=cancelled.id, do_status="confirmed")
        db.session.add_all([order, blocked_order])
        db.session.commit()

        return {
            "customer_a_id": customer_a.id,
            "customer_b_id": customer_b.id,
            "chair_id": chair.id,
            "desk_id": desk.id,
            "pedestal_id": pedestal.id,
            "bundle_id": bundle.id,
            "billing_customer_id": billing_customer.id,
            "active_id": active.id,
            "cancelled_id": cancelled.id,
            "pending_id": pending.id,
            "order_id": order.id,
            "blocked_order_id": blocked_order.id,
        }


def _admin_id(app):
    with app.app_context():
        return User.query.filter_by(email=ADMIN_EMAIL).first().id


# ============================================================================
# Utility functions
# ============================================================================


class TestUtilityFunctions:
    def test_parse_uuid(self):
        raw = "  3F2A9C01-1111-4222-8333-444455556666 "
        assert parse_uuid(raw) == "3f2a9c01-1111-4222-8333-444455556666"
        assert parse_uuid("not-a-uuid") is None
        assert parse_uuid(None) is None
        assert parse_uuid(42) is None

    def test_compact_id(self):
        assert compact_id("3f2a9c01-1111-4222-8333-444455556666") == "3F2A9C01"
        assert compact_id("") == ""

    def test_to_snake_case(self):
        assert to_snake_case("monthlyTotal") == "monthly_total"
        assert to_snake_case("billing-status") == "billing_status"
        assert to_snake_case("start_date") == "start_date"

    def test_strict_int(self):
        assert strict_int("3") == 3
        assert strict_int(4.0) == 4
        assert strict_int("3.5") is None
        assert strict_int(True) is None
        assert strict_int("") is None

    def test_optional_float(self):
        assert optional_float("12.5") == 12.5
        assert optional_float("nan") is None
        assert optional_float("inf") is None
        assert optional_float("abc") is None
        assert optional_float(False) is None

    def test_parse_bool(self):
        assert parse_bool("yes") is True
        assert parse_bool("off") is False
        assert parse_bool(1) is True
        assert parse_bool("maybe", default=True) is True

    def test_clean_text(self):
        assert clean_text("  hi ") == "hi"
        assert clean_text("   ") is None
        assert clean_text(None) is None

    def test_parse_iso_datetime(self):
        parsed = parse_iso_datetime("2026-01-05T10:00:00Z")
        assert parsed.tzinfo is not None
        assert parsed.hour == 10
        assert parse_iso_datetime("next tuesday") is None
        assert parse_iso_datetime("") is None

    def test_timestamps(self):
        epoch = from_unix_timestamp(0)
        assert epoch == datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)
        assert from_unix_timestamp("0") is None
        assert isoformat(datetime.datetime(2026, 3, 1, 8, 0)) == "2026-03-01T08:00:00+00:00"
        assert isoformat(None) is None


class TestMoney:
    def test_to_money_rounds_half_up(self):
        assert to_money("2.675") == Decimal("2.68")
        assert to_money(2.675) == Decimal("2.68")
        assert to_money("abc") == Decimal("0.00")

    def test_minor_units(self):
        assert to_minor_unit("19.99") == 1999
        assert from_minor_unit(14472) == Decimal("144.72")
        assert from_minor_unit(None) == Decimal("0.00")

    def test_sst_quote(self):
        quote = sst_quote(100, "MYR", 0.08)
        assert quote == {
            "subtotal": 100.0,
            "sst_rate": 0.08,
            "sst_amount": 8.0,
            "total": 108.0,
            "currency": "myr",
        }

    def test_sst_quote_clamps_negative_subtotal(self):
        quote = sst_quote(-5, "", 0.08)
        assert quote["subtotal"] == 0.0
        assert quote["total"] == 0.0
        assert quote["currency"] == "myr"


class TestListing:
    def test_pagination_defaults_for_junk(self):
        pagination = Pagination.from_args({"page": "abc", "limit": "-5"})
        assert (pagination.page, pagination.limit) == (1, 10)

    def test_pagination_caps_limit(self):
        assert Pagination.from_args({"limit": "500"}).limit == 100

    def test_pagination_slice_and_meta(self):
        pagination = Pagination.from_args({"page": "2", "limit": "2"})
        assert pagination.slice([1, 2, 3, 4, 5]) == [3, 4]
        assert pagination.meta(5) == {"page": 2, "limit": 2, "total": 5}

    def test_empty_window(self):
        window = PageWindow(page=1, limit=10, total=0)
        assert window.label == "Showing 0-0 of 0"
        assert window.previous_disabled
        assert window.next_disabled

    def test_last_page_window(self):
        window = PageWindow(page=3, limit=10, total=25)
        assert window.label == "Showing 21-25 of 25"
        assert not window.previous_disabled
        assert window.next_disabled

    def test_list_state_resets_page(self):
        state = ListState().with_page(3)
        assert state.page == 3
        assert state.with_search("desk").page == 1
        assert state.with_filter("status", "active").page == 1
        assert state.with_limit(25).page == 1

    def test_list_state_sort_toggle(self):
        state = ListState().with_sort("name")
        assert (state.sort_by, state.sort_dir) == ("name", "asc")
        assert state.with_sort("name").sort_dir == "desc"

    def test_list_state_limit_and_filters(self):
        state = ListState().with_limit(500).with_filter("status", "active")
        assert state.limit == 100
        assert state.to_args()["status"] == "active"
        assert "status" not in state.with_filter("status", "").to_args()

    def test_list_state_from_args(self):
        state = ListState.from_args(
            {"search": " desk ", "status": "active", "sort_by": "bogus", "page": "2"},
            filter_keys=("status",),
            sort_columns=("name", "created_at"),
        )
        assert state.search == "desk"
        assert state.filters == {"status": "active"}
        assert state.sort_by == "created_at"
        assert state.page == 2

    def test_matches_search(self):
        assert matches_search("", "anything")
        assert matches_search("LUMEN", "Lumen Analytics", None)
        assert not matches_search("kopi", "Lumen Analytics")


class TestDeliveryStatus:
    def test_transition_table(self):
        assert delivery_status.can_transition("confirmed", "dispatched")
        assert not delivery_status.can_transition("confirmed", "delivered")
        assert delivery_status.is_terminal("delivered")
        assert delivery_status.is_terminal("cancelled")
        assert not delivery_status.is_terminal("failed")

    def test_build_status_requires_payload(self):
        with pytest.raises(ValidationError):
            delivery_status.build_status("failed", {})
        with pytest.raises(ValidationError):
            delivery_status.build_status("cancelled", {"cancelled_reason": "  "})
        with pytest.raises(ValidationError):
            delivery_status.build_status("rescheduled", {"rescheduled_at": "soon"})
        with pytest.raises(ValidationError):
            delivery_status.build_status("lost", {})

    def test_side_fields_only_for_own_status(self):
        status = delivery_status.build_status(
            " FAILED ", {"failure_reason": " No access ", "cancelled_reason": "ignored"}
        )
        assert status == delivery_status.Failed(failure_reason="No access")
        assert delivery_status.side_fields(status) == {
            "failure_reason": "No access",
            "rescheduled_at": None,
            "cancelled_reason": None,
        }
        fields = delivery_status.side_fields(delivery_status.build_status("dispatched", {}))
        assert set(fields.values()) == {None}


# ============================================================================
# App creation / configuration
# ============================================================================


class TestAppCreation:
    def test_app_exists(self, app):
        assert app is not None

    def test_app_is_testing(self, app):
        assert app.config["TESTING"]

    def test_bootstrap_admin_created(self, app):
        with app.app_context():
            admin = User.query.filter_by(email=ADMIN_EMAIL).first()
            assert admin is not None
            assert admin.role == "admin"

    def test_billing_config_loaded(self, app):
        config = app.config["BILLING_CONFIG"]
        assert config.provider == "mock"
        assert config.currency == "myr"
        assert config.stripe_webhook_secret == "whsec_test"


class TestConfig:
    def test_unknown_provider_falls_back_to_mock(self, monkeypatch):
        monkeypatch.setenv("BILLING_PROVIDER", "paypal")
        assert load_billing_config().provider == "mock"

    def test_invalid_numbers_fall_back(self, monkeypatch):
        monkeypatch.setenv("BILLING_SST_RATE", "1.5")
        monkeypatch.setenv("BILLING_MINIMUM_TERM_MONTHS", "0")
        config = load_billing_config()
        assert config.sst_rate == 0.08
        assert config.minimum_term_months == 12

    def test_yaml_values_used_without_env(self, monkeypatch):
        monkeypatch.delenv("BILLING_DEFAULT_CURRENCY", raising=False)
        monkeypatch.delenv("BILLING_SST_RATE", raising=False)
        config = load_billing_config({"currency": "USD", "sst_rate": 0.06})
        assert config.currency == "usd"
        assert config.sst_rate == 0.06

    def test_snapshot_hides_secrets(self, monkeypatch):
        monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_secret")
        snapshot = load_billing_config().snapshot()
        assert "sk_test_secret" not in json.dumps(snapshot)
        assert "stripe_automatic_tax_enabled" in snapshot


class TestSecurityHeaders:
    def test_security_headers_present(self, client):
        resp = client.get("/login")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert "script-src 'self'" in resp.headers["Content-Security-Policy"]


class TestErrorHandlers:
    def test_404_page(self, client):
        resp = client.get("/nonexistent-page")
        assert resp.status_code == 404

    def test_api_404_is_json(self, logged_in_client):
        resp = logged_in_client.get("/api/admin/nothing-here")
        assert resp.status_code == 404
        assert resp.get_json() == {"data": None, "error": "Not found", "meta": None}


# ============================================================================
# Auth and the admin gate
# ============================================================================


class TestGateDecision:
    def test_public_paths(self):
        assert gate_decision("/", None) is None
        assert gate_decision("/login", None) is None
        assert gate_decision("/static/style.css", None) is None
        assert gate_decision("/api/webhooks/stripe", None) is None

    def test_protected_paths_need_session(self):
        assert gate_decision("/admin", None) == "login"
        assert gate_decision("/admin/products", None) == "login"
        assert gate_decision("/api/admin/dashboard", None) == "login"

    def test_role_check(self):
        customer = User(email="c@example.com", role="customer", is_active=True)
        admin = User(email="a@example.com", role="admin", is_active=True)
        assert gate_decision("/admin", customer) == "forbidden"
        assert gate_decision("/api/customers", customer) == "forbidden"
        assert gate_decision("/admin", admin) is None


class TestAuthRoutes:
    def test_login_page(self, client):
        resp = client.get("/login")
        assert resp.status_code == 200
        assert b"Sign in" in resp.data

    def test_login_success(self, client):
        resp = client.post("/login", data={"email": ADMIN_EMAIL, "password": TEST_PASSWORD})
        assert resp.status_code == 302
        assert resp.headers["Location"].endswith("/admin")

    def test_login_email_is_case_insensitive(self, client):
        resp = client.post(
            "/login", data={"email": "  Admin@Deskly.Local ", "password": TEST_PASSWORD}
        )
        assert resp.status_code == 302

    def test_login_failure(self, client):
        resp = client.post("/login", data={"email": ADMIN_EMAIL, "password": "wrong"})
        assert resp.status_code == 200
        assert b"Invalid email or password." in resp.data

    def test_login_writes_audit_entry(self, client, app):
        client.post("/login", data={"email": ADMIN_EMAIL, "password": TEST_PASSWORD})
        with app.app_context():
            assert AuditLog.query.filter_by(action="login").count() == 1

    def test_logout_requires_post(self, logged_in_client):
        assert logged_in_client.get("/logout").status_code == 405

    def test_logout(self, logged_in_client):
        resp = logged_in_client.post("/logout")
        assert resp.status_code == 302
        assert "/login" in resp.headers["Location"]
        assert logged_in_client.get("/admin").status_code == 302

    def test_admin_requires_login(self, client):
        resp = client.get("/admin")
        assert resp.status_code == 302
        assert "/login" in resp.headers["Location"]

    def test_api_requires_login(self, client):
        resp = client.get("/api/admin/dashboard")
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "Unauthorized"

    def test_customer_is_forbidden_on_screens(self, customer_client):
        resp = customer_client.get("/admin/products")
        assert resp.status_code == 302
        assert resp.headers["Location"].endswith("/")

    def test_customer_is_forbidden_on_api(self, customer_client):
        resp = customer_client.get("/api/admin/products")
        assert resp.status_code == 403
        assert resp.get_json()["error"] == "Forbidden"

    def test_home_redirects_admin(self, logged_in_client):
        resp = logged_in_client.get("/")
        assert resp.status_code == 302
        assert resp.headers["Location"].endswith("/admin")

    def test_home_public(self, client):
        assert client.get("/").status_code == 200

    def test_inactive_user_session_dropped(self, logged_in_client, app):
        with app.app_context():
            admin = User.query.filter_by(email=ADMIN_EMAIL).first()
            admin.is_active = False
            db.session.commit()
        resp = logged_in_client.get("/api/admin/dashboard")
        assert resp.status_code == 401

    def test_webhook_is_public(self, client):
        resp = client.post(
            "/api/webhooks/stripe",
            data=b"{}",
            headers={"Stripe-Signature": "t=1,v1=bad"},
            content_type="application/json",
        )
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Invalid Stripe webhook signature"


# ============================================================================
# Dashboard
# ============================================================================


class TestDashboard:
    def test_dashboard_page(self, logged_in_client, sample_data):
        resp = logged_in_client.get("/admin")
        assert resp.status_code == 200

    def test_dashboard_stats(self, logged_in_client, sample_data):
        resp = logged_in_client.get("/api/admin/dashboard")
        data = resp.get_json()["data"]
        assert data["totalRevenue"] == 134.0
        assert data["activeRentals"] == 1
        assert data["totalProducts"] == 3
        assert data["totalUsers"] == 2
        assert len(data["recentOrders"]) == 2
        names = {order["customerName"] for order in data["recentOrders"]}
        assert names == {"Aisyah Rahman"}

    def test_dashboard_empty(self, logged_in_client):
        data = logged_in_client.get("/api/admin/dashboard").get_json()["data"]
        assert data["totalRevenue"] == 0.0
        assert data["recentOrders"] == []


# ============================================================================
# Customers and admins
# ============================================================================


class TestCustomerRoutes:
    def test_customer_list_api(self, logged_in_client, sample_data):
        resp = logged_in_client.get("/api/customers")
        body = resp.get_json()
        assert resp.status_code == 200
        assert body["meta"]["total"] == 2
        names = {row["name"] for row in body["data"]}
        assert names == {"Aisyah Rahman", "Daniel Tan"}
        assert all(row["role"] == "Customer" for row in body["data"])

    def test_customer_search(self, logged_in_client, sample_data):
        body = logged_in_client.get("/api/customers?search=kopi").get_json()
        assert body["meta"]["total"] == 1
        assert body["data"][0]["email"] == "daniel@kopi.co"

    def test_customer_detail(self, logged_in_client, sample_data):
        resp = logged_in_client.get(f"/api/customers/{sample_data['customer_a_id']}")
        data = resp.get_json()["data"]
        assert data["profile"]["job_title"] == "Operations Lead"
        assert data["company"]["office_address"] == "Level 8, Menara Deskly, Kuala Lumpur 50450"
        assert data["subscription_count"] == 3

    def test_customer_detail_without_profile(self, logged_in_client, sample_data):
        resp = logged_in_client.get(f"/api/customers/{sample_data['customer_b_id']}")
        data = resp.get_json()["data"]
        assert data["profile"] is None
        assert data["company"] is None

    def test_customer_detail_bad_id(self, logged_in_client):
        resp = logged_in_client.get("/api/customers/not-a-uuid")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Invalid customer ID format"

    def test_delete_customer(self, logged_in_client, sample_data, app):
        customer_id = sample_data["customer_b_id"]
        resp = logged_in_client.delete(f"/api/customers?id={customer_id}")
        assert resp.status_code == 200
        assert resp.get_json()["data"] == {"deleted": True, "id": customer_id}
        with app.app_context():
            assert db.session.get(User, customer_id) is None

    def test_delete_customer_with_subscriptions(self, logged_in_client, sample_data):
        resp = logged_in_client.delete(f"/api/customers?id={sample_data['customer_a_id']}")
        assert resp.status_code == 409

    def test_delete_customer_requires_id(self, logged_in_client):
        resp = logged_in_client.delete("/api/customers")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Customer ID is required"

    def test_delete_customer_endpoint_rejects_admins(self, logged_in_client, app):
        resp = logged_in_client.delete(f"/api/customers?id={_admin_id(app)}")
        assert resp.status_code == 403

    def test_admin_list(self, logged_in_client, sample_data):
        body = logged_in_client.get("/api/admins").get_json()
        assert body["meta"]["total"] == 1
        assert body["data"][0]["email"] == ADMIN_EMAIL

    def test_delete_other_admin(self, logged_in_client, app):
        with app.app_context():
            other = User(email="ops@deskly.local", role="admin")
            db.session.add(other)
            db.session.commit()
            other_id = other.id
        resp = logged_in_client.delete(f"/api/admins?id={other_id}")
        assert resp.status_code == 200

    def test_cannot_delete_self(self, logged_in_client, app):
        resp = logged_in_client.delete(f"/api/admins?id={_admin_id(app)}")
        assert resp.status_code == 403
        assert resp.get_json()["error"] == "You cannot delete your own account."

    def test_cannot_delete_super_admin(self, logged_in_client, app):
        with app.app_context():
            root = User(email="root@deskly.local", role="admin")
            db.session.add(root)
            db.session.commit()
            root_id = root.id
        resp = logged_in_client.delete(f"/api/admins?id={root_id}")
        assert resp.status_code == 403
        assert resp.get_json()["error"] == "Cannot delete Super Admin user."

    def test_admin_endpoint_rejects_customers(self, logged_in_client, sample_data):
        resp = logged_in_client.delete(f"/api/admins?id={sample_data['customer_b_id']}")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "User is not an admin"

    def test_customer_screens(self, logged_in_client, sample_data):
        assert logged_in_client.get("/admin/customers").status_code == 200
        assert logged_in_client.get("/admin/admins").status_code == 200
        resp = logged_in_client.get(f"/admin/customers?open={sample_data['customer_a_id']}")
        assert resp.status_code == 200
        assert b"Lumen Analytics" in resp.data

    def test_delete_confirmation_page(self, logged_in_client, sample_data):
        resp = logged_in_client.get(f"/admin/customers/{sample_data['customer_b_id']}/delete")
        assert resp.status_code == 200
        assert (
            b"Are you sure you want to delete Daniel Tan (daniel@kopi.co)? "
            b"This cannot be undone." in resp.data
        )

    def test_delete_screen_success_closes_panel(self, logged_in_client, sample_data):
        resp = logged_in_client.post(f"/admin/customers/{sample_data['customer_b_id']}/delete")
        assert resp.status_code == 302
        assert "/admin/customers" in resp.headers["Location"]
        assert "open=" not in resp.headers["Location"]

    def test_delete_screen_failure_keeps_panel(self, logged_in_client, sample_data):
        customer_id = sample_data["customer_a_id"]
        resp = logged_in_client.post(f"/admin/customers/{customer_id}/delete")
        assert resp.status_code == 302
        assert f"open={customer_id}" in resp.headers["Location"]


# ============================================================================
# Products
# ============================================================================


class TestProductRoutes:
    def test_create_product(self, logged_in_client, sample_data):
        resp = logged_in_client.post(
            "/api/admin/products",
            json={"name": "Task Chair", "category": "chair", "monthly_price": 39.5, "stock_quantity": 12},
        )
        assert resp.status_code == 201
        data = resp.get_json()["data"]
        assert data["product_code"] == "CHAIR-000002"
        assert data["category"] == "Chairs"
        assert data["status"] == "draft"
        assert data["is_active"] is False
        assert data["published_at"] is None
        assert data["monthly_price"] == 39.5

    def test_first_code_in_category(self, logged_in_client):
        resp = logged_in_client.post(
            "/api/admin/products",
            json={"name": "Monitor Arm", "category": "Accessories", "monthly_price": "9.50"},
        )
        assert resp.get_json()["data"]["product_code"] == "ACCESSORY-000001"
        assert resp.get_json()["data"]["stock_quantity"] == 0

    def test_create_active_product_is_published(self, logged_in_client):
        resp = logged_in_client.post(
            "/api/admin/products",
            json={"name": "Cabinet", "category": "storage", "monthly_price": 29, "status": "active"},
        )
        data = resp.get_json()["data"]
        assert data["is_active"] is True
        assert data["published_at"] is not None

    def test_create_tiered_product(self, logged_in_client):
        resp = logged_in_client.post(
            "/api/admin/products",
            json={
                "name": "Sit-Stand Desk",
                "category": "desks",
                "monthly_price": 100,
                "pricing_mode": "tiered",
                "pricing_tiers": [
                    {"min_months": 24, "monthly_price": 80},
                    {"min_months": 12, "monthly_price": 90},
                ],
            },
        )
        assert resp.status_code == 201
        data = resp.get_json()["data"]
        assert data["pricing_mode"] == "tiered"
        assert [tier["min_months"] for tier in data["pricing_tiers"]] == [12, 24]

    @pytest.mark.parametrize(
        "payload,message",
        [
            ({"category": "chair", "monthly_price": 10}, "name is required"),
            ({"name": "Lamp", "category": "lighting", "monthly_price": 10}, "category is invalid"),
            ({"name": "Lamp", "category": "chair", "monthly_price": 0}, "monthly_price must be a positive number"),
            (
                {"name": "Lamp", "category": "chair", "monthly_price": 10, "stock_quantity": -1},
                "stock_quantity must be an integer greater than or equal to 0",
            ),
            (
                {"name": "Lamp", "category": "chair", "monthly_price": 10, "image_url": "ftp://x/y.png"},
                "image_url and video_url must be valid HTTP(S) URLs",
            ),
            (
                {"name": "Lamp", "category": "chair", "monthly_price": 10, "pricing_mode": "weekly"},
                "pricing_mode must be either fixed or tiered",
            ),
            (
                {"name": "Lamp", "category": "chair", "monthly_price": 10, "pricing_mode": "tiered"},
                "pricing_tiers must include at least one valid tier when pricing_mode is tiered",
            ),
            (
                {
                    "name": "Lamp",
                    "category": "chair",
                    "monthly_price": 10,
                    "pricing_mode": "tiered",
                    "pricing_tiers": [
                        {"min_months": 12, "monthly_price": 9},
                        {"min_months": 12, "monthly_price": 8},
                    ],
                },
                "pricing_tiers cannot contain duplicate min_months values",
            ),
            (
                {
                    "name": "Lamp",
                    "category": "chair",
                    "monthly_price": 10,
                    "pricing_mode": "tiered",
                    "pricing_tiers": [{"min_months": 12, "monthly_price": 11}],
                },
                "pricing_tiers monthly_price must be less than or equal to monthly_price",
            ),
        ],
    )
    def test_create_validation(self, logged_in_client, payload, message):
        resp = logged_in_client.post("/api/admin/products", json=payload)
        assert resp.status_code == 400
        assert resp.get_json()["error"] == message

    def test_product_code_is_immutable(self, logged_in_client, sample_data):
        resp = logged_in_client.patch(
            f"/api/admin/products/{sample_data['chair_id']}", json={"product_code": "CHAIR-999999"}
        )
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "product_code is immutable"

    def test_update_requires_fields(self, logged_in_client, sample_data):
        resp = logged_in_client.patch(f"/api/admin/products/{sample_data['chair_id']}", json={})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "No valid fields provided"

    def test_update_rejects_blank_name(self, logged_in_client, sample_data):
        resp = logged_in_client.patch(
            f"/api/admin/products/{sample_data['chair_id']}", json={"name": "   "}
        )
        assert resp.get_json()["error"] == "name cannot be empty"

    def test_publish_sets_published_at(self, logged_in_client, sample_data):
        resp = logged_in_client.patch(
            f"/api/admin/products/{sample_data['pedestal_id']}", json={"status": "active"}
        )
        data = resp.get_json()["data"]
        assert resp.status_code == 200
        assert data["is_active"] is True
        assert data["published_at"] is not None

    def test_update_price(self, logged_in_client, sample_data):
        resp = logged_in_client.patch(
            f"/api/admin/products/{sample_data['chair_id']}", json={"monthly_price": "49.999"}
        )
        assert resp.get_json()["data"]["monthly_price"] == 50.0

    def test_product_bad_ids(self, logged_in_client):
        resp = logged_in_client.get("/api/admin/products/not-a-uuid")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Invalid product ID format"
        resp = logged_in_client.get(f"/api/admin/products/{MISSING_ID}")
        assert resp.status_code == 404

    def test_deactivate_product(self, logged_in_client, sample_data):
        resp = logged_in_client.delete(f"/api/admin/products/{sample_data['chair_id']}")
        data = resp.get_json()["data"]
        assert data["status"] == "inactive"
        assert data["is_active"] is False
        assert logged_in_client.get(f"/api/admin/products/{sample_data['chair_id']}").status_code == 200

    def test_list_filters(self, logged_in_client, sample_data):
        assert logged_in_client.get("/api/admin/products?category=chairs").get_json()["meta"]["total"] == 1
        assert logged_in_client.get("/api/admin/products?status=draft").get_json()["meta"]["total"] == 1
        assert logged_in_client.get("/api/admin/products?search=desk").get_json()["meta"]["total"] == 1
        body = logged_in_client.get("/api/admin/products?min_price=50").get_json()
        assert [row["name"] for row in body["data"]] == ["Standing Desk"]

    def test_list_sort_and_paging(self, logged_in_client, sample_data):
        body = logged_in_client.get(
            "/api/admin/products?sort_by=monthly_price&sort_dir=asc&limit=1&page=2"
        ).get_json()
        assert body["meta"] == {"page": 2, "limit": 1, "total": 3}
        assert body["data"][0]["name"] == "Ergonomic Chair"

    def test_export_csv(self, logged_in_client, sample_data):
        resp = logged_in_client.get("/api/admin/products/export")
        assert resp.status_code == 200
        assert resp.mimetype == "text/csv"
        assert resp.headers["Content-Disposition"].startswith('attachment; filename="products-')
        assert resp.headers["Cache-Control"] == "no-store"
        lines = resp.get_data(as_text=True).splitlines()
        assert lines[0] == (
            "product_code,name,description,category,monthly_price,"
            "stock_quantity,status,created_at,updated_at"
        )
        assert len(lines) == 4
        assert any(line.startswith("CHAIR-000001,Ergonomic Chair,,Chairs,45.00,10,active") for line in lines)

    def test_export_respects_filters(self, logged_in_client, sample_data):
        resp = logged_in_client.get("/api/admin/products/export?category=desk")
        lines = resp.get_data(as_text=True).splitlines()
        assert len(lines) == 2
        assert lines[1].startswith("DESK-000001")

    def test_import_csv(self, logged_in_client, sample_data, app):
        content = (
            "name,category,monthly_price,stock_quantity\n"
            "Task Chair,chair,39.90,10\n"
            "Side Table,accessories,12,4\n"
        ).encode()
        resp = logged_in_client.post(
            "/api/admin/products/import",
            data={"file": (io.BytesIO(content), "products.csv")},
            content_type="multipart/form-data",
        )
        assert resp.status_code == 201
        assert resp.get_json()["data"] == {"imported": 2}
        with app.app_context():
            task_chair = Product.query.filter_by(name="Task Chair").first()
            assert task_chair.product_code == "CHAIR-000002"
            assert task_chair.status == "draft"
            assert task_chair.is_active is False
            assert Product.query.filter_by(product_code="ACCESSORY-000001").count() == 1

    def test_import_reports_every_row_error(self, logged_in_client, sample_data, app):
        content = (
            "name,category,monthly_price,stock_quantity\n"
            ",chair,10,1\n"
            "Lamp,lighting,-1,x\n"
            "Good Chair,chair,20,2\n"
        ).encode()
        resp = logged_in_client.post(
            "/api/admin/products/import",
            data={"file": (io.BytesIO(content), "products.csv")},
            content_type="multipart/form-data",
        )
        body = resp.get_json()
        assert resp.status_code == 400
        assert body["error"] == "CSV validation failed"
        assert body["meta"]["errors"] == [
            "Row 2: name is required",
            "Row 3: category is invalid",
            "Row 3: monthly_price must be a positive number",
            "Row 3: stock_quantity must be an integer greater than or equal to 0",
        ]
        with app.app_context():
            assert Product.query.count() == 3

    @pytest.mark.parametrize(
        "filename,content,message",
        [
            ("products.txt", b"name\nx\n", "Only CSV files are supported"),
            ("products.csv", b"name,category,monthly_price,stock_quantity\n", "CSV must include a header row and at least one data row"),
            ("products.csv", b"name,category\nDesk,desk\n", "Missing required columns: monthly_price, stock_quantity"),
        ],
    )
    def test_import_file_errors(self, logged_in_client, filename, content, message):
        resp = logged_in_client.post(
            "/api/admin/products/import",
            data={"file": (io.BytesIO(content), filename)},
            content_type="multipart/form-data",
        )
        assert resp.status_code == 400
        assert resp.get_json()["error"] == message

    def test_import_requires_file(self, logged_in_client):
        resp = logged_in_client.post("/api/admin/products/import", data={}, content_type="multipart/form-data")
        assert resp.get_json()["error"] == "CSV file is required"

    def test_import_screen_flashes_row_errors(self, logged_in_client):
        content = b"name,category,monthly_price,stock_quantity\n,chair,10,1\n"
        resp = logged_in_client.post(
            "/admin/products/import",
            data={"file": (io.BytesIO(content), "products.csv")},
            content_type="multipart/form-data",
            follow_redirects=True,
        )
        assert resp.status_code == 200
        assert b"Row 2: name is required" in resp.data

    def test_product_screens(self, logged_in_client, sample_data):
        assert logged_in_client.get("/admin/products").status_code == 200
        assert logged_in_client.get("/admin/products?category=Chairs&sort_by=name").status_code == 200
        assert logged_in_client.get("/admin/products/new").status_code == 200
        assert logged_in_client.get(f"/admin/products/{sample_data['chair_id']}").status_code == 200

    def test_product_screen_create(self, logged_in_client, app):
        resp = logged_in_client.post(
            "/admin/products/new",
            data={"name": "Lounge Chair", "category": "Chairs", "monthly_price": "55", "stock_quantity": "3", "status": "draft"},
        )
        assert resp.status_code == 302
        with app.app_context():
            assert Product.query.filter_by(name="Lounge Chair").first().product_code == "CHAIR-000001"

    def test_product_screen_create_invalid(self, logged_in_client):
        resp = logged_in_client.post(
            "/admin/products/new",
            data={"name": "Lounge Chair", "category": "Sofas", "monthly_price": "55", "stock_quantity": "3"},
        )
        assert resp.status_code == 200
        assert b"category is invalid" in resp.data

    def test_product_screen_deactivate(self, logged_in_client, sample_data, app):
        resp = logged_in_client.post(f"/admin/products/{sample_data['desk_id']}/deactivate")
        assert resp.status_code == 302
        with app.app_context():
            assert db.session.get(Product, sample_data["desk_id"]).status == "inactive"


class TestMediaUpload:
    def test_image_upload(self, logged_in_client, app):
        resp = logged_in_client.post(
            "/api/admin/products/media-upload",
            data={"mediaType": "image", "file": (io.BytesIO(b"\x89PNG\r\n\x1a\nfake"), "chair.png", "image/png")},
            content_type="multipart/form-data",
        )
        assert resp.status_code == 201
        data = resp.get_json()["data"]
        assert data["bucket"] == "product-images"
        assert data["mediaType"] == "image"
        assert data["path"].startswith("products/")
        assert data["path"].endswith(".png")
        assert data["url"] == f"/media/product-images/{data['path']}"
        stored = os.path.join(app.config["MEDIA_CONFIG"].root, "product-images", *data["path"].split("/"))
        assert os.path.exists(stored)
        assert logged_in_client.get(data["url"]).status_code == 200

    def test_video_upload(self, logged_in_client):
        resp = logged_in_client.post(
            "/api/admin/products/media-upload",
            data={
                "mediaType": "video",
                "duration_seconds": "45",
                "file": (io.BytesIO(b"\x00\x00\x00\x18ftypmp42"), "tour.mp4", "video/mp4"),
            },
            content_type="multipart/form-data",
        )
        assert resp.status_code == 201
        assert resp.get_json()["data"]["bucket"] == "product-videos"

    @pytest.mark.parametrize(
        "form,message",
        [
            ({"mediaType": "video"}, "duration_seconds is required for video uploads"),
            ({"mediaType": "video", "duration_seconds": "75"}, "Video must be 60 seconds or shorter"),
            ({"mediaType": "audio"}, "mediaType must be image or video"),
        ],
    )
    def test_video_rules(self, logged_in_client, form, message):
        data = dict(form)
        data["file"] = (io.BytesIO(b"\x00\x00\x00\x18ftypmp42"), "tour.mp4", "video/mp4")
        resp = logged_in_client.post(
            "/api/admin/products/media-upload", data=data, content_type="multipart/form-data"
        )
        assert resp.status_code == 400
        assert resp.get_json()["error"] == message

    def test_image_format(self, logged_in_client):
        resp = logged_in_client.post(
            "/api/admin/products/media-upload",
            data={"mediaType": "image", "file": (io.BytesIO(b"GIF89a"), "anim.gif", "image/gif")},
            content_type="multipart/form-data",
        )
        assert resp.get_json()["error"] == "Image must be JPG, PNG, or WebP"

    def test_image_size_limit(self, logged_in_client, app):
        app.config["MEDIA_CONFIG"].image_max_bytes = 8
        resp = logged_in_client.post(
            "/api/admin/products/media-upload",
            data={"mediaType": "image", "file": (io.BytesIO(b"0123456789"), "big.jpg", "image/jpeg")},
            content_type="multipart/form-data",
        )
        assert resp.get_json()["error"] == "Image exceeds 5MB limit"

    def test_file_required(self, logged_in_client):
        resp = logged_in_client.post(
            "/api/admin/products/media-upload", data={"mediaType": "image"}, content_type="multipart/form-data"
        )
        assert resp.get_json()["error"] == "file is required"


class TestBundleRoutes:
    def test_list_bundles(self, logged_in_client, sample_data):
        body = logged_in_client.get("/api/bundles").get_json()
        assert body["meta"]["total"] == 1
        assert body["data"][0]["name"] == "Starter Workstation"
        assert body["data"][0]["monthly_price"] == 119.0

    def test_deactivate_bundle(self, logged_in_client, sample_data):
        resp = logged_in_client.delete(f"/api/bundles/{sample_data['bundle_id']}")
        assert resp.get_json()["data"]["is_active"] is False
        assert logged_in_client.get("/api/bundles").get_json()["meta"]["total"] == 0
        assert logged_in_client.get("/api/bundles?include_inactive=1").get_json()["meta"]["total"] == 1

    def test_deactivate_bundle_bad_id(self, logged_in_client):
        resp = logged_in_client.delete("/api/bundles/nope")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Invalid bundle ID format"


# ============================================================================
# Subscriptions
# ============================================================================


class TestSubscriptionRoutes:
    def test_list(self, logged_in_client, sample_data):
        body = logged_in_client.get("/api/admin/subscriptions").get_json()
        assert body["meta"]["total"] == 3
        assert logged_in_client.get("/api/admin/subscriptions?status=active").get_json()["meta"]["total"] == 1

    def test_search_by_short_id(self, logged_in_client, sample_data):
        short = compact_id(sample_data["active_id"])
        body = logged_in_client.get(f"/api/admin/subscriptions?search=%23{short}").get_json()
        assert body["meta"]["total"] == 1
        assert body["data"][0]["items"] == "Chairs x 1, Desks x 1"
        assert body["data"][0]["customer"] == "Aisyah Rahman"

    def test_detail(self, logged_in_client, sample_data):
        data = logged_in_client.get(f"/api/admin/subscriptions/{sample_data['active_id']}").get_json()["data"]
        assert data["billingStatus"] == "active"
        assert data["total"] == 134.0
        assert data["availableActions"] == ["cancel_now", "cancel_at_period_end"]
        assert data["customer"]["companyName"] == "Lumen Analytics"
        assert data["customer"]["deliveryAddress"] == "Level 8, Menara Deskly, Kuala Lumpur 50450"
        assert len(data["items"]) == 2

    def test_detail_without_provider_id_has_no_actions(self, logged_in_client, sample_data):
        data = logged_in_client.get(f"/api/admin/subscriptions/{sample_data['pending_id']}").get_json()["data"]
        assert data["availableActions"] == []

    @pytest.mark.parametrize("field", ["status", "monthlyTotal", "billing_status", "endDate"])
    def test_billing_fields_are_readonly(self, logged_in_client, sample_data, field):
        resp = logged_in_client.patch(
            f"/api/admin/subscriptions/{sample_data['active_id']}", json={field: "x"}
        )
        assert resp.status_code == 409
        assert resp.get_json()["error"] == (
            "Billing fields are managed by Stripe and cannot be edited manually."
        )

    def test_edit_delivery_contact(self, logged_in_client, sample_data):
        resp = logged_in_client.patch(
            f"/api/admin/subscriptions/{sample_data['active_id']}",
            json={"deliveryContactName": "Farah Aziz", "delivery_city": "Petaling Jaya"},
        )
        assert resp.status_code == 200
        assert resp.get_json()["data"]["customer"]["name"] == "Farah Aziz"

    def test_edit_requires_known_fields(self, logged_in_client, sample_data):
        resp = logged_in_client.patch(
            f"/api/admin/subscriptions/{sample_data['active_id']}", json={"colour": "blue"}
        )
        assert resp.status_code == 400

    def test_billing_action_requires_confirmation(self, logged_in_client, sample_data):
        url = f"/api/admin/subscriptions/{sample_data['active_id']}/billing-actions"
        resp = logged_in_client.post(url, json={"action": "cancel_now"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Confirmation is required for billing actions"
        resp = logged_in_client.post(url, json={"action": "cancel_now", "confirm": "true"})
        assert resp.status_code == 400

    def test_billing_action_unknown(self, logged_in_client, sample_data):
        resp = logged_in_client.post(
            f"/api/admin/subscriptions/{sample_data['active_id']}/billing-actions",
            json={"action": "refund", "confirm": True},
        )
        assert resp.status_code == 400

    def test_cancel_now(self, logged_in_client, sample_data, app):
        resp = logged_in_client.post(
            f"/api/admin/subscriptions/{sample_data['active_id']}/billing-actions",
            json={"action": "cancel_now", "confirm": True},
        )
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["billingStatus"] == "cancelled"
        assert data["serviceState"] == "offboarding_requested"
        assert data["endDate"] is not None
        assert data["availableActions"] == []
        with app.app_context():
            assert AuditLog.query.filter_by(action="cancel_now").count() == 1

    def test_cancel_at_period_end(self, logged_in_client, sample_data):
        resp = logged_in_client.post(
            f"/api/admin/subscriptions/{sample_data['active_id']}/billing-actions",
            json={"action": "cancel_at_period_end", "confirm": True},
        )
        data = resp.get_json()["data"]
        assert data["billingStatus"] == "active"
        assert data["endDate"] is not None

    def test_billing_action_on_cancelled(self, logged_in_client, sample_data):
        resp = logged_in_client.post(
            f"/api/admin/subscriptions/{sample_data['cancelled_id']}/billing-actions",
            json={"action": "cancel_now", "confirm": True},
        )
        assert resp.status_code == 409

    def test_billing_action_without_provider_id(self, logged_in_client, sample_data):
        resp = logged_in_client.post(
            f"/api/admin/subscriptions/{sample_data['pending_id']}/billing-actions",
            json={"action": "cancel_now", "confirm": True},
        )
        assert resp.status_code == 409
        assert resp.get_json()["error"] == (
            "Cannot run billing action because provider_subscription_id is missing"
        )

    def test_provider_failure_leaves_subscription(self, logged_in_client, sample_data, app):
        with patch.object(
            MockBillingProvider, "cancel_now", side_effect=ProviderError("Stripe unavailable")
        ):
            resp = logged_in_client.post(
                f"/api/admin/subscriptions/{sample_data['active_id']}/billing-actions",
                json={"action": "cancel_now", "confirm": True},
            )
        assert resp.status_code == 502
        assert resp.get_json()["error"] == "Stripe unavailable"
        with app.app_context():
            assert db.session.get(Subscription, sample_data["active_id"]).status == "active"

    def test_subscription_screens(self, logged_in_client, sample_data):
        assert logged_in_client.get("/admin/subscriptions").status_code == 200
        resp = logged_in_client.get(f"/admin/subscriptions?open={sample_data['active_id']}")
        assert resp.status_code == 200
        assert b"Lumen Analytics" in resp.data

    def test_billing_action_confirmation_page(self, logged_in_client, sample_data):
        resp = logged_in_client.get(
            f"/admin/subscriptions/{sample_data['active_id']}/billing-actions/cancel_now"
        )
        assert resp.status_code == 200
        assert b"Are you sure you want to cancel now for this Stripe subscription?" in resp.data

    def test_billing_action_screen(self, logged_in_client, sample_data, app):
        subscription_id = sample_data["active_id"]
        resp = logged_in_client.post(
            f"/admin/subscriptions/{subscription_id}/billing-actions/cancel_now"
        )
        assert resp.status_code == 302
        assert f"open={subscription_id}" in resp.headers["Location"]
        with app.app_context():
            assert db.session.get(Subscription, subscription_id).status == "cancelled"


# ============================================================================
# Delivery orders
# ============================================================================


class TestDeliveryOrderRoutes:
    def _patch(self, client, order_id, payload):
        return client.patch(f"/api/admin/delivery-orders/{order_id}", json=payload)

    def test_list(self, logged_in_client, sample_data):
        body = logged_in_client.get("/api/admin/delivery-orders").get_json()
        assert body["meta"]["total"] == 2
        row = next(r for r in body["data"] if r["id"] == sample_data["order_id"])
        assert row["customer"] == "Aisyah Rahman"
        assert row["billing_status"] == "active"

    def test_list_filter_and_search(self, logged_in_client, sample_data):
        assert logged_in_client.get("/api/admin/delivery-orders?status=dispatched").get_json()["meta"]["total"] == 0
        short = compact_id(sample_data["order_id"])
        body = logged_in_client.get(f"/api/admin/delivery-orders?search={short}").get_json()
        assert [row["id"] for row in body["data"]] == [sample_data["order_id"]]

    def test_detail(self, logged_in_client, sample_data):
        data = logged_in_client.get(f"/api/admin/delivery-orders/{sample_data['order_id']}").get_json()["data"]
        assert data["do_status"] == "confirmed"
        assert data["allowed_transitions"] == ["dispatched", "cancelled"]

    def test_dispatch_then_deliver(self, logged_in_client, sample_data, app):
        order_id = sample_data["order_id"]
        resp = self._patch(logged_in_client, order_id, {"do_status": "dispatched"})
        assert resp.status_code == 200
        assert resp.get_json()["data"]["do_status"] == "dispatched"
        resp = self._patch(logged_in_client, order_id, {"do_status": "delivered"})
        data = resp.get_json()["data"]
        assert data["do_status"] == "delivered"
        assert data["service_state"] == "in_service"
        assert data["collection_status"] == "not_collected"
        assert data["allowed_transitions"] == []
        with app.app_context():
            fulfillment = db.session.get(Subscription, sample_data["active_id"]).fulfillment
            assert fulfillment.first_delivery_at is not None

    def test_delivered_is_terminal(self, logged_in_client, sample_data):
        order_id = sample_data["order_id"]
        self._patch(logged_in_client, order_id, {"do_status": "dispatched"})
        self._patch(logged_in_client, order_id, {"do_status": "partially_delivered"})
        resp = self._patch(logged_in_client, order_id, {"do_status": "cancelled", "cancelled_reason": "late"})
        assert resp.status_code == 409

    def test_invalid_transition(self, logged_in_client, sample_data):
        resp = self._patch(logged_in_client, sample_data["order_id"], {"do_status": "delivered"})
        assert resp.status_code == 409
        assert resp.get_json()["error"] == "Invalid transition: confirmed -> delivered"

    def test_same_status_is_unchanged(self, logged_in_client, sample_data):
        resp = self._patch(logged_in_client, sample_data["order_id"], {"do_status": "confirmed"})
        assert resp.status_code == 200
        assert resp.get_json()["data"]["do_status"] == "confirmed"

    def test_side_fields_follow_status(self, logged_in_client, sample_data):
        order_id = sample_data["order_id"]
        self._patch(logged_in_client, order_id, {"do_status": "dispatched"})
        data = self._patch(
            logged_in_client,
            order_id,
            {"do_status": "rescheduled", "rescheduled_at": "2026-11-02T09:00:00Z", "failure_reason": "x"},
        ).get_json()["data"]
        assert data["rescheduled_at"].startswith("2026-11-02T09:00:00")
        assert data["failure_reason"] is None
        self._patch(logged_in_client, order_id, {"do_status": "dispatched"})
        data = self._patch(
            logged_in_client, order_id, {"do_status": "failed", "failure_reason": "Nobody home"}
        ).get_json()["data"]
        assert data["failure_reason"] == "Nobody home"
        assert data["rescheduled_at"] is None
        assert data["cancelled_reason"] is None

    @pytest.mark.parametrize(
        "payload,message",
        [
            ({"do_status": "failed"}, "failure_reason is required when do_status is failed"),
            ({"do_status": "cancelled"}, "cancelled_reason is required when do_status is cancelled"),
            ({"do_status": "rescheduled"}, "rescheduled_at is required when do_status is rescheduled"),
            ({"do_status": "rescheduled", "rescheduled_at": "tomorrow"}, "rescheduled_at must be a valid ISO datetime"),
        ],
    )
    def test_required_side_fields(self, logged_in_client, sample_data, payload, message):
        self._patch(logged_in_client, sample_data["order_id"], {"do_status": "dispatched"})
        resp = self._patch(logged_in_client, sample_data["order_id"], payload)
        assert resp.status_code == 400
        assert resp.get_json()["error"] == message

    def test_transition_checked_before_side_fields(self, logged_in_client, sample_data):
        resp = self._patch(logged_in_client, sample_data["order_id"], {"do_status": "failed"})
        assert resp.status_code == 409
        assert resp.get_json()["error"] == "Invalid transition: confirmed -> failed"

    def test_status_alias(self, logged_in_client, sample_data):
        resp = self._patch(logged_in_client, sample_data["order_id"], {"status": "Dispatched"})
        assert resp.status_code == 200
        assert resp.get_json()["data"]["do_status"] == "dispatched"

    def test_delivery_keeps_collection_progress(self, logged_in_client, sample_data, app):
        first_delivery = datetime.datetime(2026, 1, 5, tzinfo=datetime.timezone.utc)
        with app.app_context():
            fulfillment = db.session.get(Subscription, sample_data["active_id"]).fulfillment
            fulfillment.service_state = "offboarding_requested"
            fulfillment.collection_status = "collection_scheduled"
            fulfillment.first_delivery_at = first_delivery
            db.session.get(DeliveryOrder, sample_data["order_id"]).do_status = "dispatched"
            db.session.commit()
        resp = self._patch(logged_in_client, sample_data["order_id"], {"do_status": "delivered"})
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["service_state"] == "offboarding_requested"
        assert data["collection_status"] == "collection_scheduled"
        with app.app_context():
            fulfillment = db.session.get(Subscription, sample_data["active_id"]).fulfillment
            assert fulfillment.first_delivery_at.replace(tzinfo=datetime.timezone.utc) == first_delivery

    def test_delivery_creates_fulfillment(self, logged_in_client, sample_data, app):
        with app.app_context():
            db.session.get(DeliveryOrder, sample_data["blocked_order_id"]).do_status = "dispatched"
            db.session.commit()
        resp = self._patch(logged_in_client, sample_data["blocked_order_id"], {"do_status": "delivered"})
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["service_state"] == "in_service"
        assert data["collection_status"] == "not_collected"

    def test_unknown_status(self, logged_in_client, sample_data):
        resp = self._patch(logged_in_client, sample_data["order_id"], {"do_status": "lost"})
        assert resp.status_code == 400
        assert resp.get_json()["error"].startswith("Invalid do_status")

    def test_bad_and_missing_ids(self, logged_in_client):
        resp = self._patch(logged_in_client, "abc", {"do_status": "dispatched"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Invalid delivery order ID format"
        resp = self._patch(logged_in_client, MISSING_ID, {"do_status": "dispatched"})
        assert resp.status_code == 404

    def test_dispatch_requires_active_billing(self, logged_in_client, sample_data):
        resp = self._patch(logged_in_client, sample_data["blocked_order_id"], {"do_status": "dispatched"})
        assert resp.status_code == 409
        assert resp.get_json()["error"] == "Cannot dispatch: subscription billing status must be active"

    def test_dispatch_blocked_during_offboarding(self, logged_in_client, sample_data, app):
        with app.app_context():
            subscription = db.session.get(Subscription, sample_data["active_id"])
            subscription.fulfillment.service_state = "offboarding_requested"
            db.session.commit()
        resp = self._patch(logged_in_client, sample_data["order_id"], {"do_status": "dispatched"})
        assert resp.status_code == 409
        assert resp.get_json()["error"] == (
            "Cannot dispatch: subscription service state is offboarding_requested"
        )

    def test_cancel_allowed_without_active_billing(self, logged_in_client, sample_data):
        resp = self._patch(
            logged_in_client,
            sample_data["blocked_order_id"],
            {"do_status": "cancelled", "cancelled_reason": "Subscription cancelled"},
        )
        assert resp.status_code == 200
        assert resp.get_json()["data"]["cancelled_reason"] == "Subscription cancelled"

    def test_delivery_order_screens(self, logged_in_client, sample_data):
        assert logged_in_client.get("/admin/delivery-orders").status_code == 200
        resp = logged_in_client.get(f"/admin/delivery-orders?open={sample_data['order_id']}")
        assert resp.status_code == 200

    def test_status_form(self, logged_in_client, sample_data, app):
        order_id = sample_data["order_id"]
        resp = logged_in_client.post(
            f"/admin/delivery-orders/{order_id}/status", data={"do_status": "dispatched"}
        )
        assert resp.status_code == 302
        assert f"open={order_id}" in resp.headers["Location"]
        with app.app_context():
            assert db.session.get(DeliveryOrder, order_id).do_status == "dispatched"


# ============================================================================
# Billing: runtime config, providers, catalog sync
# ============================================================================


class TestBillingProviders:
    def test_provider_selection(self, app):
        config = app.config["BILLING_CONFIG"]
        assert isinstance(get_billing_provider(config), MockBillingProvider)
        assert isinstance(get_billing_provider(config, "stripe"), StripeBillingProvider)
        assert isinstance(get_billing_provider(config, "unknown"), MockBillingProvider)

    def test_mock_prices_are_deterministic(self):
        provider = MockBillingProvider()
        first = provider.ensure_catalog_price("p1", "Chair", "myr", "45")
        second = provider.ensure_catalog_price("p1", "Chair", "myr", 45.0)
        assert first.provider_price_id == second.provider_price_id
        assert first.provider_product_id.startswith("mock_prod_")
        reused = provider.ensure_catalog_price(
            "p1", "Chair", "myr", "50", existing_provider_product_id=first.provider_product_id
        )
        assert reused.provider_product_id == first.provider_product_id
        assert reused.provider_price_id != first.provider_price_id

    def test_mock_cancellations(self):
        provider = MockBillingProvider()
        assert provider.cancel_now("sub_1").provider_status == "canceled"
        snapshot = provider.cancel_at_period_end("sub_1")
        assert snapshot.cancel_at_period_end is True
        assert snapshot.current_period_end is not None
        with pytest.raises(ProviderError):
            provider.cancel_now("  ")

    def test_stripe_requires_secret_key(self):
        with pytest.raises(ProviderError, match="STRIPE_SECRET_KEY is not configured"):
            StripeBillingProvider("").cancel_now("sub_1")

    def test_stripe_status_mapping(self):
        assert map_stripe_subscription_status("trialing") == "active"
        assert map_stripe_subscription_status("unpaid") == "payment_failed"
        assert map_stripe_subscription_status("canceled") == "cancelled"
        assert map_stripe_subscription_status("incomplete") == "pending_payment"

    def test_invoice_status_mapping(self):
        assert normalize_invoice_status("open", None, "invoice.voided") == "void"
        assert normalize_invoice_status("open", True) == "paid"
        assert normalize_invoice_status("draft", False) == "draft"
        assert normalize_invoice_status("weird", None) == "unknown"

    def test_invoice_mirror_fields(self):
        fields = invoice_mirror_fields(
            {
                "id": "in_1",
                "total": 1080,
                "subtotal": 1000,
                "currency": "MYR",
                "lines": {"data": [{"period": {"start": 0, "end": 86400}}]},
            }
        )
        assert fields["tax_amount"] == Decimal("0.80")
        assert fields["total_amount"] == Decimal("10.80")
        assert fields["currency"] == "myr"
        assert fields["period_start_at"] == from_unix_timestamp(0)
        assert fields["status"] == "unknown"


class TestBillingRoutes:
    def test_runtime_config(self, logged_in_client):
        data = logged_in_client.get("/api/billing/config").get_json()["data"]
        assert data["provider"] == "mock"
        assert data["currency"] == "myr"
        assert data["sst_quote"]["total"] == 108.0
        assert "stripe_webhook_secret" not in data

    def test_runtime_config_custom_subtotal(self, logged_in_client):
        quote = logged_in_client.get("/api/billing/config?subtotal=250").get_json()["data"]["sst_quote"]
        assert quote["sst_amount"] == 20.0
        assert quote["total"] == 270.0

    def test_catalog_sync_dry_run(self, logged_in_client, sample_data, app):
        resp = logged_in_client.post("/api/billing/catalog/sync", json={"dry_run": True})
        data = resp.get_json()["data"]
        assert data["dry_run"] is True
        assert data["total_products"] == 2
        assert data["created_count"] == 2
        assert all(row["provider_price_id"].startswith("pending_price_") for row in data["synced"])
        with app.app_context():
            assert BillingCatalogPrice.query.count() == 0

    def test_catalog_sync_apply_then_skip(self, logged_in_client, sample_data, app):
        data = logged_in_client.post("/api/billing/catalog/sync", json={}).get_json()["data"]
        assert data["created_count"] == 2
        assert [row["product_name"] for row in data["synced"]] == ["Ergonomic Chair", "Standing Desk"]
        assert all(row["provider_price_id"].startswith("mock_price_") for row in data["synced"])
        data = logged_in_client.post("/api/billing/catalog/sync", json={}).get_json()["data"]
        assert data["created_count"] == 0
        assert data["skipped_count"] == 2
        with app.app_context():
            assert BillingCatalogPrice.query.count() == 2

    def test_catalog_sync_after_price_change(self, logged_in_client, sample_data, app):
        first = logged_in_client.post("/api/billing/catalog/sync", json={}).get_json()["data"]
        chair_product_id = next(
            row["provider_product_id"] for row in first["synced"] if row["product_id"] == sample_data["chair_id"]
        )
        logged_in_client.patch(f"/api/admin/products/{sample_data['chair_id']}", json={"monthly_price": 50})
        data = logged_in_client.post("/api/billing/catalog/sync", json={}).get_json()["data"]
        assert data["created_count"] == 1
        chair_row = next(row for row in data["synced"] if row["product_id"] == sample_data["chair_id"])
        assert chair_row["action"] == "created"
        assert chair_row["unit_amount"] == 50.0
        assert chair_row["provider_product_id"] == chair_product_id

    def test_catalog_sync_currency_override(self, logged_in_client, sample_data):
        data = logged_in_client.post("/api/billing/catalog/sync", json={"currency": " USD "}).get_json()["data"]
        assert {row["currency"] for row in data["synced"]} == {"usd"}

    def test_catalog_sync_selected_products(self, logged_in_client, sample_data):
        data = logged_in_client.post(
            "/api/billing/catalog/sync", json={"product_ids": [sample_data["desk_id"], "junk"]}
        ).get_json()["data"]
        assert data["total_products"] == 1

    def test_catalog_sync_keeps_mappings_on_provider_failure(self, logged_in_client, sample_data, app):
        real_ensure = MockBillingProvider.ensure_catalog_price

        def desk_fails(**kwargs):
            if kwargs["name"] == "Standing Desk":
                raise ProviderError("Stripe unavailable")
            return real_ensure(MockBillingProvider(), **kwargs)

        with patch.object(MockBillingProvider, "ensure_catalog_price", side_effect=desk_fails) as ensure:
            resp = logged_in_client.post("/api/billing/catalog/sync", json={})
        assert resp.status_code == 502
        assert ensure.call_count == 2
        with app.app_context():
            rows = BillingCatalogPrice.query.all()
            assert [row.product_id for row in rows] == [sample_data["chair_id"]]

        data = logged_in_client.post("/api/billing/catalog/sync", json={}).get_json()["data"]
        assert data["created_count"] == 1
        assert data["skipped_count"] == 1
        chair_row = next(row for row in data["synced"] if row["product_id"] == sample_data["chair_id"])
        assert chair_row["action"] == "skipped"
        with app.app_context():
            assert BillingCatalogPrice.query.count() == 2

    def test_settings_screen(self, logged_in_client, sample_data):
        assert logged_in_client.get("/admin/settings").status_code == 200
        resp = logged_in_client.post("/admin/settings/catalog-sync", data={"mode": "apply"})
        assert resp.status_code == 200
        assert b"Sync finished: 2 created, 0 skipped." in resp.data

    def test_settings_screen_dry_run(self, logged_in_client, sample_data, app):
        resp = logged_in_client.post("/admin/settings/catalog-sync", data={})
        assert b"Dry run finished: 2 created, 0 skipped." in resp.data
        with app.app_context():
            assert BillingCatalogPrice.query.count() == 0


# ============================================================================
# Invoice backfill
# ============================================================================


def _provider_invoices():
    return [
        {
            "id": "in_001",
            "subscription": "mock_sub_0001",
            "customer": "mock_cus_test",
            "number": "DSK-0001",
            "status": "paid",
            "paid": True,
            "subtotal": 13400,
            "total": 14472,
            "amount_paid": 14472,
            "currency": "MYR",
            "metadata": {},
        },
        {
            "id": "in_002",
            "subscription": "sub_unknown",
            "customer": "cus_unknown",
            "status": "open",
            "total": 1000,
        },
    ]


class TestInvoiceBackfill:
    def _backfill(self, client, payload):
        page = InvoicePage(invoices=_provider_invoices(), has_more=False)
        with patch.object(MockBillingProvider, "list_invoices", return_value=page):
            return client.post("/api/admin/billing/invoices/backfill", json=payload)

    def test_backfill(self, logged_in_client, sample_data, app):
        data = self._backfill(logged_in_client, {"limit": 50}).get_json()["data"]
        assert data["provider"] == "mock"
        assert data["dry_run"] is False
        assert data["requested_limit"] == 50
        assert data["fetched_count"] == 2
        assert data["mirrored_count"] == 2
        assert data["linked_subscription_count"] == 1
        assert data["linked_billing_customer_count"] == 1
        assert data["unresolved_invoice_ids"] == ["in_002"]
        assert data["unresolved_total"] == 1
        assert data["has_more_available"] is False
        with app.app_context():
            invoice = BillingInvoice.query.filter_by(provider_invoice_id="in_001").first()
            assert invoice.status == "paid"
            assert invoice.subscription_id == sample_data["active_id"]
            assert invoice.billing_customer_id == sample_data["billing_customer_id"]
            assert invoice.total_amount == Decimal("144.72")
            assert invoice.tax_amount == Decimal("10.72")
            assert invoice.currency == "myr"

    def test_backfill_is_idempotent(self, logged_in_client, sample_data, app):
        self._backfill(logged_in_client, {})
        self._backfill(logged_in_client, {})
        with app.app_context():
            assert BillingInvoice.query.count() == 2

    def test_backfill_dry_run(self, logged_in_client, sample_data, app):
        data = self._backfill(logged_in_client, {"dry_run": True}).get_json()["data"]
        assert data["dry_run"] is True
        assert data["mirrored_count"] <= data["fetched_count"]
        with app.app_context():
            assert BillingInvoice.query.count() == 0

    def test_dry_run_must_be_literal_true(self, logged_in_client, sample_data, app):
        data = self._backfill(logged_in_client, {"dry_run": "true"}).get_json()["data"]
        assert data["dry_run"] is False
        with app.app_context():
            assert BillingInvoice.query.count() == 2

    @pytest.mark.parametrize("limit,expected", [("abc", 200), (0, 200), (5000, 1000), ("25", 25)])
    def test_backfill_limit(self, logged_in_client, limit, expected):
        data = self._backfill(logged_in_client, {"limit": limit, "dry_run": True}).get_json()["data"]
        assert data["requested_limit"] == expected

    def test_invoice_listing(self, logged_in_client, sample_data):
        self._backfill(logged_in_client, {})
        body = logged_in_client.get("/api/admin/billing/invoices").get_json()
        assert body["meta"]["total"] == 2
        assert logged_in_client.get("/api/admin/billing/invoices?status=paid").get_json()["meta"]["total"] == 1
        assert logged_in_client.get("/api/admin/billing/invoices?search=DSK").get_json()["meta"]["total"] == 1

    def test_invoice_screens(self, logged_in_client, sample_data):
        assert logged_in_client.get("/admin/invoices").status_code == 200
        page = InvoicePage(invoices=_provider_invoices(), has_more=False)
        with patch.object(MockBillingProvider, "list_invoices", return_value=page):
            resp = logged_in_client.post("/admin/invoices/backfill", data={"mode": "apply", "limit": "10"})
        assert resp.status_code == 200
        assert b"Backfill fetched 2 invoices, mirrored 2." in resp.data


# ============================================================================
# Stripe webhooks
# ============================================================================


def _post_event(client, event):
    with patch("stripe.Webhook.construct_event"):
        return client.post(
            "/api/webhooks/stripe",
            data=json.dumps(event),
            headers={"Stripe-Signature": "t=1,v1=test"},
            content_type="application/json",
        )


def _invoice_event(event_id, event_type, subscription_id, invoice_id="in_wh_001"):
    return {
        "id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "id": invoice_id,
                "subscription": "sub_stripe_1",
                "customer": "cus_stripe_1",
                "status": "paid",
                "paid": True,
                "subtotal": 1900,
                "total": 2052,
                "currency": "myr",
                "metadata": {"internal_subscription_id": subscription_id},
            }
        },
    }


class TestStripeWebhook:
    def test_invoice_paid_activates_subscription(self, client, sample_data, app):
        resp = _post_event(client, _invoice_event("evt_001", "invoice.paid", sample_data["pending_id"]))
        assert resp.status_code == 200
        assert resp.get_json()["data"] == {
            "received": True,
            "processed": True,
            "subscription_id": sample_data["pending_id"],
        }
        with app.app_context():
            assert db.session.get(Subscription, sample_data["pending_id"]).status == "active"
            invoice = BillingInvoice.query.filter_by(provider="stripe", provider_invoice_id="in_wh_001").first()
            assert invoice.status == "paid"
            assert invoice.subscription_id == sample_data["pending_id"]
            event = BillingWebhookEvent.query.filter_by(event_id="evt_001").first()
            assert event.status == "processed"
            assert event.processed_at is not None

    def test_payment_failed(self, client, sample_data, app):
        _post_event(client, _invoice_event("evt_002", "invoice.payment_failed", sample_data["active_id"]))
        with app.app_context():
            assert db.session.get(Subscription, sample_data["active_id"]).status == "payment_failed"
            invoice = BillingInvoice.query.filter_by(provider_invoice_id="in_wh_001").first()
            assert invoice.status == "payment_failed"

    def test_subscription_deleted(self, client, sample_data, app):
        event = {
            "id": "evt_003",
            "type": "customer.subscription.deleted",
            "data": {
                "object": {
                    "id": "sub_stripe_9",
                    "status": "canceled",
                    "metadata": {"internal_subscription_id": sample_data["active_id"]},
                }
            },
        }
        assert _post_event(client, event).status_code == 200
        with app.app_context():
            subscription = db.session.get(Subscription, sample_data["active_id"])
            assert subscription.status == "cancelled"
            assert subscription.provider_subscription_id == "sub_stripe_9"
            assert subscription.end_date is not None

    def test_duplicate_event(self, client, sample_data, app):
        event = _invoice_event("evt_004", "invoice.paid", sample_data["pending_id"])
        _post_event(client, event)
        resp = _post_event(client, event)
        assert resp.get_json()["data"] == {"received": True, "duplicate": True}
        with app.app_context():
            assert BillingWebhookEvent.query.filter_by(event_id="evt_004").count() == 1

    def test_unlinked_invoice_is_still_mirrored(self, client, app):
        resp = _post_event(client, _invoice_event("evt_005", "invoice.paid", None, invoice_id="in_orphan"))
        assert resp.get_json()["data"]["subscription_id"] is None
        with app.app_context():
            assert BillingInvoice.query.filter_by(provider_invoice_id="in_orphan").count() == 1

    def test_missing_event_id(self, client):
        resp = _post_event(client, {"type": "invoice.paid", "data": {}})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Missing event id or type"

    def test_processing_failure_is_recorded(self, client, sample_data, app):
        event = _invoice_event("evt_006", "invoice.paid", sample_data["pending_id"])
        with patch("services.stripe_billing.process_stripe_event", side_effect=RuntimeError("boom")):
            resp = _post_event(client, event)
        assert resp.status_code == 500
        assert resp.get_json()["error"] == "boom"
        with app.app_context():
            record = BillingWebhookEvent.query.filter_by(event_id="evt_006").first()
            assert record.status == "failed"
            assert record.error_message == "boom"
        resp = _post_event(client, event)
        assert resp.get_json()["data"]["processed"] is True
        with app.app_context():
            assert BillingWebhookEvent.query.filter_by(event_id="evt_006").first().status == "processed"

    def test_webhook_event_listing(self, client, logged_in_client, sample_data):
        _post_event(client, _invoice_event("evt_007", "invoice.paid", sample_data["pending_id"]))
        body = logged_in_client.get("/api/admin/billing/webhook-events?status=processed").get_json()
        assert body["meta"]["total"] == 1
        assert body["data"][0]["event_type"] == "invoice.paid"


# ============================================================================
# CLI commands
# ============================================================================


class TestCliCommands:
    def test_sync_catalog_dry_run(self, app, sample_data):
        result = app.test_cli_runner().invoke(args=["sync-catalog", "--dry-run"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["dry_run"] is True
        assert data["created_count"] == 2

    def test_backfill_invoices(self, app):
        result = app.test_cli_runner().invoke(args=["backfill-invoices", "--limit", "10", "--dry-run"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["requested_limit"] == 10
        assert data["fetched_count"] == 0

    def test_create_admin(self, app):
        result = app.test_cli_runner().invoke(
            args=["create-admin", "--email", "Ops@Deskly.local", "--password", "Secret123!"]
        )
        assert result.exit_code == 0
        assert "Admin ops@deskly.local created." in result.output
        with app.app_context():
            assert User.query.filter_by(email="ops@deskly.local").first().role == "admin"

    def test_create_admin_promotes_existing_user(self, app, sample_data):
        result = app.test_cli_runner().invoke(
            args=["create-admin", "--email", "daniel@kopi.co", "--password", "Secret123!"]
        )
        assert "promoted" in result.output
        with app.app_context():
            assert db.session.get(User, sample_data["customer_b_id"]).role == "admin"
