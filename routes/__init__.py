"""Blueprint registration."""

from extensions import csrf
from routes.auth import auth_bp
from routes.billing import billing_api_bp, billing_bp
from routes.customers import customers_api_bp, customers_bp
from routes.dashboard import dashboard_api_bp, dashboard_bp
from routes.delivery_orders import delivery_orders_api_bp, delivery_orders_bp
from routes.products import products_api_bp, products_bp
from routes.subscriptions import subscriptions_api_bp, subscriptions_bp

SCREEN_BLUEPRINTS = [
    auth_bp,
    dashboard_bp,
    customers_bp,
    products_bp,
    subscriptions_bp,
    delivery_orders_bp,
    billing_bp,
]

# JSON endpoints authenticate with the session cookie (SameSite=Lax) and are CSRF-exempt
API_BLUEPRINTS = [
    dashboard_api_bp,
    customers_api_bp,
    products_api_bp,
    subscriptions_api_bp,
    delivery_orders_api_bp,
    billing_api_bp,
]

ALL_BLUEPRINTS = SCREEN_BLUEPRINTS + API_BLUEPRINTS


def register_blueprints(app):
    """Register all application blueprints on *app*."""
    for bp in API_BLUEPRINTS:
        csrf.exempt(bp)
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
