"""Configuration loading: YAML file + environment-variable overrides."""

from __future__ import annotations

import logging
import os
import secrets

import yaml

from config_models import AppConfig, BillingConfig, MediaConfig

logger = logging.getLogger(__name__)

BILLING_PROVIDERS = ("mock", "stripe")
FALLBACK_PROVIDER = "mock"
FALLBACK_CURRENCY = "myr"
FALLBACK_MINIMUM_TERM_MONTHS = 12
FALLBACK_SST_RATE = 0.08


def _parse_provider(value) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in BILLING_PROVIDERS:
        return normalized
    if normalized:
        logger.warning("Unknown billing provider %r, falling back to %s", value, FALLBACK_PROVIDER)
    return FALLBACK_PROVIDER


def _parse_positive_int(value, fallback: int) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed > 0 else fallback


def _parse_sst_rate(value, fallback: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return fallback
    if parsed != parsed or parsed < 0 or parsed >= 1:
        return fallback
    return parsed


def _parse_flag(value, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = str(value).strip().lower()
    if normalized in ("1", "true", "yes"):
        return True
    if normalized in ("0", "false", "no"):
        return False
    return fallback


def load_billing_config(raw_billing: dict | None = None) -> BillingConfig:
    """Build the billing runtime config.  Environment variables win over YAML."""
    cfg = raw_billing or {}
    currency = str(
        os.environ.get("BILLING_DEFAULT_CURRENCY", cfg.get("currency", FALLBACK_CURRENCY))
    ).strip().lower()
    tax_rate_id = str(
        os.environ.get("BILLING_STRIPE_TAX_RATE_ID", cfg.get("stripe_tax_rate_id") or "")
    ).strip()
    return BillingConfig(
        provider=_parse_provider(os.environ.get("BILLING_PROVIDER", cfg.get("provider"))),
        currency=currency or FALLBACK_CURRENCY,
        minimum_term_months=_parse_positive_int(
            os.environ.get("BILLING_MINIMUM_TERM_MONTHS", cfg.get("minimum_term_months")),
            FALLBACK_MINIMUM_TERM_MONTHS,
        ),
        sst_rate=_parse_sst_rate(
            os.environ.get("BILLING_SST_RATE", cfg.get("sst_rate")), FALLBACK_SST_RATE
        ),
        stripe_automatic_tax=_parse_flag(
            os.environ.get("BILLING_STRIPE_AUTOMATIC_TAX", cfg.get("stripe_automatic_tax")),
            True,
        ),
        stripe_tax_rate_id=tax_rate_id or None,
        stripe_secret_key=os.environ.get(
            "STRIPE_SECRET_KEY", cfg.get("stripe_secret_key", "")
        ).strip(),
        stripe_webhook_secret=os.environ.get(
            "STRIPE_WEBHOOK_SECRET", cfg.get("stripe_webhook_secret", "")
        ).strip(),
    )


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, BillingConfig, MediaConfig, database_uri).
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    billing_cfg = raw.get("billing", {})
    media_cfg = raw.get("media", {})
    db_cfg = raw.get("database", {})

    secret_key = os.environ.get("APP_SECRET_KEY", app_cfg.get("secret_key", ""))
    if not secret_key or secret_key == "change-me":
        secret_key = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated secret key. Set APP_SECRET_KEY env var "
            "or app.secret_key in config.yaml for stable sessions across restarts."
        )

    return (
        AppConfig(
            name=app_cfg.get("name", "Deskly Admin"),
            secret_key=secret_key,
            admin_email=os.environ.get(
                "ADMIN_EMAIL", app_cfg.get("admin_email", "admin@deskly.local")
            ).strip().lower(),
            super_admin_email=os.environ.get(
                "SUPER_ADMIN_EMAIL", app_cfg.get("super_admin_email", "")
            ).strip().lower(),
        ),
        load_billing_config(billing_cfg),
        MediaConfig(
            backend=os.environ.get("MEDIA_BACKEND", media_cfg.get("backend", "local")).lower(),
            root=os.environ.get("MEDIA_ROOT", media_cfg.get("root", "media")),
            base_url=os.environ.get("MEDIA_BASE_URL", media_cfg.get("base_url", "/media")),
            remote_url=os.environ.get("MEDIA_REMOTE_URL", media_cfg.get("remote_url", "")),
            remote_key=os.environ.get("MEDIA_REMOTE_KEY", media_cfg.get("remote_key", "")),
            image_max_bytes=int(media_cfg.get("image_max_bytes", 5 * 1024 * 1024)),
            video_max_bytes=int(media_cfg.get("video_max_bytes", 30 * 1024 * 1024)),
            video_max_seconds=int(media_cfg.get("video_max_seconds", 60)),
        ),
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///deskly.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
