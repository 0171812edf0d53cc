from dataclasses import dataclass
from typing import Optional


@dataclass
class AppConfig:
    name: str
    secret_key: str
    admin_email: str
    super_admin_email: str


@dataclass
class BillingConfig:
    provider: str
    currency: str
    minimum_term_months: int
    sst_rate: float
    stripe_automatic_tax: bool
    stripe_tax_rate_id: Optional[str]
    stripe_secret_key: str
    stripe_webhook_secret: str

    def snapshot(self) -> dict:
        """Public runtime view; never includes secrets."""
        return {
            "provider": self.provider,
            "currency": self.currency,
            "minimum_term_months": self.minimum_term_months,
            "sst_rate": self.sst_rate,
            "stripe_automatic_tax_enabled": self.stripe_automatic_tax,
            "stripe_manual_tax_rate_id": self.stripe_tax_rate_id,
        }


@dataclass
class MediaConfig:
    backend: str
    root: str
    base_url: str
    remote_url: str
    remote_key: str
    image_max_bytes: int
    video_max_bytes: int
    video_max_seconds: int
