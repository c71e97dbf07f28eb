"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings so gateway knobs live in their own
env namespace (PAYMENT__*, STRIPE__*, RAZORPAY__*, CASHFREE__*, ...).

Examples::

    PAYMENT__ACTIVE_PROVIDER=RAZORPAY
    RAZORPAY__API_KEY=rzp_test_xxx
    RAZORPAY__API_SECRET=...
    RAZORPAY__WEBHOOK_SECRET=...
    TIMEOUTS__READ=5
"""
from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from domain.payment.entity import Provider


class PaymentTimeouts(BaseModel):
    connect: float = 2.0
    read: float = 10.0
    write: float = 10.0
    total: float = 15.0


class PaymentRetry(BaseModel):
    # Only connection-establishment failures are retried
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300
    max_body_bytes: int = 1024 * 1024


class ReconcileSettings(BaseModel):
    stale_after_minutes: int = 30
    batch_size: int = 100


class GatewayCredentials(BaseModel):
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    webhook_secret: Optional[str] = None
    # sandbox | production (Cashfree selects its host from this)
    mode: str = "sandbox"
    base_url: Optional[str] = None


class PaymentSettings(BaseSettings):
    active_provider: Provider = Field(
        default=Provider.STRIPE,
        validation_alias=AliasChoices("PAYMENT__ACTIVE_PROVIDER", "PAYMENT_PROVIDER", "active_provider"),
    )
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    reconcile: ReconcileSettings = Field(default_factory=ReconcileSettings)

    stripe: GatewayCredentials = Field(default_factory=GatewayCredentials)
    razorpay: GatewayCredentials = Field(default_factory=GatewayCredentials)
    cashfree: GatewayCredentials = Field(default_factory=GatewayCredentials)

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
        populate_by_name=True,
    )

    @field_validator("active_provider", mode="before")
    @classmethod
    def _normalize_provider(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    def credentials_for(self, provider: Provider) -> GatewayCredentials:
        return getattr(self, Provider.parse(provider).value.lower())


payment_settings = PaymentSettings()
