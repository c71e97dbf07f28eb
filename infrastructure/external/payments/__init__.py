"""
Payment gateway selection.

`PaymentGatewaySelector` owns the one adapter instance for the configured
active provider (built lazily, once per process) and builds throwaway
instances for any other provider, e.g. to verify a webhook addressed to a
provider that is not currently active.
"""
from __future__ import annotations

import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from application.ports.payment_gateway import PaymentGateway
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from domain.payment.entity import Provider
from domain.payment.exceptions import PaymentConfigurationError
from infrastructure.external.payments.cashfree_client import CashfreeClient
from infrastructure.external.payments.razorpay_client import RazorpayClient
from infrastructure.external.payments.stripe_client import StripeClient


logger = get_logger(__name__)

GatewayFactory = Callable[[PaymentSettings], PaymentGateway]


def _client_kwargs(settings: PaymentSettings) -> dict:
    return {
        "timeouts": settings.timeouts.model_dump(),
        "retry": {"max": settings.retry.max, "base": settings.retry.base_backoff},
    }


DEFAULT_REGISTRY: dict[Provider, GatewayFactory] = {
    Provider.STRIPE: lambda s: StripeClient(tolerance_seconds=s.webhook.tolerance_seconds, **_client_kwargs(s)),
    Provider.RAZORPAY: lambda s: RazorpayClient(**_client_kwargs(s)),
    Provider.CASHFREE: lambda s: CashfreeClient(**_client_kwargs(s)),
}

SIGNATURE_HEADERS: dict[Provider, str] = {
    Provider.STRIPE: StripeClient.signature_header,
    Provider.RAZORPAY: RazorpayClient.signature_header,
    Provider.CASHFREE: CashfreeClient.signature_header,
}


class PaymentGatewaySelector:
    def __init__(
        self,
        settings: PaymentSettings = payment_settings,
        registry: Optional[dict[Provider, GatewayFactory]] = None,
    ) -> None:
        self._settings = settings
        self._registry = dict(registry or DEFAULT_REGISTRY)
        self._lock = threading.Lock()
        self._active: Optional[PaymentGateway] = None

    @property
    def settings(self) -> PaymentSettings:
        return self._settings

    @property
    def active_provider(self) -> Provider:
        return self._settings.active_provider

    def create(self, provider: Provider | str) -> PaymentGateway:
        """Build and initialize a fresh adapter; the caller owns (and closes) it."""
        name = Provider.parse(provider)
        factory = self._registry.get(name)
        if factory is None:
            raise PaymentConfigurationError(f"No adapter registered for {name.value}", provider=name.value)
        gateway = factory(self._settings)
        gateway.initialize(self._settings.credentials_for(name))
        return gateway

    def get_active(self) -> PaymentGateway:
        """Return the process-wide adapter for the active provider."""
        if self._active is None:
            with self._lock:
                if self._active is None:
                    self._active = self.create(self.active_provider)
                    logger.info("payment_gateway_selected", provider=self.active_provider.value)
        return self._active

    @asynccontextmanager
    async def use(self, provider: Provider | str | None = None) -> AsyncIterator[PaymentGateway]:
        """Yield an adapter for `provider` (default: active).

        The cached active instance stays open; ad-hoc instances are closed
        on exit.
        """
        name = Provider.parse(provider) if provider is not None else self.active_provider
        if name == self.active_provider:
            yield self.get_active()
            return
        gateway = self.create(name)
        try:
            yield gateway
        finally:
            await gateway.aclose()

    @asynccontextmanager
    async def for_webhook(self, provider: Provider | str) -> AsyncIterator[PaymentGateway]:
        """Yield an adapter able to verify and parse webhooks for `provider`.

        Verification only needs the webhook secret, so a provider without
        API credentials still gets an adapter here and its deliveries are
        rejected and logged instead of failing on initialisation.
        """
        name = Provider.parse(provider)
        if name == self.active_provider and self._active is not None:
            yield self._active
            return
        factory = self._registry.get(name)
        if factory is None:
            raise PaymentConfigurationError(f"No adapter registered for {name.value}", provider=name.value)
        gateway = factory(self._settings)
        try:
            yield gateway
        finally:
            await gateway.aclose()

    def webhook_secret_for(self, provider: Provider | str) -> Optional[str]:
        return self._settings.credentials_for(Provider.parse(provider)).webhook_secret

    async def aclose(self) -> None:
        with self._lock:
            active, self._active = self._active, None
        if active is not None:
            await active.aclose()

    def reset(self) -> None:
        """Forget the cached adapter (tests, settings reload)."""
        with self._lock:
            self._active = None


payment_gateway_selector = PaymentGatewaySelector()


__all__ = [
    "PaymentGatewaySelector",
    "payment_gateway_selector",
    "DEFAULT_REGISTRY",
    "SIGNATURE_HEADERS",
]
