"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
Amounts cross this boundary as `Decimal` in major units; conversion to the
gateway's minor units is the adapter's business.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, AsyncContextManager, Optional, Protocol, runtime_checkable

from application.dtos.payments import PaymentIntent, RefundResult, WebhookEvent
from domain.payment.entity import Currency, PaymentMethod, Provider


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for third-party payment providers.

    Implementations should be async and side-effect free beyond IO.
    `verify_webhook` and `parse_webhook_event` are pure and synchronous.
    """

    provider: Provider
    signature_header: str

    def initialize(self, credentials: Any) -> None: ...

    async def create_payment(
        self,
        *,
        amount: Decimal,
        currency: Currency,
        user_id: int,
        description: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        payment_method: Optional[PaymentMethod] = None,
    ) -> PaymentIntent: ...

    async def capture_payment(self, provider_payment_id: str, amount: Optional[Decimal] = None) -> PaymentIntent: ...

    async def refund_payment(
        self,
        provider_payment_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult: ...

    async def get_payment_status(self, provider_payment_id: str) -> PaymentIntent: ...

    def verify_webhook(self, raw_payload: bytes, signature: Optional[str], secret: Optional[str]) -> bool: ...

    def parse_webhook_event(self, raw_payload: bytes) -> WebhookEvent: ...

    async def aclose(self) -> None: ...


class GatewaySource(Protocol):
    """Where application services obtain gateways.

    `use()` is an async context manager yielding a ready adapter for the
    given provider (the active one when omitted). `for_webhook()` yields one
    that may lack API credentials; it is only used to verify and parse.
    """

    @property
    def active_provider(self) -> Provider: ...

    def use(self, provider: Optional[Provider | str] = None) -> AsyncContextManager[PaymentGateway]: ...

    def for_webhook(self, provider: Provider | str) -> AsyncContextManager[PaymentGateway]: ...

    def webhook_secret_for(self, provider: Provider | str) -> Optional[str]: ...
