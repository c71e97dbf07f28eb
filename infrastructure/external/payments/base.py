"""
Base payment client implementing shared concerns: http, retry, logging,
credential checks, minor-unit conversion and HMAC webhook signatures.

Concrete providers should subclass and implement provider-specific logic.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
from contextlib import asynccontextmanager
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.logging_config import get_logger
from core.settings import GatewayCredentials
from domain.payment.entity import Currency, Provider
from domain.payment.exceptions import (
    PaymentConfigurationError,
    PaymentProviderError,
    PaymentTimeoutError,
)


logger = get_logger(__name__)

# Decimal places of the smallest unit per currency
CURRENCY_EXPONENTS: dict[str, int] = {
    Currency.USD.value: 2,
    Currency.INR.value: 2,
    Currency.EUR.value: 2,
    Currency.GBP.value: 2,
}

# Failures where the request provably never reached the gateway
_CONNECT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


def to_minor(amount: Decimal, currency: str | Currency) -> int:
    code = currency.value if isinstance(currency, Currency) else str(currency).upper()
    exponent = CURRENCY_EXPONENTS.get(code, 2)
    scaled = (Decimal(amount) * (Decimal(10) ** exponent)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(scaled)


def from_minor(amount: int | str | None, currency: str | Currency) -> Optional[Decimal]:
    if amount is None:
        return None
    code = currency.value if isinstance(currency, Currency) else str(currency).upper()
    exponent = CURRENCY_EXPONENTS.get(code, 2)
    return (Decimal(str(amount)) / (Decimal(10) ** exponent)).quantize(Decimal("0.01"))


class BasePaymentClient:
    """
    Shared adapter plumbing.

    Subclasses set `provider`, `signature_header` and `required_credentials`,
    and implement the gateway operations of `PaymentGateway`.
    """

    provider: Provider
    signature_header: str = ""
    required_credentials: tuple[str, ...] = ("api_key",)
    # "hex" or "base64" digest for HMAC-SHA256 webhook signatures
    signature_encoding: str = "hex"

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or {"connect": 2.0, "read": 10.0, "write": 10.0, "total": 15.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.2}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._credentials: Optional[GatewayCredentials] = None

    # -- configuration -------------------------------------------------------

    def initialize(self, credentials: GatewayCredentials) -> None:
        missing = [name for name in self.required_credentials if not getattr(credentials, name, None)]
        if missing:
            raise PaymentConfigurationError(
                f"{self.provider.value} credentials missing: {', '.join(missing)}",
                provider=self.provider.value,
            )
        self._credentials = credentials
        self._configure(credentials)
        self._log("payment_gateway_initialized", mode=credentials.mode)

    def _configure(self, credentials: GatewayCredentials) -> None:
        """Hook for provider specific setup after credentials are validated."""

    @property
    def credentials(self) -> GatewayCredentials:
        if self._credentials is None:
            raise PaymentConfigurationError(
                f"{self.provider.value} gateway not initialized", provider=self.provider.value
            )
        return self._credentials

    @property
    def is_initialized(self) -> bool:
        return self._credentials is not None

    # -- http ----------------------------------------------------------------

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            pool=self._timeouts_cfg["total"],
        )

    @property
    def total_timeout(self) -> float:
        return float(self._timeouts_cfg["total"])

    def _base_url(self) -> str:
        raise NotImplementedError

    def _auth(self) -> Optional[httpx.Auth | tuple[str, str]]:
        return None

    def _default_headers(self) -> dict[str, str]:
        return {}

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url(),
                timeout=self.timeouts,
                auth=self._auth(),
                headers=self._default_headers(),
                transport=self._transport,
            )
        try:
            yield self._client
        finally:
            # Keep open for reuse; explicit aclose() will close.
            ...

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Awaitable[Any]]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type(_CONNECT_ERRORS),
            reraise=True,
        ):
            with attempt:
                return await fn()

    async def _request(self, method: str, path: str, *, operation: str, **kwargs) -> dict[str, Any]:
        """Send one request and return the decoded JSON body.

        Connection failures are retried; a read/write timeout means the
        gateway may have acted, so it surfaces as `PaymentTimeoutError`.
        """
        async with self.client() as http:
            try:
                response = await self._retry(lambda: http.request(method, path, **kwargs))
            except _CONNECT_ERRORS as exc:
                raise PaymentProviderError(
                    f"{self.provider.value} unreachable",
                    provider=self.provider.value,
                    operation=operation,
                    details={"error": str(exc)},
                ) from exc
            except httpx.TimeoutException as exc:
                self._log("payment_gateway_timeout", level="warning", operation=operation, outcome="unknown")
                raise PaymentTimeoutError(
                    f"{self.provider.value} did not respond in time",
                    provider=self.provider.value,
                    operation=operation,
                ) from exc
            except httpx.HTTPError as exc:
                raise PaymentProviderError(
                    f"{self.provider.value} request failed",
                    provider=self.provider.value,
                    operation=operation,
                    details={"error": str(exc)},
                ) from exc

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {"raw": response.text[:500]}

        if response.status_code >= 400:
            code, message = self._error_from_body(body)
            self._log(
                "payment_gateway_error",
                level="warning",
                operation=operation,
                http_status=response.status_code,
                provider_code=code,
            )
            raise PaymentProviderError(
                message or f"{self.provider.value} returned HTTP {response.status_code}",
                provider=self.provider.value,
                operation=operation,
                provider_code=code,
                details={"http_status": response.status_code},
            )
        return body

    def _error_from_body(self, body: dict[str, Any]) -> tuple[Optional[str], Optional[str]]:
        return body.get("code"), body.get("message")

    # -- webhooks ------------------------------------------------------------

    def _compute_signature(self, raw_payload: bytes, secret: str) -> str:
        digest = hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha256)
        if self.signature_encoding == "base64":
            return base64.b64encode(digest.digest()).decode("ascii")
        return digest.hexdigest()

    def verify_webhook(self, raw_payload: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
        if not secret:
            self._log("webhook_secret_missing", level="warning")
            return False
        if not signature:
            return False
        expected = self._compute_signature(raw_payload, secret)
        return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8"))

    # -- helpers -------------------------------------------------------------

    def _log(self, event: str, level: str = "info", **kwargs) -> None:
        getattr(logger, level)(
            event,
            provider=self.provider.value,
            **kwargs,
        )
