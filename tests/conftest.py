"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import os

# Mandatory secret key for settings validation
os.environ.setdefault("SECRET_KEY", "test-secret-key")
# Keep the module-level engine off Postgres
os.environ["DATABASE__URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("ENVIRONMENT", "test")

import json
from contextlib import asynccontextmanager
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from application.dtos.payments import PaymentIntent, RefundResult, Requester, WebhookEvent
from application.services.payment_service import PaymentApplicationService
from application.services.webhook_service import WebhookIngestionService
from domain.payment.entity import Provider
from infrastructure.models import Base
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


WEBHOOK_SECRET = "whsec_test"
VALID_SIGNATURE = "valid-signature"


class FakeGateway:
    """In-memory gateway; status strings are what a real gateway would send."""

    signature_header = "X-Test-Signature"

    def __init__(self, provider: Provider = Provider.STRIPE) -> None:
        self.provider = provider
        self.create_status = "pending"
        self.capture_status = "succeeded"
        self.refund_status = "succeeded"
        self.reported_status = "succeeded"
        self.capture_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        self.calls: list[tuple] = []
        self._seq = 0

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq}"

    def initialize(self, credentials) -> None:
        pass

    async def create_payment(self, *, amount, currency, user_id, description=None, metadata=None, payment_method=None):
        self.calls.append(("create", amount, currency))
        return PaymentIntent(
            provider_payment_id=self._next("pi"),
            status=self.create_status,
            client_secret="cs_test",
            amount=amount,
            currency=currency.value,
        )

    async def capture_payment(self, provider_payment_id, amount=None):
        self.calls.append(("capture", provider_payment_id, amount))
        if self.capture_error is not None:
            raise self.capture_error
        return PaymentIntent(provider_payment_id=provider_payment_id, status=self.capture_status, amount=amount)

    async def refund_payment(self, provider_payment_id, amount=None, reason=None):
        self.calls.append(("refund", provider_payment_id, amount))
        if self.refund_error is not None:
            raise self.refund_error
        return RefundResult(provider_refund_id=self._next("re"), amount=amount, status=self.refund_status)

    async def get_payment_status(self, provider_payment_id):
        self.calls.append(("status", provider_payment_id))
        return PaymentIntent(provider_payment_id=provider_payment_id, status=self.reported_status)

    def verify_webhook(self, raw_payload, signature, secret) -> bool:
        return bool(secret) and signature == VALID_SIGNATURE

    def parse_webhook_event(self, raw_payload) -> WebhookEvent:
        return WebhookEvent.model_validate(json.loads(raw_payload))

    async def aclose(self) -> None:
        pass


class FakeGatewaySource:
    def __init__(self, gateway: FakeGateway, secret: Optional[str] = WEBHOOK_SECRET) -> None:
        self.gateway = gateway
        self.secret = secret

    @property
    def active_provider(self) -> Provider:
        return self.gateway.provider

    @asynccontextmanager
    async def use(self, provider=None):
        yield self.gateway

    @asynccontextmanager
    async def for_webhook(self, provider):
        yield self.gateway

    def webhook_secret_for(self, provider) -> Optional[str]:
        return self.secret


class FakeAudit:
    def __init__(self) -> None:
        self.entries = []

    async def record(self, entry) -> None:
        self.entries.append(entry)

    def actions(self) -> list[str]:
        return [e.action for e in self.entries]


class BrokenAudit:
    """Audit sink that is down; operations must still go through."""

    def __init__(self) -> None:
        self.attempts = 0

    async def record(self, entry) -> None:
        self.attempts += 1
        raise RuntimeError("audit store unavailable")


def webhook_body(**fields) -> bytes:
    return json.dumps(fields).encode("utf-8")


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def uow_factory(session_factory):
    def factory(**kwargs):
        return SQLAlchemyUnitOfWork(session_factory=session_factory, **kwargs)
    return factory


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def gateways(gateway):
    return FakeGatewaySource(gateway)


@pytest.fixture
def audit():
    return FakeAudit()


@pytest.fixture
def payment_service(uow_factory, gateways, audit):
    return PaymentApplicationService(uow_factory=uow_factory, gateways=gateways, audit=audit)


@pytest.fixture
def webhook_service(uow_factory, gateways, audit):
    return WebhookIngestionService(uow_factory=uow_factory, gateways=gateways, audit=audit)


@pytest.fixture
def owner():
    return Requester(id=1)


@pytest.fixture
def stranger():
    return Requester(id=2)


@pytest.fixture
def admin():
    return Requester(id=99, is_privileged=True)

