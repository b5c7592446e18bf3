"""Shared test fixtures."""

import functools

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from paygate.engine.service import PaymentGatewayService
from paygate.models.gateway import Base
from paygate.providers import get_adapter
from paygate.providers.simulator import SimulatorBackend

STRIPE_CONFIG = {"apiKey": "sk_test_4eC39HqLyjWDarjtT1zdp7dc"}
PAYPAL_CONFIG = {
    "clientId": "paypal-client",
    "clientSecret": "paypal-secret",
    "environment": "sandbox",
    "planId": "P-5ML4271244454362WXNWU5NQ",
}
AUTHORIZE_NET_CONFIG = {
    "apiLoginId": "5KP3u95bQpv",
    "transactionKey": "346HZ32z3fP4hTG2",
    "environment": "sandbox",
}
MPESA_CONFIG = {
    "consumerKey": "mpesa-consumer-key",
    "consumerSecret": "mpesa-consumer-secret",
    "shortCode": "174379",
    "passKey": "bfb279f9aa9bdbcf158e97dd71a467cd2e0c893059b10f78e6b72ada1ed2c919",
    "environment": "sandbox",
}
SQUARE_CONFIG = {
    "accessToken": "EAAAEOuLQPDqKy",
    "applicationId": "sandbox-sq0idb-app",
    "locationId": "LH2G7XPJ1NWYZ",
    "environment": "sandbox",
}
RAZORPAY_CONFIG = {"keyId": "rzp_test_1DP5mmOlF5G5ag", "keySecret": "thisisasecret"}


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh file-backed database per test, so every session sees the same data."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'paygate.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def backend():
    return SimulatorBackend(failure_rate=0.0, latency_ms=0)


@pytest.fixture
def service(session_factory, backend):
    return PaymentGatewayService(
        session_factory,
        adapter_factory=functools.partial(get_adapter, backend=backend),
    )


async def register(service, provider_type, configuration, code=None, **overrides):
    return await service.register_provider(
        code=code or f"{provider_type}-test",
        name=f"{provider_type} test",
        provider_type=provider_type,
        configuration=configuration,
        **overrides,
    )


@pytest_asyncio.fixture
async def stripe_provider(service):
    return await register(service, "stripe", STRIPE_CONFIG, supports_recurring_payments=True)


@pytest_asyncio.fixture
async def paypal_provider(service):
    return await register(service, "paypal", PAYPAL_CONFIG, supports_recurring_payments=True)


@pytest_asyncio.fixture
async def authorize_net_provider(service):
    return await register(service, "authorize_net", AUTHORIZE_NET_CONFIG, supports_recurring_payments=True)


@pytest_asyncio.fixture
async def mpesa_provider(service):
    return await register(service, "mpesa", MPESA_CONFIG, supports_recurring_payments=True)


@pytest_asyncio.fixture
async def square_provider(service):
    return await register(service, "square", SQUARE_CONFIG, supports_recurring_payments=True)


@pytest_asyncio.fixture
async def razorpay_provider(service):
    return await register(service, "razorpay", RAZORPAY_CONFIG, supports_recurring_payments=True)
