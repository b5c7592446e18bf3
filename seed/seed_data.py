"""
Seed the database with one demo provider per supported gateway.

Credentials are sandbox placeholders; calls go to the built-in simulator.

Run:
    python -m seed.seed_data
"""

import asyncio

from paygate.database import async_session, init_db
from paygate.engine.service import PaymentGatewayService

PROVIDERS = [
    {
        "code": "stripe-demo",
        "name": "Stripe (demo)",
        "provider_type": "stripe",
        "configuration": {"apiKey": "sk_test_demo", "useWebhooks": False},
        "supports_recurring_payments": True,
    },
    {
        "code": "paypal-demo",
        "name": "PayPal (sandbox)",
        "provider_type": "paypal",
        "configuration": {
            "clientId": "demo-client",
            "clientSecret": "demo-secret",
            "environment": "sandbox",
            "planId": "P-DEMO-PLAN",
        },
        "supports_recurring_payments": True,
    },
    {
        "code": "authnet-demo",
        "name": "Authorize.Net (sandbox)",
        "provider_type": "authorize_net",
        "configuration": {
            "apiLoginId": "demo-login",
            "transactionKey": "demo-transaction-key",
            "environment": "sandbox",
        },
        "supports_recurring_payments": True,
    },
    {
        "code": "mpesa-demo",
        "name": "M-Pesa (sandbox)",
        "provider_type": "mpesa",
        "configuration": {
            "consumerKey": "demo-consumer-key",
            "consumerSecret": "demo-consumer-secret",
            "shortCode": "174379",
            "passKey": "demo-passkey",
            "environment": "sandbox",
            "initiatorName": "testapi",
            "securityCredential": "demo-credential",
        },
    },
    {
        "code": "square-demo",
        "name": "Square (sandbox)",
        "provider_type": "square",
        "configuration": {
            "accessToken": "demo-access-token",
            "applicationId": "sandbox-sq0idb-demo",
            "locationId": "L-DEMO",
            "environment": "sandbox",
        },
        "supports_recurring_payments": True,
    },
    {
        "code": "razorpay-demo",
        "name": "Razorpay (test)",
        "provider_type": "razorpay",
        "configuration": {"keyId": "rzp_test_demo", "keySecret": "demo-key-secret"},
        "supports_recurring_payments": True,
    },
]


async def seed():
    """Register demo providers that do not exist yet."""
    await init_db()
    service = PaymentGatewayService(async_session)

    existing, _ = await service.list_providers(limit=100)
    known = {p.code for p in existing}

    created = 0
    for provider_data in PROVIDERS:
        if provider_data["code"] in known:
            continue
        await service.register_provider(**provider_data, user_id="seed")
        created += 1

    if created:
        print(f"Seeded {created} payment gateway providers.")
    else:
        print("Database already seeded. Skipping.")


if __name__ == "__main__":
    asyncio.run(seed())
