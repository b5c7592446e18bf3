"""HTTP surface: action envelope, camelCase wire format and error bodies."""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from conftest import PAYPAL_CONFIG, STRIPE_CONFIG
from paygate.api.common import get_service
from paygate.api.providers import REDACTED, redact_configuration
from paygate.database import get_session
from paygate.main import app


@pytest_asyncio.fixture
async def client(service, session_factory):
    async def session_override():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_service] = lambda: service
    app.dependency_overrides[get_session] = session_override
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _action(client, path, payload, user_id=None):
    body = {"input": payload}
    if user_id:
        body["session_variables"] = {"x-hasura-user-id": user_id}
    return await client.post(f"/api{path}", json=body)


async def _register_stripe(client, code="stripe-api"):
    response = await _action(client, "/providers/register", {
        "code": code,
        "name": "Stripe",
        "providerType": "stripe",
        "configuration": STRIPE_CONFIG,
        "webhookSecret": "whsec_123",
    }, user_id="admin-1")
    assert response.status_code == 200, response.text
    return response.json()


def test_redact_configuration():
    redacted = redact_configuration({
        "clientId": "abc",
        "clientSecret": "s3cret",
        "nested": {"passKey": "pk", "environment": "sandbox"},
        "apiKey": "",
    })
    assert redacted == {
        "clientId": "abc",
        "clientSecret": REDACTED,
        "nested": {"passKey": REDACTED, "environment": "sandbox"},
        "apiKey": "",
    }


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "database": "ok"}


class TestProviderEndpoints:
    @pytest.mark.asyncio
    async def test_register_hides_secrets(self, client):
        provider = await _register_stripe(client)

        assert provider["providerType"] == "stripe"
        assert provider["isActive"] is True
        assert provider["configuration"]["apiKey"] == REDACTED
        assert provider["hasWebhookSecret"] is True
        assert "webhookSecret" not in provider

    @pytest.mark.asyncio
    async def test_invalid_configuration_is_400(self, client):
        response = await _action(client, "/providers/register", {
            "code": "broken",
            "name": "Broken",
            "providerType": "paypal",
            "configuration": {**PAYPAL_CONFIG, "environment": "staging"},
        })
        assert response.status_code == 400
        assert response.json()["message"].startswith("Invalid payment gateway configuration")

    @pytest.mark.asyncio
    async def test_get_update_list_delete(self, client):
        provider = await _register_stripe(client)

        updated = await _action(client, "/providers/update", {"providerId": provider["id"], "name": "Stripe US"})
        assert updated.status_code == 200
        assert updated.json()["name"] == "Stripe US"

        listed = await _action(client, "/providers/list", {"providerType": "stripe"})
        assert listed.json()["totalCount"] == 1

        deleted = await _action(client, "/providers/delete", {"providerId": provider["id"]})
        assert deleted.json() == {"success": True}

        missing = await _action(client, "/providers/get", {"providerId": provider["id"]})
        assert missing.status_code == 404
        assert missing.json() == {"message": "Payment gateway provider not found"}


class TestTransactionEndpoints:
    @pytest.mark.asyncio
    async def test_create_execute_refund(self, client):
        provider = await _register_stripe(client)

        created = await _action(client, "/transactions/create", {
            "providerId": provider["id"],
            "amount": 50,
            "currency": "USD",
            "clientId": "client-1",
        })
        assert created.status_code == 200, created.text
        transaction_id = created.json()["transactionId"]
        assert created.json()["status"] == "pending"
        assert created.json()["externalId"].startswith("pi_")

        executed = await _action(client, "/transactions/execute", {
            "transactionId": transaction_id,
            "paymentMethodToken": "pm_card_visa",
        })
        assert executed.json()["success"] is True
        assert executed.json()["status"] == "completed"

        status = await _action(client, "/transactions/status", {"transactionId": transaction_id})
        assert status.json()["status"] == "completed"
        assert status.json()["clientId"] == "client-1"

        refund = await _action(client, "/transactions/refund", {"transactionId": transaction_id, "amount": 20})
        body = refund.json()
        assert body["success"] is True
        assert body["amount"] == 20.0
        assert body["originalStatus"] == "partially_refunded"

        too_much = await _action(client, "/transactions/refund", {"transactionId": transaction_id, "amount": 80})
        assert too_much.status_code == 400
        assert too_much.json() == {"message": "Invalid refund amount"}

        listed = await _action(client, "/transactions/list", {"clientId": "client-1"})
        assert listed.json()["totalCount"] == 2

    @pytest.mark.asyncio
    async def test_request_validation_is_400(self, client):
        response = await _action(client, "/transactions/create", {
            "providerId": "p-1",
            "amount": -1,
            "currency": "USD",
        })
        assert response.status_code == 400
        assert "amount" in response.json()["message"]

    @pytest.mark.asyncio
    async def test_unknown_transaction_is_404(self, client):
        response = await _action(client, "/transactions/get", {"transactionId": "missing"})
        assert response.status_code == 404
        assert response.json() == {"message": "Payment transaction not found"}


class TestPaymentMethodAndRecurringEndpoints:
    @pytest.mark.asyncio
    async def test_save_subscribe_cancel(self, client):
        provider = await _action(client, "/providers/register", {
            "code": "stripe-recurring",
            "name": "Stripe",
            "providerType": "stripe",
            "configuration": STRIPE_CONFIG,
            "supportsRecurringPayments": True,
        })
        provider_id = provider.json()["id"]

        saved = await _action(client, "/payment-methods/save", {
            "providerId": provider_id,
            "clientId": "client-1",
            "paymentMethodType": "credit_card",
            "token": "pm_card_visa",
            "isDefault": True,
            "maskedNumber": "****4242",
        })
        assert saved.status_code == 200, saved.text
        assert saved.json()["isDefault"] is True

        created = await _action(client, "/recurring/create", {
            "providerId": provider_id,
            "clientId": "client-1",
            "paymentMethodToken": "pm_card_visa",
            "frequency": "monthly",
            "amount": 25,
            "currency": "USD",
            "startDate": "2030-01-01",
        }, user_id="officer-7")
        assert created.status_code == 200, created.text
        assert created.json()["status"] == "active"

        cancelled = await _action(client, "/recurring/update-status", {
            "recurringPaymentId": created.json()["id"],
            "status": "cancelled",
        })
        assert cancelled.json()["status"] == "cancelled"

        listed = await _action(client, "/recurring/list", {"clientId": "client-1"})
        assert listed.json()["totalCount"] == 1

        methods = await _action(client, "/payment-methods/list", {"clientId": "client-1"})
        assert [m["token"] for m in methods.json()["paymentMethods"]] == ["pm_card_visa"]

        deleted = await _action(client, "/payment-methods/delete", {"paymentMethodId": saved.json()["id"]})
        assert deleted.json() == {"success": True}

    @pytest.mark.asyncio
    async def test_missing_records_are_404(self, client):
        method = await _action(client, "/payment-methods/delete", {"paymentMethodId": "missing"})
        assert method.status_code == 404
        recurring = await _action(client, "/recurring/update-status", {
            "recurringPaymentId": "missing",
            "status": "paused",
        })
        assert recurring.status_code == 404
        assert recurring.json() == {"message": "Recurring payment configuration not found"}


class TestWebhookEndpoint:
    @pytest.mark.asyncio
    async def test_process_and_duplicate(self, client):
        provider = await _register_stripe(client)
        payload = {
            "providerId": provider["id"],
            "eventType": "customer.created",
            "payload": {"id": "evt_1", "type": "customer.created", "data": {"object": {"id": "cus_1"}}},
        }

        first = await _action(client, "/webhooks/process", payload)
        assert first.status_code == 200
        assert first.json()["status"] == "processed"
        assert first.json()["duplicate"] is False

        second = await _action(client, "/webhooks/process", payload)
        assert second.json()["duplicate"] is True
        assert second.json()["eventId"] == first.json()["eventId"]

    @pytest.mark.asyncio
    async def test_unknown_provider_is_404(self, client):
        response = await _action(client, "/webhooks/process", {
            "providerId": "missing",
            "eventType": "payment.captured",
            "payload": {},
        })
        assert response.status_code == 404
