"""Adapter behaviour against the simulated provider backends."""

from datetime import date

import pytest

from conftest import (
    AUTHORIZE_NET_CONFIG,
    MPESA_CONFIG,
    PAYPAL_CONFIG,
    RAZORPAY_CONFIG,
    SQUARE_CONFIG,
    STRIPE_CONFIG,
)
from paygate.engine.retry import PermanentError, ProviderError
from paygate.errors import InvalidRequestError
from paygate.models.enums import RecurringFrequency, RecurringStatus, TransactionStatus
from paygate.providers import get_adapter
from paygate.providers.base import count_occurrences, from_minor_units, to_minor_units
from paygate.providers.simulator import SimulatorBackend


def _adapter(provider_type, config, backend):
    return get_adapter(provider_type, config, backend=backend)


class TestMoneyHelpers:
    def test_minor_units(self):
        assert to_minor_units(10.10, "USD") == 1010
        assert to_minor_units(0.29, "usd") == 29
        assert to_minor_units(1500, "JPY") == 1500

    def test_from_minor_units(self):
        assert from_minor_units(1010, "USD") == 10.10
        assert from_minor_units(1500, "JPY") == 1500.0


class TestCountOccurrences:
    def test_open_ended(self):
        assert count_occurrences(RecurringFrequency.MONTHLY, date(2024, 1, 1), None) is None

    def test_monthly_inclusive(self):
        assert count_occurrences(RecurringFrequency.MONTHLY, date(2024, 1, 15), date(2024, 12, 15)) == 12

    def test_monthly_partial_month(self):
        assert count_occurrences(RecurringFrequency.MONTHLY, date(2024, 1, 15), date(2024, 3, 14)) == 2

    def test_weekly_and_daily(self):
        assert count_occurrences(RecurringFrequency.WEEKLY, date(2024, 1, 1), date(2024, 1, 29)) == 5
        assert count_occurrences(RecurringFrequency.DAILY, date(2024, 1, 1), date(2024, 1, 1)) == 1

    def test_quarterly_and_annual(self):
        assert count_occurrences(RecurringFrequency.QUARTERLY, date(2024, 1, 1), date(2024, 12, 31)) == 4
        assert count_occurrences(RecurringFrequency.ANNUAL, date(2024, 1, 1), date(2026, 1, 1)) == 3

    def test_end_before_start(self):
        with pytest.raises(InvalidRequestError):
            count_occurrences(RecurringFrequency.DAILY, date(2024, 2, 1), date(2024, 1, 1))


class TestStripe:
    @pytest.mark.asyncio
    async def test_create_then_confirm(self, backend):
        adapter = _adapter("stripe", STRIPE_CONFIG, backend)
        created = await adapter.create_payment("txn-1", 25.50, "usd")

        assert created.result.status == TransactionStatus.PENDING
        assert created.result.external_id.startswith("pi_")
        assert created.audit.request["amount"] == 2550
        assert created.audit.response["id"] == created.result.external_id

        executed = await adapter.execute_payment(
            "txn-1", created.result.external_id, payment_method_token="pm_card_visa"
        )
        assert executed.result.success is True
        assert executed.result.status == TransactionStatus.COMPLETED
        assert executed.result.payment_details["chargeId"].startswith("ch_")

    @pytest.mark.asyncio
    async def test_create_is_idempotent_per_transaction(self, backend):
        adapter = _adapter("stripe", STRIPE_CONFIG, backend)
        first = await adapter.create_payment("txn-1", 10, "USD")
        second = await adapter.create_payment("txn-1", 10, "USD")
        assert first.result.external_id == second.result.external_id

    @pytest.mark.asyncio
    async def test_three_d_secure_is_a_redirect(self, backend):
        adapter = _adapter("stripe", STRIPE_CONFIG, backend)
        created = await adapter.create_payment("txn-1", 10, "USD")
        executed = await adapter.execute_payment(
            "txn-1", created.result.external_id, payment_method_token="pm_card_threeDSecure2Required"
        )
        assert executed.result.success is False
        assert executed.result.status == TransactionStatus.PENDING
        assert "3d_secure" in executed.result.redirect_url

    @pytest.mark.asyncio
    async def test_declined_card(self, backend):
        adapter = _adapter("stripe", STRIPE_CONFIG, backend)
        created = await adapter.create_payment("txn-1", 10, "USD")
        executed = await adapter.execute_payment(
            "txn-1", created.result.external_id, payment_method_token="pm_card_declined"
        )
        assert executed.result.status == TransactionStatus.FAILED
        assert executed.result.payment_details["declineCode"] == "card_declined"

    @pytest.mark.asyncio
    async def test_refund_cannot_exceed_capture(self, backend):
        adapter = _adapter("stripe", STRIPE_CONFIG, backend)
        created = await adapter.create_payment("txn-1", 10, "USD")
        intent_id = created.result.external_id
        await adapter.execute_payment("txn-1", intent_id, payment_method_token="pm_card_visa")

        refund = await adapter.refund_payment("txn-1", intent_id, 4.00)
        assert refund.result.status == TransactionStatus.COMPLETED
        assert refund.result.refund_id.startswith("re_")

        with pytest.raises(InvalidRequestError, match="exceeds"):
            await adapter.refund_payment("txn-1", intent_id, 6.01)

    @pytest.mark.asyncio
    async def test_token_validation(self, backend):
        adapter = _adapter("stripe", STRIPE_CONFIG, backend)
        assert (await adapter.validate_payment_method_token("pm_card_visa", "credit_card")).result is True
        assert (await adapter.validate_payment_method_token("pm_bank_1", "bank_account")).result is True
        assert (await adapter.validate_payment_method_token("pm_card_visa", "bank_account")).result is False
        assert (await adapter.validate_payment_method_token("tok_visa", "credit_card")).result is False

    @pytest.mark.asyncio
    async def test_subscription_pause_and_cancel(self, backend):
        adapter = _adapter("stripe", STRIPE_CONFIG, backend)
        created = await adapter.create_recurring_payment(
            "pm_card_visa", RecurringFrequency.MONTHLY, 50, "USD", date.today()
        )
        subscription_id = created.result.subscription_id
        assert created.result.status == RecurringStatus.ACTIVE
        assert created.audit.request["items"][0]["price_data"]["recurring"] == {
            "interval": "month",
            "interval_count": 1,
        }

        paused = await adapter.update_recurring_payment_status(subscription_id, RecurringStatus.PAUSED)
        cancelled = await adapter.update_recurring_payment_status(subscription_id, RecurringStatus.CANCELLED)
        assert paused.result is True
        assert cancelled.result is True

    def test_webhook_event_id(self, backend):
        adapter = _adapter("stripe", STRIPE_CONFIG, backend)
        assert adapter.webhook_event_id({"id": "evt_1"}) == "evt_1"
        assert adapter.webhook_event_id({}) is None


class TestPayPal:
    @pytest.mark.asyncio
    async def test_unapproved_order_redirects_to_buyer(self, backend):
        adapter = _adapter("paypal", PAYPAL_CONFIG, backend)
        created = await adapter.create_payment("txn-1", 20, "USD", callback_url="https://example.com/done")
        assert created.result.payment_url.startswith("https://www.sandbox.paypal.com/checkoutnow")

        executed = await adapter.execute_payment("txn-1", created.result.external_id)
        assert executed.result.success is False
        assert executed.result.status == TransactionStatus.PENDING
        assert executed.result.redirect_url == created.result.payment_url
        assert backend.call_count("paypal", "orders.capture") == 0

    @pytest.mark.asyncio
    async def test_approved_order_is_captured_and_refunded(self, backend):
        adapter = _adapter("paypal", PAYPAL_CONFIG, backend)
        created = await adapter.create_payment("txn-1", 20, "USD")
        order_id = created.result.external_id
        backend.update(order_id, status="APPROVED")

        executed = await adapter.execute_payment("txn-1", order_id)
        assert executed.result.status == TransactionStatus.COMPLETED
        assert executed.result.payment_details["payerEmail"] == "buyer@example.com"

        partial = await adapter.refund_payment("txn-1", order_id, 5)
        assert partial.result.status == TransactionStatus.COMPLETED
        assert partial.audit.request["amount"]["value"] == "5.00"

        with pytest.raises(InvalidRequestError, match="exceeds"):
            await adapter.refund_payment("txn-1", order_id, 15.01)

    @pytest.mark.asyncio
    async def test_subscription_requires_plan(self, backend):
        config = {k: v for k, v in PAYPAL_CONFIG.items() if k != "planId"}
        adapter = _adapter("paypal", config, backend)
        with pytest.raises(InvalidRequestError, match="planId"):
            await adapter.create_recurring_payment("B-1", RecurringFrequency.MONTHLY, 10, "USD", date.today())


class TestAuthorizeNet:
    @pytest.mark.asyncio
    async def test_hosted_page_then_opaque_charge(self, backend):
        adapter = _adapter("authorize_net", AUTHORIZE_NET_CONFIG, backend)
        created = await adapter.create_payment("txn-1", 30, "USD")
        assert created.result.external_id is None
        assert created.result.payment_url.startswith("https://test.authorize.net/payment/payment?token=")

        executed = await adapter.execute_payment(
            "txn-1",
            payment_method_token="COMMON.ACCEPT.INAPP.PAYMENT",
            payment_details={"dataValue": "opaque-blob"},
            amount=30,
            currency="USD",
        )
        assert executed.result.status == TransactionStatus.COMPLETED
        assert executed.result.external_id

        status = await adapter.check_payment_status("txn-1", executed.result.external_id)
        assert status.result.status == TransactionStatus.COMPLETED

        refund = await adapter.refund_payment("txn-1", executed.result.external_id, 30)
        assert refund.result.success is True
        assert refund.result.refund_id

    @pytest.mark.asyncio
    async def test_declined_charge(self, backend):
        adapter = _adapter("authorize_net", AUTHORIZE_NET_CONFIG, backend)
        executed = await adapter.execute_payment(
            "txn-1", payment_method_token="COMMON.ACCEPT.declined", amount=10, currency="USD"
        )
        assert executed.result.status == TransactionStatus.FAILED
        assert executed.result.error_message == "This transaction has been declined."

    @pytest.mark.asyncio
    async def test_without_token_waits_for_hosted_page(self, backend):
        adapter = _adapter("authorize_net", AUTHORIZE_NET_CONFIG, backend)
        executed = await adapter.execute_payment("txn-1")
        assert executed.result.status == TransactionStatus.PENDING
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_arb_subscription_counts_occurrences(self, backend):
        adapter = _adapter("authorize_net", AUTHORIZE_NET_CONFIG, backend)
        created = await adapter.create_recurring_payment(
            "123456", RecurringFrequency.MONTHLY, 15, "USD", date(2030, 1, 1), end_date=date(2030, 6, 1)
        )
        schedule = created.audit.request["subscription"]["paymentSchedule"]
        assert schedule["totalOccurrences"] == 6
        assert schedule["interval"] == {"length": 1, "unit": "months"}
        assert created.result.status == RecurringStatus.ACTIVE

    def test_webhook_event_id(self, backend):
        adapter = _adapter("authorize_net", AUTHORIZE_NET_CONFIG, backend)
        assert adapter.webhook_event_id({"notificationId": "n-1"}) == "n-1"


class TestMpesa:
    @pytest.mark.asyncio
    async def test_only_kes(self, backend):
        adapter = _adapter("mpesa", MPESA_CONFIG, backend)
        with pytest.raises(InvalidRequestError, match="KES"):
            await adapter.create_payment("txn-1", 100, "USD", metadata={"phoneNumber": "254708374149"})

    @pytest.mark.asyncio
    async def test_phone_number_required(self, backend):
        adapter = _adapter("mpesa", MPESA_CONFIG, backend)
        with pytest.raises(InvalidRequestError, match="Phone number"):
            await adapter.create_payment("txn-1", 100, "KES")
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_stk_push_and_query(self, backend):
        adapter = _adapter("mpesa", MPESA_CONFIG, backend)
        created = await adapter.create_payment("txn-1", 100, "KES", metadata={"phoneNumber": "254708374149"})
        checkout_id = created.result.external_id
        assert checkout_id.startswith("ws_CO_")
        assert created.audit.request["Amount"] == 100

        backend.update(checkout_id, ResultCode="1032", ResultDesc="Request cancelled by user")
        status = await adapter.check_payment_status("txn-1", checkout_id)
        assert status.result.status == TransactionStatus.CANCELLED
        assert status.result.error_message == "Request cancelled by user"

    @pytest.mark.asyncio
    async def test_refund_is_an_asynchronous_disbursement(self, backend):
        adapter = _adapter("mpesa", MPESA_CONFIG, backend)
        created = await adapter.create_payment("txn-1", 100, "KES", metadata={"phoneNumber": "254708374149"})
        refund = await adapter.refund_payment(
            "txn-1", created.result.external_id, 40, payment_details={"phoneNumber": "254708374149"}
        )
        assert refund.result.status == TransactionStatus.PENDING
        assert refund.result.refund_id.startswith("AG_")

    @pytest.mark.asyncio
    async def test_subscription_is_local(self, backend):
        adapter = _adapter("mpesa", MPESA_CONFIG, backend)
        created = await adapter.create_recurring_payment(
            "254708374149", RecurringFrequency.WEEKLY, 500, "KES", date.today()
        )
        assert created.result.subscription_id.startswith("MPESA_SUB_")
        assert (await adapter.update_recurring_payment_status(
            created.result.subscription_id, RecurringStatus.PAUSED
        )).result is True
        assert backend.calls == []

    def test_c2b_event_id(self, backend):
        adapter = _adapter("mpesa", MPESA_CONFIG, backend)
        assert adapter.webhook_event_id({"TransID": "RKTQDM7W6S"}) == "c2b:RKTQDM7W6S"
        assert adapter.webhook_event_id({"Body": {}}) is None


class TestSquare:
    @pytest.mark.asyncio
    async def test_checkout_link_has_no_external_id(self, backend):
        adapter = _adapter("square", SQUARE_CONFIG, backend)
        created = await adapter.create_payment("txn-1", 12, "USD")
        assert created.result.external_id is None
        assert "reference_id=txn-1" in created.result.payment_url
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_card_charge(self, backend):
        adapter = _adapter("square", SQUARE_CONFIG, backend)
        executed = await adapter.execute_payment(
            "txn-1", payment_method_token="ccof:customer-card-1", amount=12, currency="USD"
        )
        assert executed.result.status == TransactionStatus.COMPLETED
        assert executed.result.external_id
        assert executed.audit.request["amount_money"] == {"amount": 1200, "currency": "USD"}

        refund = await adapter.refund_payment("txn-1", executed.result.external_id, 2)
        assert refund.result.status == TransactionStatus.COMPLETED
        status = await adapter.check_payment_status("txn-1", executed.result.external_id)
        assert status.result.status == TransactionStatus.PARTIALLY_REFUNDED

    @pytest.mark.asyncio
    async def test_declined_card(self, backend):
        adapter = _adapter("square", SQUARE_CONFIG, backend)
        executed = await adapter.execute_payment(
            "txn-1", payment_method_token="ccof:declined", amount=12, currency="USD"
        )
        assert executed.result.status == TransactionStatus.FAILED
        assert executed.result.error_message == "Card declined."

    @pytest.mark.asyncio
    async def test_token_validation(self, backend):
        adapter = _adapter("square", SQUARE_CONFIG, backend)
        assert (await adapter.validate_payment_method_token("ccof:abc", "credit_card")).result is True
        assert (await adapter.validate_payment_method_token("ccof:disabled", "credit_card")).result is False
        assert (await adapter.validate_payment_method_token("cnon:abc", "credit_card")).result is False

    def test_webhook_event_id(self, backend):
        adapter = _adapter("square", SQUARE_CONFIG, backend)
        assert adapter.webhook_event_id({"event_id": "sq-evt-1"}) == "sq-evt-1"


class TestRazorpay:
    @pytest.mark.asyncio
    async def test_only_inr(self, backend):
        adapter = _adapter("razorpay", RAZORPAY_CONFIG, backend)
        with pytest.raises(InvalidRequestError, match="INR"):
            await adapter.create_payment("txn-1", 100, "USD")

    @pytest.mark.asyncio
    async def test_no_payment_yet(self, backend):
        adapter = _adapter("razorpay", RAZORPAY_CONFIG, backend)
        created = await adapter.create_payment("txn-1", 100, "INR")
        executed = await adapter.execute_payment("txn-1", created.result.external_id)
        assert executed.result.status == TransactionStatus.PENDING
        assert executed.result.error_message == "No payment found for this order"

    @pytest.mark.asyncio
    async def test_authorized_payment_is_captured(self, backend):
        adapter = _adapter("razorpay", RAZORPAY_CONFIG, backend)
        created = await adapter.create_payment("txn-1", 100, "INR")
        order_id = created.result.external_id
        assert order_id.startswith("order_")
        payment = adapter.client.pay_order(order_id)

        executed = await adapter.execute_payment("txn-1", order_id)
        assert executed.result.status == TransactionStatus.COMPLETED
        assert executed.result.external_id == payment["id"]
        assert backend.call_count("razorpay", "payments.capture") == 1

        refund = await adapter.refund_payment("txn-1", payment["id"], 100)
        assert refund.result.status == TransactionStatus.COMPLETED
        status = await adapter.check_payment_status("txn-1", payment["id"])
        assert status.result.status == TransactionStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_open_ended_subscription_uses_default_count(self, backend):
        adapter = _adapter("razorpay", {**RAZORPAY_CONFIG, "defaultTotalCount": 24}, backend)
        created = await adapter.create_recurring_payment(
            "token_abc", RecurringFrequency.QUARTERLY, 999, "INR", date.today()
        )
        assert created.audit.request["total_count"] == 24
        assert created.result.status == RecurringStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_provider_failure_carries_audit(self):
        adapter = _adapter("razorpay", RAZORPAY_CONFIG, SimulatorBackend(failure_rate=1.0, latency_ms=0))
        with pytest.raises(ProviderError) as info:
            await adapter.create_payment("txn-1", 100, "INR")
        assert info.value.audit.request["receipt"] == "txn-1"
        assert "error" in info.value.audit.response


@pytest.mark.asyncio
async def test_missing_external_id_is_rejected(backend):
    adapter = _adapter("stripe", STRIPE_CONFIG, backend)
    with pytest.raises(InvalidRequestError, match="Payment intent ID is required"):
        await adapter.check_payment_status("txn-1", None)


@pytest.mark.asyncio
async def test_unknown_remote_object(backend):
    adapter = _adapter("paypal", PAYPAL_CONFIG, backend)
    with pytest.raises(PermanentError):
        await adapter.check_payment_status("txn-1", "NOPE")
