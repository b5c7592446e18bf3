"""Reconciliation engine tests against the simulated providers."""

import asyncio
import functools
from datetime import date, timedelta

import pytest

from conftest import MPESA_CONFIG, PAYPAL_CONFIG, RAZORPAY_CONFIG, STRIPE_CONFIG, register
from paygate.engine.retry import ProviderError
from paygate.engine.service import PaymentGatewayService
from paygate.errors import ConfigurationError, InvalidRequestError, NotFoundError
from paygate.providers import get_adapter
from paygate.providers.simulator import SimulatorBackend


async def _completed_payment(service, provider, amount=50.0, **kwargs):
    created = await service.create_transaction(
        provider_id=provider.id, amount=amount, currency="USD", **kwargs
    )
    await service.execute_payment(created.transaction.id, payment_method_token="pm_card_visa")
    return await service.get_transaction(created.transaction.id)


class TestProviders:
    @pytest.mark.asyncio
    async def test_register_and_reject_invalid_configuration(self, service):
        provider = await register(service, "stripe", STRIPE_CONFIG, code="stripe-main")
        assert provider.is_active is True
        assert provider.provider_type == "stripe"

        with pytest.raises(ConfigurationError, match="Invalid payment gateway configuration: Stripe apiKey is required"):
            await register(service, "stripe", {}, code="stripe-broken")

        providers, total = await service.list_providers()
        assert total == 1
        assert [p.code for p in providers] == ["stripe-main"]

    @pytest.mark.asyncio
    async def test_duplicate_code(self, service, stripe_provider):
        with pytest.raises(InvalidRequestError, match="already exists"):
            await register(service, "stripe", STRIPE_CONFIG, code=stripe_provider.code)

    @pytest.mark.asyncio
    async def test_unknown_type(self, service):
        with pytest.raises(InvalidRequestError, match="Unknown payment gateway type"):
            await register(service, "bitcoin", {})

    @pytest.mark.asyncio
    async def test_list_filters_and_pages(self, service, stripe_provider, paypal_provider, mpesa_provider):
        providers, total = await service.list_providers(provider_type="paypal")
        assert total == 1
        assert providers[0].id == paypal_provider.id

        page, total = await service.list_providers(limit=2, offset=0)
        assert total == 3
        assert len(page) == 2

    @pytest.mark.asyncio
    async def test_update(self, service, stripe_provider):
        updated = await service.update_provider(stripe_provider.id, name="Stripe EU", is_active=False, user_id="u-1")
        assert updated.name == "Stripe EU"
        assert updated.is_active is False
        assert updated.updated_by == "u-1"

        _, total = await service.list_providers(is_active=True)
        assert total == 0

    @pytest.mark.asyncio
    async def test_update_revalidates_configuration(self, service, stripe_provider):
        with pytest.raises(ConfigurationError):
            await service.update_provider(stripe_provider.id, configuration={"apiKey": ""})
        provider = await service.get_provider(stripe_provider.id)
        assert provider.configuration == STRIPE_CONFIG

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, service, stripe_provider):
        with pytest.raises(InvalidRequestError, match="provider_type"):
            await service.update_provider(stripe_provider.id, provider_type="paypal")

    @pytest.mark.asyncio
    async def test_update_missing(self, service):
        assert await service.update_provider("missing", name="x") is None

    @pytest.mark.asyncio
    async def test_delete(self, service, stripe_provider, paypal_provider):
        await service.create_transaction(provider_id=stripe_provider.id, amount=5, currency="USD")

        with pytest.raises(InvalidRequestError, match="Cannot delete provider with existing transactions"):
            await service.delete_provider(stripe_provider.id)
        assert await service.delete_provider(paypal_provider.id) is True
        assert await service.get_provider(paypal_provider.id) is None
        assert await service.delete_provider(paypal_provider.id) is False


class TestCreateTransaction:
    @pytest.mark.asyncio
    async def test_stripe_payment_starts_pending(self, service, stripe_provider):
        outcome = await service.create_transaction(
            provider_id=stripe_provider.id,
            amount=50.00,
            currency="usd",
            client_id="client-1",
            loan_id="loan-9",
            reference_number="INV-001",
        )
        txn = outcome.transaction

        assert txn.status == "pending"
        assert txn.currency == "USD"
        assert txn.external_id.startswith("pi_")
        assert txn.request_payload["amount"] == 5000
        assert txn.request_payload["metadata"]["loanId"] == "loan-9"
        assert txn.response_payload["status"] == "requires_payment_method"

    @pytest.mark.asyncio
    async def test_validation_happens_before_anything_is_written(self, service, stripe_provider, backend):
        with pytest.raises(InvalidRequestError, match="Amount must be greater than zero"):
            await service.create_transaction(provider_id=stripe_provider.id, amount=0, currency="USD")
        with pytest.raises(InvalidRequestError, match="three-letter"):
            await service.create_transaction(provider_id=stripe_provider.id, amount=5, currency="US")

        _, total = await service.list_transactions()
        assert total == 0
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_unknown_and_inactive_provider(self, service, stripe_provider):
        with pytest.raises(NotFoundError):
            await service.create_transaction(provider_id="missing", amount=5, currency="USD")

        await service.update_provider(stripe_provider.id, is_active=False)
        with pytest.raises(InvalidRequestError, match="not active"):
            await service.create_transaction(provider_id=stripe_provider.id, amount=5, currency="USD")

    @pytest.mark.asyncio
    async def test_local_adapter_rejection_rolls_back(self, service, mpesa_provider):
        with pytest.raises(InvalidRequestError, match="Phone number"):
            await service.create_transaction(provider_id=mpesa_provider.id, amount=100, currency="KES")
        _, total = await service.list_transactions()
        assert total == 0

    @pytest.mark.asyncio
    async def test_provider_failure_keeps_pending_row(self, session_factory):
        failing = PaymentGatewayService(
            session_factory,
            adapter_factory=functools.partial(
                get_adapter, backend=SimulatorBackend(failure_rate=1.0, latency_ms=0)
            ),
        )
        provider = await register(failing, "stripe", STRIPE_CONFIG)

        with pytest.raises(ProviderError):
            await failing.create_transaction(provider_id=provider.id, amount=10, currency="USD")

        transactions, total = await failing.list_transactions()
        assert total == 1
        txn = transactions[0]
        assert txn.status == "pending"
        assert txn.external_id is None
        assert txn.error_message
        assert txn.request_payload["amount"] == 1000
        assert "error" in txn.response_payload


class TestExecutePayment:
    @pytest.mark.asyncio
    async def test_stripe_execute_then_cached_status(self, service, stripe_provider, backend):
        created = await service.create_transaction(provider_id=stripe_provider.id, amount=50, currency="USD")
        outcome = await service.execute_payment(created.transaction.id, payment_method_token="pm_card_visa")

        assert outcome.success is True
        txn = await service.get_transaction(created.transaction.id)
        assert txn.status == "completed"
        assert txn.payment_details["chargeId"].startswith("ch_")

        before = backend.call_count("stripe")
        first = await service.check_payment_status(txn.id)
        second = await service.check_payment_status(txn.id)
        assert first.status == second.status == "completed"
        assert backend.call_count("stripe") == before

    @pytest.mark.asyncio
    async def test_execute_twice_is_rejected(self, service, stripe_provider):
        created = await service.create_transaction(provider_id=stripe_provider.id, amount=50, currency="USD")
        await service.execute_payment(created.transaction.id, payment_method_token="pm_card_visa")

        with pytest.raises(InvalidRequestError, match="already in completed status"):
            await service.execute_payment(created.transaction.id, payment_method_token="pm_card_visa")

    @pytest.mark.asyncio
    async def test_concurrent_executes_charge_once(self, service, stripe_provider, backend):
        created = await service.create_transaction(provider_id=stripe_provider.id, amount=30, currency="USD")

        results = await asyncio.gather(
            service.execute_payment(created.transaction.id, payment_method_token="pm_card_visa"),
            service.execute_payment(created.transaction.id, payment_method_token="pm_card_visa"),
            return_exceptions=True,
        )

        executed = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, Exception)]
        assert len(executed) == 1
        assert executed[0].success is True
        assert len(rejected) == 1
        assert isinstance(rejected[0], InvalidRequestError)
        assert rejected[0].message == "Payment transaction is already in completed status"
        assert backend.call_count("stripe", "payment_intents.confirm") == 1

        txn = await service.get_transaction(created.transaction.id)
        assert txn.status == "completed"
        assert txn.version == 1

    @pytest.mark.asyncio
    async def test_execute_unknown_transaction(self, service):
        with pytest.raises(NotFoundError, match="Payment transaction not found"):
            await service.execute_payment("missing")

    @pytest.mark.asyncio
    async def test_declined_card_fails(self, service, stripe_provider):
        created = await service.create_transaction(provider_id=stripe_provider.id, amount=50, currency="USD")
        outcome = await service.execute_payment(created.transaction.id, payment_method_token="pm_card_declined")

        assert outcome.success is False
        txn = await service.get_transaction(created.transaction.id)
        assert txn.status == "failed"
        assert txn.error_message == "Your card was declined."

    @pytest.mark.asyncio
    async def test_three_d_secure_stays_pending(self, service, stripe_provider):
        created = await service.create_transaction(provider_id=stripe_provider.id, amount=50, currency="USD")
        outcome = await service.execute_payment(
            created.transaction.id, payment_method_token="pm_card_threeDSecure2Required"
        )
        assert outcome.success is False
        assert outcome.redirect_url
        txn = await service.get_transaction(created.transaction.id)
        assert txn.status == "pending"

    @pytest.mark.asyncio
    async def test_paypal_requires_buyer_approval(self, service, paypal_provider, backend):
        created = await service.create_transaction(provider_id=paypal_provider.id, amount=20, currency="USD")
        assert created.payment_url

        first = await service.execute_payment(created.transaction.id)
        assert first.success is False
        assert first.redirect_url == created.payment_url

        backend.update(created.transaction.external_id, status="APPROVED")
        second = await service.execute_payment(created.transaction.id)
        assert second.success is True
        txn = await service.get_transaction(created.transaction.id)
        assert txn.status == "completed"
        assert txn.payment_details["captureId"]

    @pytest.mark.asyncio
    async def test_square_card_charge_records_payment_id(self, service, square_provider):
        created = await service.create_transaction(provider_id=square_provider.id, amount=12, currency="USD")
        assert created.transaction.external_id is None

        outcome = await service.execute_payment(created.transaction.id, payment_method_token="ccof:card-1")
        assert outcome.success is True
        txn = await service.get_transaction(created.transaction.id)
        assert txn.status == "completed"
        assert txn.external_id

    @pytest.mark.asyncio
    async def test_razorpay_capture_switches_to_payment_id(self, service, razorpay_provider, backend):
        created = await service.create_transaction(provider_id=razorpay_provider.id, amount=499, currency="INR")
        order_id = created.transaction.external_id
        payment = get_adapter("razorpay", RAZORPAY_CONFIG, backend=backend).client.pay_order(order_id)

        await service.execute_payment(created.transaction.id)
        txn = await service.get_transaction(created.transaction.id)
        assert txn.status == "completed"
        assert txn.external_id == payment["id"]


class TestCheckPaymentStatus:
    @pytest.mark.asyncio
    async def test_unknown_transaction(self, service):
        assert await service.check_payment_status("missing") is None

    @pytest.mark.asyncio
    async def test_mpesa_cancelled_prompt(self, service, mpesa_provider, backend):
        created = await service.create_transaction(
            provider_id=mpesa_provider.id,
            amount=100,
            currency="KES",
            metadata={"phoneNumber": "254708374149"},
        )
        backend.update(created.transaction.external_id, ResultCode="1032", ResultDesc="Request cancelled by user")

        txn = await service.check_payment_status(created.transaction.id)
        assert txn.status == "cancelled"
        assert txn.error_message == "Request cancelled by user"
        assert txn.payment_details["resultCode"] == "1032"

    @pytest.mark.asyncio
    async def test_pending_stays_pending(self, service, stripe_provider):
        created = await service.create_transaction(provider_id=stripe_provider.id, amount=5, currency="USD")
        txn = await service.check_payment_status(created.transaction.id)
        assert txn.status == "pending"


class TestRefunds:
    @pytest.mark.asyncio
    async def test_partial_then_remaining(self, service, stripe_provider):
        original = await _completed_payment(service, stripe_provider, reference_number="INV-7")

        partial = await service.refund_payment(original.id, amount=20.00, reason="duplicate")
        assert partial.success is True
        assert partial.refund.transaction_type == "refund"
        assert partial.refund.amount == 20.00
        assert partial.refund.status == "completed"
        assert partial.refund.original_transaction_id == original.id
        assert partial.refund.metadata_["originalTransactionId"] == original.id
        assert partial.refund.reference_number == "REFUND-INV-7"
        assert partial.original.status == "partially_refunded"

        rest = await service.refund_payment(original.id)
        assert rest.refund.amount == 30.00
        assert rest.original.status == "refunded"

        with pytest.raises(InvalidRequestError, match="Only completed transactions can be refunded"):
            await service.refund_payment(original.id, amount=1)

    @pytest.mark.asyncio
    async def test_over_refund_is_rejected_without_changes(self, service, stripe_provider):
        original = await _completed_payment(service, stripe_provider)

        with pytest.raises(InvalidRequestError, match="Invalid refund amount"):
            await service.refund_payment(original.id, amount=80.00)

        txn = await service.get_transaction(original.id)
        assert txn.status == "completed"
        _, total = await service.list_transactions()
        assert total == 1

    @pytest.mark.parametrize("amount", [0, -5, 50.01])
    @pytest.mark.asyncio
    async def test_amount_bounds(self, service, stripe_provider, amount):
        original = await _completed_payment(service, stripe_provider)
        with pytest.raises(InvalidRequestError, match="Invalid refund amount"):
            await service.refund_payment(original.id, amount=amount)

    @pytest.mark.asyncio
    async def test_remaining_balance_bounds_later_refunds(self, service, stripe_provider):
        original = await _completed_payment(service, stripe_provider)
        await service.refund_payment(original.id, amount=40)
        with pytest.raises(InvalidRequestError, match="Invalid refund amount"):
            await service.refund_payment(original.id, amount=10.01)

    @pytest.mark.asyncio
    async def test_pending_payment_cannot_be_refunded(self, service, stripe_provider):
        created = await service.create_transaction(provider_id=stripe_provider.id, amount=5, currency="USD")
        with pytest.raises(InvalidRequestError, match="Only completed"):
            await service.refund_payment(created.transaction.id, amount=1)

    @pytest.mark.asyncio
    async def test_refund_row_cannot_be_refunded(self, service, stripe_provider):
        original = await _completed_payment(service, stripe_provider)
        result = await service.refund_payment(original.id, amount=10)
        with pytest.raises(InvalidRequestError, match="Only completed"):
            await service.refund_payment(result.refund.id, amount=1)

    @pytest.mark.asyncio
    async def test_provider_without_refund_support(self, service):
        provider = await register(service, "stripe", STRIPE_CONFIG, supports_refunds=False)
        original = await _completed_payment(service, provider)
        with pytest.raises(InvalidRequestError, match="does not support refunds"):
            await service.refund_payment(original.id, amount=1)

    @pytest.mark.asyncio
    async def test_mpesa_refund_is_pending_disbursement(self, service, mpesa_provider):
        created = await service.create_transaction(
            provider_id=mpesa_provider.id,
            amount=100,
            currency="KES",
            metadata={"phoneNumber": "254708374149"},
        )
        await service.execute_payment(created.transaction.id)

        result = await service.refund_payment(
            created.transaction.id, amount=40, metadata={"phoneNumber": "254708374149"}
        )
        assert result.refund.status == "pending"
        assert result.refund.external_id.startswith("AG_")
        assert result.original.status == "partially_refunded"


class TestPaymentMethods:
    @pytest.mark.asyncio
    async def test_single_default(self, service, stripe_provider):
        tokens = ["pm_card_a", "pm_card_b", "pm_card_c"]
        for token in tokens:
            await service.save_payment_method(
                provider_id=stripe_provider.id,
                client_id="client-1",
                payment_method_type="credit_card",
                token=token,
                is_default=True,
            )

        methods = await service.list_payment_methods("client-1")
        assert len(methods) == 3
        defaults = [m for m in methods if m.is_default]
        assert len(defaults) == 1
        assert defaults[0].token == "pm_card_c"
        assert methods[0].token == "pm_card_c"

    @pytest.mark.asyncio
    async def test_default_is_scoped_to_client(self, service, stripe_provider):
        for client_id in ("client-1", "client-2"):
            await service.save_payment_method(
                provider_id=stripe_provider.id,
                client_id=client_id,
                payment_method_type="credit_card",
                token="pm_card_visa",
                is_default=True,
            )
        assert (await service.list_payment_methods("client-1"))[0].is_default is True
        assert (await service.list_payment_methods("client-2"))[0].is_default is True

    @pytest.mark.asyncio
    async def test_same_token_is_updated_in_place(self, service, stripe_provider):
        for masked in ("****4242", "****1111"):
            await service.save_payment_method(
                provider_id=stripe_provider.id,
                client_id="client-1",
                payment_method_type="credit_card",
                token="pm_card_visa",
                masked_number=masked,
            )
        methods = await service.list_payment_methods("client-1")
        assert len(methods) == 1
        assert methods[0].masked_number == "****1111"

    @pytest.mark.asyncio
    async def test_provider_rejects_token(self, service, stripe_provider):
        with pytest.raises(InvalidRequestError, match="failed provider validation"):
            await service.save_payment_method(
                provider_id=stripe_provider.id,
                client_id="client-1",
                payment_method_type="credit_card",
                token="tok_visa",
            )
        assert await service.list_payment_methods("client-1") == []

    @pytest.mark.asyncio
    async def test_provider_without_token_check(self, service, paypal_provider, backend):
        method = await service.save_payment_method(
            provider_id=paypal_provider.id,
            client_id="client-1",
            payment_method_type="wallet",
            token="B-7YF12345",
        )
        assert method.is_active is True
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_invalid_input(self, service, stripe_provider):
        with pytest.raises(InvalidRequestError, match="Unknown payment method type"):
            await service.save_payment_method(
                provider_id=stripe_provider.id, client_id="c", payment_method_type="gold", token="pm_x"
            )
        with pytest.raises(InvalidRequestError, match="token is required"):
            await service.save_payment_method(
                provider_id=stripe_provider.id, client_id="c", payment_method_type="credit_card", token=""
            )

    @pytest.mark.asyncio
    async def test_soft_delete(self, service, stripe_provider):
        method = await service.save_payment_method(
            provider_id=stripe_provider.id,
            client_id="client-1",
            payment_method_type="credit_card",
            token="pm_card_visa",
            is_default=True,
        )
        assert await service.delete_payment_method(method.id) is True
        assert await service.delete_payment_method("missing") is False

        assert await service.list_payment_methods("client-1", is_active=True) == []
        remaining = await service.list_payment_methods("client-1")
        assert len(remaining) == 1
        assert remaining[0].is_active is False
        assert remaining[0].is_default is False


async def _save_method(service, provider, token, payment_method_type="credit_card", client_id="client-1"):
    return await service.save_payment_method(
        provider_id=provider.id,
        client_id=client_id,
        payment_method_type=payment_method_type,
        token=token,
    )


class TestRecurringPayments:
    @pytest.mark.asyncio
    async def test_stripe_lifecycle(self, service, stripe_provider):
        await _save_method(service, stripe_provider, "pm_card_visa")
        config = await service.create_recurring_payment(
            provider_id=stripe_provider.id,
            client_id="client-1",
            payment_method_token="pm_card_visa",
            frequency="monthly",
            amount=25,
            currency="usd",
            start_date=date.today(),
            end_date=date.today() + timedelta(days=365),
            user_id="u-1",
        )
        assert config.status == "active"
        assert config.currency == "USD"
        assert config.external_subscription_id.startswith("sub_")

        paused = await service.update_recurring_payment_status(config.id, "paused")
        assert paused.status == "paused"
        resumed = await service.update_recurring_payment_status(config.id, "active")
        assert resumed.status == "active"
        cancelled = await service.update_recurring_payment_status(config.id, "cancelled", user_id="u-2")
        assert cancelled.status == "cancelled"
        assert cancelled.updated_by == "u-2"

        with pytest.raises(InvalidRequestError, match="already cancelled"):
            await service.update_recurring_payment_status(config.id, "active")

        configs, total = await service.list_recurring_configs(client_id="client-1")
        assert total == 1
        assert configs[0].status == "cancelled"

    @pytest.mark.asyncio
    async def test_same_status_is_a_no_op(self, service, stripe_provider, backend):
        await _save_method(service, stripe_provider, "pm_card_visa")
        config = await service.create_recurring_payment(
            provider_id=stripe_provider.id,
            client_id="client-1",
            payment_method_token="pm_card_visa",
            frequency="weekly",
            amount=5,
            currency="USD",
            start_date=date.today(),
        )
        before = len(backend.calls)
        assert (await service.update_recurring_payment_status(config.id, "active")).status == "active"
        assert len(backend.calls) == before

    @pytest.mark.asyncio
    async def test_requires_saved_active_method(self, service, stripe_provider):
        with pytest.raises(InvalidRequestError, match="Payment method not found or inactive"):
            await service.create_recurring_payment(
                provider_id=stripe_provider.id,
                client_id="client-1",
                payment_method_token="pm_card_visa",
                frequency="monthly",
                amount=25,
                currency="USD",
                start_date=date.today(),
            )

    @pytest.mark.asyncio
    async def test_provider_must_support_recurring(self, service):
        provider = await register(service, "paypal", PAYPAL_CONFIG)
        await _save_method(service, provider, "B-1", payment_method_type="wallet")
        with pytest.raises(InvalidRequestError, match="does not support recurring payments"):
            await service.create_recurring_payment(
                provider_id=provider.id,
                client_id="client-1",
                payment_method_token="B-1",
                frequency="monthly",
                amount=25,
                currency="USD",
                start_date=date.today(),
            )

    @pytest.mark.asyncio
    async def test_invalid_schedule(self, service, stripe_provider):
        await _save_method(service, stripe_provider, "pm_card_visa")
        base = dict(
            provider_id=stripe_provider.id,
            client_id="client-1",
            payment_method_token="pm_card_visa",
            amount=25,
            currency="USD",
            start_date=date(2030, 6, 1),
        )
        with pytest.raises(InvalidRequestError, match="End date must not be before start date"):
            await service.create_recurring_payment(frequency="monthly", end_date=date(2030, 5, 1), **base)
        with pytest.raises(InvalidRequestError, match="does not support custom"):
            await service.create_recurring_payment(frequency="custom", **base)
        with pytest.raises(InvalidRequestError, match="Unknown recurring frequency"):
            await service.create_recurring_payment(frequency="hourly", **base)

    @pytest.mark.asyncio
    async def test_only_settable_statuses(self, service):
        with pytest.raises(InvalidRequestError, match="can only be set to"):
            await service.update_recurring_payment_status("any", "completed")
        with pytest.raises(InvalidRequestError, match="Unknown recurring payment status"):
            await service.update_recurring_payment_status("any", "sleeping")
        assert await service.update_recurring_payment_status("missing", "paused") is None

    @pytest.mark.asyncio
    async def test_mpesa_subscription_is_tracked_locally(self, service, mpesa_provider, backend):
        await _save_method(service, mpesa_provider, "254708374149", payment_method_type="mobile_money")
        config = await service.create_recurring_payment(
            provider_id=mpesa_provider.id,
            client_id="client-1",
            payment_method_token="254708374149",
            frequency="monthly",
            amount=1500,
            currency="KES",
            start_date=date.today(),
        )
        assert config.external_subscription_id.startswith("MPESA_SUB_")

        paused = await service.update_recurring_payment_status(config.id, "paused")
        assert paused.status == "paused"
        assert backend.call_count("mpesa") == 0
