"""
Stripe adapter built on PaymentIntents, Refunds and Subscriptions.

Flow: create a PaymentIntent (``requires_payment_method``), confirm it with a
payment method at execute time. Confirmation may demand 3-D Secure, which is
surfaced as a redirect rather than an error.
"""

import logging
from datetime import date, datetime, time, timezone
from typing import Any, Optional

from paygate.engine.retry import PermanentError
from paygate.errors import InvalidRequestError
from paygate.models.enums import (
    PaymentMethodType,
    ProviderType,
    RecurringFrequency,
    RecurringStatus,
    TransactionStatus,
)
from paygate.providers.base import (
    Audited,
    AuditTrail,
    PaymentCreation,
    PaymentExecution,
    PaymentGatewayAdapter,
    PaymentStatusCheck,
    RefundOutcome,
    SubscriptionCreation,
    TokenValidator,
    TransactionData,
    WebhookResult,
    from_minor_units,
    to_minor_units,
)
from paygate.providers.simulator import SimulatorBackend

logger = logging.getLogger("paygate.providers.stripe")

_CARD_TYPES = {
    PaymentMethodType.CREDIT_CARD.value: "card",
    PaymentMethodType.DEBIT_CARD.value: "card",
    PaymentMethodType.BANK_ACCOUNT.value: "us_bank_account",
    PaymentMethodType.BANK_TRANSFER.value: "us_bank_account",
}


def _timestamp(day: date) -> int:
    return int(datetime.combine(day, time.min, tzinfo=timezone.utc).timestamp())


class StripeAdapter(PaymentGatewayAdapter, TokenValidator):
    provider_type = ProviderType.STRIPE
    display_name = "Stripe"

    STATUS_MAP = {
        "succeeded": TransactionStatus.COMPLETED,
        "requires_payment_method": TransactionStatus.PENDING,
        "requires_confirmation": TransactionStatus.PENDING,
        "requires_action": TransactionStatus.PENDING,
        "processing": TransactionStatus.PENDING,
        "requires_capture": TransactionStatus.AUTHORIZED,
        "canceled": TransactionStatus.CANCELLED,
    }

    SUBSCRIPTION_STATUS_MAP = {
        "active": RecurringStatus.ACTIVE,
        "trialing": RecurringStatus.ACTIVE,
        "incomplete": RecurringStatus.ACTIVE,
        "paused": RecurringStatus.PAUSED,
        "past_due": RecurringStatus.FAILED,
        "unpaid": RecurringStatus.FAILED,
        "incomplete_expired": RecurringStatus.FAILED,
        "canceled": RecurringStatus.CANCELLED,
    }

    FREQUENCY_MAP = {
        RecurringFrequency.DAILY: ("day", 1),
        RecurringFrequency.WEEKLY: ("week", 1),
        RecurringFrequency.BIWEEKLY: ("week", 2),
        RecurringFrequency.MONTHLY: ("month", 1),
        RecurringFrequency.QUARTERLY: ("month", 3),
        RecurringFrequency.ANNUAL: ("year", 1),
    }

    @classmethod
    def validate_configuration(cls, configuration: dict[str, Any]) -> None:
        cls._require_keys(configuration, "apiKey")
        if configuration.get("useWebhooks"):
            cls._require_keys(configuration, "webhookSecret")

    def build_client(self, backend: SimulatorBackend) -> "SimulatedStripeClient":
        return SimulatedStripeClient(backend, self.config["apiKey"])

    async def create_payment(self, transaction_id, amount, currency, callback_url=None, metadata=None):
        currency = self._check_currency(currency)
        trail = AuditTrail()
        request = {
            "amount": to_minor_units(amount, currency),
            "currency": currency.lower(),
            "metadata": {"fineract_transaction_id": transaction_id, **(metadata or {})},
            "automatic_payment_methods": {"enabled": True},
        }
        intent = await self._send(
            trail, "create_payment", request,
            self.client.create_payment_intent(request, idempotency_key=transaction_id),
        )

        payment_url = None
        if self.config.get("redirectUrl"):
            payment_url = (
                f"{self.config['redirectUrl']}?payment_intent={intent['id']}"
                f"&client_secret={intent['client_secret']}"
            )
        return Audited(
            PaymentCreation(
                status=self.map_status(intent["status"]),
                external_id=intent["id"],
                payment_url=payment_url,
            ),
            trail,
        )

    async def execute_payment(
        self,
        transaction_id,
        external_id=None,
        payment_method=None,
        payment_method_token=None,
        payment_details=None,
        amount=None,
        currency=None,
    ):
        intent_id = self._require_external_id(external_id, "Payment intent ID")
        trail = AuditTrail()
        request: dict[str, Any] = {}
        if payment_method_token:
            request["payment_method"] = payment_method_token
        if payment_details and payment_details.get("returnUrl"):
            request["return_url"] = payment_details["returnUrl"]

        intent = await self._send(
            trail, "execute_payment", request,
            self.client.confirm_payment_intent(intent_id, request),
        )

        next_action = intent.get("next_action") or {}
        if intent["status"] == "requires_action" and next_action.get("type") == "redirect_to_url":
            return Audited(
                PaymentExecution(
                    success=False,
                    status=TransactionStatus.PENDING,
                    redirect_url=next_action["redirect_to_url"]["url"],
                    payment_details={"paymentIntentId": intent_id, "requiresAction": True},
                ),
                trail,
            )

        error = intent.get("last_payment_error")
        if error:
            return Audited(
                PaymentExecution(
                    success=False,
                    status=TransactionStatus.FAILED,
                    error_message=error.get("message") or error.get("code"),
                    payment_details={"paymentIntentId": intent_id, "declineCode": error.get("code")},
                ),
                trail,
            )

        status = self.map_status(intent["status"])
        return Audited(
            PaymentExecution(
                success=status == TransactionStatus.COMPLETED,
                status=status,
                payment_details={
                    "paymentIntentId": intent_id,
                    "paymentMethod": intent.get("payment_method"),
                    "chargeId": intent.get("latest_charge"),
                },
            ),
            trail,
        )

    async def check_payment_status(self, transaction_id, external_id=None):
        intent_id = self._require_external_id(external_id, "Payment intent ID")
        trail = AuditTrail()
        intent = await self._send(
            trail, "check_payment_status", {"id": intent_id},
            self.client.retrieve_payment_intent(intent_id),
        )
        error = intent.get("last_payment_error") or {}
        return Audited(
            PaymentStatusCheck(
                status=self.map_status(intent["status"]),
                external_id=intent_id,
                error_message=error.get("message"),
                payment_details={
                    "amountReceived": from_minor_units(intent.get("amount_received", 0), intent["currency"]),
                    "chargeId": intent.get("latest_charge"),
                },
            ),
            trail,
        )

    async def refund_payment(
        self,
        transaction_id,
        external_id,
        amount,
        reason=None,
        metadata=None,
        payment_details=None,
    ):
        intent_id = self._require_external_id(external_id, "Payment intent ID")
        trail = AuditTrail()
        intent = await self._send(
            trail, "refund_payment", {"id": intent_id},
            self.client.retrieve_payment_intent(intent_id),
        )
        if intent["status"] != "succeeded" or not intent.get("latest_charge"):
            raise InvalidRequestError("No successful charge found for this payment intent")

        amount_minor = to_minor_units(amount, intent["currency"])
        refundable = intent.get("amount_received", 0) - intent.get("amount_refunded", 0)
        if amount_minor > refundable:
            raise InvalidRequestError("Refund amount exceeds the captured amount")

        request = {
            "charge": intent["latest_charge"],
            "amount": amount_minor,
            "reason": reason or "requested_by_customer",
            "metadata": {"fineract_transaction_id": transaction_id, **(metadata or {})},
        }
        refund = await self._send(trail, "refund_payment", request, self.client.create_refund(request))
        status = TransactionStatus.COMPLETED if refund["status"] == "succeeded" else (
            TransactionStatus.FAILED if refund["status"] in ("failed", "canceled") else TransactionStatus.PENDING
        )
        return Audited(
            RefundOutcome(
                success=status != TransactionStatus.FAILED,
                status=status,
                refund_id=refund["id"],
                error_message=refund.get("failure_reason"),
            ),
            trail,
        )

    async def validate_payment_method_token(self, token, payment_method_type):
        trail = AuditTrail()
        try:
            method = await self._send(
                trail, "validate_token", {"id": token},
                self.client.retrieve_payment_method(token),
            )
        except PermanentError:
            return Audited(False, trail)
        expected = _CARD_TYPES.get(payment_method_type, "card")
        return Audited(method.get("type") == expected, trail)

    async def create_recurring_payment(
        self,
        payment_method_token,
        frequency,
        amount,
        currency,
        start_date,
        end_date=None,
        description=None,
        metadata=None,
    ):
        interval, interval_count = self.map_frequency(frequency)
        currency = self._check_currency(currency)
        trail = AuditTrail()

        customer_request = {
            "payment_method": payment_method_token,
            "invoice_settings": {"default_payment_method": payment_method_token},
            "metadata": {"fineract_client_id": (metadata or {}).get("clientId")},
        }
        customer = await self._send(
            trail, "create_customer", customer_request,
            self.client.create_customer(customer_request),
        )

        request: dict[str, Any] = {
            "customer": customer["id"],
            "items": [{
                "price_data": {
                    "currency": currency.lower(),
                    "product_data": {"name": description or "Recurring payment"},
                    "unit_amount": to_minor_units(amount, currency),
                    "recurring": {"interval": interval, "interval_count": interval_count},
                },
            }],
            "metadata": metadata or {},
        }
        if start_date > date.today():
            request["trial_end"] = _timestamp(start_date)
        if end_date:
            request["cancel_at"] = _timestamp(end_date)

        subscription = await self._send(
            trail, "create_recurring_payment", request,
            self.client.create_subscription(request),
        )
        return Audited(
            SubscriptionCreation(
                status=self.map_subscription_status(subscription["status"]),
                subscription_id=subscription["id"],
            ),
            trail,
        )

    async def update_recurring_payment_status(self, subscription_id, status):
        subscription_id = self._require_external_id(subscription_id, "Subscription ID")
        trail = AuditTrail()
        status = RecurringStatus(status)
        if status == RecurringStatus.CANCELLED:
            response = await self._send(
                trail, "cancel_subscription", {"id": subscription_id},
                self.client.cancel_subscription(subscription_id),
            )
            return Audited(response["status"] == "canceled", trail)

        if status == RecurringStatus.ACTIVE:
            request = {"pause_collection": None}
        elif status == RecurringStatus.PAUSED:
            request = {"pause_collection": {"behavior": "keep_as_draft"}}
        else:
            raise InvalidRequestError(f"Cannot set Stripe subscription to {status.value}")

        response = await self._send(
            trail, "update_subscription", request,
            self.client.update_subscription(subscription_id, request),
        )
        return Audited(response["status"] in ("active", "trialing", "paused"), trail)

    async def process_webhook(self, event_type, payload):
        trail = AuditTrail()
        trail.record(None, payload)
        event_type = payload.get("type") or event_type
        obj = (payload.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        if event_type == "payment_intent.succeeded":
            result = WebhookResult(
                transaction_id=obj.get("id"),
                status=TransactionStatus.COMPLETED,
                local_reference=metadata.get("fineract_transaction_id"),
                payment_details={"chargeId": obj.get("latest_charge")},
            )
        elif event_type == "payment_intent.payment_failed":
            error = obj.get("last_payment_error") or {}
            result = WebhookResult(
                transaction_id=obj.get("id"),
                status=TransactionStatus.FAILED,
                local_reference=metadata.get("fineract_transaction_id"),
                error_message=error.get("message") or "Payment failed",
            )
        elif event_type == "payment_intent.canceled":
            result = WebhookResult(
                transaction_id=obj.get("id"),
                status=TransactionStatus.CANCELLED,
                local_reference=metadata.get("fineract_transaction_id"),
            )
        elif event_type == "charge.refunded":
            fully = obj.get("refunded") or obj.get("amount_refunded", 0) >= obj.get("amount", 0)
            refunded = from_minor_units(obj.get("amount_refunded", 0), obj.get("currency", "usd"))
            result = WebhookResult(
                transaction_id=obj.get("payment_intent"),
                status=TransactionStatus.REFUNDED if fully else TransactionStatus.PARTIALLY_REFUNDED,
                payment_details={
                    "chargeId": obj.get("id"),
                    "amountRefunded": refunded,
                },
                refunded_amount=refunded,
            )
        elif event_type == "invoice.payment_succeeded":
            currency = (obj.get("currency") or "usd").upper()
            subscription_meta = (obj.get("subscription_details") or {}).get("metadata") or {}
            result = WebhookResult(
                transaction_id=obj.get("payment_intent") or obj.get("id"),
                status=TransactionStatus.COMPLETED,
                should_create_transaction=True,
                transaction_data=TransactionData(
                    amount=from_minor_units(obj.get("amount_paid", 0), currency),
                    currency=currency,
                    payment_method="stripe_subscription",
                    payment_details={"invoiceId": obj.get("id"), "subscriptionId": obj.get("subscription")},
                    reference_number=f"SUB-{obj.get('subscription')}-{obj.get('number')}",
                    client_id=subscription_meta.get("clientId") or metadata.get("clientId"),
                ),
                subscription_id=obj.get("subscription"),
            )
        elif event_type in ("customer.subscription.updated", "customer.subscription.deleted"):
            result = WebhookResult(
                subscription_id=obj.get("id"),
                subscription_status=self.map_subscription_status(obj.get("status")),
                message=f"Subscription {obj.get('id')} is {obj.get('status')}",
            )
        else:
            result = WebhookResult(message=f"Unhandled event type: {event_type}")
        return Audited(result, trail)


class SimulatedStripeClient:
    """Mimics the subset of the Stripe API used by StripeAdapter."""

    name = "stripe"

    def __init__(self, backend: SimulatorBackend, api_key: str):
        self._backend = backend
        self._api_key = api_key

    async def create_payment_intent(self, params: dict, idempotency_key: Optional[str] = None) -> dict:
        await self._backend.roundtrip(self.name, "payment_intents.create")
        if idempotency_key:
            existing = self._backend.find(object="payment_intent", idempotency_key=idempotency_key)
            if existing:
                return existing[0]
        intent_id = self._backend.new_id("pi_", 24)
        return self._backend.put(intent_id, {
            "id": intent_id,
            "object": "payment_intent",
            "idempotency_key": idempotency_key,
            "amount": params["amount"],
            "currency": params["currency"],
            "status": "requires_payment_method",
            "client_secret": f"{intent_id}_secret_{self._backend.new_id()}",
            "metadata": params.get("metadata") or {},
            "payment_method": None,
            "latest_charge": None,
            "amount_received": 0,
            "amount_refunded": 0,
            "last_payment_error": None,
            "next_action": None,
        })

    async def confirm_payment_intent(self, intent_id: str, params: dict) -> dict:
        await self._backend.roundtrip(self.name, "payment_intents.confirm")
        intent = self._backend.get(intent_id)
        if intent["status"] not in ("requires_payment_method", "requires_confirmation", "requires_action"):
            raise PermanentError(
                f"PaymentIntent {intent_id} cannot be confirmed in status {intent['status']}"
            )

        method = params.get("payment_method") or intent.get("payment_method")
        redirect = {
            "type": "redirect_to_url",
            "redirect_to_url": {
                "url": f"https://hooks.stripe.com/3d_secure_2/authenticate/{intent_id}",
                "return_url": params.get("return_url"),
            },
        }
        if not method or "threeDSecure" in method:
            return self._backend.update(
                intent_id, status="requires_action", payment_method=method, next_action=redirect
            )
        if "Declined" in method or "declined" in method:
            return self._backend.update(
                intent_id,
                status="requires_payment_method",
                payment_method=None,
                last_payment_error={"code": "card_declined", "message": "Your card was declined."},
            )

        charge_id = self._backend.new_id("ch_", 24)
        self._backend.put(charge_id, {
            "id": charge_id,
            "object": "charge",
            "payment_intent": intent_id,
            "amount": intent["amount"],
            "amount_refunded": 0,
            "refunded": False,
            "currency": intent["currency"],
        })
        return self._backend.update(
            intent_id,
            status="succeeded",
            payment_method=method,
            latest_charge=charge_id,
            amount_received=intent["amount"],
            last_payment_error=None,
            next_action=None,
        )

    async def retrieve_payment_intent(self, intent_id: str) -> dict:
        await self._backend.roundtrip(self.name, "payment_intents.retrieve")
        return self._backend.get(intent_id)

    async def create_refund(self, params: dict) -> dict:
        await self._backend.roundtrip(self.name, "refunds.create")
        charge = self._backend.get(params["charge"])
        remaining = charge["amount"] - charge["amount_refunded"]
        if params["amount"] > remaining:
            raise PermanentError(
                f"Refund amount ({params['amount']}) is greater than unrefunded amount on charge ({remaining})"
            )
        refunded = charge["amount_refunded"] + params["amount"]
        self._backend.update(charge["id"], amount_refunded=refunded, refunded=refunded >= charge["amount"])
        intent = self._backend.get(charge["payment_intent"])
        self._backend.update(intent["id"], amount_refunded=intent["amount_refunded"] + params["amount"])

        refund_id = self._backend.new_id("re_", 24)
        return self._backend.put(refund_id, {
            "id": refund_id,
            "object": "refund",
            "amount": params["amount"],
            "charge": charge["id"],
            "payment_intent": charge["payment_intent"],
            "reason": params.get("reason"),
            "status": "succeeded",
        })

    async def retrieve_payment_method(self, method_id: str) -> dict:
        await self._backend.roundtrip(self.name, "payment_methods.retrieve")
        if not method_id.startswith("pm_"):
            raise PermanentError(f"No such PaymentMethod: '{method_id}'", status_code=404)
        if "bank" in method_id:
            return {"id": method_id, "object": "payment_method", "type": "us_bank_account"}
        return {
            "id": method_id,
            "object": "payment_method",
            "type": "card",
            "card": {"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030},
        }

    async def create_customer(self, params: dict) -> dict:
        await self._backend.roundtrip(self.name, "customers.create")
        customer_id = self._backend.new_id("cus_", 14)
        return self._backend.put(customer_id, {"id": customer_id, "object": "customer", **params})

    async def create_subscription(self, params: dict) -> dict:
        await self._backend.roundtrip(self.name, "subscriptions.create")
        subscription_id = self._backend.new_id("sub_", 24)
        return self._backend.put(subscription_id, {
            "id": subscription_id,
            "object": "subscription",
            "customer": params["customer"],
            "status": "trialing" if params.get("trial_end") else "active",
            "cancel_at": params.get("cancel_at"),
            "pause_collection": None,
            "metadata": params.get("metadata") or {},
        })

    async def update_subscription(self, subscription_id: str, params: dict) -> dict:
        await self._backend.roundtrip(self.name, "subscriptions.update")
        subscription = self._backend.get(subscription_id)
        if subscription["status"] == "canceled":
            raise PermanentError(f"Subscription {subscription_id} is canceled")
        return self._backend.update(subscription_id, **params)

    async def cancel_subscription(self, subscription_id: str) -> dict:
        await self._backend.roundtrip(self.name, "subscriptions.cancel")
        self._backend.get(subscription_id)
        return self._backend.update(subscription_id, status="canceled")
