"""
Square adapter.

Payments start as a hosted checkout link. No Square object exists until the
buyer pays or a card source is charged at execute time, so a transaction can
be pending without any external id.
"""

import logging
from datetime import date
from typing import Any, Optional

from paygate.engine.retry import PermanentError
from paygate.errors import InvalidRequestError
from paygate.models.enums import (
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

logger = logging.getLogger("paygate.providers.square")

CHECKOUT_URLS = {
    "sandbox": "https://sandbox.square.link/checkout",
    "production": "https://square.link/checkout",
}


class SquareAdapter(PaymentGatewayAdapter, TokenValidator):
    provider_type = ProviderType.SQUARE
    display_name = "Square"

    STATUS_MAP = {
        "COMPLETED": TransactionStatus.COMPLETED,
        "APPROVED": TransactionStatus.AUTHORIZED,
        "PENDING": TransactionStatus.PENDING,
        "FAILED": TransactionStatus.FAILED,
        "CANCELED": TransactionStatus.CANCELLED,
    }

    SUBSCRIPTION_STATUS_MAP = {
        "PENDING": RecurringStatus.ACTIVE,
        "ACTIVE": RecurringStatus.ACTIVE,
        "PAUSED": RecurringStatus.PAUSED,
        "CANCELED": RecurringStatus.CANCELLED,
        "DEACTIVATED": RecurringStatus.FAILED,
    }

    FREQUENCY_MAP = {
        RecurringFrequency.DAILY: "DAILY",
        RecurringFrequency.WEEKLY: "WEEKLY",
        RecurringFrequency.BIWEEKLY: "EVERY_TWO_WEEKS",
        RecurringFrequency.MONTHLY: "MONTHLY",
        RecurringFrequency.QUARTERLY: "QUARTERLY",
        RecurringFrequency.ANNUAL: "ANNUAL",
    }

    @classmethod
    def validate_configuration(cls, configuration: dict[str, Any]) -> None:
        cls._require_keys(configuration, "accessToken", "applicationId", "locationId")
        cls._require_environment(configuration, tuple(CHECKOUT_URLS))

    def build_client(self, backend: SimulatorBackend) -> "SimulatedSquareClient":
        return SimulatedSquareClient(backend, self.config["locationId"])

    def _payment_status(self, payment: dict) -> PaymentStatusCheck:
        refunded = (payment.get("refunded_money") or {}).get("amount", 0)
        status = self.map_status(payment.get("status"))
        if status == TransactionStatus.COMPLETED and refunded:
            total = payment["amount_money"]["amount"]
            status = TransactionStatus.REFUNDED if refunded >= total else TransactionStatus.PARTIALLY_REFUNDED
        return PaymentStatusCheck(
            status=status,
            external_id=payment["id"],
            payment_details={
                "receiptUrl": payment.get("receipt_url"),
                "cardBrand": (payment.get("card_details") or {}).get("card", {}).get("card_brand"),
            },
        )

    async def create_payment(self, transaction_id, amount, currency, callback_url=None, metadata=None):
        currency = self._check_currency(currency)
        base_url = self.config.get("checkoutBaseUrl") or CHECKOUT_URLS[self.config["environment"]]
        payment_url = f"{base_url}?location={self.config['locationId']}&reference_id={transaction_id}"
        trail = AuditTrail()
        trail.record(
            {
                "reference_id": transaction_id,
                "amount_money": {"amount": to_minor_units(amount, currency), "currency": currency},
                "redirect_url": callback_url,
            },
            {"checkout_url": payment_url},
        )
        return Audited(PaymentCreation(status=TransactionStatus.PENDING, payment_url=payment_url), trail)

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
        trail = AuditTrail()
        payment_id = external_id or (payment_details or {}).get("paymentId")

        if payment_id:
            response = await self._send(
                trail, "execute_payment", {"payment_id": payment_id},
                self.client.get_payment(payment_id),
            )
        elif payment_method_token:
            if amount is None or not currency:
                raise InvalidRequestError("Amount and currency are required to charge a Square card")
            request = {
                "source_id": payment_method_token,
                "idempotency_key": transaction_id,
                "amount_money": {"amount": to_minor_units(amount, currency), "currency": currency.upper()},
                "reference_id": transaction_id,
                "autocomplete": True,
            }
            response = await self._send(trail, "execute_payment", request, self.client.create_payment(request))
        else:
            return Audited(
                PaymentExecution(
                    success=False,
                    status=TransactionStatus.PENDING,
                    error_message="Awaiting Square checkout completion",
                ),
                trail,
            )

        payment = response["payment"]
        check = self._payment_status(payment)
        errors = response.get("errors") or []
        return Audited(
            PaymentExecution(
                success=check.status == TransactionStatus.COMPLETED,
                status=check.status,
                error_message=errors[0].get("detail") if errors else None,
                payment_details=check.payment_details,
                external_id=payment["id"],
            ),
            trail,
        )

    async def check_payment_status(self, transaction_id, external_id=None):
        trail = AuditTrail()
        if not external_id:
            return Audited(
                PaymentStatusCheck(
                    status=TransactionStatus.PENDING,
                    error_message="No Square payment has been recorded for this checkout yet",
                ),
                trail,
            )
        response = await self._send(
            trail, "check_payment_status", {"payment_id": external_id},
            self.client.get_payment(external_id),
        )
        return Audited(self._payment_status(response["payment"]), trail)

    async def refund_payment(
        self,
        transaction_id,
        external_id,
        amount,
        reason=None,
        metadata=None,
        payment_details=None,
    ):
        payment_id = self._require_external_id(external_id, "Payment ID")
        trail = AuditTrail()
        response = await self._send(trail, "get_payment", {"payment_id": payment_id}, self.client.get_payment(payment_id))
        payment = response["payment"]
        if payment.get("status") != "COMPLETED":
            raise InvalidRequestError("Only completed Square payments can be refunded")

        money = payment["amount_money"]
        amount_minor = to_minor_units(amount, money["currency"])
        refunded = (payment.get("refunded_money") or {}).get("amount", 0)
        if amount_minor > money["amount"] - refunded:
            raise InvalidRequestError("Refund amount exceeds the captured amount")

        request = {
            "idempotency_key": f"refund-{transaction_id}-{refunded}",
            "payment_id": payment_id,
            "amount_money": {"amount": amount_minor, "currency": money["currency"]},
            "reason": reason or "Customer requested refund",
        }
        response = await self._send(trail, "refund_payment", request, self.client.refund_payment(request))
        refund = response["refund"]
        status = {
            "COMPLETED": TransactionStatus.COMPLETED,
            "PENDING": TransactionStatus.PENDING,
            "REJECTED": TransactionStatus.FAILED,
            "FAILED": TransactionStatus.FAILED,
        }.get(refund["status"], TransactionStatus.PENDING)
        return Audited(
            RefundOutcome(success=status != TransactionStatus.FAILED, status=status, refund_id=refund["id"]),
            trail,
        )

    async def validate_payment_method_token(self, token, payment_method_type):
        trail = AuditTrail()
        try:
            response = await self._send(trail, "validate_token", {"card_id": token}, self.client.retrieve_card(token))
        except PermanentError:
            return Audited(False, trail)
        return Audited(bool(response["card"].get("enabled")), trail)

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
        cadence = self.map_frequency(frequency)
        currency = self._check_currency(currency)
        trail = AuditTrail()

        customer_request = {
            "reference_id": (metadata or {}).get("clientId"),
            "note": description,
        }
        customer = await self._send(
            trail, "create_customer", customer_request, self.client.create_customer(customer_request)
        )
        request: dict[str, Any] = {
            "idempotency_key": SimulatorBackend.new_id(),
            "location_id": self.config["locationId"],
            "customer_id": customer["customer"]["id"],
            "card_id": payment_method_token,
            "start_date": start_date.isoformat(),
            "price_override_money": {"amount": to_minor_units(amount, currency), "currency": currency},
            "phases": [{"cadence": cadence, "ordinal": 0}],
        }
        if self.config.get("planVariationId"):
            request["plan_variation_id"] = self.config["planVariationId"]
        if end_date:
            request["canceled_date"] = end_date.isoformat()

        response = await self._send(
            trail, "create_recurring_payment", request, self.client.create_subscription(request)
        )
        subscription = response["subscription"]
        return Audited(
            SubscriptionCreation(
                status=self.map_subscription_status(subscription["status"]),
                subscription_id=subscription["id"],
            ),
            trail,
        )

    async def update_recurring_payment_status(self, subscription_id, status):
        subscription_id = self._require_external_id(subscription_id, "Subscription ID")
        status = RecurringStatus(status)
        trail = AuditTrail()
        today = date.today().isoformat()

        # Pausing is a scheduled PAUSE action effective today
        if status == RecurringStatus.PAUSED:
            request = {"pause_effective_date": today, "pause_reason": "Paused from Fineract"}
            call = self.client.pause_subscription(subscription_id, request)
        elif status == RecurringStatus.ACTIVE:
            request = {"resume_effective_date": today}
            call = self.client.resume_subscription(subscription_id, request)
        elif status == RecurringStatus.CANCELLED:
            request = {}
            call = self.client.cancel_subscription(subscription_id)
        else:
            raise InvalidRequestError(f"Cannot set Square subscription to {status.value}")

        response = await self._send(trail, f"{status.value}_subscription", request, call)
        return Audited(not response.get("errors"), trail)

    def webhook_event_id(self, payload: dict) -> Optional[str]:
        return payload.get("event_id")

    async def process_webhook(self, event_type, payload):
        trail = AuditTrail()
        trail.record(None, payload)
        event_type = payload.get("type") or event_type
        obj = (payload.get("data") or {}).get("object") or {}

        if event_type in ("payment.created", "payment.updated"):
            payment = obj.get("payment") or {}
            result = WebhookResult(
                transaction_id=payment.get("id"),
                status=self.map_status(payment.get("status")),
                local_reference=payment.get("reference_id"),
                payment_details={"receiptUrl": payment.get("receipt_url")},
            )
        elif event_type in ("refund.created", "refund.updated"):
            refund = obj.get("refund") or {}
            payment_id = refund.get("payment_id")
            if refund.get("status") != "COMPLETED":
                result = WebhookResult(
                    transaction_id=payment_id,
                    message=f"Refund {refund.get('id')} is {refund.get('status')}",
                )
            else:
                # The refund object alone does not say whether the payment is fully refunded
                response = await self._send(
                    trail, "get_payment", {"payment_id": payment_id}, self.client.get_payment(payment_id)
                )
                payment = response["payment"]
                check = self._payment_status(payment)
                refunded_money = payment.get("refunded_money") or {}
                result = WebhookResult(
                    transaction_id=payment_id,
                    status=check.status,
                    payment_details={"refundId": refund.get("id")},
                    refunded_amount=from_minor_units(
                        refunded_money.get("amount", 0), refunded_money.get("currency", "USD")
                    ),
                )
        elif event_type in ("subscription.created", "subscription.updated"):
            subscription = obj.get("subscription") or {}
            result = WebhookResult(
                subscription_id=subscription.get("id"),
                subscription_status=self.map_subscription_status(subscription.get("status")),
                message=f"Subscription {subscription.get('id')} is {subscription.get('status')}",
            )
        elif event_type == "invoice.payment_made":
            invoice = obj.get("invoice") or {}
            requests = invoice.get("payment_requests") or [{}]
            money = requests[0].get("computed_amount_money") or {}
            currency = money.get("currency", "USD")
            result = WebhookResult(
                transaction_id=invoice.get("id"),
                status=TransactionStatus.COMPLETED,
                should_create_transaction=True,
                transaction_data=TransactionData(
                    amount=from_minor_units(money.get("amount", 0), currency),
                    currency=currency,
                    payment_method="square_subscription",
                    payment_details={"invoiceId": invoice.get("id"), "subscriptionId": invoice.get("subscription_id")},
                    reference_number=f"SQUARE-SUB-{invoice.get('subscription_id')}-{invoice.get('id')}",
                    client_id=(invoice.get("primary_recipient") or {}).get("customer_id"),
                ),
                subscription_id=invoice.get("subscription_id"),
            )
        else:
            result = WebhookResult(message=f"Unhandled event type: {event_type}")
        return Audited(result, trail)


class SimulatedSquareClient:
    """Mimics the Square Payments, Refunds, Cards, Customers and Subscriptions APIs."""

    name = "square"

    def __init__(self, backend: SimulatorBackend, location_id: str):
        self._backend = backend
        self._location_id = location_id

    async def create_payment(self, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "payments.create")
        existing = self._backend.find(object="payment", idempotency_key=body["idempotency_key"])
        if existing:
            return {"payment": existing[0]}
        payment_id = self._backend.new_id("", 26).upper()
        declined = "declined" in body["source_id"]
        payment = self._backend.put(payment_id, {
            "id": payment_id,
            "object": "payment",
            "idempotency_key": body["idempotency_key"],
            "status": "FAILED" if declined else ("COMPLETED" if body.get("autocomplete", True) else "APPROVED"),
            "amount_money": body["amount_money"],
            "refunded_money": {"amount": 0, "currency": body["amount_money"]["currency"]},
            "reference_id": body.get("reference_id"),
            "location_id": self._location_id,
            "receipt_url": f"https://squareup.com/receipt/preview/{payment_id}",
            "card_details": {"card": {"card_brand": "VISA", "last_4": "1111"}},
        })
        if declined:
            return {"payment": payment, "errors": [{"code": "CARD_DECLINED", "detail": "Card declined."}]}
        return {"payment": payment}

    async def get_payment(self, payment_id: str) -> dict:
        await self._backend.roundtrip(self.name, "payments.get")
        return {"payment": self._backend.get(payment_id)}

    async def refund_payment(self, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "refunds.refund_payment")
        payment = self._backend.get(body["payment_id"])
        refunded = payment["refunded_money"]["amount"] + body["amount_money"]["amount"]
        if refunded > payment["amount_money"]["amount"]:
            raise PermanentError("AMOUNT_TOO_HIGH", status_code=400)
        self._backend.update(
            payment["id"],
            refunded_money={"amount": refunded, "currency": payment["amount_money"]["currency"]},
        )
        refund_id = f"{payment['id']}_{self._backend.new_id('', 20).upper()}"
        return {"refund": self._backend.put(refund_id, {
            "id": refund_id,
            "object": "refund",
            "status": "COMPLETED",
            "payment_id": payment["id"],
            "amount_money": body["amount_money"],
        })}

    async def retrieve_card(self, card_id: str) -> dict:
        await self._backend.roundtrip(self.name, "cards.retrieve")
        if not card_id.startswith("ccof:"):
            raise PermanentError(f"Card {card_id} not found", status_code=404)
        return {"card": {"id": card_id, "card_brand": "VISA", "last_4": "1111", "enabled": "disabled" not in card_id}}

    async def create_customer(self, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "customers.create")
        customer_id = self._backend.new_id("", 26).upper()
        return {"customer": self._backend.put(customer_id, {"id": customer_id, "object": "customer", **body})}

    async def create_subscription(self, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "subscriptions.create")
        subscription_id = self._backend.new_id("", 32)
        return {"subscription": self._backend.put(subscription_id, {
            "id": subscription_id,
            "object": "subscription",
            "status": "PENDING" if body["start_date"] > date.today().isoformat() else "ACTIVE",
            "customer_id": body["customer_id"],
            "card_id": body["card_id"],
        })}

    async def _action(self, subscription_id: str, operation: str, status: str) -> dict:
        await self._backend.roundtrip(self.name, operation)
        subscription = self._backend.get(subscription_id)
        if subscription["status"] == "CANCELED":
            return {"errors": [{"code": "BAD_REQUEST", "detail": "Subscription is canceled"}]}
        return {"subscription": self._backend.update(subscription_id, status=status)}

    async def pause_subscription(self, subscription_id: str, body: dict) -> dict:
        return await self._action(subscription_id, "subscriptions.pause", "PAUSED")

    async def resume_subscription(self, subscription_id: str, body: dict) -> dict:
        return await self._action(subscription_id, "subscriptions.resume", "ACTIVE")

    async def cancel_subscription(self, subscription_id: str) -> dict:
        return await self._action(subscription_id, "subscriptions.cancel", "CANCELED")
