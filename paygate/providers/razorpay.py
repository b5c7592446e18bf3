"""
Razorpay adapter built on Orders, Payments, Refunds and Subscriptions.

An order is created up front; the customer pays it through Razorpay
Checkout, which yields a payment (``pay_...``). Once a payment is known its
id replaces the order id as the transaction's external reference, since
refunds and payment webhooks are keyed by payment id.
"""

import logging
from typing import Any, Optional

from paygate.config import settings
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
    count_occurrences,
    from_minor_units,
    to_minor_units,
)
from paygate.providers.simulator import SimulatorBackend

logger = logging.getLogger("paygate.providers.razorpay")

DEFAULT_CHECKOUT_URL = "https://api.razorpay.com/v1/checkout/embedded"


class RazorpayAdapter(PaymentGatewayAdapter, TokenValidator):
    provider_type = ProviderType.RAZORPAY
    display_name = "Razorpay"
    supported_currencies = frozenset({"INR"})

    STATUS_MAP = {
        "created": TransactionStatus.PENDING,
        "authorized": TransactionStatus.AUTHORIZED,
        "captured": TransactionStatus.COMPLETED,
        "failed": TransactionStatus.FAILED,
        "refunded": TransactionStatus.REFUNDED,
        "partially_refunded": TransactionStatus.PARTIALLY_REFUNDED,
    }

    SUBSCRIPTION_STATUS_MAP = {
        "created": RecurringStatus.ACTIVE,
        "authenticated": RecurringStatus.ACTIVE,
        "active": RecurringStatus.ACTIVE,
        "pending": RecurringStatus.ACTIVE,
        "paused": RecurringStatus.PAUSED,
        "halted": RecurringStatus.FAILED,
        "cancelled": RecurringStatus.CANCELLED,
        "completed": RecurringStatus.COMPLETED,
        "expired": RecurringStatus.COMPLETED,
    }

    FREQUENCY_MAP = {
        RecurringFrequency.DAILY: ("daily", 1),
        RecurringFrequency.WEEKLY: ("weekly", 1),
        RecurringFrequency.BIWEEKLY: ("weekly", 2),
        RecurringFrequency.MONTHLY: ("monthly", 1),
        RecurringFrequency.QUARTERLY: ("monthly", 3),
        RecurringFrequency.ANNUAL: ("yearly", 1),
    }

    @classmethod
    def validate_configuration(cls, configuration: dict[str, Any]) -> None:
        cls._require_keys(configuration, "keyId", "keySecret")
        if configuration.get("useWebhooks"):
            cls._require_keys(configuration, "webhookSecret")

    def build_client(self, backend: SimulatorBackend) -> "SimulatedRazorpayClient":
        return SimulatedRazorpayClient(backend, self.config["keyId"])

    def _payment_check(self, payment: dict) -> PaymentStatusCheck:
        status = self.map_status(payment.get("status"))
        if status == TransactionStatus.COMPLETED and payment.get("amount_refunded"):
            status = (
                TransactionStatus.REFUNDED
                if payment["amount_refunded"] >= payment["amount"]
                else TransactionStatus.PARTIALLY_REFUNDED
            )
        return PaymentStatusCheck(
            status=status,
            external_id=payment["id"],
            error_message=payment.get("error_description"),
            payment_details={"paymentId": payment["id"], "method": payment.get("method")},
        )

    async def _latest_payment(self, trail: AuditTrail, order_id: str) -> Optional[dict]:
        response = await self._send(
            trail, "fetch_order_payments", {"order_id": order_id},
            self.client.fetch_order_payments(order_id),
        )
        payments = response.get("items") or []
        captured = [p for p in payments if p["status"] in ("captured", "refunded")]
        if captured:
            return captured[0]
        return payments[-1] if payments else None

    async def _resolve_payment(self, trail: AuditTrail, external_id: str) -> Optional[dict]:
        if external_id.startswith("order_"):
            return await self._latest_payment(trail, external_id)
        return await self._send(
            trail, "fetch_payment", {"payment_id": external_id}, self.client.fetch_payment(external_id)
        )

    async def create_payment(self, transaction_id, amount, currency, callback_url=None, metadata=None):
        currency = self._check_currency(currency)
        trail = AuditTrail()
        request = {
            "amount": to_minor_units(amount, currency),
            "currency": currency,
            "receipt": transaction_id,
            "notes": {"fineract_transaction_id": transaction_id, **(metadata or {})},
        }
        order = await self._send(trail, "create_payment", request, self.client.create_order(request))
        checkout = self.config.get("checkoutBaseUrl") or DEFAULT_CHECKOUT_URL
        return Audited(
            PaymentCreation(
                status=self.map_status(order["status"]),
                external_id=order["id"],
                payment_url=f"{checkout}?key_id={self.config['keyId']}&order_id={order['id']}",
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
        external_id = self._require_external_id(external_id, "Order ID")
        trail = AuditTrail()
        payment_id = (payment_details or {}).get("razorpay_payment_id")
        if payment_id:
            payment = await self._send(
                trail, "fetch_payment", {"payment_id": payment_id}, self.client.fetch_payment(payment_id)
            )
        else:
            payment = await self._resolve_payment(trail, external_id)

        if not payment:
            return Audited(
                PaymentExecution(
                    success=False,
                    status=TransactionStatus.PENDING,
                    error_message="No payment found for this order",
                ),
                trail,
            )

        if payment["status"] == "authorized":
            request = {"amount": payment["amount"], "currency": payment["currency"]}
            payment = await self._send(
                trail, "execute_payment", request,
                self.client.capture_payment(payment["id"], request),
            )

        check = self._payment_check(payment)
        return Audited(
            PaymentExecution(
                success=check.status == TransactionStatus.COMPLETED,
                status=check.status,
                error_message=check.error_message,
                payment_details=check.payment_details,
                external_id=payment["id"],
            ),
            trail,
        )

    async def check_payment_status(self, transaction_id, external_id=None):
        external_id = self._require_external_id(external_id, "Order ID")
        trail = AuditTrail()
        payment = await self._resolve_payment(trail, external_id)
        if not payment:
            return Audited(PaymentStatusCheck(status=TransactionStatus.PENDING, external_id=external_id), trail)
        return Audited(self._payment_check(payment), trail)

    async def refund_payment(
        self,
        transaction_id,
        external_id,
        amount,
        reason=None,
        metadata=None,
        payment_details=None,
    ):
        external_id = self._require_external_id(external_id, "Payment ID")
        trail = AuditTrail()
        payment = await self._resolve_payment(trail, external_id)
        if not payment or payment["status"] not in ("captured", "refunded"):
            raise InvalidRequestError("No captured Razorpay payment found for this transaction")

        amount_minor = to_minor_units(amount, payment["currency"])
        if amount_minor > payment["amount"] - payment.get("amount_refunded", 0):
            raise InvalidRequestError("Refund amount exceeds the captured amount")

        request = {
            "amount": amount_minor,
            "speed": "normal",
            "notes": {"reason": reason or "Customer requested refund", "fineract_transaction_id": transaction_id},
        }
        refund = await self._send(
            trail, "refund_payment", request, self.client.create_refund(payment["id"], request)
        )
        status = {
            "processed": TransactionStatus.COMPLETED,
            "pending": TransactionStatus.PENDING,
            "failed": TransactionStatus.FAILED,
        }.get(refund["status"], TransactionStatus.PENDING)
        return Audited(
            RefundOutcome(success=status != TransactionStatus.FAILED, status=status, refund_id=refund["id"]),
            trail,
        )

    async def validate_payment_method_token(self, token, payment_method_type):
        trail = AuditTrail()
        try:
            response = await self._send(trail, "validate_token", {"token_id": token}, self.client.fetch_token(token))
        except PermanentError:
            return Audited(False, trail)
        return Audited(response.get("status") == "active", trail)

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
        period, interval = self.map_frequency(frequency)
        currency = self._check_currency(currency)
        trail = AuditTrail()

        plan_request = {
            "period": period,
            "interval": interval,
            "item": {
                "name": description or "Recurring payment",
                "amount": to_minor_units(amount, currency),
                "currency": currency,
            },
        }
        plan = await self._send(trail, "create_plan", plan_request, self.client.create_plan(plan_request))

        customer_request = {
            "name": (metadata or {}).get("customerName", "Fineract client"),
            "notes": {"fineract_client_id": (metadata or {}).get("clientId")},
            "fail_existing": "0",
        }
        customer = await self._send(
            trail, "create_customer", customer_request, self.client.create_customer(customer_request)
        )

        occurrences = count_occurrences(frequency, start_date, end_date)
        request = {
            "plan_id": plan["id"],
            "customer_id": customer["id"],
            "token": payment_method_token,
            "total_count": occurrences or self.config.get("defaultTotalCount", settings.recurring_default_total_count),
            "start_at": start_date.isoformat(),
            "notes": metadata or {},
        }
        subscription = await self._send(
            trail, "create_recurring_payment", request, self.client.create_subscription(request)
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
        status = RecurringStatus(status)
        actions = {
            RecurringStatus.ACTIVE: "resume",
            RecurringStatus.PAUSED: "pause",
            RecurringStatus.CANCELLED: "cancel",
        }
        if status not in actions:
            raise InvalidRequestError(f"Cannot set Razorpay subscription to {status.value}")
        trail = AuditTrail()
        request = {"pause_at": "now"} if status == RecurringStatus.PAUSED else {"cancel_at_cycle_end": 0}
        response = await self._send(
            trail, f"{actions[status]}_subscription", request,
            self.client.subscription_action(subscription_id, actions[status], request),
        )
        return Audited(self.map_subscription_status(response.get("status")) == status, trail)

    async def process_webhook(self, event_type, payload):
        trail = AuditTrail()
        trail.record(None, payload)
        event_type = payload.get("event") or event_type
        body = payload.get("payload") or {}
        payment = (body.get("payment") or {}).get("entity") or {}
        notes = payment.get("notes") or {}

        if event_type in ("payment.authorized", "payment.captured", "payment.failed"):
            check = self._payment_check(payment)
            # Authorized payments are still keyed by their order until execute captures them
            result = WebhookResult(
                transaction_id=payment.get("order_id") if event_type == "payment.authorized" else payment.get("id"),
                status=check.status,
                error_message=payment.get("error_description"),
                local_reference=notes.get("fineract_transaction_id"),
                payment_details={**check.payment_details, "orderId": payment.get("order_id")},
            )
        elif event_type in ("refund.created", "refund.processed"):
            refund = (body.get("refund") or {}).get("entity") or {}
            fully = payment.get("amount_refunded", refund.get("amount", 0)) >= payment.get("amount", 0)
            result = WebhookResult(
                transaction_id=refund.get("payment_id") or payment.get("id"),
                status=TransactionStatus.REFUNDED if fully else TransactionStatus.PARTIALLY_REFUNDED,
                payment_details={
                    "refundId": refund.get("id"),
                    "refundAmount": from_minor_units(refund.get("amount", 0), refund.get("currency", "INR")),
                },
                refunded_amount=from_minor_units(
                    payment.get("amount_refunded", refund.get("amount", 0)), refund.get("currency", "INR")
                ),
            )
        elif event_type == "subscription.charged":
            subscription = (body.get("subscription") or {}).get("entity") or {}
            currency = payment.get("currency", "INR")
            result = WebhookResult(
                transaction_id=payment.get("id"),
                status=TransactionStatus.COMPLETED,
                should_create_transaction=True,
                transaction_data=TransactionData(
                    amount=from_minor_units(payment.get("amount", 0), currency),
                    currency=currency,
                    payment_method="razorpay_subscription",
                    payment_details={"paymentId": payment.get("id"), "subscriptionId": subscription.get("id")},
                    reference_number=f"RAZORPAY-SUB-{subscription.get('id')}",
                    client_id=(subscription.get("notes") or {}).get("clientId"),
                ),
                subscription_id=subscription.get("id"),
                subscription_status=self.map_subscription_status(subscription.get("status")),
            )
        elif event_type.startswith("subscription."):
            subscription = (body.get("subscription") or {}).get("entity") or {}
            result = WebhookResult(
                subscription_id=subscription.get("id"),
                subscription_status=self.map_subscription_status(subscription.get("status")),
                message=f"Subscription {subscription.get('id')} {event_type.split('.', 1)[1]}",
            )
        else:
            result = WebhookResult(message=f"Unhandled event type: {event_type}")
        return Audited(result, trail)


class SimulatedRazorpayClient:
    """
    Mimics the Razorpay API used by RazorpayAdapter.

    ``pay_order`` stands in for the customer completing Razorpay Checkout.
    """

    name = "razorpay"

    def __init__(self, backend: SimulatorBackend, key_id: str):
        self._backend = backend
        self._key_id = key_id

    async def create_order(self, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "orders.create")
        order_id = self._backend.new_id("order_", 14)
        return self._backend.put(order_id, {
            "id": order_id,
            "entity": "order",
            "amount": body["amount"],
            "currency": body["currency"],
            "receipt": body["receipt"],
            "notes": body.get("notes") or {},
            "status": "created",
        })

    def pay_order(self, order_id: str, status: str = "authorized", method: str = "card") -> dict:
        order = self._backend.get(order_id)
        payment_id = self._backend.new_id("pay_", 14)
        self._backend.update(order_id, status="attempted" if status == "failed" else "paid")
        return self._backend.put(payment_id, {
            "id": payment_id,
            "entity": "payment",
            "order_id": order_id,
            "amount": order["amount"],
            "currency": order["currency"],
            "status": status,
            "method": method,
            "amount_refunded": 0,
            "notes": order["notes"],
            "error_description": "Payment failed" if status == "failed" else None,
        })

    async def fetch_order_payments(self, order_id: str) -> dict:
        await self._backend.roundtrip(self.name, "orders.payments")
        self._backend.get(order_id)
        payments = self._backend.find(entity="payment", order_id=order_id)
        return {"entity": "collection", "count": len(payments), "items": payments}

    async def fetch_payment(self, payment_id: str) -> dict:
        await self._backend.roundtrip(self.name, "payments.fetch")
        return self._backend.get(payment_id)

    async def capture_payment(self, payment_id: str, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "payments.capture")
        payment = self._backend.get(payment_id)
        if payment["status"] != "authorized":
            raise PermanentError("This payment has already been captured", status_code=400)
        if body["amount"] != payment["amount"]:
            raise PermanentError("Capture amount must be equal to the amount authorized", status_code=400)
        return self._backend.update(payment_id, status="captured")

    async def create_refund(self, payment_id: str, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "payments.refund")
        payment = self._backend.get(payment_id)
        refunded = payment["amount_refunded"] + body["amount"]
        if refunded > payment["amount"]:
            raise PermanentError("The refund amount provided is greater than amount captured", status_code=400)
        self._backend.update(
            payment_id,
            amount_refunded=refunded,
            status="refunded" if refunded >= payment["amount"] else payment["status"],
        )
        refund_id = self._backend.new_id("rfnd_", 14)
        return self._backend.put(refund_id, {
            "id": refund_id,
            "entity": "refund",
            "payment_id": payment_id,
            "amount": body["amount"],
            "currency": payment["currency"],
            "status": "processed",
        })

    async def fetch_token(self, token_id: str) -> dict:
        await self._backend.roundtrip(self.name, "tokens.fetch")
        if not token_id.startswith("token_"):
            raise PermanentError("The id provided does not exist", status_code=400)
        return {"id": token_id, "entity": "token", "method": "card", "status": "active"}

    async def create_plan(self, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "plans.create")
        plan_id = self._backend.new_id("plan_", 14)
        return self._backend.put(plan_id, {"id": plan_id, "entity": "plan", **body})

    async def create_customer(self, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "customers.create")
        customer_id = self._backend.new_id("cust_", 14)
        return self._backend.put(customer_id, {"id": customer_id, "entity": "customer", **body})

    async def create_subscription(self, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "subscriptions.create")
        subscription_id = self._backend.new_id("sub_", 14)
        return self._backend.put(subscription_id, {
            "id": subscription_id,
            "entity": "subscription",
            "plan_id": body["plan_id"],
            "customer_id": body["customer_id"],
            "total_count": body["total_count"],
            "status": "created",
        })

    async def subscription_action(self, subscription_id: str, action: str, body: dict) -> dict:
        await self._backend.roundtrip(self.name, f"subscriptions.{action}")
        subscription = self._backend.get(subscription_id)
        if subscription["status"] in ("cancelled", "completed"):
            raise PermanentError(f"Subscription is {subscription['status']}", status_code=400)
        status = {"resume": "active", "pause": "paused", "cancel": "cancelled"}[action]
        return self._backend.update(subscription_id, status=status)
