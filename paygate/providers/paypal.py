"""
PayPal adapter built on the Orders v2 and Billing Subscriptions APIs.

An order starts CREATED and has to be approved by the buyer on PayPal before
it can be captured. Executing an unapproved order returns the approval link
as a redirect.
"""

import logging
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
    TransactionData,
    WebhookResult,
)
from paygate.providers.simulator import SimulatorBackend

logger = logging.getLogger("paygate.providers.paypal")

BASE_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}


def _money(amount: float) -> str:
    return f"{amount:.2f}"


def _approve_link(order: dict) -> Optional[str]:
    for link in order.get("links", []):
        if link.get("rel") in ("approve", "payer-action"):
            return link.get("href")
    return None


def _first_capture(order: dict) -> Optional[dict]:
    for unit in order.get("purchase_units", []):
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            return captures[0]
    return None


class PayPalAdapter(PaymentGatewayAdapter):
    provider_type = ProviderType.PAYPAL
    display_name = "PayPal"

    STATUS_MAP = {
        "COMPLETED": TransactionStatus.COMPLETED,
        "SAVED": TransactionStatus.PENDING,
        "APPROVED": TransactionStatus.PENDING,
        "PAYER_ACTION_REQUIRED": TransactionStatus.PENDING,
        "CREATED": TransactionStatus.PENDING,
        "VOIDED": TransactionStatus.CANCELLED,
    }

    SUBSCRIPTION_STATUS_MAP = {
        "APPROVAL_PENDING": RecurringStatus.ACTIVE,
        "APPROVED": RecurringStatus.ACTIVE,
        "ACTIVE": RecurringStatus.ACTIVE,
        "SUSPENDED": RecurringStatus.PAUSED,
        "CANCELLED": RecurringStatus.CANCELLED,
        "EXPIRED": RecurringStatus.COMPLETED,
    }

    FREQUENCY_MAP = {
        RecurringFrequency.DAILY: ("DAY", 1),
        RecurringFrequency.WEEKLY: ("WEEK", 1),
        RecurringFrequency.BIWEEKLY: ("WEEK", 2),
        RecurringFrequency.MONTHLY: ("MONTH", 1),
        RecurringFrequency.QUARTERLY: ("MONTH", 3),
        RecurringFrequency.ANNUAL: ("YEAR", 1),
    }

    @classmethod
    def validate_configuration(cls, configuration: dict[str, Any]) -> None:
        cls._require_keys(configuration, "clientId", "clientSecret")
        cls._require_environment(configuration, tuple(BASE_URLS))

    def build_client(self, backend: SimulatorBackend) -> "SimulatedPayPalClient":
        return SimulatedPayPalClient(backend, BASE_URLS[self.config["environment"]])

    async def create_payment(self, transaction_id, amount, currency, callback_url=None, metadata=None):
        currency = self._check_currency(currency)
        trail = AuditTrail()
        request = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": transaction_id,
                "custom_id": transaction_id,
                "description": (metadata or {}).get("description", "Payment"),
                "amount": {"currency_code": currency, "value": _money(amount)},
            }],
            "application_context": {
                "return_url": callback_url,
                "cancel_url": callback_url,
            },
        }
        order = await self._send(trail, "create_payment", request, self.client.create_order(request))
        return Audited(
            PaymentCreation(
                status=self.map_status(order["status"]),
                external_id=order["id"],
                payment_url=_approve_link(order),
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
        order_id = self._require_external_id(external_id, "Order ID")
        trail = AuditTrail()
        order = await self._send(trail, "get_order", {"id": order_id}, self.client.get_order(order_id))

        if order["status"] in ("CREATED", "PAYER_ACTION_REQUIRED"):
            return Audited(
                PaymentExecution(
                    success=False,
                    status=TransactionStatus.PENDING,
                    error_message="Order has not been approved by the buyer",
                    redirect_url=_approve_link(order),
                ),
                trail,
            )

        if order["status"] != "COMPLETED":
            order = await self._send(
                trail, "execute_payment", {"id": order_id},
                self.client.capture_order(order_id),
            )

        capture = _first_capture(order) or {}
        status = self.map_status(order["status"])
        if capture.get("status") == "DECLINED":
            status = TransactionStatus.FAILED
        return Audited(
            PaymentExecution(
                success=status == TransactionStatus.COMPLETED,
                status=status,
                error_message="Capture was declined" if status == TransactionStatus.FAILED else None,
                payment_details={
                    "captureId": capture.get("id"),
                    "payerId": (order.get("payer") or {}).get("payer_id"),
                    "payerEmail": (order.get("payer") or {}).get("email_address"),
                },
            ),
            trail,
        )

    async def check_payment_status(self, transaction_id, external_id=None):
        order_id = self._require_external_id(external_id, "Order ID")
        trail = AuditTrail()
        order = await self._send(trail, "check_payment_status", {"id": order_id}, self.client.get_order(order_id))
        capture = _first_capture(order) or {}
        return Audited(
            PaymentStatusCheck(
                status=self.map_status(order["status"]),
                external_id=order_id,
                payment_details={"captureId": capture.get("id"), "captureStatus": capture.get("status")},
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
        order_id = self._require_external_id(external_id, "Order ID")
        trail = AuditTrail()
        order = await self._send(trail, "get_order", {"id": order_id}, self.client.get_order(order_id))
        capture = _first_capture(order)
        if order["status"] != "COMPLETED" or not capture or capture.get("status") not in ("COMPLETED", "PARTIALLY_REFUNDED"):
            raise InvalidRequestError("No completed capture found for this order")

        captured = float(capture["amount"]["value"])
        refunded = float(capture.get("refunded_value", "0"))
        if round(amount, 2) > round(captured - refunded, 2):
            raise InvalidRequestError("Refund amount exceeds the captured amount")

        request: dict[str, Any] = {"note_to_payer": reason or "Refund"}
        if round(amount, 2) < round(captured, 2):
            request["amount"] = {"currency_code": capture["amount"]["currency_code"], "value": _money(amount)}

        refund = await self._send(
            trail, "refund_payment", request,
            self.client.refund_capture(capture["id"], request),
        )
        status = {
            "COMPLETED": TransactionStatus.COMPLETED,
            "FAILED": TransactionStatus.FAILED,
            "CANCELLED": TransactionStatus.FAILED,
        }.get(refund["status"], TransactionStatus.PENDING)
        return Audited(
            RefundOutcome(
                success=status != TransactionStatus.FAILED,
                status=status,
                refund_id=refund["id"],
            ),
            trail,
        )

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
        interval_unit, interval_count = self.map_frequency(frequency)
        if not self.config.get("planId"):
            raise InvalidRequestError("PayPal planId configuration is required for subscriptions")
        trail = AuditTrail()
        request = {
            "plan_id": self.config["planId"],
            "start_time": f"{start_date.isoformat()}T00:00:00Z",
            "quantity": "1",
            "custom_id": (metadata or {}).get("clientId"),
            "plan": {
                "billing_cycles": [{
                    "frequency": {"interval_unit": interval_unit, "interval_count": interval_count},
                    "sequence": 1,
                    "pricing_scheme": {
                        "fixed_price": {"currency_code": self._check_currency(currency), "value": _money(amount)},
                    },
                }],
            },
            "subscriber": {"payment_source": {"token": {"id": payment_method_token, "type": "BILLING_AGREEMENT"}}},
        }
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
        status = RecurringStatus(status)
        actions = {
            RecurringStatus.ACTIVE: ("activate", "Reactivating the subscription"),
            RecurringStatus.PAUSED: ("suspend", "Suspending the subscription"),
            RecurringStatus.CANCELLED: ("cancel", "Cancelling the subscription"),
        }
        if status not in actions:
            raise InvalidRequestError(f"Cannot set PayPal subscription to {status.value}")
        action, reason = actions[status]
        trail = AuditTrail()
        request = {"reason": reason}
        response = await self._send(
            trail, f"{action}_subscription", request,
            self.client.subscription_action(subscription_id, action, request),
        )
        return Audited(response.get("status") is not None, trail)

    async def process_webhook(self, event_type, payload):
        trail = AuditTrail()
        trail.record(None, payload)
        event_type = payload.get("event_type") or event_type
        resource = payload.get("resource") or {}
        related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        order_id = related.get("order_id")

        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            result = WebhookResult(
                transaction_id=order_id,
                status=TransactionStatus.COMPLETED,
                local_reference=resource.get("custom_id"),
                payment_details={"captureId": resource.get("id")},
            )
        elif event_type == "PAYMENT.CAPTURE.DENIED":
            result = WebhookResult(
                transaction_id=order_id,
                status=TransactionStatus.FAILED,
                local_reference=resource.get("custom_id"),
                error_message="Payment capture denied",
            )
        elif event_type == "PAYMENT.CAPTURE.REFUNDED":
            # The resource is the refund; the breakdown carries the capture's running total
            breakdown = resource.get("seller_payable_breakdown") or {}
            refunded = (breakdown.get("total_refunded_amount") or resource.get("amount") or {}).get("value")
            result = WebhookResult(
                transaction_id=order_id,
                status=TransactionStatus.REFUNDED,
                local_reference=resource.get("custom_id"),
                payment_details={"refundId": resource.get("id")},
                refunded_amount=float(refunded) if refunded is not None else None,
            )
        elif event_type.startswith("BILLING.SUBSCRIPTION."):
            result = WebhookResult(
                subscription_id=resource.get("id"),
                subscription_status=self.map_subscription_status(resource.get("status")),
                message=f"Subscription {resource.get('id')} {event_type.rsplit('.', 1)[-1].lower()}",
            )
        elif event_type == "PAYMENT.SALE.COMPLETED":
            amount = resource.get("amount") or {}
            result = WebhookResult(
                transaction_id=resource.get("id"),
                status=TransactionStatus.COMPLETED,
                should_create_transaction=True,
                transaction_data=TransactionData(
                    amount=float(amount.get("total", 0)),
                    currency=amount.get("currency", "USD"),
                    payment_method="paypal_subscription",
                    payment_details={"saleId": resource.get("id"), "billingAgreementId": resource.get("billing_agreement_id")},
                    reference_number=f"SUB-{resource.get('billing_agreement_id')}-{resource.get('id')}",
                    client_id=resource.get("custom"),
                ),
                subscription_id=resource.get("billing_agreement_id"),
            )
        else:
            result = WebhookResult(message=f"Unhandled event type: {event_type}")
        return Audited(result, trail)


class SimulatedPayPalClient:
    """Mimics the PayPal REST endpoints used by PayPalAdapter."""

    name = "paypal"

    def __init__(self, backend: SimulatorBackend, base_url: str):
        self._backend = backend
        self._base_url = base_url

    async def create_order(self, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "orders.create")
        order_id = self._backend.new_id("", 17).upper()
        checkout = self._base_url.replace("api-m.", "www.")
        return self._backend.put(order_id, {
            "id": order_id,
            "object": "order",
            "status": "CREATED",
            "intent": body["intent"],
            "purchase_units": body["purchase_units"],
            "links": [
                {"href": f"{self._base_url}/v2/checkout/orders/{order_id}", "rel": "self", "method": "GET"},
                {"href": f"{checkout}/checkoutnow?token={order_id}", "rel": "approve", "method": "GET"},
            ],
        })

    async def get_order(self, order_id: str) -> dict:
        await self._backend.roundtrip(self.name, "orders.get")
        return self._backend.get(order_id)

    async def capture_order(self, order_id: str) -> dict:
        await self._backend.roundtrip(self.name, "orders.capture")
        order = self._backend.get(order_id)
        if order["status"] != "APPROVED":
            raise PermanentError("ORDER_NOT_APPROVED", status_code=422)
        unit = order["purchase_units"][0]
        capture_id = self._backend.new_id("", 17).upper()
        unit["payments"] = {"captures": [{
            "id": capture_id,
            "status": "COMPLETED",
            "amount": dict(unit["amount"]),
            "refunded_value": "0.00",
        }]}
        return self._backend.update(
            order_id,
            status="COMPLETED",
            purchase_units=[unit, *order["purchase_units"][1:]],
            payer={"payer_id": self._backend.new_id("", 13).upper(), "email_address": "buyer@example.com"},
        )

    async def refund_capture(self, capture_id: str, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "captures.refund")
        for order in self._backend.find(object="order"):
            unit = order["purchase_units"][0]
            captures = (unit.get("payments") or {}).get("captures") or []
            if captures and captures[0]["id"] == capture_id:
                capture = captures[0]
                captured = float(capture["amount"]["value"])
                refund_value = float((body.get("amount") or capture["amount"])["value"])
                refunded = float(capture["refunded_value"]) + refund_value
                if refunded > captured + 0.001:
                    raise PermanentError("REFUND_AMOUNT_EXCEEDED", status_code=422)
                capture["refunded_value"] = _money(refunded)
                capture["status"] = "REFUNDED" if refunded >= captured else "PARTIALLY_REFUNDED"
                self._backend.update(order["id"], purchase_units=[unit, *order["purchase_units"][1:]])
                refund_id = self._backend.new_id("", 17).upper()
                return {"id": refund_id, "status": "COMPLETED", "amount": {"value": _money(refund_value)}}
        raise PermanentError(f"Capture {capture_id} not found", status_code=404)

    async def create_subscription(self, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "subscriptions.create")
        subscription_id = "I-" + self._backend.new_id("", 12).upper()
        return self._backend.put(subscription_id, {
            "id": subscription_id,
            "object": "subscription",
            "plan_id": body["plan_id"],
            "status": "APPROVAL_PENDING",
        })

    async def subscription_action(self, subscription_id: str, action: str, body: dict) -> dict:
        await self._backend.roundtrip(self.name, f"subscriptions.{action}")
        subscription = self._backend.get(subscription_id)
        if subscription["status"] == "CANCELLED":
            raise PermanentError("SUBSCRIPTION_STATUS_INVALID", status_code=422)
        status = {"activate": "ACTIVE", "suspend": "SUSPENDED", "cancel": "CANCELLED"}[action]
        return self._backend.update(subscription_id, status=status)
