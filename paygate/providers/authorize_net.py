"""
Authorize.Net adapter built on the XML/JSON transaction API and ARB.

Payments begin with an Accept Hosted payment page token; the card is charged
by ``authCaptureTransaction`` at execute time when an opaque token or
customer payment profile is supplied. Recurring billing uses Automated
Recurring Billing (ARB) subscriptions.
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
    TokenValidator,
    TransactionData,
    WebhookResult,
    count_occurrences,
)
from paygate.providers.simulator import SimulatorBackend

logger = logging.getLogger("paygate.providers.authorize_net")

HOSTED_PAGE_URLS = {
    "sandbox": "https://test.authorize.net/payment/payment",
    "production": "https://accept.authorize.net/payment/payment",
}

# transactionResponse.responseCode
RESPONSE_CODES = {
    "1": TransactionStatus.COMPLETED,  # approved
    "2": TransactionStatus.FAILED,  # declined
    "3": TransactionStatus.FAILED,  # error
    "4": TransactionStatus.PENDING,  # held for review
}

ONGOING_OCCURRENCES = 9999


def _money(amount: float) -> str:
    return f"{amount:.2f}"


class AuthorizeNetAdapter(PaymentGatewayAdapter, TokenValidator):
    provider_type = ProviderType.AUTHORIZE_NET
    display_name = "Authorize.Net"

    # getTransactionDetails transactionStatus
    STATUS_MAP = {
        "authorizedPendingCapture": TransactionStatus.AUTHORIZED,
        "capturedPendingSettlement": TransactionStatus.COMPLETED,
        "settledSuccessfully": TransactionStatus.COMPLETED,
        "refundSettledSuccessfully": TransactionStatus.REFUNDED,
        "refundPendingSettlement": TransactionStatus.REFUNDED,
        "declined": TransactionStatus.FAILED,
        "generalError": TransactionStatus.FAILED,
        "failedReview": TransactionStatus.FAILED,
        "settlementError": TransactionStatus.FAILED,
        "returnedItem": TransactionStatus.FAILED,
        "voided": TransactionStatus.CANCELLED,
        "couldNotVoid": TransactionStatus.CANCELLED,
        "expired": TransactionStatus.EXPIRED,
        "underReview": TransactionStatus.PENDING,
        "FDSPendingReview": TransactionStatus.PENDING,
        "FDSAuthorizedPendingReview": TransactionStatus.PENDING,
        "approvedReview": TransactionStatus.PENDING,
        "communicationError": TransactionStatus.PENDING,
    }

    SUBSCRIPTION_STATUS_MAP = {
        "active": RecurringStatus.ACTIVE,
        "suspended": RecurringStatus.PAUSED,
        "canceled": RecurringStatus.CANCELLED,
        "terminated": RecurringStatus.CANCELLED,
        "expired": RecurringStatus.COMPLETED,
    }

    FREQUENCY_MAP = {
        RecurringFrequency.DAILY: (1, "days"),
        RecurringFrequency.WEEKLY: (7, "days"),
        RecurringFrequency.BIWEEKLY: (14, "days"),
        RecurringFrequency.MONTHLY: (1, "months"),
        RecurringFrequency.QUARTERLY: (3, "months"),
        RecurringFrequency.ANNUAL: (12, "months"),
    }

    @classmethod
    def validate_configuration(cls, configuration: dict[str, Any]) -> None:
        cls._require_keys(configuration, "apiLoginId", "transactionKey")
        cls._require_environment(configuration, tuple(HOSTED_PAGE_URLS))

    def build_client(self, backend: SimulatorBackend) -> "SimulatedAuthorizeNetClient":
        return SimulatedAuthorizeNetClient(backend, self.config["apiLoginId"])

    def _auth(self) -> dict:
        return {"name": self.config["apiLoginId"], "transactionKey": self.config["transactionKey"]}

    async def _details(self, trail: AuditTrail, trans_id: str) -> dict:
        request = {"merchantAuthentication": self._auth(), "transId": trans_id}
        response = await self._send(
            trail, "get_transaction_details", request, self.client.get_transaction_details(request)
        )
        return response["transaction"]

    async def create_payment(self, transaction_id, amount, currency, callback_url=None, metadata=None):
        currency = self._check_currency(currency)
        trail = AuditTrail()
        request = {
            "merchantAuthentication": self._auth(),
            "transactionRequest": {
                "transactionType": "authCaptureTransaction",
                "amount": _money(amount),
                "order": {"invoiceNumber": transaction_id[:20], "description": (metadata or {}).get("description")},
            },
            "hostedPaymentSettings": {
                "setting": [
                    {"settingName": "hostedPaymentReturnOptions", "settingValue": {"url": callback_url}},
                ],
            },
        }
        response = await self._send(
            trail, "create_payment", request, self.client.get_hosted_payment_page(request)
        )
        base_url = self.config.get("hostedPaymentPageUrl") or HOSTED_PAGE_URLS[self.config["environment"]]
        return Audited(
            PaymentCreation(
                status=TransactionStatus.PENDING,
                payment_url=f"{base_url}?token={response['token']}&ref={transaction_id}",
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
        trail = AuditTrail()
        if external_id and not payment_method_token:
            details = await self._details(trail, external_id)
            status = self.map_status(details.get("transactionStatus"))
            return Audited(
                PaymentExecution(
                    success=status == TransactionStatus.COMPLETED,
                    status=status,
                    payment_details={"authCode": details.get("authCode")},
                ),
                trail,
            )

        if not payment_method_token:
            return Audited(
                PaymentExecution(
                    success=False,
                    status=TransactionStatus.PENDING,
                    error_message="Awaiting hosted payment page completion",
                ),
                trail,
            )
        if amount is None:
            raise InvalidRequestError("Amount is required to charge an Authorize.Net payment")

        if payment_method_token.startswith("COMMON.ACCEPT."):
            payment = {"opaqueData": {"dataDescriptor": payment_method_token, "dataValue": (payment_details or {}).get("dataValue")}}
        else:
            customer_profile = (payment_details or {}).get("customerProfileId")
            payment = {"profile": {"customerProfileId": customer_profile, "paymentProfile": {"paymentProfileId": payment_method_token}}}

        request = {
            "merchantAuthentication": self._auth(),
            "refId": transaction_id[:20],
            "transactionRequest": {
                "transactionType": "authCaptureTransaction",
                "amount": _money(amount),
                **payment,
            },
        }
        response = await self._send(
            trail, "execute_payment", request, self.client.create_transaction(request)
        )
        tx = response["transactionResponse"]
        status = RESPONSE_CODES.get(str(tx.get("responseCode")), TransactionStatus.PENDING)
        errors = tx.get("errors") or []
        return Audited(
            PaymentExecution(
                success=status == TransactionStatus.COMPLETED,
                status=status,
                error_message=errors[0].get("errorText") if errors else None,
                payment_details={"authCode": tx.get("authCode"), "accountNumber": tx.get("accountNumber")},
                external_id=tx.get("transId"),
            ),
            trail,
        )

    async def check_payment_status(self, transaction_id, external_id=None):
        trans_id = self._require_external_id(external_id, "Transaction ID")
        trail = AuditTrail()
        details = await self._details(trail, trans_id)
        return Audited(
            PaymentStatusCheck(
                status=self.map_status(details.get("transactionStatus")),
                external_id=trans_id,
                payment_details={
                    "transactionStatus": details.get("transactionStatus"),
                    "settleAmount": details.get("settleAmount"),
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
        trans_id = self._require_external_id(external_id, "Transaction ID")
        trail = AuditTrail()
        details = await self._details(trail, trans_id)
        if details.get("transactionStatus") not in ("settledSuccessfully", "capturedPendingSettlement"):
            raise InvalidRequestError("Only captured Authorize.Net transactions can be refunded")

        refundable = float(details.get("settleAmount") or details.get("authAmount") or 0) - float(
            details.get("refundedAmount") or 0
        )
        if round(amount, 2) > round(refundable, 2):
            raise InvalidRequestError("Refund amount exceeds the captured amount")

        request = {
            "merchantAuthentication": self._auth(),
            "refId": transaction_id[:20],
            "transactionRequest": {
                "transactionType": "refundTransaction",
                "amount": _money(amount),
                "payment": {"creditCard": {"cardNumber": details.get("accountNumber", "XXXX")[-4:], "expirationDate": "XXXX"}},
                "refTransId": trans_id,
            },
        }
        response = await self._send(trail, "refund_payment", request, self.client.create_transaction(request))
        tx = response["transactionResponse"]
        status = RESPONSE_CODES.get(str(tx.get("responseCode")), TransactionStatus.PENDING)
        errors = tx.get("errors") or []
        return Audited(
            RefundOutcome(
                success=status != TransactionStatus.FAILED,
                status=status,
                refund_id=tx.get("transId"),
                error_message=errors[0].get("errorText") if errors else None,
            ),
            trail,
        )

    async def validate_payment_method_token(self, token, payment_method_type):
        trail = AuditTrail()
        request = {"merchantAuthentication": self._auth(), "customerPaymentProfileId": token}
        try:
            response = await self._send(
                trail, "validate_token", request, self.client.get_customer_payment_profile(request)
            )
        except PermanentError:
            return Audited(False, trail)
        return Audited(response.get("messages", {}).get("resultCode") == "Ok", trail)

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
        length, unit = self.map_frequency(frequency)
        self._check_currency(currency)
        occurrences = count_occurrences(frequency, start_date, end_date) or ONGOING_OCCURRENCES
        trail = AuditTrail()
        request = {
            "merchantAuthentication": self._auth(),
            "subscription": {
                "name": description or "Recurring payment",
                "paymentSchedule": {
                    "interval": {"length": length, "unit": unit},
                    "startDate": start_date.isoformat(),
                    "totalOccurrences": min(occurrences, ONGOING_OCCURRENCES),
                },
                "amount": _money(amount),
                "profile": {
                    "customerProfileId": (metadata or {}).get("customerProfileId"),
                    "customerPaymentProfileId": payment_method_token,
                },
            },
        }
        response = await self._send(
            trail, "create_recurring_payment", request, self.client.arb_create_subscription(request)
        )
        ok = response.get("messages", {}).get("resultCode") == "Ok"
        return Audited(
            SubscriptionCreation(
                status=RecurringStatus.ACTIVE if ok else RecurringStatus.FAILED,
                subscription_id=response.get("subscriptionId"),
            ),
            trail,
        )

    async def update_recurring_payment_status(self, subscription_id, status):
        subscription_id = self._require_external_id(subscription_id, "Subscription ID")
        status = RecurringStatus(status)
        actions = {
            RecurringStatus.ACTIVE: "reactivate",
            RecurringStatus.PAUSED: "suspend",
            RecurringStatus.CANCELLED: "cancel",
        }
        if status not in actions:
            raise InvalidRequestError(f"Cannot set Authorize.Net subscription to {status.value}")
        trail = AuditTrail()
        request = {"merchantAuthentication": self._auth(), "subscriptionId": subscription_id}
        response = await self._send(
            trail, f"{actions[status]}_subscription", request,
            self.client.arb_subscription_action(actions[status], request),
        )
        return Audited(response.get("messages", {}).get("resultCode") == "Ok", trail)

    def webhook_event_id(self, payload: dict) -> Optional[str]:
        return payload.get("notificationId")

    async def process_webhook(self, event_type, payload):
        trail = AuditTrail()
        trail.record(None, payload)
        event_type = payload.get("eventType") or event_type
        body = payload.get("payload") or {}

        if event_type == "net.authorize.payment.authcapture.created":
            status = RESPONSE_CODES.get(str(body.get("responseCode")), TransactionStatus.PENDING)
            result = WebhookResult(
                transaction_id=body.get("id"),
                status=status,
                local_reference=body.get("invoiceNumber"),
                payment_details={"authCode": body.get("authCode"), "authAmount": body.get("authAmount")},
            )
        elif event_type == "net.authorize.payment.refund.created":
            refund_amount = body.get("authAmount")
            result = WebhookResult(
                transaction_id=body.get("refTransId"),
                status=TransactionStatus.REFUNDED,
                payment_details={"refundTransId": body.get("id"), "refundAmount": refund_amount},
                refunded_amount=float(refund_amount) if refund_amount is not None else None,
            )
        elif event_type == "net.authorize.payment.void.created":
            result = WebhookResult(transaction_id=body.get("id"), status=TransactionStatus.CANCELLED)
        elif event_type == "net.authorize.payment.priorAuthCapture.created":
            result = WebhookResult(
                transaction_id=body.get("id"),
                status=TransactionStatus.COMPLETED,
                should_create_transaction=True,
                transaction_data=TransactionData(
                    amount=float(body.get("authAmount", 0)),
                    currency="USD",
                    payment_method="authorize_net_subscription",
                    payment_details={"authCode": body.get("authCode")},
                    reference_number=f"SUB-{(body.get('subscription') or {}).get('id')}",
                    client_id=(body.get("customer") or {}).get("id"),
                ),
                subscription_id=(body.get("subscription") or {}).get("id"),
            )
        elif event_type.startswith("net.authorize.customer.subscription."):
            action = event_type.rsplit(".", 1)[-1]
            status = {
                "created": RecurringStatus.ACTIVE,
                "updated": self.map_subscription_status(body.get("status")),
                "suspended": RecurringStatus.PAUSED,
                "terminated": RecurringStatus.CANCELLED,
                "cancelled": RecurringStatus.CANCELLED,
                "expiring": RecurringStatus.ACTIVE,
            }.get(action, RecurringStatus.ACTIVE)
            result = WebhookResult(
                subscription_id=body.get("id"),
                subscription_status=status,
                message=f"Subscription {body.get('id')} {action}",
            )
        else:
            result = WebhookResult(message=f"Unhandled event type: {event_type}")
        return Audited(result, trail)


class SimulatedAuthorizeNetClient:
    """Mimics the Authorize.Net API requests used by AuthorizeNetAdapter."""

    name = "authorize_net"

    def __init__(self, backend: SimulatorBackend, api_login_id: str):
        self._backend = backend
        self._api_login_id = api_login_id

    @staticmethod
    def _ok(**fields: Any) -> dict:
        return {**fields, "messages": {"resultCode": "Ok", "message": [{"code": "I00001", "text": "Successful."}]}}

    async def get_hosted_payment_page(self, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "getHostedPaymentPageRequest")
        return self._ok(token=self._backend.new_id("", 32))

    async def create_transaction(self, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "createTransactionRequest")
        request = body["transactionRequest"]
        trans_id = str(40000000000 + len(self._backend.objects))

        if request["transactionType"] == "refundTransaction":
            original = self._backend.get(request["refTransId"])
            refunded = float(original.get("refundedAmount", 0)) + float(request["amount"])
            if refunded > float(original["settleAmount"]) + 0.001:
                return self._ok(transactionResponse={
                    "responseCode": "3",
                    "errors": [{"errorCode": "55", "errorText": "The sum of credits against the referenced transaction would exceed original debit amount."}],
                })
            self._backend.update(original["transId"], refundedAmount=_money(refunded))
            self._backend.put(trans_id, {"object": "transaction", "transId": trans_id, "transactionStatus": "refundPendingSettlement", "settleAmount": request["amount"]})
            return self._ok(transactionResponse={"responseCode": "1", "transId": trans_id, "refTransID": request["refTransId"]})

        token = (request.get("opaqueData") or {}).get("dataDescriptor") or (
            (request.get("profile") or {}).get("paymentProfile") or {}
        ).get("paymentProfileId", "")
        declined = "declined" in str(token)
        self._backend.put(trans_id, {
            "object": "transaction",
            "transId": trans_id,
            "transactionStatus": "declined" if declined else "capturedPendingSettlement",
            "authAmount": request["amount"],
            "settleAmount": "0.00" if declined else request["amount"],
            "refundedAmount": "0.00",
            "authCode": None if declined else self._backend.new_id("", 6).upper(),
            "accountNumber": "XXXX1111",
        })
        if declined:
            return self._ok(transactionResponse={
                "responseCode": "2",
                "transId": trans_id,
                "errors": [{"errorCode": "2", "errorText": "This transaction has been declined."}],
            })
        stored = self._backend.get(trans_id)
        return self._ok(transactionResponse={
            "responseCode": "1",
            "transId": trans_id,
            "authCode": stored["authCode"],
            "accountNumber": stored["accountNumber"],
        })

    async def get_transaction_details(self, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "getTransactionDetailsRequest")
        return self._ok(transaction=self._backend.get(body["transId"]))

    async def get_customer_payment_profile(self, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "getCustomerPaymentProfileRequest")
        if not str(body["customerPaymentProfileId"]).isdigit():
            raise PermanentError("E00040 The record cannot be found.", status_code=404)
        return self._ok(paymentProfile={"customerPaymentProfileId": body["customerPaymentProfileId"]})

    async def arb_create_subscription(self, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "ARBCreateSubscriptionRequest")
        subscription_id = str(9000000 + len(self._backend.objects))
        self._backend.put(subscription_id, {"object": "arb_subscription", "id": subscription_id, "status": "active"})
        return self._ok(subscriptionId=subscription_id)

    async def arb_subscription_action(self, action: str, body: dict) -> dict:
        await self._backend.roundtrip(self.name, f"ARB.{action}")
        subscription = self._backend.get(body["subscriptionId"])
        if subscription["status"] == "canceled":
            return {"messages": {"resultCode": "Error", "message": [{"code": "E00037", "text": "Subscriptions that are canceled cannot be updated."}]}}
        status = {"reactivate": "active", "suspend": "suspended", "cancel": "canceled"}[action]
        self._backend.update(subscription["id"], status=status)
        return self._ok()
