"""
M-Pesa (Safaricom Daraja) adapter.

Payments use Lipa Na M-Pesa Online (STK push): the customer confirms the
prompt on their phone and the outcome arrives by callback or STK query.
Refunds are B2C disbursements whose result is delivered asynchronously.
M-Pesa has no subscription API, so recurring payments are registered locally
and need an external scheduler to trigger each STK push.
"""

import base64
import logging
from datetime import datetime
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
    TransactionData,
    WebhookResult,
)
from paygate.providers.simulator import SimulatorBackend

logger = logging.getLogger("paygate.providers.mpesa")

BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}


def _timestamp() -> str:
    return datetime.now().strftime("%Y%m%d%H%M%S")


def _callback_items(items: list[dict], key: str = "Name", value: str = "Value") -> dict[str, Any]:
    return {item.get(key): item.get(value) for item in items or [] if item.get(key)}


class MpesaAdapter(PaymentGatewayAdapter):
    provider_type = ProviderType.MPESA
    display_name = "M-Pesa"
    supported_currencies = frozenset({"KES"})

    # STK push / query ResultCode values
    STATUS_MAP = {
        "0": TransactionStatus.COMPLETED,
        "1": TransactionStatus.FAILED,  # insufficient balance
        "2001": TransactionStatus.FAILED,  # wrong PIN
        "1001": TransactionStatus.FAILED,  # subscriber busy with another session
        "1025": TransactionStatus.FAILED,
        "9999": TransactionStatus.FAILED,
        "1019": TransactionStatus.EXPIRED,
        "1032": TransactionStatus.CANCELLED,  # cancelled by user
        "1037": TransactionStatus.CANCELLED,  # phone unreachable
    }

    FREQUENCY_MAP = {
        frequency: frequency.value for frequency in RecurringFrequency if frequency != RecurringFrequency.CUSTOM
    }

    @classmethod
    def validate_configuration(cls, configuration: dict[str, Any]) -> None:
        cls._require_keys(configuration, "consumerKey", "consumerSecret", "shortCode", "passKey")
        cls._require_environment(configuration, tuple(BASE_URLS))

    def build_client(self, backend: SimulatorBackend) -> "SimulatedMpesaClient":
        return SimulatedMpesaClient(backend, BASE_URLS[self.config["environment"]])

    def _password(self, timestamp: str) -> str:
        raw = f"{self.config['shortCode']}{self.config['passKey']}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    async def _token(self, trail: AuditTrail) -> str:
        response = await self._send(
            trail, "authenticate", {"grant_type": "client_credentials"},
            self.client.authenticate(self.config["consumerKey"], self.config["consumerSecret"]),
        )
        return response["access_token"]

    async def _query(self, trail: AuditTrail, checkout_request_id: str) -> dict:
        token = await self._token(trail)
        timestamp = _timestamp()
        request = {
            "BusinessShortCode": self.config["shortCode"],
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        return await self._send(trail, "stk_query", request, self.client.stk_query(token, request))

    async def create_payment(self, transaction_id, amount, currency, callback_url=None, metadata=None):
        self._check_currency(currency)
        phone = (metadata or {}).get("phoneNumber")
        if not phone:
            raise InvalidRequestError("Phone number is required for M-Pesa payments")

        trail = AuditTrail()
        token = await self._token(trail)
        timestamp = _timestamp()
        request = {
            "BusinessShortCode": self.config["shortCode"],
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(round(amount)),
            "PartyA": phone,
            "PartyB": self.config["shortCode"],
            "PhoneNumber": phone,
            "CallBackURL": callback_url or self.config.get("callbackUrl"),
            "AccountReference": (metadata or {}).get("accountReference", transaction_id[:12]),
            "TransactionDesc": (metadata or {}).get("description", "Payment"),
        }
        response = await self._send(trail, "create_payment", request, self.client.stk_push(token, request))
        if str(response.get("ResponseCode")) != "0":
            raise PermanentError(
                f"M-Pesa STK push rejected: {response.get('ResponseDescription', 'unknown error')}"
            )
        return Audited(
            PaymentCreation(status=TransactionStatus.PENDING, external_id=response["CheckoutRequestID"]),
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
        checkout_request_id = self._require_external_id(external_id, "Checkout request ID")
        trail = AuditTrail()
        response = await self._query(trail, checkout_request_id)
        status = self.map_status(response.get("ResultCode"))
        return Audited(
            PaymentExecution(
                success=status == TransactionStatus.COMPLETED,
                status=status,
                error_message=None if status == TransactionStatus.COMPLETED else response.get("ResultDesc"),
                payment_details={"resultCode": response.get("ResultCode"), "resultDesc": response.get("ResultDesc")},
            ),
            trail,
        )

    async def check_payment_status(self, transaction_id, external_id=None):
        checkout_request_id = self._require_external_id(external_id, "Checkout request ID")
        trail = AuditTrail()
        response = await self._query(trail, checkout_request_id)
        status = self.map_status(response.get("ResultCode"))
        return Audited(
            PaymentStatusCheck(
                status=status,
                external_id=checkout_request_id,
                error_message=response.get("ResultDesc") if status != TransactionStatus.COMPLETED else None,
                payment_details={"resultCode": response.get("ResultCode")},
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
        checkout_request_id = self._require_external_id(external_id, "Checkout request ID")
        phone = (metadata or {}).get("phoneNumber") or (payment_details or {}).get("phoneNumber")
        if not phone:
            raise InvalidRequestError("Phone number is required for M-Pesa refunds")

        trail = AuditTrail()
        query = await self._query(trail, checkout_request_id)
        if self.map_status(query.get("ResultCode")) != TransactionStatus.COMPLETED:
            raise InvalidRequestError("No completed M-Pesa payment found for this checkout request")
        if query.get("Amount") is not None and int(round(amount)) > int(query["Amount"]):
            raise InvalidRequestError("Refund amount exceeds the paid amount")

        token = await self._token(trail)
        request = {
            "InitiatorName": self.config.get("initiatorName", "apitest"),
            "SecurityCredential": self.config.get("securityCredential", ""),
            "CommandID": "BusinessPayment",
            "Amount": int(round(amount)),
            "PartyA": self.config["shortCode"],
            "PartyB": phone,
            "Remarks": reason or "Refund",
            "QueueTimeOutURL": self.config.get("timeoutUrl"),
            "ResultURL": self.config.get("resultUrl"),
            "Occasion": f"Refund for {transaction_id}",
        }
        response = await self._send(trail, "refund_payment", request, self.client.b2c_payment(token, request))
        accepted = str(response.get("ResponseCode")) == "0"
        return Audited(
            RefundOutcome(
                success=accepted,
                status=TransactionStatus.PENDING if accepted else TransactionStatus.FAILED,
                refund_id=response.get("ConversationID"),
                error_message=None if accepted else response.get("ResponseDescription"),
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
        self._check_currency(currency)
        self.map_frequency(frequency)
        trail = AuditTrail()
        subscription_id = f"MPESA_SUB_{SimulatorBackend.new_id('', 16).upper()}"
        trail.record(
            {
                "phoneNumber": payment_method_token,
                "frequency": RecurringFrequency(frequency).value,
                "amount": int(round(amount)),
                "startDate": start_date.isoformat(),
                "endDate": end_date.isoformat() if end_date else None,
            },
            {"subscriptionId": subscription_id, "note": "Billing requires an external scheduler"},
        )
        logger.info(
            "Registered local M-Pesa subscription %s; each charge must be triggered by a scheduler",
            subscription_id,
        )
        return Audited(SubscriptionCreation(status=RecurringStatus.ACTIVE, subscription_id=subscription_id), trail)

    async def update_recurring_payment_status(self, subscription_id, status):
        # No provider-side subscription exists; the local row is the only state.
        self._require_external_id(subscription_id, "Subscription ID")
        trail = AuditTrail()
        trail.record({"subscriptionId": subscription_id, "status": RecurringStatus(status).value}, {"accepted": True})
        return Audited(True, trail)

    def webhook_event_id(self, payload: dict) -> Optional[str]:
        if payload.get("TransID"):
            return f"c2b:{payload['TransID']}"
        return None

    async def process_webhook(self, event_type, payload):
        trail = AuditTrail()
        trail.record(None, payload)

        if event_type == "stk_push_callback":
            callback = (payload.get("Body") or {}).get("stkCallback") or {}
            status = self.map_status(callback.get("ResultCode"))
            items = _callback_items((callback.get("CallbackMetadata") or {}).get("Item"))
            result = WebhookResult(
                transaction_id=callback.get("CheckoutRequestID"),
                status=status,
                error_message=None if status == TransactionStatus.COMPLETED else callback.get("ResultDesc"),
                payment_details={
                    "mpesaReceiptNumber": items.get("MpesaReceiptNumber"),
                    "phoneNumber": items.get("PhoneNumber"),
                    "amount": items.get("Amount"),
                    "transactionDate": items.get("TransactionDate"),
                },
            )
        elif event_type == "b2c_result":
            body = payload.get("Result") or {}
            success = str(body.get("ResultCode")) == "0"
            params = _callback_items(
                (body.get("ResultParameters") or {}).get("ResultParameter"), key="Key", value="Value"
            )
            result = WebhookResult(
                transaction_id=body.get("ConversationID"),
                status=TransactionStatus.COMPLETED if success else TransactionStatus.FAILED,
                error_message=None if success else body.get("ResultDesc"),
                payment_details={
                    "transactionReceipt": params.get("TransactionReceipt"),
                    "receiverPartyPublicName": params.get("ReceiverPartyPublicName"),
                    "transactionAmount": params.get("TransactionAmount"),
                },
            )
        elif event_type == "c2b_confirmation":
            result = WebhookResult(
                transaction_id=payload.get("TransID"),
                status=TransactionStatus.COMPLETED,
                should_create_transaction=True,
                transaction_data=TransactionData(
                    amount=float(payload.get("TransAmount", 0)),
                    currency="KES",
                    payment_method=PaymentMethodType.MOBILE_MONEY.value,
                    payment_details={
                        "phoneNumber": payload.get("MSISDN"),
                        "billRefNumber": payload.get("BillRefNumber"),
                        "transTime": payload.get("TransTime"),
                        "orgAccountBalance": payload.get("OrgAccountBalance"),
                    },
                    reference_number=payload.get("TransID"),
                    client_id=payload.get("BillRefNumber"),
                ),
            )
        else:
            result = WebhookResult(message=f"Unhandled event type: {event_type}")
        return Audited(result, trail)


class SimulatedMpesaClient:
    """
    Mimics the Daraja endpoints used by MpesaAdapter.

    STK pushes are approved by the customer immediately (ResultCode 0);
    change ``ResultCode`` on the stored checkout to simulate other outcomes.
    """

    name = "mpesa"

    def __init__(self, backend: SimulatorBackend, base_url: str):
        self._backend = backend
        self._base_url = base_url

    async def authenticate(self, consumer_key: str, consumer_secret: str) -> dict:
        await self._backend.roundtrip(self.name, "oauth.generate")
        return {"access_token": self._backend.new_id("", 28), "expires_in": "3599"}

    async def stk_push(self, token: str, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "stkpush.process")
        checkout_id = f"ws_CO_{datetime.now().strftime('%d%m%Y%H%M%S')}{self._backend.new_id('', 8)}"
        merchant_id = self._backend.new_id("", 10)
        self._backend.put(checkout_id, {
            "object": "stk_checkout",
            "CheckoutRequestID": checkout_id,
            "MerchantRequestID": merchant_id,
            "Amount": body["Amount"],
            "PhoneNumber": body["PhoneNumber"],
            "ResultCode": "0",
            "ResultDesc": "The service request is processed successfully.",
        })
        return {
            "MerchantRequestID": merchant_id,
            "CheckoutRequestID": checkout_id,
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        }

    async def stk_query(self, token: str, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "stkpushquery.query")
        checkout = self._backend.get(body["CheckoutRequestID"])
        return {
            "ResponseCode": "0",
            "ResponseDescription": "The service request has been accepted successfully",
            "MerchantRequestID": checkout["MerchantRequestID"],
            "CheckoutRequestID": checkout["CheckoutRequestID"],
            "ResultCode": checkout["ResultCode"],
            "ResultDesc": checkout["ResultDesc"],
            "Amount": checkout["Amount"],
        }

    async def b2c_payment(self, token: str, body: dict) -> dict:
        await self._backend.roundtrip(self.name, "b2c.paymentrequest")
        conversation_id = f"AG_{datetime.now().strftime('%Y%m%d')}_{self._backend.new_id('', 20)}"
        self._backend.put(conversation_id, {"object": "b2c_payment", "ConversationID": conversation_id, **body})
        return {
            "ConversationID": conversation_id,
            "OriginatorConversationID": self._backend.new_id("", 20),
            "ResponseCode": "0",
            "ResponseDescription": "Accept the service request successfully.",
        }
