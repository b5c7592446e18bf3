"""
Uniform payment gateway adapter contract.

Each supported gateway (Stripe, PayPal, Authorize.Net, M-Pesa, Square,
Razorpay) implements ``PaymentGatewayAdapter``. Adapters translate canonical
operations into provider calls and map provider status vocabularies back into
``TransactionStatus`` / ``RecurringStatus``.

Every adapter operation returns ``Audited[T]``: the canonical result plus the
raw request/response exchanged with the provider. Adapters keep no per-call
state, so one instance can never mix up audit payloads of two transactions.

Provider network access goes through ``self.client``. The bundled clients are
simulated (see ``paygate.providers.simulator``); a real HTTP client with the
same method names drops in at that seam.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, ClassVar, Generic, Optional, TypeVar

from paygate.engine.retry import ProviderError
from paygate.errors import ConfigurationError, InvalidRequestError
from paygate.models.enums import (
    ProviderType,
    RecurringFrequency,
    RecurringStatus,
    TransactionStatus,
    TransactionType,
)
from paygate.providers.simulator import SimulatorBackend, default_backend

logger = logging.getLogger("paygate.providers")

T = TypeVar("T")

ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})


def to_minor_units(amount: float, currency: str = "USD") -> int:
    """Convert a decimal amount to the provider's smallest unit (cents, paisa)."""
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(round(amount))
    return int(round(amount * 100))


def from_minor_units(value: int, currency: str = "USD") -> float:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return float(value)
    return round(value / 100, 2)


def count_occurrences(
    frequency: RecurringFrequency,
    start_date: date,
    end_date: Optional[date],
) -> Optional[int]:
    """
    Number of billing cycles between two dates, both inclusive.

    Returns None for open-ended schedules so each adapter can apply its own
    "until cancelled" convention.
    """
    if end_date is None:
        return None
    if end_date < start_date:
        raise InvalidRequestError("End date must not be before start date")

    days = (end_date - start_date).days
    months = (end_date.year - start_date.year) * 12 + end_date.month - start_date.month
    if end_date.day < start_date.day:
        months -= 1

    if frequency == RecurringFrequency.DAILY:
        return days + 1
    if frequency == RecurringFrequency.WEEKLY:
        return days // 7 + 1
    if frequency == RecurringFrequency.BIWEEKLY:
        return days // 14 + 1
    if frequency == RecurringFrequency.MONTHLY:
        return months + 1
    if frequency == RecurringFrequency.QUARTERLY:
        return months // 3 + 1
    if frequency == RecurringFrequency.ANNUAL:
        return months // 12 + 1
    raise InvalidRequestError(f"Cannot count occurrences for {frequency.value} frequency")


@dataclass
class AuditTrail:
    """Last raw request/response exchanged with the provider during one operation."""

    request: Optional[Any] = None
    response: Optional[Any] = None

    def record(self, request: Any, response: Any) -> None:
        self.request = request
        self.response = response


@dataclass
class Audited(Generic[T]):
    result: T
    audit: AuditTrail = field(default_factory=AuditTrail)


@dataclass
class PaymentCreation:
    status: TransactionStatus
    external_id: Optional[str] = None
    payment_url: Optional[str] = None


@dataclass
class PaymentExecution:
    """
    Outcome of executing a payment.

    ``success=False`` with ``status=pending`` and a ``redirect_url`` means
    the customer must complete a challenge (3-D Secure, buyer approval).
    ``external_id`` is set when execution revealed a new provider reference.
    """

    success: bool
    status: TransactionStatus
    error_message: Optional[str] = None
    redirect_url: Optional[str] = None
    payment_details: Optional[dict] = None
    external_id: Optional[str] = None


@dataclass
class PaymentStatusCheck:
    status: TransactionStatus
    external_id: Optional[str] = None
    error_message: Optional[str] = None
    payment_details: Optional[dict] = None


@dataclass
class RefundOutcome:
    success: bool
    status: TransactionStatus
    refund_id: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class SubscriptionCreation:
    status: RecurringStatus
    subscription_id: Optional[str] = None


@dataclass
class TransactionData:
    """Everything needed to materialize a provider-initiated transaction."""

    amount: float
    currency: str
    transaction_type: TransactionType = TransactionType.PAYMENT
    payment_method: Optional[str] = None
    payment_details: Optional[dict] = None
    reference_number: Optional[str] = None
    client_id: Optional[str] = None
    metadata: Optional[dict] = None


@dataclass
class WebhookResult:
    """
    Canonical interpretation of a provider callback.

    ``transaction_id`` is the provider's external reference. ``local_reference``
    is our own transaction id when the provider echoes it back (metadata,
    custom ids), used when the external id is not known locally yet.
    ``refunded_amount`` is the total refunded on the payment as the provider
    reports it, or at least the amount of the refund being announced.
    """

    transaction_id: Optional[str] = None
    status: Optional[TransactionStatus] = None
    error_message: Optional[str] = None
    payment_details: Optional[dict] = None
    message: Optional[str] = None
    should_create_transaction: bool = False
    transaction_data: Optional[TransactionData] = None
    local_reference: Optional[str] = None
    subscription_id: Optional[str] = None
    subscription_status: Optional[RecurringStatus] = None
    refunded_amount: Optional[float] = None


class PaymentGatewayAdapter(ABC):
    """Abstract base class for gateway adapters."""

    provider_type: ClassVar[ProviderType]
    display_name: ClassVar[str]
    supported_currencies: ClassVar[Optional[frozenset[str]]] = None

    STATUS_MAP: ClassVar[dict[str, TransactionStatus]] = {}
    SUBSCRIPTION_STATUS_MAP: ClassVar[dict[str, RecurringStatus]] = {}
    FREQUENCY_MAP: ClassVar[dict[RecurringFrequency, Any]] = {}

    def __init__(
        self,
        configuration: dict[str, Any],
        client: Any = None,
        backend: Optional[SimulatorBackend] = None,
    ):
        if not isinstance(configuration, dict):
            raise ConfigurationError(f"{self.display_name} configuration must be an object")
        self.validate_configuration(configuration)
        self.config = dict(configuration)
        self.client = client if client is not None else self.build_client(backend or default_backend())

    @classmethod
    @abstractmethod
    def validate_configuration(cls, configuration: dict[str, Any]) -> None:
        """Raise ConfigurationError if required settings are missing. No network access."""
        ...

    @abstractmethod
    def build_client(self, backend: SimulatorBackend) -> Any:
        """Build the provider client used when none is injected."""
        ...

    @abstractmethod
    async def create_payment(
        self,
        transaction_id: str,
        amount: float,
        currency: str,
        callback_url: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Audited[PaymentCreation]:
        ...

    @abstractmethod
    async def execute_payment(
        self,
        transaction_id: str,
        external_id: Optional[str] = None,
        payment_method: Optional[str] = None,
        payment_method_token: Optional[str] = None,
        payment_details: Optional[dict] = None,
        amount: Optional[float] = None,
        currency: Optional[str] = None,
    ) -> Audited[PaymentExecution]:
        ...

    @abstractmethod
    async def check_payment_status(
        self,
        transaction_id: str,
        external_id: Optional[str] = None,
    ) -> Audited[PaymentStatusCheck]:
        """Idempotent read of the provider's view of a payment."""
        ...

    @abstractmethod
    async def refund_payment(
        self,
        transaction_id: str,
        external_id: Optional[str],
        amount: float,
        reason: Optional[str] = None,
        metadata: Optional[dict] = None,
        payment_details: Optional[dict] = None,
    ) -> Audited[RefundOutcome]:
        """
        Refund a captured payment.

        Implementations verify server-side that a completed charge exists and
        that ``amount`` does not exceed what is still refundable.
        """
        ...

    @abstractmethod
    async def create_recurring_payment(
        self,
        payment_method_token: str,
        frequency: RecurringFrequency,
        amount: float,
        currency: str,
        start_date: date,
        end_date: Optional[date] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Audited[SubscriptionCreation]:
        ...

    @abstractmethod
    async def update_recurring_payment_status(
        self,
        subscription_id: Optional[str],
        status: RecurringStatus,
    ) -> Audited[bool]:
        ...

    @abstractmethod
    async def process_webhook(self, event_type: str, payload: dict) -> Audited[WebhookResult]:
        ...

    def webhook_event_id(self, payload: dict) -> Optional[str]:
        """Provider-assigned event id, if the payload carries one."""
        event_id = payload.get("id") if isinstance(payload, dict) else None
        return str(event_id) if event_id else None

    # Mapping helpers

    @classmethod
    def map_status(cls, provider_status: Optional[str]) -> TransactionStatus:
        """Unrecognized values stay pending so a later poll can resolve them."""
        if provider_status is None:
            return TransactionStatus.PENDING
        return cls.STATUS_MAP.get(str(provider_status), TransactionStatus.PENDING)

    @classmethod
    def map_subscription_status(cls, provider_status: Optional[str]) -> RecurringStatus:
        if provider_status is None:
            return RecurringStatus.ACTIVE
        return cls.SUBSCRIPTION_STATUS_MAP.get(str(provider_status), RecurringStatus.ACTIVE)

    @classmethod
    def map_frequency(cls, frequency: RecurringFrequency) -> Any:
        try:
            return cls.FREQUENCY_MAP[RecurringFrequency(frequency)]
        except (KeyError, ValueError):
            raise InvalidRequestError(
                f"{cls.display_name} does not support {getattr(frequency, 'value', frequency)} recurring payments"
            ) from None

    # Validation helpers

    @classmethod
    def _require_keys(cls, configuration: dict[str, Any], *keys: str) -> None:
        for key in keys:
            if not configuration.get(key):
                raise ConfigurationError(f"{cls.display_name} {key} is required")

    @classmethod
    def _require_environment(cls, configuration: dict[str, Any], allowed: tuple[str, ...]) -> None:
        environment = configuration.get("environment")
        if environment not in allowed:
            raise ConfigurationError(
                f"{cls.display_name} environment must be one of: {', '.join(allowed)}"
            )

    def _check_currency(self, currency: str) -> str:
        currency = (currency or "").upper()
        if self.supported_currencies is not None and currency not in self.supported_currencies:
            raise InvalidRequestError(
                f"{self.display_name} only supports {', '.join(sorted(self.supported_currencies))} currency"
            )
        return currency

    def _require_external_id(self, external_id: Optional[str], what: str = "External ID") -> str:
        if not external_id:
            raise InvalidRequestError(f"{what} is required for {self.display_name}")
        return external_id

    async def _send(self, trail: AuditTrail, operation: str, request: Any, call: Awaitable[Any]) -> Any:
        """Await a provider call, recording the exchange on ``trail``."""
        try:
            response = await call
        except ProviderError as exc:
            trail.record(request, {"error": str(exc), "statusCode": exc.status_code})
            exc.audit = trail
            logger.error("%s %s failed: %s", self.display_name, operation, exc)
            raise
        trail.record(request, response)
        return response


class TokenValidator(ABC):
    """Capability marker for adapters that can verify a saved payment token."""

    @abstractmethod
    async def validate_payment_method_token(
        self,
        token: str,
        payment_method_type: str,
    ) -> Audited[bool]:
        ...
