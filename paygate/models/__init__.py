from paygate.models.enums import (
    PaymentMethodType,
    ProviderType,
    RecurringFrequency,
    RecurringStatus,
    TransactionStatus,
    TransactionType,
    WebhookEventStatus,
)
from paygate.models.gateway import (
    Base,
    PaymentMethod,
    Provider,
    RecurringPaymentConfig,
    Transaction,
    WebhookEvent,
)

__all__ = [
    "Base",
    "Provider",
    "Transaction",
    "PaymentMethod",
    "RecurringPaymentConfig",
    "WebhookEvent",
    "PaymentMethodType",
    "ProviderType",
    "RecurringFrequency",
    "RecurringStatus",
    "TransactionStatus",
    "TransactionType",
    "WebhookEventStatus",
]
