"""Enumerations for the payment gateway domain model."""

from enum import Enum


class ProviderType(str, Enum):
    """Supported gateway integrations. ``custom`` is reserved and has no adapter."""

    STRIPE = "stripe"
    PAYPAL = "paypal"
    AUTHORIZE_NET = "authorize_net"
    MPESA = "mpesa"
    SQUARE = "square"
    RAZORPAY = "razorpay"
    CUSTOM = "custom"


class TransactionStatus(str, Enum):
    """Canonical transaction status every adapter normalizes into."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    AUTHORIZED = "authorized"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class TransactionType(str, Enum):
    PAYMENT = "payment"
    REFUND = "refund"
    AUTHORIZATION = "authorization"
    CAPTURE = "capture"
    VOID = "void"


class PaymentMethodType(str, Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    BANK_TRANSFER = "bank_transfer"
    BANK_ACCOUNT = "bank_account"
    MOBILE_MONEY = "mobile_money"
    WALLET = "wallet"
    CASH = "cash"
    OTHER = "other"


class RecurringFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"
    CUSTOM = "custom"


class RecurringStatus(str, Enum):
    """Lifecycle states for a recurring payment configuration."""

    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookEventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"
