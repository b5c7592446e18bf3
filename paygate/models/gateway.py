"""SQLAlchemy models for the payment gateway ledger."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Provider(Base):
    """
    A configured gateway integration.

    ``configuration`` holds credentials and environment selection. It is
    validated by building an adapter before any write, and read-only once an
    adapter has been constructed from it.
    """

    __tablename__ = "payment_gateway_provider"

    id = Column(String(36), primary_key=True, default=_new_id)
    code = Column(String(50), nullable=False, unique=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    provider_type = Column(String(20), nullable=False)
    configuration = Column(JSON, nullable=False, default=dict)
    webhook_url = Column(String(255), nullable=True)
    webhook_secret = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    supports_refunds = Column(Boolean, nullable=False, default=True)
    supports_partial_payments = Column(Boolean, nullable=False, default=True)
    supports_recurring_payments = Column(Boolean, nullable=False, default=False)

    created_by = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_by = Column(String(50), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Transaction(Base):
    """
    One money movement attempt against a provider.

    Rows are never deleted. A refund is a second row of type ``refund`` that
    points back at the payment through ``original_transaction_id``.
    """

    __tablename__ = "payment_gateway_transaction"
    __table_args__ = (
        Index("ix_transaction_provider_external", "provider_id", "external_id"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    provider_id = Column(String(36), ForeignKey("payment_gateway_provider.id"), nullable=False, index=True)
    transaction_type = Column(String(20), nullable=False, default="payment")
    external_id = Column(String(100), nullable=True)
    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    error_message = Column(Text, nullable=True)
    payment_method = Column(String(50), nullable=True)
    payment_details = Column(JSON, nullable=True)
    reference_number = Column(String(100), nullable=True)

    client_id = Column(String(50), nullable=True, index=True)
    loan_id = Column(String(50), nullable=True)
    savings_account_id = Column(String(50), nullable=True)
    callback_url = Column(String(255), nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    original_transaction_id = Column(
        String(36), ForeignKey("payment_gateway_transaction.id"), nullable=True, index=True
    )
    # Bumped by every execute claim; the claiming UPDATE serializes concurrent executes
    version = Column(Integer, nullable=False, default=0)

    # Last raw exchange with the provider
    request_payload = Column(JSON, nullable=True)
    response_payload = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class PaymentMethod(Base):
    """A saved, tokenized instrument. Only the provider token is stored."""

    __tablename__ = "payment_gateway_payment_method"
    __table_args__ = (
        UniqueConstraint("provider_id", "client_id", "token", name="uq_provider_client_token"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    provider_id = Column(String(36), ForeignKey("payment_gateway_provider.id"), nullable=False)
    client_id = Column(String(50), nullable=False, index=True)
    payment_method_type = Column(String(20), nullable=False)
    token = Column(String(255), nullable=False)
    is_default = Column(Boolean, nullable=False, default=False)
    masked_number = Column(String(30), nullable=True)
    expiry_date = Column(String(10), nullable=True)
    card_type = Column(String(30), nullable=True)
    holder_name = Column(String(100), nullable=True)
    billing_address = Column(JSON, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class RecurringPaymentConfig(Base):
    """A subscription registered with the provider."""

    __tablename__ = "payment_gateway_recurring_config"

    id = Column(String(36), primary_key=True, default=_new_id)
    provider_id = Column(String(36), ForeignKey("payment_gateway_provider.id"), nullable=False)
    client_id = Column(String(50), nullable=False, index=True)
    external_subscription_id = Column(String(100), nullable=True, index=True)
    payment_method_token = Column(String(255), nullable=False)
    frequency = Column(String(20), nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    status = Column(String(20), nullable=False, default="active")
    description = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)

    created_by = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_by = Column(String(50), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class WebhookEvent(Base):
    """
    Append-only record of an inbound provider callback.

    Only ``status``, ``processing_attempts``, ``error_message`` and
    ``related_transaction_id`` change after insert. The
    (provider_id, idempotency_key) pair rejects duplicate deliveries.
    """

    __tablename__ = "payment_gateway_webhook_event"
    __table_args__ = (
        UniqueConstraint("provider_id", "idempotency_key", name="uq_provider_idempotency_key"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    provider_id = Column(String(36), ForeignKey("payment_gateway_provider.id"), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    idempotency_key = Column(String(128), nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(String(20), nullable=False, default="received")
    related_transaction_id = Column(
        String(36), ForeignKey("payment_gateway_transaction.id"), nullable=True
    )
    error_message = Column(Text, nullable=True)
    processing_attempts = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
