"""
Transaction reconciliation engine.

Owns the local ledger of providers, transactions, saved payment methods,
subscriptions and webhook events, and keeps it consistent with what the
remote gateways report. Every operation:

  1. Opens its own session and database transaction
  2. Builds a fresh adapter from the provider's stored configuration
  3. Calls the provider and persists the normalized result and raw exchange

Status writes always pass through ``can_transition``, so a late or replayed
provider callback can never move a transaction backwards. Local validation
failures roll everything back; a provider failure leaves existing rows at
their last-known status.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.audit import webhook_log
from paygate.config import settings
from paygate.engine.retry import ProviderError, with_retry
from paygate.engine.transitions import NO_POLL_STATUSES, REFUNDABLE_STATUSES, can_transition
from paygate.errors import ConfigurationError, InvalidRequestError, NotFoundError
from paygate.models.enums import (
    PaymentMethodType,
    ProviderType,
    RecurringFrequency,
    RecurringStatus,
    TransactionStatus,
    TransactionType,
)
from paygate.models.gateway import (
    PaymentMethod,
    Provider,
    RecurringPaymentConfig,
    Transaction,
    WebhookEvent,
    _utcnow,
)
from paygate.providers import PaymentGatewayAdapter, TokenValidator, get_adapter
from paygate.providers.base import AuditTrail, WebhookResult

logger = logging.getLogger("paygate.service")

AdapterFactory = Callable[[str, dict], PaymentGatewayAdapter]

PROVIDER_UPDATABLE_FIELDS = frozenset({
    "name",
    "description",
    "configuration",
    "webhook_url",
    "webhook_secret",
    "is_active",
    "supports_refunds",
    "supports_partial_payments",
    "supports_recurring_payments",
})

# Statuses a caller may request for a subscription
SETTABLE_RECURRING_STATUSES = (RecurringStatus.ACTIVE, RecurringStatus.PAUSED, RecurringStatus.CANCELLED)
FINAL_RECURRING_STATUSES = (RecurringStatus.CANCELLED.value, RecurringStatus.COMPLETED.value)


def _cents(amount: float) -> int:
    """Convert an amount to hundredths, avoiding floating point issues."""
    return int(round(amount * 100))


def _compact(values: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


@dataclass
class PaymentCreationOutcome:
    transaction: Transaction
    payment_url: Optional[str] = None


@dataclass
class ExecutionOutcome:
    transaction: Transaction
    success: bool
    redirect_url: Optional[str] = None


@dataclass
class RefundResult:
    original: Transaction
    refund: Transaction
    success: bool


@dataclass
class WebhookOutcome:
    event: WebhookEvent
    related_transaction_id: Optional[str]
    message: str
    duplicate: bool = False


class PaymentGatewayService:
    """
    Reconciliation engine over an injected session factory.

    Args:
        session_factory: ``async_sessionmaker`` built with ``expire_on_commit=False``
            so returned rows stay readable after their transaction commits.
        adapter_factory: Builds an adapter from (provider_type, configuration).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        adapter_factory: AdapterFactory = get_adapter,
    ):
        self._sessions = session_factory
        self._adapter_factory = adapter_factory

    def _adapter(self, provider: Provider) -> PaymentGatewayAdapter:
        return self._adapter_factory(provider.provider_type, provider.configuration or {})

    @staticmethod
    async def _page(session: AsyncSession, model, filters: list, order_by: tuple, limit: int, offset: int):
        total = await session.scalar(select(func.count()).select_from(model).where(*filters))
        rows = await session.scalars(
            select(model).where(*filters).order_by(*order_by).limit(limit).offset(offset)
        )
        return list(rows.all()), total or 0

    @staticmethod
    async def _active_provider(session: AsyncSession, provider_id: str) -> Provider:
        provider = await session.get(Provider, provider_id)
        if provider is None:
            raise NotFoundError("Payment gateway provider not found")
        if not provider.is_active:
            raise InvalidRequestError("Payment gateway provider is not active")
        return provider

    @staticmethod
    async def _locked_transaction(session: AsyncSession, transaction_id: str) -> Optional[tuple[Transaction, Provider]]:
        row = (
            await session.execute(
                select(Transaction, Provider)
                .join(Provider, Provider.id == Transaction.provider_id)
                .where(Transaction.id == transaction_id)
                .with_for_update(of=Transaction)
            )
        ).first()
        return (row[0], row[1]) if row is not None else None

    # ── Providers ───────────────────────────────────────────────────────

    def _validate_configuration(self, provider_type: str, configuration: Any) -> None:
        try:
            self._adapter_factory(provider_type, configuration)
        except ConfigurationError as exc:
            raise ConfigurationError(f"Invalid payment gateway configuration: {exc.message}") from exc

    async def list_providers(
        self,
        provider_type: Optional[str] = None,
        is_active: Optional[bool] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[list[Provider], int]:
        filters = []
        if provider_type:
            filters.append(Provider.provider_type == provider_type)
        if is_active is not None:
            filters.append(Provider.is_active == is_active)
        async with self._sessions() as session:
            return await self._page(session, Provider, filters, (Provider.name.asc(),), limit, offset)

    async def get_provider(self, provider_id: str) -> Optional[Provider]:
        async with self._sessions() as session:
            return await session.get(Provider, provider_id)

    async def register_provider(
        self,
        *,
        code: str,
        name: str,
        provider_type: str,
        configuration: dict,
        description: Optional[str] = None,
        webhook_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        is_active: bool = True,
        supports_refunds: bool = True,
        supports_partial_payments: bool = True,
        supports_recurring_payments: bool = False,
        user_id: Optional[str] = None,
    ) -> Provider:
        """Register a provider after proving its configuration builds an adapter."""
        try:
            provider_type = ProviderType(provider_type).value
        except ValueError:
            raise InvalidRequestError(f"Unknown payment gateway type: {provider_type}")

        try:
            async with self._sessions() as session, session.begin():
                if await session.scalar(select(Provider.id).where(Provider.code == code)):
                    raise InvalidRequestError(f"Payment gateway provider with code '{code}' already exists")
                self._validate_configuration(provider_type, configuration)

                provider = Provider(
                    code=code,
                    name=name,
                    description=description,
                    provider_type=provider_type,
                    configuration=configuration,
                    webhook_url=webhook_url,
                    webhook_secret=webhook_secret,
                    is_active=is_active,
                    supports_refunds=supports_refunds,
                    supports_partial_payments=supports_partial_payments,
                    supports_recurring_payments=supports_recurring_payments,
                    created_by=user_id,
                    updated_by=user_id,
                )
                session.add(provider)
                await session.flush()
        except IntegrityError:
            raise InvalidRequestError(f"Payment gateway provider with code '{code}' already exists")

        logger.info("Registered %s provider %s (%s)", provider_type, provider.code, provider.id)
        return provider

    async def update_provider(self, provider_id: str, *, user_id: Optional[str] = None, **changes: Any) -> Optional[Provider]:
        unknown = set(changes) - PROVIDER_UPDATABLE_FIELDS
        if unknown:
            raise InvalidRequestError(f"Cannot update provider fields: {', '.join(sorted(unknown))}")

        async with self._sessions() as session, session.begin():
            provider = await session.get(Provider, provider_id, with_for_update=True)
            if provider is None:
                return None
            if "configuration" in changes:
                self._validate_configuration(provider.provider_type, changes["configuration"])
            for field_name, value in changes.items():
                setattr(provider, field_name, value)
            provider.updated_by = user_id

        logger.info("Updated provider %s: %s", provider.id, ", ".join(sorted(changes)) or "no changes")
        return provider

    async def delete_provider(self, provider_id: str) -> bool:
        """Delete a provider that nothing references. Returns False if it does not exist."""
        dependents = (
            (Transaction, "transactions"),
            (PaymentMethod, "payment methods"),
            (RecurringPaymentConfig, "recurring payment configurations"),
            (WebhookEvent, "webhook events"),
        )
        async with self._sessions() as session, session.begin():
            provider = await session.get(Provider, provider_id)
            if provider is None:
                return False
            for model, label in dependents:
                count = await session.scalar(
                    select(func.count()).select_from(model).where(model.provider_id == provider_id)
                )
                if count:
                    raise InvalidRequestError(f"Cannot delete provider with existing {label}")
            await session.delete(provider)

        logger.info("Deleted provider %s", provider_id)
        return True

    # ── Transactions ────────────────────────────────────────────────────

    async def list_transactions(
        self,
        provider_id: Optional[str] = None,
        status: Optional[str] = None,
        client_id: Optional[str] = None,
        loan_id: Optional[str] = None,
        savings_account_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        filters = []
        for column, value in (
            (Transaction.provider_id, provider_id),
            (Transaction.status, status),
            (Transaction.client_id, client_id),
            (Transaction.loan_id, loan_id),
            (Transaction.savings_account_id, savings_account_id),
        ):
            if value is not None:
                filters.append(column == value)
        if date_from is not None:
            filters.append(Transaction.created_at >= date_from)
        if date_to is not None:
            filters.append(Transaction.created_at <= date_to)

        async with self._sessions() as session:
            return await self._page(
                session, Transaction, filters, (Transaction.created_at.desc(),), limit, offset
            )

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        async with self._sessions() as session:
            return await session.get(Transaction, transaction_id)

    async def create_transaction(
        self,
        *,
        provider_id: str,
        amount: float,
        currency: str,
        client_id: Optional[str] = None,
        loan_id: Optional[str] = None,
        savings_account_id: Optional[str] = None,
        payment_method: Optional[str] = None,
        payment_details: Optional[dict] = None,
        reference_number: Optional[str] = None,
        callback_url: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> PaymentCreationOutcome:
        """
        Insert a pending payment and open it with the provider.

        A provider failure keeps the inserted row (still pending, with the
        error recorded) so the attempt is visible, then re-raises.
        """
        if amount is None or _cents(amount) <= 0:
            raise InvalidRequestError("Amount must be greater than zero")
        currency = (currency or "").upper()
        if len(currency) != 3 or not currency.isalpha():
            raise InvalidRequestError("Currency must be a three-letter ISO 4217 code")

        failure: Optional[ProviderError] = None
        payment_url = None

        async with self._sessions() as session, session.begin():
            provider = await self._active_provider(session, provider_id)
            adapter = self._adapter(provider)

            txn = Transaction(
                provider_id=provider.id,
                transaction_type=TransactionType.PAYMENT.value,
                amount=amount,
                currency=currency,
                status=TransactionStatus.PENDING.value,
                payment_method=payment_method,
                payment_details=payment_details,
                reference_number=reference_number,
                client_id=client_id,
                loan_id=loan_id,
                savings_account_id=savings_account_id,
                callback_url=callback_url,
                metadata_=metadata,
            )
            session.add(txn)
            await session.flush()

            context = {
                **(metadata or {}),
                **_compact({
                    "clientId": client_id,
                    "loanId": loan_id,
                    "savingsAccountId": savings_account_id,
                    "referenceNumber": reference_number,
                }),
            }
            try:
                call = await adapter.create_payment(
                    txn.id, amount, currency, callback_url=callback_url, metadata=context
                )
            except ProviderError as exc:
                txn.error_message = str(exc)
                if exc.audit is not None:
                    txn.request_payload = exc.audit.request
                    txn.response_payload = exc.audit.response
                failure = exc
            else:
                created = call.result
                txn.external_id = created.external_id
                if can_transition(txn.status, created.status):
                    txn.status = created.status.value
                txn.request_payload = call.audit.request
                txn.response_payload = call.audit.response
                payment_url = created.payment_url

        if failure is not None:
            logger.error("Provider rejected transaction %s on %s: %s", txn.id, provider.code, failure)
            raise failure

        logger.info(
            "Created transaction %s on %s: %.2f %s, status=%s external_id=%s",
            txn.id, provider.code, amount, currency, txn.status, txn.external_id,
        )
        return PaymentCreationOutcome(transaction=txn, payment_url=payment_url)

    async def execute_payment(
        self,
        transaction_id: str,
        *,
        payment_method: Optional[str] = None,
        payment_method_token: Optional[str] = None,
        payment_details: Optional[dict] = None,
    ) -> ExecutionOutcome:
        """
        Drive a pending transaction forward with the provider.

        The row is claimed with a conditional UPDATE before the provider is
        called. The claim holds the write lock until commit (a row lock on
        server databases, the database lock on SQLite), so a second execute
        waits and then finds the transaction no longer pending.
        """
        async with self._sessions() as session, session.begin():
            claim = await session.execute(
                update(Transaction)
                .where(Transaction.id == transaction_id, Transaction.status == TransactionStatus.PENDING.value)
                .values(version=Transaction.version + 1)
                .execution_options(synchronize_session=False)
            )
            row = await self._locked_transaction(session, transaction_id)
            if row is None:
                raise NotFoundError("Payment transaction not found")
            txn, provider = row
            if claim.rowcount != 1:
                raise InvalidRequestError(f"Payment transaction is already in {txn.status} status")

            adapter = self._adapter(provider)
            call = await adapter.execute_payment(
                txn.id,
                external_id=txn.external_id,
                payment_method=payment_method or txn.payment_method,
                payment_method_token=payment_method_token,
                payment_details=payment_details if payment_details is not None else txn.payment_details,
                amount=txn.amount,
                currency=txn.currency,
            )
            result = call.result

            status = result.status.value if can_transition(txn.status, result.status) else txn.status
            values = {
                "status": status,
                "error_message": result.error_message,
                "payment_method": payment_method or txn.payment_method,
                "payment_details": {
                    **(txn.payment_details or {}),
                    **(payment_details or {}),
                    **_compact(result.payment_details or {}),
                },
                "request_payload": call.audit.request,
                "response_payload": call.audit.response,
            }
            if result.external_id:
                values["external_id"] = result.external_id

            written = await session.execute(
                update(Transaction)
                .where(Transaction.id == txn.id, Transaction.status == TransactionStatus.PENDING.value)
                .values(**values, updated_at=_utcnow())
            )
            if written.rowcount != 1:
                raise InvalidRequestError("Payment transaction was modified concurrently")

        logger.info(
            "Executed transaction %s on %s: success=%s status=%s",
            txn.id, provider.code, result.success, status,
        )
        return ExecutionOutcome(transaction=txn, success=result.success, redirect_url=result.redirect_url)

    async def check_payment_status(self, transaction_id: str) -> Optional[Transaction]:
        """Poll the provider unless the local status is already settled."""
        async with self._sessions() as session, session.begin():
            row = await self._locked_transaction(session, transaction_id)
            if row is None:
                return None
            txn, provider = row
            if TransactionStatus(txn.status) in NO_POLL_STATUSES:
                return txn

            adapter = self._adapter(provider)
            call = await with_retry(
                adapter.check_payment_status,
                txn.id,
                txn.external_id,
                operation=f"{provider.code} status check for {txn.id}",
                max_retries=settings.status_check_max_retries,
            )
            result = call.result

            if result.status.value != txn.status:
                if can_transition(txn.status, result.status):
                    logger.info("Transaction %s: %s → %s", txn.id, txn.status, result.status.value)
                    txn.status = result.status.value
                    txn.error_message = result.error_message
                    if self._is_failed_refund(txn):
                        await self._restore_original(session, txn)
                else:
                    logger.warning(
                        "Ignoring %s report for transaction %s in %s status",
                        result.status.value, txn.id, txn.status,
                    )
                    return txn
            if result.external_id and not txn.external_id:
                txn.external_id = result.external_id
            if result.payment_details:
                txn.payment_details = {**(txn.payment_details or {}), **_compact(result.payment_details)}
            txn.request_payload = call.audit.request
            txn.response_payload = call.audit.response

        return txn

    @staticmethod
    async def _refunded_cents(session: AsyncSession, transaction_id: str) -> int:
        amounts = await session.scalars(
            select(Transaction.amount).where(
                Transaction.original_transaction_id == transaction_id,
                Transaction.transaction_type == TransactionType.REFUND.value,
                Transaction.status != TransactionStatus.FAILED.value,
            )
        )
        return sum(_cents(a) for a in amounts.all())

    @staticmethod
    def _refund_status(total_cents: int, refunded_cents: int) -> TransactionStatus:
        if refunded_cents <= 0:
            return TransactionStatus.COMPLETED
        if refunded_cents < total_cents:
            return TransactionStatus.PARTIALLY_REFUNDED
        return TransactionStatus.REFUNDED

    @staticmethod
    def _is_failed_refund(txn: Transaction) -> bool:
        return (
            txn.transaction_type == TransactionType.REFUND.value
            and txn.status == TransactionStatus.FAILED.value
            and txn.original_transaction_id is not None
        )

    async def _restore_original(self, session: AsyncSession, refund: Transaction) -> Optional[str]:
        """
        Recompute a payment after one of its refunds failed at the provider.

        The payment was moved to refunded / partially_refunded when the refund
        was accepted; with the failed refund no longer counted it may have to
        go back to partially_refunded or completed.
        """
        original = await session.scalar(
            select(Transaction).where(Transaction.id == refund.original_transaction_id).with_for_update()
        )
        if original is None or original.status not in (
            TransactionStatus.REFUNDED.value,
            TransactionStatus.PARTIALLY_REFUNDED.value,
        ):
            return None

        refunded = await self._refunded_cents(session, original.id)
        restored = self._refund_status(_cents(original.amount), refunded)
        if restored.value == original.status:
            return None
        logger.warning(
            "Refund %s failed; transaction %s: %s → %s",
            refund.id, original.id, original.status, restored.value,
        )
        previous, original.status = original.status, restored.value
        return f"Transaction {original.id}: {previous} → {restored.value}"

    async def _reported_refund_status(
        self,
        session: AsyncSession,
        txn: Transaction,
        result: WebhookResult,
    ) -> TransactionStatus:
        """Full or partial refund, from our refund rows and the provider's running total."""
        refunded = await self._refunded_cents(session, txn.id)
        if result.refunded_amount is not None:
            refunded = max(refunded, _cents(result.refunded_amount))
        elif not refunded:
            return TransactionStatus(result.status)
        status = self._refund_status(_cents(txn.amount), refunded)
        # A refund notice never reopens a payment
        return TransactionStatus(result.status) if status == TransactionStatus.COMPLETED else status

    async def refund_payment(
        self,
        transaction_id: str,
        *,
        amount: Optional[float] = None,
        reason: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> RefundResult:
        """
        Refund all or part of a completed payment.

        The refund is its own transaction row linked to the original. The
        original only moves to refunded / partially_refunded when the provider
        did not report the refund as failed.
        """
        async with self._sessions() as session, session.begin():
            row = await self._locked_transaction(session, transaction_id)
            if row is None:
                raise NotFoundError("Payment transaction not found")
            txn, provider = row
            if (
                txn.transaction_type != TransactionType.PAYMENT.value
                or TransactionStatus(txn.status) not in REFUNDABLE_STATUSES
            ):
                raise InvalidRequestError("Only completed transactions can be refunded")
            if not provider.supports_refunds:
                raise InvalidRequestError("This payment gateway provider does not support refunds")

            total_cents = _cents(txn.amount)
            refunded = await self._refunded_cents(session, txn.id)
            remaining = total_cents - refunded
            refund_cents = _cents(amount) if amount is not None else remaining
            if refund_cents <= 0 or refund_cents > total_cents or refund_cents > remaining:
                raise InvalidRequestError("Invalid refund amount")
            refund_amount = refund_cents / 100

            adapter = self._adapter(provider)
            call = await adapter.refund_payment(
                txn.id,
                txn.external_id,
                refund_amount,
                reason=reason,
                metadata=metadata,
                payment_details=txn.payment_details,
            )
            outcome = call.result

            refund = Transaction(
                provider_id=provider.id,
                transaction_type=TransactionType.REFUND.value,
                external_id=outcome.refund_id,
                amount=refund_amount,
                currency=txn.currency,
                status=outcome.status.value,
                error_message=outcome.error_message,
                payment_method=txn.payment_method,
                reference_number=f"REFUND-{txn.reference_number or txn.id}",
                client_id=txn.client_id,
                loan_id=txn.loan_id,
                savings_account_id=txn.savings_account_id,
                metadata_={**(metadata or {}), **_compact({"originalTransactionId": txn.id, "reason": reason})},
                original_transaction_id=txn.id,
                request_payload=call.audit.request,
                response_payload=call.audit.response,
            )
            session.add(refund)

            if outcome.status != TransactionStatus.FAILED:
                txn.status = self._refund_status(total_cents, refunded + refund_cents).value
            await session.flush()

        logger.info(
            "Refund %s of %.2f %s for transaction %s: status=%s, original now %s",
            refund.id, refund_amount, txn.currency, txn.id, refund.status, txn.status,
        )
        return RefundResult(original=txn, refund=refund, success=outcome.success)

    # ── Payment methods ─────────────────────────────────────────────────

    async def list_payment_methods(
        self,
        client_id: str,
        provider_id: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> list[PaymentMethod]:
        query = select(PaymentMethod).where(PaymentMethod.client_id == client_id)
        if provider_id is not None:
            query = query.where(PaymentMethod.provider_id == provider_id)
        if is_active is not None:
            query = query.where(PaymentMethod.is_active == is_active)
        query = query.order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc())
        async with self._sessions() as session:
            return list((await session.scalars(query)).all())

    async def save_payment_method(
        self,
        *,
        provider_id: str,
        client_id: str,
        payment_method_type: str,
        token: str,
        is_default: bool = False,
        masked_number: Optional[str] = None,
        expiry_date: Optional[str] = None,
        card_type: Optional[str] = None,
        holder_name: Optional[str] = None,
        billing_address: Optional[dict] = None,
        metadata: Optional[dict] = None,
    ) -> PaymentMethod:
        try:
            payment_method_type = PaymentMethodType(payment_method_type).value
        except ValueError:
            raise InvalidRequestError(f"Unknown payment method type: {payment_method_type}")
        if not token:
            raise InvalidRequestError("Payment method token is required")

        async with self._sessions() as session, session.begin():
            provider = await self._active_provider(session, provider_id)
            adapter = self._adapter(provider)
            if isinstance(adapter, TokenValidator):
                check = await adapter.validate_payment_method_token(token, payment_method_type)
                if not check.result:
                    raise InvalidRequestError("Payment method token failed provider validation")

            if is_default:
                await session.execute(
                    update(PaymentMethod)
                    .where(
                        PaymentMethod.provider_id == provider.id,
                        PaymentMethod.client_id == client_id,
                        PaymentMethod.is_default.is_(True),
                    )
                    .values(is_default=False, updated_at=_utcnow())
                )

            method = await session.scalar(
                select(PaymentMethod).where(
                    PaymentMethod.provider_id == provider.id,
                    PaymentMethod.client_id == client_id,
                    PaymentMethod.token == token,
                )
            )
            if method is None:
                method = PaymentMethod(provider_id=provider.id, client_id=client_id, token=token)
                session.add(method)
            method.payment_method_type = payment_method_type
            method.is_default = is_default
            method.is_active = True
            method.masked_number = masked_number
            method.expiry_date = expiry_date
            method.card_type = card_type
            method.holder_name = holder_name
            method.billing_address = billing_address
            method.metadata_ = metadata
            await session.flush()

        logger.info("Saved %s payment method %s for client %s", payment_method_type, method.id, client_id)
        return method

    async def delete_payment_method(self, payment_method_id: str) -> bool:
        """Soft delete: the row stays for audit, inactive and no longer default."""
        async with self._sessions() as session, session.begin():
            method = await session.get(PaymentMethod, payment_method_id)
            if method is None:
                return False
            method.is_active = False
            method.is_default = False
        logger.info("Deactivated payment method %s", payment_method_id)
        return True

    # ── Recurring payments ──────────────────────────────────────────────

    async def list_recurring_configs(
        self,
        client_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[list[RecurringPaymentConfig], int]:
        filters = []
        if client_id is not None:
            filters.append(RecurringPaymentConfig.client_id == client_id)
        if provider_id is not None:
            filters.append(RecurringPaymentConfig.provider_id == provider_id)
        if status is not None:
            filters.append(RecurringPaymentConfig.status == status)
        async with self._sessions() as session:
            return await self._page(
                session,
                RecurringPaymentConfig,
                filters,
                (RecurringPaymentConfig.created_at.desc(),),
                limit,
                offset,
            )

    async def create_recurring_payment(
        self,
        *,
        provider_id: str,
        client_id: str,
        payment_method_token: str,
        frequency: str,
        amount: float,
        currency: str,
        start_date: date,
        end_date: Optional[date] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
        user_id: Optional[str] = None,
    ) -> RecurringPaymentConfig:
        try:
            frequency = RecurringFrequency(frequency)
        except ValueError:
            raise InvalidRequestError(f"Unknown recurring frequency: {frequency}")
        if amount is None or _cents(amount) <= 0:
            raise InvalidRequestError("Amount must be greater than zero")
        if end_date is not None and end_date < start_date:
            raise InvalidRequestError("End date must not be before start date")
        currency = (currency or "").upper()

        async with self._sessions() as session, session.begin():
            provider = await self._active_provider(session, provider_id)
            if not provider.supports_recurring_payments:
                raise InvalidRequestError("This payment gateway provider does not support recurring payments")

            method_id = await session.scalar(
                select(PaymentMethod.id).where(
                    PaymentMethod.provider_id == provider.id,
                    PaymentMethod.client_id == client_id,
                    PaymentMethod.token == payment_method_token,
                    PaymentMethod.is_active.is_(True),
                )
            )
            if method_id is None:
                raise InvalidRequestError("Payment method not found or inactive")

            adapter = self._adapter(provider)
            call = await adapter.create_recurring_payment(
                payment_method_token,
                frequency,
                amount,
                currency,
                start_date,
                end_date=end_date,
                description=description,
                metadata={**(metadata or {}), "clientId": client_id},
            )
            created = call.result

            config = RecurringPaymentConfig(
                provider_id=provider.id,
                client_id=client_id,
                external_subscription_id=created.subscription_id,
                payment_method_token=payment_method_token,
                frequency=frequency.value,
                amount=amount,
                currency=currency,
                start_date=start_date,
                end_date=end_date,
                status=created.status.value,
                description=description,
                metadata_=metadata,
                created_by=user_id,
                updated_by=user_id,
            )
            session.add(config)
            await session.flush()

        logger.info(
            "Created %s subscription %s on %s for client %s",
            frequency.value, config.external_subscription_id, provider.code, client_id,
        )
        return config

    async def update_recurring_payment_status(
        self,
        config_id: str,
        status: str,
        user_id: Optional[str] = None,
    ) -> Optional[RecurringPaymentConfig]:
        """Change a subscription's status at the provider first, then locally."""
        try:
            status = RecurringStatus(status)
        except ValueError:
            raise InvalidRequestError(f"Unknown recurring payment status: {status}")
        if status not in SETTABLE_RECURRING_STATUSES:
            raise InvalidRequestError("Recurring payments can only be set to active, paused or cancelled")

        async with self._sessions() as session, session.begin():
            row = (
                await session.execute(
                    select(RecurringPaymentConfig, Provider)
                    .join(Provider, Provider.id == RecurringPaymentConfig.provider_id)
                    .where(RecurringPaymentConfig.id == config_id)
                    .with_for_update(of=RecurringPaymentConfig)
                )
            ).first()
            if row is None:
                return None
            config, provider = row[0], row[1]
            if config.status in FINAL_RECURRING_STATUSES:
                raise InvalidRequestError(f"Recurring payment is already {config.status}")
            if config.status == status.value:
                return config

            adapter = self._adapter(provider)
            call = await adapter.update_recurring_payment_status(config.external_subscription_id, status)
            if not call.result:
                raise InvalidRequestError(
                    f"{adapter.display_name} did not accept the subscription status change"
                )
            previous = config.status
            config.status = status.value
            config.updated_by = user_id

        logger.info("Subscription %s: %s → %s", config.id, previous, status.value)
        return config

    # ── Webhooks ────────────────────────────────────────────────────────

    async def process_webhook(self, provider_id: str, event_type: str, payload: dict) -> WebhookOutcome:
        """
        Apply one provider callback to the ledger.

        The delivery is logged before anything else. Redeliveries of an
        already processed event return the earlier outcome without touching
        the ledger. Any failure marks the event failed and re-raises.
        """
        if not isinstance(payload, dict):
            raise InvalidRequestError("Webhook payload must be an object")
        if not event_type:
            raise InvalidRequestError("Webhook event type is required")

        provider = await self.get_provider(provider_id)
        if provider is None:
            raise NotFoundError("Payment gateway provider not found")
        adapter = self._adapter(provider)

        key = webhook_log.idempotency_key(adapter, event_type, payload)
        event, duplicate = await webhook_log.record_received(
            self._sessions, provider.id, event_type, payload, key
        )
        if duplicate:
            return WebhookOutcome(
                event=event,
                related_transaction_id=event.related_transaction_id,
                message="Duplicate webhook delivery ignored",
                duplicate=True,
            )

        try:
            async with self._sessions() as session, session.begin():
                call = await adapter.process_webhook(event_type, payload)
                related_id, notes = await self._apply_webhook(session, provider, call.result, call.audit)
                stored = await session.get(WebhookEvent, event.id, with_for_update=True)
                message = "; ".join(notes) or "Webhook processed successfully"
                webhook_log.mark_processed(stored, related_id, message)
        except Exception as exc:
            logger.exception("Webhook %s (%s) for provider %s failed", event.id, event_type, provider.code)
            await webhook_log.mark_failed(self._sessions, event.id, str(exc) or exc.__class__.__name__)
            raise

        return WebhookOutcome(event=stored, related_transaction_id=related_id, message=message)

    async def _apply_webhook(
        self,
        session: AsyncSession,
        provider: Provider,
        result: WebhookResult,
        audit: AuditTrail,
    ) -> tuple[Optional[str], list[str]]:
        notes = [result.message] if result.message else []
        related_id = None

        txn = await self._match_transaction(session, provider.id, result.transaction_id, result.local_reference)
        if txn is not None:
            related_id = txn.id
            if result.status is not None:
                status = TransactionStatus(result.status)
                if (
                    txn.transaction_type == TransactionType.PAYMENT.value
                    and status in (TransactionStatus.REFUNDED, TransactionStatus.PARTIALLY_REFUNDED)
                ):
                    status = await self._reported_refund_status(session, txn, result)
                note = self._apply_status(txn, status, result)
                if note:
                    notes.append(note)
                    restored = await self._restore_original(session, txn) if self._is_failed_refund(txn) else None
                    if restored:
                        notes.append(restored)
            txn.response_payload = audit.response
        elif result.should_create_transaction and result.transaction_data is not None:
            if not result.transaction_id:
                notes.append("Skipped transaction creation: no provider transaction id")
            else:
                created = self._transaction_from_webhook(provider, result)
                session.add(created)
                await session.flush()
                related_id = created.id
                notes.append(f"Created transaction {created.id}")
                logger.info(
                    "Webhook created transaction %s (%s) on %s",
                    created.id, result.transaction_id, provider.code,
                )
        elif result.transaction_id or result.local_reference:
            notes.append("No matching transaction")

        if result.subscription_id and result.subscription_status is not None:
            note = await self._sync_subscription(session, provider.id, result.subscription_id, result.subscription_status)
            if note:
                notes.append(note)

        return related_id, notes

    @staticmethod
    async def _match_transaction(
        session: AsyncSession,
        provider_id: str,
        external_id: Optional[str],
        local_reference: Optional[str],
    ) -> Optional[Transaction]:
        if external_id:
            txn = await session.scalar(
                select(Transaction)
                .where(Transaction.provider_id == provider_id, Transaction.external_id == external_id)
                .order_by(Transaction.created_at.asc())
                .limit(1)
                .with_for_update()
            )
            if txn is not None:
                return txn
        if not local_reference:
            return None

        # Provider echoed our own id back, e.g. Razorpay notes or PayPal custom_id
        txn = await session.scalar(
            select(Transaction)
            .where(Transaction.provider_id == provider_id, Transaction.id == local_reference)
            .with_for_update()
        )
        if txn is not None and external_id and txn.external_id != external_id:
            txn.external_id = external_id
        return txn

    @staticmethod
    def _apply_status(txn: Transaction, new_status: TransactionStatus, result: WebhookResult) -> Optional[str]:
        if not can_transition(txn.status, new_status):
            logger.warning(
                "Webhook tried to move transaction %s from %s to %s, ignored",
                txn.id, txn.status, new_status.value,
            )
            return f"Ignored {new_status.value} update for transaction in {txn.status} status"

        note = None
        if txn.status != new_status.value:
            note = f"Transaction {txn.id}: {txn.status} → {new_status.value}"
            txn.status = new_status.value
            txn.error_message = result.error_message
        if result.payment_details:
            txn.payment_details = {**(txn.payment_details or {}), **_compact(result.payment_details)}
        return note

    @staticmethod
    def _transaction_from_webhook(provider: Provider, result: WebhookResult) -> Transaction:
        data = result.transaction_data
        return Transaction(
            provider_id=provider.id,
            transaction_type=TransactionType(data.transaction_type).value,
            external_id=result.transaction_id,
            amount=data.amount,
            currency=(data.currency or "").upper(),
            status=(result.status or TransactionStatus.PENDING).value,
            error_message=result.error_message,
            payment_method=data.payment_method,
            payment_details={**(data.payment_details or {}), **_compact(result.payment_details or {})},
            reference_number=data.reference_number,
            client_id=data.client_id,
            metadata_=data.metadata,
        )

    @staticmethod
    async def _sync_subscription(
        session: AsyncSession,
        provider_id: str,
        subscription_id: str,
        status: RecurringStatus,
    ) -> Optional[str]:
        config = await session.scalar(
            select(RecurringPaymentConfig)
            .where(
                RecurringPaymentConfig.provider_id == provider_id,
                RecurringPaymentConfig.external_subscription_id == subscription_id,
            )
            .with_for_update()
        )
        if config is None:
            return f"No recurring payment configuration for subscription {subscription_id}"
        if config.status == status.value:
            return None
        if config.status in FINAL_RECURRING_STATUSES:
            return f"Ignored {status.value} update for subscription already {config.status}"
        previous = config.status
        config.status = status.value
        logger.info("Subscription %s (%s): %s → %s", config.id, subscription_id, previous, status.value)
        return f"Subscription {subscription_id}: {previous} → {status.value}"
