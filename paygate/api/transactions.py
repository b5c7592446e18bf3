"""
Payment transaction endpoints.

POST /transactions/create  — Open a payment with the provider.
POST /transactions/execute — Confirm / capture a pending payment.
POST /transactions/status  — Reconcile a transaction with the provider.
POST /transactions/refund  — Full or partial refund of a completed payment.
POST /transactions/list    — Filtered, newest first.
POST /transactions/get     — One transaction.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import Field

from paygate.api.common import ActionRequest, CamelModel, get_service
from paygate.engine.service import PaymentGatewayService
from paygate.errors import NotFoundError
from paygate.models.gateway import Transaction

router = APIRouter(prefix="/transactions", tags=["transactions"])


class CreateTransactionInput(CamelModel):
    provider_id: str
    amount: float = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    client_id: Optional[str] = None
    loan_id: Optional[str] = None
    savings_account_id: Optional[str] = None
    payment_method: Optional[str] = None
    payment_details: Optional[dict] = None
    reference_number: Optional[str] = None
    callback_url: Optional[str] = None
    metadata: Optional[dict] = None


class ExecutePaymentInput(CamelModel):
    transaction_id: str
    payment_method: Optional[str] = None
    payment_method_token: Optional[str] = None
    payment_details: Optional[dict] = None


class TransactionIdInput(CamelModel):
    transaction_id: str


class RefundInput(CamelModel):
    transaction_id: str
    amount: Optional[float] = Field(None, gt=0)
    reason: Optional[str] = None
    metadata: Optional[dict] = None


class ListTransactionsInput(CamelModel):
    provider_id: Optional[str] = None
    status: Optional[str] = None
    client_id: Optional[str] = None
    loan_id: Optional[str] = None
    savings_account_id: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: int = Field(20, ge=1, le=100)
    offset: int = Field(0, ge=0)


class TransactionResponse(CamelModel):
    id: str
    provider_id: str
    transaction_type: str
    external_id: Optional[str]
    amount: float
    currency: str
    status: str
    error_message: Optional[str]
    payment_method: Optional[str]
    payment_details: Optional[dict]
    reference_number: Optional[str]
    client_id: Optional[str]
    loan_id: Optional[str]
    savings_account_id: Optional[str]
    callback_url: Optional[str]
    metadata: Optional[dict]
    original_transaction_id: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


class TransactionListResponse(CamelModel):
    transactions: list[TransactionResponse]
    total_count: int


class CreateTransactionResponse(CamelModel):
    transaction_id: str
    external_id: Optional[str]
    status: str
    payment_url: Optional[str]


class ExecutePaymentResponse(CamelModel):
    success: bool
    transaction_id: str
    external_id: Optional[str]
    status: str
    error_message: Optional[str]
    redirect_url: Optional[str]


class RefundResponse(CamelModel):
    success: bool
    transaction_id: str
    refund_transaction_id: str
    refund_external_id: Optional[str]
    amount: float
    status: str
    original_status: str
    error_message: Optional[str]


def _transaction_to_response(txn: Transaction) -> TransactionResponse:
    return TransactionResponse(
        id=txn.id,
        provider_id=txn.provider_id,
        transaction_type=txn.transaction_type,
        external_id=txn.external_id,
        amount=txn.amount,
        currency=txn.currency,
        status=txn.status,
        error_message=txn.error_message,
        payment_method=txn.payment_method,
        payment_details=txn.payment_details,
        reference_number=txn.reference_number,
        client_id=txn.client_id,
        loan_id=txn.loan_id,
        savings_account_id=txn.savings_account_id,
        callback_url=txn.callback_url,
        metadata=txn.metadata_,
        original_transaction_id=txn.original_transaction_id,
        created_at=txn.created_at,
        updated_at=txn.updated_at,
    )


@router.post("/create", response_model=CreateTransactionResponse)
async def create_transaction(
    body: ActionRequest[CreateTransactionInput],
    service: PaymentGatewayService = Depends(get_service),
):
    outcome = await service.create_transaction(**body.input.model_dump())
    txn = outcome.transaction
    return CreateTransactionResponse(
        transaction_id=txn.id,
        external_id=txn.external_id,
        status=txn.status,
        payment_url=outcome.payment_url,
    )


@router.post("/execute", response_model=ExecutePaymentResponse)
async def execute_payment(
    body: ActionRequest[ExecutePaymentInput],
    service: PaymentGatewayService = Depends(get_service),
):
    params = body.input
    outcome = await service.execute_payment(
        params.transaction_id,
        payment_method=params.payment_method,
        payment_method_token=params.payment_method_token,
        payment_details=params.payment_details,
    )
    txn = outcome.transaction
    return ExecutePaymentResponse(
        success=outcome.success,
        transaction_id=txn.id,
        external_id=txn.external_id,
        status=txn.status,
        error_message=txn.error_message,
        redirect_url=outcome.redirect_url,
    )


@router.post("/status", response_model=TransactionResponse)
async def check_payment_status(
    body: ActionRequest[TransactionIdInput],
    service: PaymentGatewayService = Depends(get_service),
):
    txn = await service.check_payment_status(body.input.transaction_id)
    if txn is None:
        raise NotFoundError("Payment transaction not found")
    return _transaction_to_response(txn)


@router.post("/refund", response_model=RefundResponse)
async def refund_payment(
    body: ActionRequest[RefundInput],
    service: PaymentGatewayService = Depends(get_service),
):
    params = body.input
    result = await service.refund_payment(
        params.transaction_id,
        amount=params.amount,
        reason=params.reason,
        metadata=params.metadata,
    )
    return RefundResponse(
        success=result.success,
        transaction_id=result.original.id,
        refund_transaction_id=result.refund.id,
        refund_external_id=result.refund.external_id,
        amount=result.refund.amount,
        status=result.refund.status,
        original_status=result.original.status,
        error_message=result.refund.error_message,
    )


@router.post("/list", response_model=TransactionListResponse)
async def list_transactions(
    body: ActionRequest[ListTransactionsInput],
    service: PaymentGatewayService = Depends(get_service),
):
    transactions, total = await service.list_transactions(**body.input.model_dump())
    return TransactionListResponse(
        transactions=[_transaction_to_response(t) for t in transactions],
        total_count=total,
    )


@router.post("/get", response_model=TransactionResponse)
async def get_transaction(
    body: ActionRequest[TransactionIdInput],
    service: PaymentGatewayService = Depends(get_service),
):
    txn = await service.get_transaction(body.input.transaction_id)
    if txn is None:
        raise NotFoundError("Payment transaction not found")
    return _transaction_to_response(txn)
