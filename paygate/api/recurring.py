"""
Recurring payment endpoints.

POST /recurring/create        — Create a provider subscription for a saved method.
POST /recurring/update-status — Pause, resume or cancel a subscription.
POST /recurring/list          — Filtered subscriptions, newest first.
"""

from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import Field

from paygate.api.common import ActionRequest, CamelModel, get_service
from paygate.engine.service import PaymentGatewayService
from paygate.errors import NotFoundError
from paygate.models.gateway import RecurringPaymentConfig

router = APIRouter(prefix="/recurring", tags=["recurring"])


class CreateRecurringInput(CamelModel):
    provider_id: str
    client_id: str
    payment_method_token: str
    frequency: str
    amount: float = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    start_date: date
    end_date: Optional[date] = None
    description: Optional[str] = None
    metadata: Optional[dict] = None


class UpdateRecurringStatusInput(CamelModel):
    recurring_payment_id: str
    status: str


class ListRecurringInput(CamelModel):
    client_id: Optional[str] = None
    provider_id: Optional[str] = None
    status: Optional[str] = None
    limit: int = Field(10, ge=1, le=100)
    offset: int = Field(0, ge=0)


class RecurringPaymentResponse(CamelModel):
    id: str
    provider_id: str
    client_id: str
    external_subscription_id: Optional[str]
    payment_method_token: str
    frequency: str
    amount: float
    currency: str
    start_date: date
    end_date: Optional[date]
    status: str
    description: Optional[str]
    metadata: Optional[dict]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


class RecurringListResponse(CamelModel):
    recurring_payments: list[RecurringPaymentResponse]
    total_count: int


def _config_to_response(config: RecurringPaymentConfig) -> RecurringPaymentResponse:
    return RecurringPaymentResponse(
        id=config.id,
        provider_id=config.provider_id,
        client_id=config.client_id,
        external_subscription_id=config.external_subscription_id,
        payment_method_token=config.payment_method_token,
        frequency=config.frequency,
        amount=config.amount,
        currency=config.currency,
        start_date=config.start_date,
        end_date=config.end_date,
        status=config.status,
        description=config.description,
        metadata=config.metadata_,
        created_at=config.created_at,
        updated_at=config.updated_at,
    )


@router.post("/create", response_model=RecurringPaymentResponse)
async def create_recurring_payment(
    body: ActionRequest[CreateRecurringInput],
    service: PaymentGatewayService = Depends(get_service),
):
    config = await service.create_recurring_payment(**body.input.model_dump(), user_id=body.user_id())
    return _config_to_response(config)


@router.post("/update-status", response_model=RecurringPaymentResponse)
async def update_recurring_payment_status(
    body: ActionRequest[UpdateRecurringStatusInput],
    service: PaymentGatewayService = Depends(get_service),
):
    config = await service.update_recurring_payment_status(
        body.input.recurring_payment_id, body.input.status, user_id=body.user_id()
    )
    if config is None:
        raise NotFoundError("Recurring payment configuration not found")
    return _config_to_response(config)


@router.post("/list", response_model=RecurringListResponse)
async def list_recurring_payments(
    body: ActionRequest[ListRecurringInput],
    service: PaymentGatewayService = Depends(get_service),
):
    configs, total = await service.list_recurring_configs(**body.input.model_dump())
    return RecurringListResponse(
        recurring_payments=[_config_to_response(c) for c in configs],
        total_count=total,
    )
