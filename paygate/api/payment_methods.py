"""
Saved payment method endpoints.

POST /payment-methods/save   — Validate a provider token and store it for a client.
POST /payment-methods/delete — Deactivate a saved method.
POST /payment-methods/list   — A client's methods, default first.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends

from paygate.api.common import ActionRequest, CamelModel, SuccessResponse, get_service
from paygate.engine.service import PaymentGatewayService
from paygate.errors import NotFoundError
from paygate.models.gateway import PaymentMethod

router = APIRouter(prefix="/payment-methods", tags=["payment-methods"])


class SavePaymentMethodInput(CamelModel):
    provider_id: str
    client_id: str
    payment_method_type: str
    token: str
    is_default: bool = False
    masked_number: Optional[str] = None
    expiry_date: Optional[str] = None
    card_type: Optional[str] = None
    holder_name: Optional[str] = None
    billing_address: Optional[dict] = None
    metadata: Optional[dict] = None


class PaymentMethodIdInput(CamelModel):
    payment_method_id: str


class ListPaymentMethodsInput(CamelModel):
    client_id: str
    provider_id: Optional[str] = None
    is_active: Optional[bool] = None


class PaymentMethodResponse(CamelModel):
    id: str
    provider_id: str
    client_id: str
    payment_method_type: str
    token: str
    is_default: bool
    masked_number: Optional[str]
    expiry_date: Optional[str]
    card_type: Optional[str]
    holder_name: Optional[str]
    billing_address: Optional[dict]
    metadata: Optional[dict]
    is_active: bool
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


class PaymentMethodListResponse(CamelModel):
    payment_methods: list[PaymentMethodResponse]


def _method_to_response(method: PaymentMethod) -> PaymentMethodResponse:
    return PaymentMethodResponse(
        id=method.id,
        provider_id=method.provider_id,
        client_id=method.client_id,
        payment_method_type=method.payment_method_type,
        token=method.token,
        is_default=method.is_default,
        masked_number=method.masked_number,
        expiry_date=method.expiry_date,
        card_type=method.card_type,
        holder_name=method.holder_name,
        billing_address=method.billing_address,
        metadata=method.metadata_,
        is_active=method.is_active,
        created_at=method.created_at,
        updated_at=method.updated_at,
    )


@router.post("/save", response_model=PaymentMethodResponse)
async def save_payment_method(
    body: ActionRequest[SavePaymentMethodInput],
    service: PaymentGatewayService = Depends(get_service),
):
    method = await service.save_payment_method(**body.input.model_dump())
    return _method_to_response(method)


@router.post("/delete", response_model=SuccessResponse)
async def delete_payment_method(
    body: ActionRequest[PaymentMethodIdInput],
    service: PaymentGatewayService = Depends(get_service),
):
    if not await service.delete_payment_method(body.input.payment_method_id):
        raise NotFoundError("Payment method not found")
    return SuccessResponse()


@router.post("/list", response_model=PaymentMethodListResponse)
async def list_payment_methods(
    body: ActionRequest[ListPaymentMethodsInput],
    service: PaymentGatewayService = Depends(get_service),
):
    methods = await service.list_payment_methods(**body.input.model_dump())
    return PaymentMethodListResponse(payment_methods=[_method_to_response(m) for m in methods])
