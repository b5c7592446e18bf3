"""
Payment gateway provider endpoints.

POST /providers/list     — Paginated providers, optionally by type or active flag.
POST /providers/get      — One provider.
POST /providers/register — Register a provider; its configuration must build an adapter.
POST /providers/update   — Change name, flags or configuration.
POST /providers/delete   — Delete a provider nothing references yet.

Configuration values that look like credentials are never echoed back.
"""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import Field

from paygate.api.common import ActionRequest, CamelModel, SuccessResponse, get_service
from paygate.engine.service import PaymentGatewayService
from paygate.errors import NotFoundError
from paygate.models.gateway import Provider

router = APIRouter(prefix="/providers", tags=["providers"])

REDACTED = "********"
SECRET_MARKERS = ("secret", "key", "password", "passkey", "token", "credential")


def redact_configuration(configuration: Optional[dict]) -> dict:
    """Mask values whose key names look like credentials, recursively."""
    redacted: dict[str, Any] = {}
    for name, value in (configuration or {}).items():
        if isinstance(value, dict):
            redacted[name] = redact_configuration(value)
        elif value not in (None, "") and any(marker in name.lower() for marker in SECRET_MARKERS):
            redacted[name] = REDACTED
        else:
            redacted[name] = value
    return redacted


class ListProvidersInput(CamelModel):
    provider_type: Optional[str] = None
    is_active: Optional[bool] = None
    limit: int = Field(10, ge=1, le=100)
    offset: int = Field(0, ge=0)


class ProviderIdInput(CamelModel):
    provider_id: str


class RegisterProviderInput(CamelModel):
    code: str = Field(min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=100)
    provider_type: str
    configuration: dict
    description: Optional[str] = None
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    is_active: bool = True
    supports_refunds: bool = True
    supports_partial_payments: bool = True
    supports_recurring_payments: bool = False


class UpdateProviderInput(CamelModel):
    provider_id: str
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    configuration: Optional[dict] = None
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    is_active: Optional[bool] = None
    supports_refunds: Optional[bool] = None
    supports_partial_payments: Optional[bool] = None
    supports_recurring_payments: Optional[bool] = None


class ProviderResponse(CamelModel):
    id: str
    code: str
    name: str
    description: Optional[str]
    provider_type: str
    configuration: dict
    webhook_url: Optional[str]
    has_webhook_secret: bool
    is_active: bool
    supports_refunds: bool
    supports_partial_payments: bool
    supports_recurring_payments: bool
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


class ProviderListResponse(CamelModel):
    providers: list[ProviderResponse]
    total_count: int


def _provider_to_response(provider: Provider) -> ProviderResponse:
    return ProviderResponse(
        id=provider.id,
        code=provider.code,
        name=provider.name,
        description=provider.description,
        provider_type=provider.provider_type,
        configuration=redact_configuration(provider.configuration),
        webhook_url=provider.webhook_url,
        has_webhook_secret=bool(provider.webhook_secret),
        is_active=provider.is_active,
        supports_refunds=provider.supports_refunds,
        supports_partial_payments=provider.supports_partial_payments,
        supports_recurring_payments=provider.supports_recurring_payments,
        created_at=provider.created_at,
        updated_at=provider.updated_at,
    )


@router.post("/list", response_model=ProviderListResponse)
async def list_providers(
    body: ActionRequest[ListProvidersInput],
    service: PaymentGatewayService = Depends(get_service),
):
    params = body.input
    providers, total = await service.list_providers(
        provider_type=params.provider_type,
        is_active=params.is_active,
        limit=params.limit,
        offset=params.offset,
    )
    return ProviderListResponse(
        providers=[_provider_to_response(p) for p in providers],
        total_count=total,
    )


@router.post("/get", response_model=ProviderResponse)
async def get_provider(
    body: ActionRequest[ProviderIdInput],
    service: PaymentGatewayService = Depends(get_service),
):
    provider = await service.get_provider(body.input.provider_id)
    if provider is None:
        raise NotFoundError("Payment gateway provider not found")
    return _provider_to_response(provider)


@router.post("/register", response_model=ProviderResponse)
async def register_provider(
    body: ActionRequest[RegisterProviderInput],
    service: PaymentGatewayService = Depends(get_service),
):
    provider = await service.register_provider(**body.input.model_dump(), user_id=body.user_id())
    return _provider_to_response(provider)


@router.post("/update", response_model=ProviderResponse)
async def update_provider(
    body: ActionRequest[UpdateProviderInput],
    service: PaymentGatewayService = Depends(get_service),
):
    changes = body.input.model_dump(exclude_unset=True, exclude={"provider_id"})
    provider = await service.update_provider(body.input.provider_id, user_id=body.user_id(), **changes)
    if provider is None:
        raise NotFoundError("Payment gateway provider not found")
    return _provider_to_response(provider)


@router.post("/delete", response_model=SuccessResponse)
async def delete_provider(
    body: ActionRequest[ProviderIdInput],
    service: PaymentGatewayService = Depends(get_service),
):
    if not await service.delete_provider(body.input.provider_id):
        raise NotFoundError("Payment gateway provider not found")
    return SuccessResponse()
