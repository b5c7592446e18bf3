"""
Inbound provider webhook endpoint.

POST /webhooks/process — Log, deduplicate and apply one provider callback.

Redeliveries of an already processed event answer 200 with ``duplicate``
set, so providers stop retrying them.
"""

from typing import Optional

from fastapi import APIRouter, Depends

from paygate.api.common import ActionRequest, CamelModel, get_service
from paygate.engine.service import PaymentGatewayService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class ProcessWebhookInput(CamelModel):
    provider_id: str
    event_type: str
    payload: dict


class WebhookResponse(CamelModel):
    success: bool
    event_id: str
    status: str
    duplicate: bool
    related_transaction_id: Optional[str]
    message: str


@router.post("/process", response_model=WebhookResponse)
async def process_webhook(
    body: ActionRequest[ProcessWebhookInput],
    service: PaymentGatewayService = Depends(get_service),
):
    params = body.input
    outcome = await service.process_webhook(params.provider_id, params.event_type, params.payload)
    return WebhookResponse(
        success=True,
        event_id=outcome.event.id,
        status=outcome.event.status,
        duplicate=outcome.duplicate,
        related_transaction_id=outcome.related_transaction_id,
        message=outcome.message,
    )
