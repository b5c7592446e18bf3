"""
Append-only log of inbound provider webhooks.

Every delivery is recorded as ``received`` in its own committed database
transaction before the payload is interpreted, so nothing is lost if
processing later fails. Rows are keyed by (provider_id, idempotency_key):
a redelivery of an already processed event is reported as a duplicate and
never processed twice, while a previously failed event is processed again
on the same row.
"""

import hashlib
import json
import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.models.enums import WebhookEventStatus
from paygate.models.gateway import WebhookEvent
from paygate.providers.base import PaymentGatewayAdapter

logger = logging.getLogger("paygate.audit")


def idempotency_key(adapter: PaymentGatewayAdapter, event_type: str, payload: dict[str, Any]) -> str:
    """Provider event id when the payload has one, else a digest of the delivery."""
    event_id = adapter.webhook_event_id(payload)
    if event_id:
        return f"{event_type}:{event_id}"[:128]
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return "sha256:" + hashlib.sha256(f"{event_type}|{canonical}".encode()).hexdigest()


def _log(event: WebhookEvent, note: str = "") -> None:
    logger.info(
        "WEBHOOK | provider=%s event=%s type=%s status=%s attempts=%d | %s",
        event.provider_id,
        event.id,
        event.event_type,
        event.status,
        event.processing_attempts or 0,
        note,
    )


async def _find(session: AsyncSession, provider_id: str, key: str) -> Optional[WebhookEvent]:
    return await session.scalar(
        select(WebhookEvent)
        .where(WebhookEvent.provider_id == provider_id, WebhookEvent.idempotency_key == key)
        .with_for_update()
    )


async def record_received(
    session_factory: async_sessionmaker[AsyncSession],
    provider_id: str,
    event_type: str,
    payload: dict[str, Any],
    key: str,
) -> tuple[WebhookEvent, bool]:
    """
    Log a delivery before processing it.

    Returns:
        (event, duplicate). ``duplicate`` is True when an event with the same
        key was already processed; the caller must not process it again.
    """
    try:
        async with session_factory() as session, session.begin():
            existing = await _find(session, provider_id, key)
            if existing is not None:
                if existing.status == WebhookEventStatus.PROCESSED.value:
                    _log(existing, "duplicate delivery ignored")
                    return existing, True
                existing.status = WebhookEventStatus.RECEIVED.value
                _log(existing, "redelivery, reprocessing")
                return existing, False

            event = WebhookEvent(
                provider_id=provider_id,
                event_type=event_type,
                idempotency_key=key,
                payload=payload,
                status=WebhookEventStatus.RECEIVED.value,
                processing_attempts=0,
            )
            session.add(event)
            await session.flush()
            _log(event)
            return event, False
    except IntegrityError:
        # A concurrent delivery of the same event inserted first
        async with session_factory() as session:
            existing = await _find(session, provider_id, key)
            if existing is None:
                raise
            _log(existing, "concurrent duplicate delivery ignored")
            return existing, True


def mark_processed(event: WebhookEvent, related_transaction_id: Optional[str], note: str = "") -> None:
    """Mark an event processed. Call inside the processing database transaction."""
    event.status = WebhookEventStatus.PROCESSED.value
    event.related_transaction_id = related_transaction_id
    event.error_message = None
    _log(event, note)


async def mark_failed(
    session_factory: async_sessionmaker[AsyncSession],
    event_id: str,
    error: str,
) -> None:
    """Record a processing failure in a separate database transaction."""
    async with session_factory() as session, session.begin():
        event = await session.get(WebhookEvent, event_id)
        event.status = WebhookEventStatus.FAILED.value
        event.error_message = error
        event.processing_attempts = (event.processing_attempts or 0) + 1
        _log(event, error[:200])
