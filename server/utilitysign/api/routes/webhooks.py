from typing import Callable, Optional

from fastapi import APIRouter, Depends, Request

from utilitysign.api.dependencies.services import get_orchestrator, get_verifier, get_webhook_log
from utilitysign.core.logging import get_logger
from utilitysign.integrations.webhooks import (
    WebhookDelivery,
    WebhookError,
    WebhookEvent,
    WebhookLog,
    WebhookVerifier,
    parse_completion_callback,
    parse_lifecycle_event,
)
from utilitysign.schemas.webhook import WebhookAck
from utilitysign.services.order_store import StaleSessionError
from utilitysign.services.signing_orchestrator import SigningOrchestrator

logger = get_logger(__name__)
router = APIRouter(tags=["webhooks"])

Parser = Callable[[bytes], Optional[WebhookEvent]]


async def _process(
    request: Request,
    parser: Parser,
    orchestrator: SigningOrchestrator,
    verifier: WebhookVerifier,
    webhook_log: WebhookLog,
) -> WebhookAck:
    endpoint = request.url.path
    raw_body = await request.body()
    event: Optional[WebhookEvent] = None
    try:
        # signature is checked over the exact received bytes before any parsing
        verifier.require(raw_body, request.headers.get(verifier.header_name))
        event = parser(raw_body)
        if event is None:
            webhook_log.record(WebhookDelivery(endpoint=endpoint, outcome="ignored"))
            return WebhookAck(message="Event acknowledged and ignored", disposition="ignored")
        result = await orchestrator.apply_event(event)
    except WebhookError as exc:
        webhook_log.record(
            WebhookDelivery(
                endpoint=endpoint,
                outcome="rejected",
                event_type=event.type.value if event else None,
                session_id=event.session_id if event else None,
                order_ref=event.order_ref_meta if event else None,
                detail=exc.error_message,
            )
        )
        raise
    except StaleSessionError as exc:
        webhook_log.record(
            WebhookDelivery(
                endpoint=endpoint,
                outcome="conflict",
                event_type=event.type.value,
                session_id=event.session_id,
                order_ref=exc.order_ref,
                detail=str(exc),
            )
        )
        raise

    webhook_log.record(
        WebhookDelivery(
            endpoint=endpoint,
            outcome=result.disposition.value,
            event_type=event.type.value,
            session_id=event.session_id,
            order_ref=result.session.order_ref if result.session else event.order_ref_meta,
            detail=result.reason,
        )
    )
    logger.info(
        "webhook.processed",
        endpoint=endpoint,
        event_type=event.type.value,
        disposition=result.disposition.value,
    )
    message = "Webhook processed" if result.applied else "Event acknowledged and ignored"
    return WebhookAck(message=message, disposition=result.disposition.value)


@router.post("/criipto/webhook", response_model=WebhookAck)
async def lifecycle_webhook(
    request: Request,
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
    verifier: WebhookVerifier = Depends(get_verifier),
    webhook_log: WebhookLog = Depends(get_webhook_log),
) -> WebhookAck:
    return await _process(request, parse_lifecycle_event, orchestrator, verifier, webhook_log)


@router.post("/webhooks/signing-complete", response_model=WebhookAck)
async def signing_complete_webhook(
    request: Request,
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
    verifier: WebhookVerifier = Depends(get_verifier),
    webhook_log: WebhookLog = Depends(get_webhook_log),
) -> WebhookAck:
    return await _process(request, parse_completion_callback, orchestrator, verifier, webhook_log)
