"""Provider webhook routes"""

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from payhook.core.config import settings
from payhook.core.errors import WebhookValidationError
from payhook.core.logging import webhook_logger
from payhook.core.metrics import webhooks_received_counter
from payhook.db.session import get_db
from payhook.models.raw_event import ProcessingStatus
from payhook.services import audit_service
from payhook.services.event_store import persist_event
from payhook.services.payload_decoder import decode_payload, parse_body, signed_content
from payhook.schemas.webhooks import WebhookResponse
from payhook.services.signature_service import validate_webhook
from payhook.utils.time import utcnow

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = webhook_logger

# Never persisted with the raw event
_SENSITIVE_HEADERS = ("authorization", "cookie")


def _stored_headers(request: Request) -> dict:
    return {k: v for k, v in request.headers.items() if k.lower() not in _SENSITIVE_HEADERS}


@router.get("/health")
def webhooks_health():
    return {"status": "ok", "service": "webhooks", "timestamp": utcnow().isoformat()}


@router.post("/{provider}", response_model=WebhookResponse)
async def receive_webhook(provider: str, request: Request, db: Session = Depends(get_db)):
    """Receive a provider webhook

    Only a bad signature, a stale timestamp or an unreadable body get a non-200
    answer. Anything else is acknowledged so the provider does not retry
    forever; events that could not be queued are picked up by the sweep.
    """
    if provider.lower() != settings.PROVIDER_NAME:
        raise HTTPException(404, f"Unknown provider: {provider}")

    # Raw bytes: the signature covers them (or the inner order object)
    raw_body = await request.body()

    try:
        body = parse_body(raw_body)
        signature = body.get("signature") or request.headers.get(settings.signature_header)
        validate_webhook(
            signed_content(body, raw_body),
            str(signature) if signature is not None else None,
            request.headers.get(settings.timestamp_header)
        )
        normalized = decode_payload(body, raw_body)
    except WebhookValidationError as e:
        webhooks_received_counter.labels(result="rejected").inc()
        logger.warning(f"Rejected {provider} webhook: {e.error} - {e.message}")
        return JSONResponse(status_code=400, content={"error": e.error, "message": e.message})

    event_id = normalized.event_id
    try:
        audit_service.log_action(
            db, audit_service.WEBHOOK_RECEIVED, "raw_event", event_id,
            actor=f"provider:{provider}",
            metadata={
                "event_type": normalized.event_type,
                "raw_event_type": normalized.raw_event_type,
                "identity_source": normalized.identity_source,
            },
            commit=True
        )

        event, created = persist_event(db, normalized, body, headers=_stored_headers(request))

        if event.processing_status == ProcessingStatus.PROCESSED:
            webhooks_received_counter.labels(result="duplicate").inc()
            return {"success": True, "message": "Event already processed", "eventId": event_id}

        if event.processing_status == ProcessingStatus.PENDING:
            request.app.state.dispatcher.submit(event_id)
        else:
            logger.info(f"Redelivery of failed event {event_id}, waiting for reprocessing")

        webhooks_received_counter.labels(result="accepted" if created else "redelivered").inc()
        logger.info(f"Webhook {event_id} ({normalized.event_type}) received")
        return {"success": True, "message": "Event received and queued for processing", "eventId": event_id}
    except Exception as e:
        webhooks_received_counter.labels(result="deferred").inc()
        logger.error(f"Webhook {event_id} could not be stored or queued: {e}", exc_info=True)
        return {"success": True, "message": "Event received (processing may be delayed)", "eventId": event_id}
