import json
import logging
from datetime import datetime, timezone

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.security import WebhookSignatureError, require_hmac_signature
from app.core.settings import settings
from app.db.session import get_db
from app.deps import client_ip, require_roles
from app.models.user import Role, User
from app.models.webhook_event import WebhookEvent, WebhookSource
from app.schemas.webhook import WebhookAck, WebhookEventOut, WebhookHealthOut
from app.services import stripe_client
from app.services.heyflow import event_type_of, process_heyflow_event, provider_event_id
from app.services.rate_limit import SlidingWindowLimiter
from app.services.stripe_events import process_stripe_event, sanitize_event
from app.services.webhook_events import record_event, reprocess_event, run_event, webhook_stats

heyflow_logger = logging.getLogger("eonmeds.webhooks.heyflow")
stripe_logger = logging.getLogger("eonmeds.webhooks.stripe")
logger = logging.getLogger("eonmeds.webhooks")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

webhook_limiter = SlidingWindowLimiter(
    max_events=settings.webhook_requests_per_minute, window_seconds=60
)


async def raw_body(request: Request) -> bytes:
    return await request.body()


def enforce_rate_limit(request: Request, scope: str) -> None:
    retry_after = webhook_limiter.hit(f"{scope}:{client_ip(request) or 'unknown'}")
    if retry_after is not None:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many webhook requests",
            headers={"Retry-After": str(retry_after)},
        )


@router.post("/heyflow", response_model=WebhookAck)
def heyflow_webhook(
    request: Request,
    body: bytes = Depends(raw_body),
    db: Session = Depends(get_db),
    x_heyflow_signature: str | None = Header(default=None),
):
    if settings.heyflow_signature_required:
        try:
            require_hmac_signature(body, x_heyflow_signature, settings.heyflow_webhook_secret)
        except WebhookSignatureError as exc:
            heyflow_logger.warning("Rejected HeyFlow webhook: %s", exc)
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))
    else:
        heyflow_logger.warning("HeyFlow signature verification skipped")
    enforce_rate_limit(request, "heyflow")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    event, is_new = record_event(
        db,
        source=WebhookSource.heyflow,
        provider_event_id=provider_event_id(payload),
        event_type=event_type_of(payload),
        payload=payload,
    )
    event_id = event.id
    if not is_new and event.processed:
        heyflow_logger.info("HeyFlow event %s already processed", event_id)
        return WebhookAck(eventId=event_id, duplicate=True, message="Event already processed")

    try:
        run_event(db, event, process_heyflow_event)
    except Exception as exc:
        # Stored on the event for reprocessing; HeyFlow only needs the ack.
        heyflow_logger.error("HeyFlow event %s not processed: %s", event_id, exc.__class__.__name__)
        return WebhookAck(eventId=event_id, message="Webhook received but processing failed")
    return WebhookAck(eventId=event_id, message="Webhook processed successfully")


@router.post("/stripe", response_model=WebhookAck)
def stripe_webhook(
    request: Request,
    body: bytes = Depends(raw_body),
    db: Session = Depends(get_db),
    stripe_signature: str | None = Header(default=None),
):
    if not settings.stripe_webhook_secret:
        stripe_logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not set")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured",
        )
    enforce_rate_limit(request, "stripe")
    try:
        event = stripe_client.construct_event(body, stripe_signature, settings.stripe_webhook_secret)
    except (stripe.SignatureVerificationError, ValueError):
        stripe_logger.warning("Stripe webhook signature verification failed")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook signature verification failed",
        )

    stored, is_new = record_event(
        db,
        source=WebhookSource.stripe,
        provider_event_id=event["id"],
        event_type=event.get("type") or "unknown",
        payload=sanitize_event(event),
    )
    event_id = stored.id
    if not is_new and stored.processed:
        stripe_logger.info("Stripe event %s already processed", event["id"])
        return WebhookAck(eventId=event_id, duplicate=True)

    try:
        run_event(db, stored, process_stripe_event)
    except Exception:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        )
    return WebhookAck(eventId=event_id)


@router.get("/health", response_model=WebhookHealthOut)
def webhook_health(db: Session = Depends(get_db)):
    stats = webhook_stats(db)
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc), **stats}


@router.get("/events", response_model=list[WebhookEventOut])
def list_events(
    db: Session = Depends(get_db),
    _user: User = Depends(require_roles(Role.admin.value)),
    source: WebhookSource | None = Query(default=None),
    processed: bool | None = Query(default=None),
    failed: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    stmt = select(WebhookEvent)
    if source is not None:
        stmt = stmt.where(WebhookEvent.source == source)
    if processed is not None:
        stmt = stmt.where(WebhookEvent.processed.is_(processed))
    if failed is True:
        stmt = stmt.where(WebhookEvent.error_message.is_not(None))
    elif failed is False:
        stmt = stmt.where(WebhookEvent.error_message.is_(None))
    stmt = stmt.order_by(WebhookEvent.received_at.desc(), WebhookEvent.id.desc())
    return list(db.scalars(stmt.limit(limit).offset(offset)))


@router.post("/events/{event_id}/reprocess", response_model=WebhookEventOut)
def reprocess_webhook_event(
    event_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.admin.value)),
):
    event = db.get(WebhookEvent, event_id)
    if not event:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook event not found")
    ok = reprocess_event(db, event)
    logger.info(
        "Webhook event %s reprocessed by user %s: %s", event_id, user.id, "ok" if ok else "failed"
    )
    event = db.get(WebhookEvent, event_id)
    db.refresh(event)
    return event
