from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.logging import redact_string
from app.models.webhook_event import WebhookEvent, WebhookSource
from app.services.heyflow import process_heyflow_event
from app.services.stripe_events import process_stripe_event

logger = logging.getLogger("eonmeds.webhooks")

MAX_ERROR_LENGTH = 2000

EventHandler = Callable[[Session, WebhookEvent], Any]

PROCESSORS: dict[WebhookSource, EventHandler] = {
    WebhookSource.heyflow: process_heyflow_event,
    WebhookSource.stripe: process_stripe_event,
}


def get_event(db: Session, source: WebhookSource, provider_event_id: str) -> WebhookEvent | None:
    return db.scalar(
        select(WebhookEvent).where(
            WebhookEvent.source == source,
            WebhookEvent.provider_event_id == provider_event_id,
        )
    )


def record_event(
    db: Session,
    *,
    source: WebhookSource,
    provider_event_id: str,
    event_type: str,
    payload: dict,
) -> tuple[WebhookEvent, bool]:
    """Store an inbound event once per ``(source, provider_event_id)``.

    Returns ``(event, is_new)``. Redeliveries return the stored row untouched.
    """
    existing = get_event(db, source, provider_event_id)
    if existing is not None:
        return existing, False

    event = WebhookEvent(
        source=source,
        provider_event_id=provider_event_id,
        event_type=event_type,
        payload=payload,
        processed=False,
        attempts=0,
        unmapped_fields=[],
    )
    db.add(event)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent delivery of the same event won the insert.
        db.rollback()
        existing = get_event(db, source, provider_event_id)
        if existing is None:
            raise
        return existing, False
    db.refresh(event)
    return event, True


def run_event(db: Session, event: WebhookEvent, handler: EventHandler) -> Any:
    """Apply ``handler`` to ``event`` inside one transaction.

    On success the event is marked processed in the same commit as the
    handler's writes. On failure the handler's writes are rolled back, the
    error is stored on the event and the exception is re-raised.
    """
    event_id = event.id
    event.attempts = (event.attempts or 0) + 1
    try:
        result = handler(db, event)
        event.processed = True
        event.processed_at = datetime.now(timezone.utc)
        event.error_message = None
        db.commit()
    except Exception as exc:
        db.rollback()
        failed = db.get(WebhookEvent, event_id)
        failed.attempts = (failed.attempts or 0) + 1
        failed.processed = False
        failed.error_message = redact_string(str(exc))[:MAX_ERROR_LENGTH] or exc.__class__.__name__
        db.commit()
        logger.warning(
            "Webhook event %s (%s %s) failed: %s",
            event_id,
            failed.source.value,
            failed.event_type,
            exc.__class__.__name__,
        )
        raise
    return result


def webhook_stats(db: Session, *, since: datetime | None = None) -> dict[str, Any]:
    since = since or datetime.now(timezone.utc) - timedelta(hours=24)

    def _row(stmt) -> dict[str, Any]:
        total, processed, failed, last = db.execute(stmt).one()
        return {
            "total_webhooks": int(total or 0),
            "processed_webhooks": int(processed or 0),
            "failed_webhooks": int(failed or 0),
            "last_webhook_received": last,
        }

    columns = (
        func.count(WebhookEvent.id),
        func.sum(case((WebhookEvent.processed.is_(True), 1), else_=0)),
        func.sum(case((WebhookEvent.error_message.is_not(None), 1), else_=0)),
        func.max(WebhookEvent.received_at),
    )
    stats = _row(select(*columns).where(WebhookEvent.received_at >= since))
    stats["by_source"] = {
        source.value: _row(
            select(*columns).where(
                WebhookEvent.received_at >= since, WebhookEvent.source == source
            )
        )
        for source in WebhookSource
    }
    return stats


def reprocess_event(db: Session, event: WebhookEvent) -> bool:
    """Re-run the stored payload through its source's processor.

    Returns ``True`` on success. Failures are recorded on the event by
    ``run_event`` and reported as ``False``.
    """
    try:
        run_event(db, event, PROCESSORS[event.source])
    except Exception:
        return False
    return True
