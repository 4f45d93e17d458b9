from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from app.models.webhook_event import WebhookSource


class WebhookAck(BaseModel):
    received: bool = True
    eventId: Optional[int] = None
    duplicate: bool = False
    message: Optional[str] = None


class WebhookEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    source: WebhookSource
    provider_event_id: str
    event_type: str
    processed: bool
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    attempts: int
    unmapped_fields: list[str]
    patient_id: Optional[int] = None
    received_at: datetime


class WebhookStats(BaseModel):
    total_webhooks: int
    processed_webhooks: int
    failed_webhooks: int
    last_webhook_received: Optional[datetime] = None


class WebhookHealthOut(WebhookStats):
    status: str
    timestamp: datetime
    by_source: dict[str, WebhookStats]
