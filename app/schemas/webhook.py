import datetime as dt
from typing import Any

from pydantic import BaseModel, ConfigDict

from app.services.lifecycle import LifecycleAction


class NormalizedEvent(BaseModel):
    provider: str
    event_type: str
    action: LifecycleAction
    transaction_id: str | None = None
    email: str | None = None
    name: str | None = None
    product_id: str | None = None
    offer_id: str | None = None
    product_name: str | None = None
    subscriber_code: str | None = None
    occurred_at: dt.datetime | None = None
    expires_at: dt.datetime | None = None


class WebhookAck(BaseModel):
    received: bool = True
    event_id: int | None = None
    duplicate: bool = False
    status: str = "pending"


class WebhookEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    provider: str
    event_type: str
    transaction_id: str | None
    email: str | None
    status: str
    attempts: int
    last_error: str | None
    error_kind: str | None
    source_ip: str | None
    received_at: dt.datetime
    processed_at: dt.datetime | None


class WebhookEventDetail(WebhookEventOut):
    payload: dict[str, Any]
    claimed_at: dt.datetime | None = None
    result: dict[str, Any] | None


class WebhookPage(BaseModel):
    total: int
    items: list[WebhookEventOut]


class WebhookStats(BaseModel):
    total: int
    by_status: dict[str, int]
    by_provider: dict[str, int]
    retryable_failures: int
    terminal_failures: int


class DrainResult(BaseModel):
    processed: int
