from fastapi import APIRouter, Depends, HTTPException, Query
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import require_admin
from app.core.config import Settings
from app.core.deps import get_db_session, get_redis, get_settings_dep
from app.schemas.webhook import DrainResult, WebhookEventDetail, WebhookEventOut, WebhookPage, WebhookStats
from app.services import webhooks

router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("", response_model=WebhookPage)
async def list_webhooks(
    provider: str | None = None,
    status: str | None = None,
    email: str | None = None,
    event_type: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_db_session),
):
    total, rows = await webhooks.list_events(
        session, provider=provider, status=status, email=email, event_type=event_type, limit=limit, offset=offset
    )
    return WebhookPage(total=total, items=[WebhookEventOut.model_validate(r) for r in rows])


@router.get("/stats", response_model=WebhookStats)
async def webhook_stats(session: AsyncSession = Depends(get_db_session)):
    return WebhookStats(**await webhooks.event_stats(session))


@router.post("/drain", response_model=DrainResult)
async def drain_webhooks(
    limit: int | None = Query(default=None, ge=1, le=500),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings_dep),
    redis: Redis = Depends(get_redis),
):
    processed = await webhooks.drain_pending(session, settings, limit=limit, redis=redis)
    return DrainResult(processed=processed)


@router.get("/{event_id}", response_model=WebhookEventDetail)
async def get_webhook(event_id: int, session: AsyncSession = Depends(get_db_session)):
    event = await webhooks.get_event(session, event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Webhook event not found")
    return WebhookEventDetail.model_validate(event)


@router.post("/{event_id}/reprocess", response_model=WebhookEventDetail)
async def reprocess_webhook(
    event_id: int,
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings_dep),
    redis: Redis = Depends(get_redis),
):
    event = await webhooks.get_event(session, event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Webhook event not found")
    if event.status == webhooks.PROCESSING and await webhooks.release_stale_claims(session, settings):
        event = await webhooks.get_event(session, event_id)
    if event.status == webhooks.FAILED:
        await webhooks.requeue(session, event_id)
    elif event.status != webhooks.PENDING:
        raise HTTPException(status_code=409, detail=f"Event is {event.status}; only failed, pending or stale processing events can be reprocessed")
    await webhooks.process_event(session, settings, event_id, redis=redis)
    return WebhookEventDetail.model_validate(await webhooks.get_event(session, event_id))
