import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.deps import get_settings_dep, get_db_session, webhook_rate_limit
from app.core.errors import InvalidPayload, SignatureError
from app.schemas.webhook import WebhookAck
from app.services import webhooks
from app.workers.celery_app import enqueue_webhook_event

logger = logging.getLogger(__name__)

router = APIRouter()
legacy_router = APIRouter()


async def _receive(
    provider: str,
    request: Request,
    background_tasks: BackgroundTasks,
    session: AsyncSession,
    settings: Settings,
    source_ip: str,
) -> WebhookAck:
    raw_body = await request.body()
    try:
        event, duplicate = await webhooks.ingest(
            session, settings, provider, raw_body, request.headers, source_ip=source_ip
        )
    except SignatureError as exc:
        logger.warning("Rejected %s webhook from %s: %s", provider, source_ip, exc)
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except InvalidPayload as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if not duplicate and event.status == webhooks.PENDING:
        # the row is committed; the broker only carries the id
        background_tasks.add_task(enqueue_webhook_event, event.id)
    return WebhookAck(received=True, event_id=event.id, duplicate=duplicate, status=event.status)


@router.post("/hotmart", response_model=WebhookAck)
async def hotmart_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings_dep),
    source_ip: str = Depends(webhook_rate_limit),
):
    return await _receive("hotmart", request, background_tasks, session, settings, source_ip)


@router.post("/doppus", response_model=WebhookAck)
async def doppus_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings_dep),
    source_ip: str = Depends(webhook_rate_limit),
):
    return await _receive("doppus", request, background_tasks, session, settings, source_ip)


# Hotmart products configured before the /api/webhooks prefix still post here
legacy_router.add_api_route("/webhook-hotmart", hotmart_webhook, methods=["POST"], response_model=WebhookAck)
