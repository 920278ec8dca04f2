import asyncio
import logging

from celery import Celery
from redis import asyncio as aioredis
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core.config import get_settings
from app.services import subscriptions, webhooks

logger = logging.getLogger(__name__)

settings = get_settings()
celery = Celery(
    "designauto",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_acks_late=True,
    beat_schedule={
        "drain-webhook-queue": {
            "task": "drain_webhook_queue",
            "schedule": float(settings.webhook_drain_interval_seconds),
        },
        "expire-subscriptions": {
            "task": "expire_subscriptions",
            "schedule": float(settings.expiry_sweep_interval_seconds),
        },
    },
)


def _session_factory():
    # asyncio.run opens a fresh loop per task; pooled connections cannot cross loops
    engine = create_async_engine(settings.database_url, future=True, pool_pre_ping=True)
    return engine, async_sessionmaker(engine, expire_on_commit=False)


def _redis():
    return aioredis.Redis.from_url(settings.redis_url, decode_responses=True)


@celery.task(name="process_webhook_event")
def process_webhook_event(event_id: int):
    async def _run():
        engine, SessionLocal = _session_factory()
        redis = _redis()
        try:
            async with SessionLocal() as session:
                return await webhooks.process_event(session, settings, event_id, redis=redis)
        finally:
            await redis.aclose()
            await engine.dispose()

    status = asyncio.run(_run())
    logger.info("process_webhook_event %s -> %s", event_id, status)
    return status


@celery.task(name="drain_webhook_queue")
def drain_webhook_queue(limit: int | None = None):
    async def _run():
        engine, SessionLocal = _session_factory()
        redis = _redis()
        try:
            async with SessionLocal() as session:
                return await webhooks.drain_pending(session, settings, limit=limit, redis=redis)
        finally:
            await redis.aclose()
            await engine.dispose()

    processed = asyncio.run(_run())
    if processed:
        logger.info("Drained %s pending webhook events", processed)
    return processed


@celery.task(name="expire_subscriptions")
def expire_subscriptions():
    async def _run():
        engine, SessionLocal = _session_factory()
        redis = _redis()
        try:
            async with SessionLocal() as session:
                expired = await subscriptions.expire_due(session)
                for user_id in expired:
                    await subscriptions.refresh_cache(
                        session, redis, user_id, settings.subscription_cache_ttl_seconds
                    )
                return expired
        finally:
            await redis.aclose()
            await engine.dispose()

    return len(asyncio.run(_run()))


def enqueue_webhook_event(event_id: int) -> None:
    """Hand a committed event to the broker; the periodic drain covers lost messages."""
    try:
        process_webhook_event.delay(event_id)
    except Exception:
        logger.exception("Could not enqueue webhook event %s; leaving it for the drain", event_id)
