"""
Webhook inbox: signature check, idempotent persistence and queued processing.

Receivers only ever insert; the subscription change happens in
``process_event``, driven by the Celery worker (or the periodic drain when a
broker message was lost).
"""
import datetime as dt
import hashlib
import json
import logging
from typing import Mapping

from redis.asyncio import Redis
from sqlalchemy import select, update, func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.errors import InvalidPayload, RetryableError, TerminalError
from app.models.webhook import WebhookEvent
from app.services import signatures
from app.services.integrations import get_credential
from app.services.lifecycle import LifecycleAction
from app.services.normalize import idempotency_key, normalize
from app.services.subscriptions import apply_event, refresh_cache

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
PROCESSED = "processed"
IGNORED = "ignored"
FAILED = "failed"


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _parse(raw_body: bytes) -> dict:
    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError as exc:
        raise InvalidPayload("Body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise InvalidPayload("Webhook body must be a JSON object")
    return payload


async def _verified_payload(
    session: AsyncSession, settings: Settings, provider: str, headers: Mapping[str, str], raw_body: bytes
) -> dict:
    if provider == "doppus":
        # HMAC covers the raw bytes, so nothing is parsed before it checks out
        secret = await get_credential(session, settings, "doppus", "secret_key")
        signatures.verify_doppus(secret, headers, raw_body, settings.environment)
        return _parse(raw_body)
    if provider == "hotmart":
        # the hottok may travel inside the body
        payload = _parse(raw_body)
        secret = await get_credential(session, settings, "hotmart", "hottok")
        signatures.verify_hotmart(secret, headers, payload, settings.environment)
        return payload
    raise InvalidPayload(f"Unknown provider {provider}")


async def get_by_key(session: AsyncSession, key: str) -> WebhookEvent | None:
    stmt = select(WebhookEvent).where(WebhookEvent.idempotency_key == key)
    return (await session.execute(stmt)).scalar_one_or_none()


async def ingest(
    session: AsyncSession,
    settings: Settings,
    provider: str,
    raw_body: bytes,
    headers: Mapping[str, str],
    source_ip: str | None = None,
) -> tuple[WebhookEvent, bool]:
    """
    Verify and store a delivery. Returns ``(event, duplicate)``.

    Raises ``SignatureError`` for bad credentials and ``InvalidPayload`` when
    the body is not a JSON object; both mean nothing was stored.
    """
    payload = await _verified_payload(session, settings, provider, headers, raw_body)
    payload.pop("hottok", None)

    values = {"provider": provider, "payload": payload, "source_ip": source_ip, "attempts": 0}
    try:
        event = normalize(provider, payload)
    except InvalidPayload as exc:
        # Keep unreadable deliveries for the admin log instead of bouncing them
        values.update(
            idempotency_key=f"{provider}:sha256:{hashlib.sha256(raw_body).hexdigest()}",
            event_type=str(payload.get("event") or "unknown")[:64],
            status=FAILED,
            error_kind="terminal",
            last_error=str(exc),
        )
    else:
        values.update(
            idempotency_key=idempotency_key(event, raw_body),
            event_type=event.event_type[:64],
            transaction_id=event.transaction_id,
            email=event.email,
            status=IGNORED if event.action == LifecycleAction.NOOP else PENDING,
        )

    existing = await get_by_key(session, values["idempotency_key"])
    if existing:
        logger.info("Duplicate %s webhook %s (event %s)", provider, values["idempotency_key"], existing.id)
        return existing, True

    record = WebhookEvent(**values)
    session.add(record)
    try:
        await session.commit()
    except IntegrityError:
        # Concurrent delivery of the same event won the insert
        await session.rollback()
        existing = await get_by_key(session, values["idempotency_key"])
        if existing is None:
            raise
        return existing, True
    logger.info("Stored %s webhook %s as event %s (%s)", provider, record.event_type, record.id, record.status)
    return record, False


async def _claim(session: AsyncSession, event_id: int) -> bool:
    result = await session.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == event_id, WebhookEvent.status == PENDING)
        .values(status=PROCESSING, attempts=WebhookEvent.attempts + 1, claimed_at=_now())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def release_stale_claims(session: AsyncSession, settings: Settings, now: dt.datetime | None = None) -> int:
    """
    Hand ``processing`` rows whose claim outlived the lease back to the queue.

    A worker killed mid-event never records an outcome; once the lease runs
    out the row goes back to ``pending``, or to ``failed`` if it already used
    its attempt budget.
    """
    cutoff = (now or _now()) - dt.timedelta(seconds=settings.webhook_claim_timeout_seconds)
    stale = (
        WebhookEvent.status == PROCESSING,
        or_(WebhookEvent.claimed_at.is_(None), WebhookEvent.claimed_at < cutoff),
    )
    released = 0
    for within_budget in (True, False):
        budget = (
            WebhookEvent.attempts < settings.webhook_max_attempts
            if within_budget
            else WebhookEvent.attempts >= settings.webhook_max_attempts
        )
        result = await session.execute(
            update(WebhookEvent)
            .where(*stale, budget)
            .values(
                status=PENDING if within_budget else FAILED,
                error_kind="retryable",
                last_error="claim lease expired before the event was processed",
                processed_at=None if within_budget else _now(),
            )
            .execution_options(synchronize_session=False)
        )
        released += result.rowcount
    await session.commit()
    if released:
        logger.warning("Released %s stale webhook claims", released)
    return released


async def _record_failure(
    session: AsyncSession, event_id: int, exc: Exception, retryable: bool, max_attempts: int
) -> str:
    await session.rollback()
    attempts = (
        await session.execute(select(WebhookEvent.attempts).where(WebhookEvent.id == event_id))
    ).scalar_one()
    status = PENDING if retryable and attempts < max_attempts else FAILED
    await session.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == event_id)
        .values(
            status=status,
            error_kind="retryable" if retryable else "terminal",
            last_error=str(exc)[:2000],
            processed_at=_now() if status == FAILED else None,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return status


async def process_event(
    session: AsyncSession,
    settings: Settings,
    event_id: int,
    redis: Redis | None = None,
    now: dt.datetime | None = None,
) -> str | None:
    """
    Claim and apply one pending event. Returns the event's resulting status,
    or ``None`` when another worker owns it or it is not pending.
    """
    if not await _claim(session, event_id):
        logger.info("Webhook event %s not claimable; skipping", event_id)
        return None

    record = (
        await session.execute(
            select(WebhookEvent).where(WebhookEvent.id == event_id).execution_options(populate_existing=True)
        )
    ).scalar_one()
    try:
        event = normalize(record.provider, record.payload)
        result = await apply_event(session, event, settings, now=now)
        await session.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .values(
                status=PROCESSED,
                result=result.to_dict(),
                processed_at=now or _now(),
                last_error=None,
                error_kind=None,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except TerminalError as exc:
        logger.warning("Webhook event %s failed permanently: %s", event_id, exc)
        return await _record_failure(session, event_id, exc, retryable=False, max_attempts=settings.webhook_max_attempts)
    except (RetryableError, SQLAlchemyError) as exc:
        status = await _record_failure(session, event_id, exc, retryable=True, max_attempts=settings.webhook_max_attempts)
        logger.warning("Webhook event %s failed (%s), now %s", event_id, exc, status)
        return status
    except Exception as exc:
        logger.exception("Unexpected error processing webhook event %s", event_id)
        return await _record_failure(session, event_id, exc, retryable=True, max_attempts=settings.webhook_max_attempts)

    if redis is not None:
        await refresh_cache(session, redis, result.user_id, settings.subscription_cache_ttl_seconds)
    return PROCESSED


async def drain_pending(
    session: AsyncSession, settings: Settings, limit: int | None = None, redis: Redis | None = None
) -> int:
    await release_stale_claims(session, settings)
    stmt = (
        select(WebhookEvent.id)
        .where(WebhookEvent.status == PENDING, WebhookEvent.attempts < settings.webhook_max_attempts)
        .order_by(WebhookEvent.received_at, WebhookEvent.id)
        .limit(limit or settings.webhook_batch_size)
    )
    ids = list((await session.execute(stmt)).scalars().all())
    processed = 0
    for event_id in ids:
        if await process_event(session, settings, event_id, redis=redis) == PROCESSED:
            processed += 1
    return processed


async def requeue(session: AsyncSession, event_id: int) -> WebhookEvent | None:
    """Send a failed event back to the queue with a fresh attempt budget."""
    result = await session.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == event_id, WebhookEvent.status == FAILED)
        .values(status=PENDING, attempts=0, last_error=None, error_kind=None, processed_at=None)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if result.rowcount != 1:
        return None
    return await get_event(session, event_id)


async def get_event(session: AsyncSession, event_id: int) -> WebhookEvent | None:
    stmt = select(WebhookEvent).where(WebhookEvent.id == event_id).execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalar_one_or_none()


async def list_events(
    session: AsyncSession,
    provider: str | None = None,
    status: str | None = None,
    email: str | None = None,
    event_type: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[int, list[WebhookEvent]]:
    stmt = select(WebhookEvent)
    if provider:
        stmt = stmt.where(WebhookEvent.provider == provider)
    if status:
        stmt = stmt.where(WebhookEvent.status == status)
    if email:
        stmt = stmt.where(WebhookEvent.email.ilike(f"%{email.strip().lower()}%"))
    if event_type:
        stmt = stmt.where(WebhookEvent.event_type == event_type.upper())
    total = (await session.execute(select(func.count()).select_from(stmt.subquery()))).scalar_one()
    rows = (
        await session.execute(stmt.order_by(WebhookEvent.received_at.desc(), WebhookEvent.id.desc()).limit(limit).offset(offset))
    ).scalars().all()
    return total, list(rows)


async def event_stats(session: AsyncSession) -> dict:
    by_status = dict(
        (await session.execute(select(WebhookEvent.status, func.count()).group_by(WebhookEvent.status))).all()
    )
    by_provider = dict(
        (await session.execute(select(WebhookEvent.provider, func.count()).group_by(WebhookEvent.provider))).all()
    )
    failures = dict(
        (
            await session.execute(
                select(WebhookEvent.error_kind, func.count())
                .where(WebhookEvent.status == FAILED)
                .group_by(WebhookEvent.error_kind)
            )
        ).all()
    )
    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "by_provider": by_provider,
        "retryable_failures": failures.get("retryable", 0),
        "terminal_failures": failures.get("terminal", 0),
    }
