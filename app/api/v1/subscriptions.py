import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from redis.asyncio import Redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import require_admin
from app.core.config import Settings
from app.core.deps import get_db_session, get_redis, get_settings_dep
from app.core.errors import ConcurrencyConflict, InvalidTransition
from app.models.subscription import Subscription
from app.models.user import User
from app.schemas.subscription import (
    AccessOut,
    ApplyResultOut,
    CancelIn,
    SubscriptionOut,
    SubscriptionPage,
    SubscriptionStats,
    SubscriptionUpdateIn,
)
from app.services import subscriptions

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


def _out(sub: Subscription, user: User) -> SubscriptionOut:
    return SubscriptionOut.model_validate(sub).model_copy(update={"email": user.email})


async def _user_or_404(session: AsyncSession, user_id: int) -> User:
    user = (await session.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.get("", response_model=SubscriptionPage)
async def list_subscriptions(
    status: str | None = None,
    source: str | None = None,
    email: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_db_session),
):
    total, rows = await subscriptions.list_subscriptions(
        session, status=status, source=source, email=email, limit=limit, offset=offset
    )
    return SubscriptionPage(total=total, items=[_out(sub, user) for sub, user in rows])


@router.get("/stats", response_model=SubscriptionStats)
async def subscription_stats(session: AsyncSession = Depends(get_db_session)):
    return SubscriptionStats(**await subscriptions.subscription_stats(session))


@router.get("/{user_id}", response_model=SubscriptionOut)
async def get_subscription(user_id: int, session: AsyncSession = Depends(get_db_session)):
    user = await _user_or_404(session, user_id)
    sub = await subscriptions.get_subscription(session, user.id)
    if sub is None:
        raise HTTPException(status_code=404, detail="Subscription not found")
    return _out(sub, user)


@router.put("/{user_id}", response_model=ApplyResultOut)
async def update_subscription(
    user_id: int,
    payload: SubscriptionUpdateIn,
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings_dep),
    redis: Redis = Depends(get_redis),
):
    user = await _user_or_404(session, user_id)
    try:
        result = await subscriptions.set_subscription(
            session,
            user,
            plan_type=payload.plan_type,
            duration_days=payload.duration_days,
            is_lifetime=payload.is_lifetime,
            end_date=payload.end_date,
        )
        await session.commit()
    except ConcurrencyConflict as exc:
        await session.rollback()
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    logger.info("Admin set subscription for user %s to %s", user_id, payload.plan_type)
    await subscriptions.refresh_cache(session, redis, user.id, settings.subscription_cache_ttl_seconds)
    return ApplyResultOut(**result.__dict__)


@router.post("/{user_id}/cancel", response_model=ApplyResultOut)
async def cancel_subscription(
    user_id: int,
    payload: CancelIn,
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings_dep),
    redis: Redis = Depends(get_redis),
):
    user = await _user_or_404(session, user_id)
    try:
        result = await subscriptions.cancel_subscription(
            session, user, reason=payload.reason, immediate=payload.immediate
        )
        await session.commit()
    except (InvalidTransition, ConcurrencyConflict) as exc:
        await session.rollback()
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    logger.info("Admin canceled subscription for user %s (immediate=%s)", user_id, payload.immediate)
    await subscriptions.refresh_cache(session, redis, user.id, settings.subscription_cache_ttl_seconds)
    return ApplyResultOut(**result.__dict__)


@router.get("/{user_id}/access", response_model=AccessOut)
async def get_access(
    user_id: int,
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings_dep),
    redis: Redis = Depends(get_redis),
):
    user = await _user_or_404(session, user_id)
    return AccessOut(**await subscriptions.get_access(session, redis, user.id, settings))
