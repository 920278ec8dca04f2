import datetime as dt
import logging
import re
import uuid
from dataclasses import dataclass, asdict

from redis.asyncio import Redis
from sqlalchemy import select, insert, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.errors import ConcurrencyConflict, InvalidPayload, TerminalError
from app.models.subscription import Subscription
from app.models.user import User
from app.schemas.webhook import NormalizedEvent
from app.services.lifecycle import (
    LifecycleAction,
    SubscriptionStatus,
    as_utc,
    has_access,
    next_status,
)
from app.services.plans import PlanTerms, resolve_terms

logger = logging.getLogger(__name__)

EXPIRABLE = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value, SubscriptionStatus.CANCELED.value)


@dataclass
class ApplyResult:
    user_id: int
    subscription_id: int | None
    action: str
    previous_status: str
    status: str
    end_date: dt.datetime | None
    changed: bool = True
    note: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["end_date"] = self.end_date.isoformat() if self.end_date else None
        return data


def _username_base(email: str) -> str:
    local = email.split("@", 1)[0]
    return re.sub(r"[^a-zA-Z0-9]", "", local)[:48] or "user"


async def get_or_create_user(session: AsyncSession, email: str, name: str | None = None) -> User:
    email = email.strip().lower()
    user = (await session.execute(select(User).where(User.email == email))).scalar_one_or_none()
    if user:
        return user

    username = _username_base(email)
    taken = (await session.execute(select(User.id).where(User.username == username))).first()
    if taken:
        username = f"{username}_{uuid.uuid4().hex[:8]}"
    result = await session.execute(
        insert(User).values(email=email, username=username, name=name or username).returning(User.id)
    )
    user_id = result.scalar_one()
    logger.info("Created user %s for %s", user_id, email)
    return (await session.execute(select(User).where(User.id == user_id))).scalar_one()


async def get_subscription(session: AsyncSession, user_id: int) -> Subscription | None:
    stmt = select(Subscription).where(Subscription.user_id == user_id).execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalar_one_or_none()


async def _find_user_for_event(session: AsyncSession, event: NormalizedEvent) -> User | None:
    if event.email:
        user = (await session.execute(select(User).where(User.email == event.email))).scalar_one_or_none()
        if user:
            return user
    codes = [c for c in (event.transaction_id, event.subscriber_code) if c]
    if not codes:
        return None
    stmt = (
        select(User)
        .join(Subscription, Subscription.user_id == User.id)
        .where(or_(Subscription.transaction_id.in_(codes), Subscription.subscriber_code.in_(codes)))
    )
    return (await session.execute(stmt)).scalars().first()


async def _write(
    session: AsyncSession,
    user: User,
    sub: Subscription | None,
    values: dict,
    now: dt.datetime,
) -> int:
    """
    Persist the new subscription state and the derived access level.
    Existing rows are updated only if their version is unchanged since read.
    """
    if sub is None:
        result = await session.execute(
            insert(Subscription).values(user_id=user.id, version=1, **values).returning(Subscription.id)
        )
        sub_id = result.scalar_one()
    else:
        result = await session.execute(
            update(Subscription)
            .where(Subscription.id == sub.id, Subscription.version == sub.version)
            .values(version=sub.version + 1, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(sub.id, sub.version)
        sub_id = sub.id

    access = has_access(values["status"], values.get("end_date"), values.get("is_lifetime", False), now)
    if user.role != "admin":
        await session.execute(
            update(User)
            .where(User.id == user.id)
            .values(access_level="premium" if access else "free", updated_at=now)
            .execution_options(synchronize_session=False)
        )
    return sub_id


def _current_state(sub: Subscription | None) -> dict:
    if sub is None:
        return {"status": SubscriptionStatus.NONE.value, "end_date": None, "is_lifetime": False}
    return {
        "status": sub.status,
        "end_date": as_utc(sub.end_date),
        "is_lifetime": sub.is_lifetime,
        "plan_type": sub.plan_type,
        "source": sub.source,
    }


def _activation_values(
    sub: Subscription | None,
    terms: PlanTerms,
    now: dt.datetime,
    source: str,
    explicit_end: dt.datetime | None = None,
    transaction_id: str | None = None,
) -> dict:
    current = _current_state(sub)
    renewing = current["status"] in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value)
    # APPROVED followed by COMPLETE for one purchase confirms the term already granted
    same_purchase = bool(renewing and transaction_id and sub.transaction_id == transaction_id)
    base = now
    if renewing and current["end_date"] and current["end_date"] > now:
        base = current["end_date"]
    if explicit_end:
        end_date = explicit_end
    elif same_purchase and (current["end_date"] or terms.is_lifetime):
        end_date = current["end_date"]
    else:
        end_date = terms.end_date(base)
    start_date = as_utc(sub.start_date) if (renewing and sub and sub.start_date) else now
    return {
        "plan_type": terms.plan_type,
        "status": SubscriptionStatus.ACTIVE.value,
        "source": source,
        "start_date": start_date,
        "end_date": end_date,
        "is_lifetime": terms.is_lifetime,
        "canceled_at": None,
        "cancel_reason": None,
    }


def _values_for(
    action: LifecycleAction,
    target: SubscriptionStatus,
    sub: Subscription | None,
    now: dt.datetime,
    reason: str | None,
) -> dict:
    current = _current_state(sub)
    values = {
        "status": target.value,
        "end_date": current["end_date"],
        "is_lifetime": current["is_lifetime"],
    }
    if action == LifecycleAction.CANCEL:
        if current["status"] != SubscriptionStatus.CANCELED.value:
            values.update(canceled_at=now, cancel_reason=reason)
    elif action == LifecycleAction.REVOKE:
        values.update(end_date=now, is_lifetime=False)
        if current["status"] != SubscriptionStatus.CANCELED.value:
            values.update(canceled_at=now, cancel_reason=reason)
    elif action == LifecycleAction.EXPIRE:
        end = current["end_date"]
        values.update(end_date=end if end and end < now else now, is_lifetime=False)
    return values


async def apply_event(
    session: AsyncSession,
    event: NormalizedEvent,
    settings: Settings,
    now: dt.datetime | None = None,
) -> ApplyResult:
    """
    Apply a normalized provider event to the buyer's subscription.

    The caller owns the transaction: nothing is committed here so the webhook
    row and the subscription move together.
    """
    now = now or dt.datetime.now(dt.timezone.utc)
    action = LifecycleAction(event.action)
    if action == LifecycleAction.NOOP:
        raise TerminalError(f"Event {event.event_type} carries no subscription change")

    if action == LifecycleAction.ACTIVATE:
        if not event.email:
            raise InvalidPayload("Activation event without buyer email")
        user = await get_or_create_user(session, event.email, event.name)
    else:
        user = await _find_user_for_event(session, event)
        if user is None:
            raise TerminalError(f"No user matches {event.email or event.transaction_id}")

    sub = await get_subscription(session, user.id)
    previous = _current_state(sub)["status"]
    target = next_status(previous, action)

    if (
        action == LifecycleAction.REVOKE
        and sub is not None
        and event.transaction_id
        and sub.transaction_id
        and sub.source == event.provider
        and event.transaction_id != sub.transaction_id
    ):
        # Refund of an older purchase must not revoke the current one
        return ApplyResult(
            user_id=user.id,
            subscription_id=sub.id,
            action=action.value,
            previous_status=previous,
            status=previous,
            end_date=as_utc(sub.end_date),
            changed=False,
            note=f"transaction {event.transaction_id} is not the current one ({sub.transaction_id})",
        )

    if action == LifecycleAction.ACTIVATE:
        terms = await resolve_terms(session, event, settings)
        values = _activation_values(
            sub, terms, now, event.provider, explicit_end=event.expires_at, transaction_id=event.transaction_id
        )
        values["transaction_id"] = event.transaction_id
        values["subscriber_code"] = event.subscriber_code or event.transaction_id
    else:
        values = _values_for(action, target, sub, now, f"{event.provider}:{event.event_type}")

    sub_id = await _write(session, user, sub, values, now)
    logger.info(
        "Subscription %s for user %s: %s -> %s (%s)", sub_id, user.id, previous, target.value, event.event_type
    )
    return ApplyResult(
        user_id=user.id,
        subscription_id=sub_id,
        action=action.value,
        previous_status=previous,
        status=target.value,
        end_date=values.get("end_date"),
    )


async def set_subscription(
    session: AsyncSession,
    user: User,
    plan_type: str,
    duration_days: int | None,
    is_lifetime: bool = False,
    end_date: dt.datetime | None = None,
    now: dt.datetime | None = None,
) -> ApplyResult:
    """Manual activation or plan change from the admin panel."""
    now = now or dt.datetime.now(dt.timezone.utc)
    sub = await get_subscription(session, user.id)
    previous = _current_state(sub)["status"]
    target = next_status(previous, LifecycleAction.ACTIVATE)
    terms = PlanTerms(plan_type=plan_type, duration_days=duration_days, is_lifetime=is_lifetime)
    values = _activation_values(None, terms, now, "admin", explicit_end=end_date)
    if sub is not None:
        values["transaction_id"] = sub.transaction_id
        values["subscriber_code"] = sub.subscriber_code
    sub_id = await _write(session, user, sub, values, now)
    return ApplyResult(
        user_id=user.id,
        subscription_id=sub_id,
        action=LifecycleAction.ACTIVATE.value,
        previous_status=previous,
        status=target.value,
        end_date=values["end_date"],
    )


async def cancel_subscription(
    session: AsyncSession,
    user: User,
    reason: str | None = None,
    immediate: bool = False,
    now: dt.datetime | None = None,
) -> ApplyResult:
    now = now or dt.datetime.now(dt.timezone.utc)
    sub = await get_subscription(session, user.id)
    previous = _current_state(sub)["status"]
    action = LifecycleAction.REVOKE if immediate else LifecycleAction.CANCEL
    target = next_status(previous, action)
    values = _values_for(action, target, sub, now, reason or "admin cancellation")
    sub_id = await _write(session, user, sub, values, now)
    return ApplyResult(
        user_id=user.id,
        subscription_id=sub_id,
        action=action.value,
        previous_status=previous,
        status=target.value,
        end_date=values["end_date"],
    )


async def expire_due(session: AsyncSession, now: dt.datetime | None = None) -> list[int]:
    """Move lapsed subscriptions to expired. Returns the affected user ids."""
    now = now or dt.datetime.now(dt.timezone.utc)
    due = (
        Subscription.status.in_(EXPIRABLE),
        Subscription.is_lifetime.is_(False),
        Subscription.end_date.is_not(None),
        Subscription.end_date < now,
    )
    ids = list((await session.execute(select(Subscription.id).where(*due).order_by(Subscription.id))).scalars().all())
    expired: list[int] = []
    for sub_id in ids:
        # re-read per row; a rollback expires everything loaded before it
        row = (
            await session.execute(
                select(Subscription, User)
                .join(User, User.id == Subscription.user_id)
                .where(Subscription.id == sub_id, *due)
                .execution_options(populate_existing=True)
            )
        ).first()
        if row is None:
            continue
        sub, user = row
        user_id = user.id
        values = _values_for(LifecycleAction.EXPIRE, SubscriptionStatus.EXPIRED, sub, now, None)
        try:
            await _write(session, user, sub, values, now)
            await session.commit()
        except ConcurrencyConflict as exc:
            await session.rollback()
            logger.warning("Skipping expiry: %s", exc)
            continue
        expired.append(user_id)
    if expired:
        logger.info("Expired %s subscriptions", len(expired))
    return expired


async def list_subscriptions(
    session: AsyncSession,
    status: str | None = None,
    source: str | None = None,
    email: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[int, list[tuple[Subscription, User]]]:
    stmt = select(Subscription, User).join(User, User.id == Subscription.user_id)
    if status:
        stmt = stmt.where(Subscription.status == status)
    if source:
        stmt = stmt.where(Subscription.source == source)
    if email:
        stmt = stmt.where(User.email.ilike(f"%{email.strip().lower()}%"))
    total = (await session.execute(select(func.count()).select_from(stmt.subquery()))).scalar_one()
    rows = (
        await session.execute(stmt.order_by(Subscription.updated_at.desc(), Subscription.id.desc()).limit(limit).offset(offset))
    ).all()
    return total, [(sub, user) for sub, user in rows]


async def subscription_stats(session: AsyncSession, now: dt.datetime | None = None, horizon_days: int = 7) -> dict:
    now = now or dt.datetime.now(dt.timezone.utc)
    by_status = dict(
        (await session.execute(select(Subscription.status, func.count()).group_by(Subscription.status))).all()
    )
    by_source = dict(
        (await session.execute(select(Subscription.source, func.count()).group_by(Subscription.source))).all()
    )
    expiring = (
        await session.execute(
            select(func.count())
            .select_from(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.is_lifetime.is_(False),
                Subscription.end_date >= now,
                Subscription.end_date < now + dt.timedelta(days=horizon_days),
            )
        )
    ).scalar_one()
    lifetime = (
        await session.execute(select(func.count()).select_from(Subscription).where(Subscription.is_lifetime.is_(True)))
    ).scalar_one()
    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "by_source": by_source,
        "expiring_soon": expiring,
        "lifetime": lifetime,
    }


def _cache_key(user_id: int) -> str:
    return f"sub:{user_id}"


async def cache_subscription(redis: Redis, sub: Subscription, ttl: int) -> None:
    end_date = as_utc(sub.end_date)
    cache_key = _cache_key(sub.user_id)
    await redis.hset(
        cache_key,
        mapping={
            "status": sub.status,
            "plan_type": sub.plan_type,
            "is_lifetime": "1" if sub.is_lifetime else "0",
            "end_date": end_date.isoformat() if end_date else "",
        },
    )
    await redis.expire(cache_key, ttl)


async def refresh_cache(session: AsyncSession, redis: Redis, user_id: int, ttl: int) -> None:
    sub = await get_subscription(session, user_id)
    if sub is None:
        await redis.delete(_cache_key(user_id))
        return
    await cache_subscription(redis, sub, ttl)


async def get_access(session: AsyncSession, redis: Redis, user_id: int, settings: Settings, now: dt.datetime | None = None) -> dict:
    now = now or dt.datetime.now(dt.timezone.utc)
    cached = await redis.hgetall(_cache_key(user_id))
    if cached and cached.get("status"):
        end_raw = cached.get("end_date") or None
        end_date = dt.datetime.fromisoformat(end_raw) if end_raw else None
        state = {
            "status": cached["status"],
            "plan_type": cached.get("plan_type"),
            "end_date": end_date,
            "is_lifetime": cached.get("is_lifetime") == "1",
            "cached": True,
        }
    else:
        sub = await get_subscription(session, user_id)
        if sub is None:
            state = {"status": SubscriptionStatus.NONE.value, "plan_type": None, "end_date": None, "is_lifetime": False}
        else:
            await cache_subscription(redis, sub, settings.subscription_cache_ttl_seconds)
            state = {
                "status": sub.status,
                "plan_type": sub.plan_type,
                "end_date": as_utc(sub.end_date),
                "is_lifetime": sub.is_lifetime,
            }
        state["cached"] = False
    state["user_id"] = user_id
    state["has_access"] = has_access(state["status"], state["end_date"], state["is_lifetime"], now)
    return state
