import datetime as dt

import pytest
from sqlalchemy import select, update

from app.core.errors import ConcurrencyConflict, InvalidPayload, InvalidTransition, TerminalError
from app.models.subscription import ProductMapping, Subscription
from app.models.user import User
from app.services import subscriptions
from app.services.normalize import normalize
from app.services.plans import terms_from_name

from payloads import doppus_payload, hotmart_payload

NOW = dt.datetime(2025, 6, 1, 12, 0, tzinfo=dt.timezone.utc)


async def _user(session, email):
    stmt = select(User).where(User.email == email).execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalar_one()


async def test_activation_creates_user_and_subscription(session, settings):
    event = normalize("hotmart", hotmart_payload(plan_name="Plano Anual"))
    result = await subscriptions.apply_event(session, event, settings, now=NOW)
    await session.commit()

    assert result.previous_status == "none"
    assert result.status == "active"
    user = await _user(session, "buyer@example.com")
    assert user.username == "buyer"
    assert user.access_level == "premium"
    sub = await subscriptions.get_subscription(session, user.id)
    assert sub.source == "hotmart"
    assert sub.plan_type == "premium_365"
    assert sub.version == 1
    assert subscriptions.as_utc(sub.end_date) == NOW + dt.timedelta(days=365)


async def test_product_mapping_wins_over_name(session, settings):
    session.add(ProductMapping(provider="doppus", product_id="PREMIUM_MENSAL", plan_type="premium_30", duration_days=30))
    await session.commit()
    event = normalize("doppus", doppus_payload(item_code="PREMIUM_MENSAL"))
    await subscriptions.apply_event(session, event, settings, now=NOW)
    await session.commit()
    user = await _user(session, "cliente@example.com")
    sub = await subscriptions.get_subscription(session, user.id)
    assert sub.plan_type == "premium_30"
    assert subscriptions.as_utc(sub.end_date) == NOW + dt.timedelta(days=30)


async def test_provider_expiration_date_wins(session, settings):
    event = normalize("doppus", doppus_payload(item_code="UNKNOWN", expiration_date="2025-09-01T00:00:00Z"))
    result = await subscriptions.apply_event(session, event, settings, now=NOW)
    assert result.end_date == dt.datetime(2025, 9, 1, tzinfo=dt.timezone.utc)


async def test_renewal_extends_from_current_end_date(session, settings):
    first = normalize("hotmart", hotmart_payload(plan_name="Mensal", transaction="T1"))
    await subscriptions.apply_event(session, first, settings, now=NOW)
    await session.commit()

    renewal = normalize("hotmart", hotmart_payload(event="SUBSCRIPTION_RENEWED", plan_name="Mensal", transaction="T2"))
    later = NOW + dt.timedelta(days=10)
    result = await subscriptions.apply_event(session, renewal, settings, now=later)
    await session.commit()

    assert result.end_date == NOW + dt.timedelta(days=60)
    user = await _user(session, "buyer@example.com")
    sub = await subscriptions.get_subscription(session, user.id)
    assert sub.version == 2
    assert sub.transaction_id == "T2"


async def test_complete_after_approved_keeps_term(session, settings):
    await subscriptions.apply_event(session, normalize("hotmart", hotmart_payload()), settings, now=NOW)
    await session.commit()

    complete = normalize("hotmart", hotmart_payload(event="PURCHASE_COMPLETE"))
    result = await subscriptions.apply_event(session, complete, settings, now=NOW + dt.timedelta(days=7))
    await session.commit()

    assert result.status == "active"
    assert result.end_date == NOW + dt.timedelta(days=365)
    user = await _user(session, "buyer@example.com")
    sub = await subscriptions.get_subscription(session, user.id)
    assert subscriptions.as_utc(sub.start_date) == NOW
    assert subscriptions.as_utc(sub.end_date) == NOW + dt.timedelta(days=365)


async def test_cancel_keeps_access_until_end_date(session, settings, redis):
    await subscriptions.apply_event(session, normalize("hotmart", hotmart_payload(plan_name="Mensal")), settings, now=NOW)
    await session.commit()
    cancel = normalize("hotmart", hotmart_payload(event="SUBSCRIPTION_CANCELLATION"))
    result = await subscriptions.apply_event(session, cancel, settings, now=NOW + dt.timedelta(days=1))
    await session.commit()

    assert result.status == "canceled"
    user = await _user(session, "buyer@example.com")
    access = await subscriptions.get_access(session, redis, user.id, settings, now=NOW + dt.timedelta(days=2))
    assert access["has_access"] is True
    assert access["cached"] is False
    access = await subscriptions.get_access(session, redis, user.id, settings, now=NOW + dt.timedelta(days=31))
    assert access["has_access"] is False
    assert access["cached"] is True


async def test_lifetime_cancel_ends_access(session, settings, redis):
    event = normalize("hotmart", hotmart_payload(plan_name="Vitalicio"))
    await subscriptions.apply_event(session, event, settings, now=NOW)
    await session.commit()
    cancel = normalize("hotmart", hotmart_payload(event="SUBSCRIPTION_CANCELLATION"))
    result = await subscriptions.apply_event(session, cancel, settings, now=NOW + dt.timedelta(days=1))
    await session.commit()

    assert result.status == "canceled"
    assert result.end_date is None
    user = await _user(session, "buyer@example.com")
    assert user.access_level == "free"
    access = await subscriptions.get_access(session, redis, user.id, settings, now=NOW + dt.timedelta(days=2))
    assert access["is_lifetime"] is True
    assert access["has_access"] is False


async def test_refund_revokes_immediately(session, settings):
    await subscriptions.apply_event(session, normalize("hotmart", hotmart_payload()), settings, now=NOW)
    await session.commit()
    refund = normalize("hotmart", hotmart_payload(event="PURCHASE_REFUNDED"))
    result = await subscriptions.apply_event(session, refund, settings, now=NOW + dt.timedelta(days=1))
    await session.commit()

    assert result.status == "canceled"
    assert result.end_date == NOW + dt.timedelta(days=1)
    user = await _user(session, "buyer@example.com")
    assert user.access_level == "free"


async def test_refund_of_older_transaction_is_ignored(session, settings):
    await subscriptions.apply_event(session, normalize("hotmart", hotmart_payload(transaction="NEW")), settings, now=NOW)
    await session.commit()
    stale = normalize("hotmart", hotmart_payload(event="PURCHASE_REFUNDED", transaction="OLD"))
    result = await subscriptions.apply_event(session, stale, settings, now=NOW)
    assert result.changed is False
    assert result.status == "active"


async def test_cancel_without_subscription_is_invalid(session, settings):
    user = await subscriptions.get_or_create_user(session, "nobody@example.com")
    await session.commit()
    with pytest.raises(InvalidTransition):
        await subscriptions.cancel_subscription(session, user, now=NOW)


async def test_non_activation_for_unknown_user_is_terminal(session, settings):
    event = normalize("hotmart", hotmart_payload(event="PURCHASE_DELAYED", email="ghost@example.com", transaction="X9"))
    with pytest.raises(TerminalError):
        await subscriptions.apply_event(session, event, settings, now=NOW)


async def test_activation_without_email_is_invalid(session, settings):
    event = normalize("hotmart", hotmart_payload(email=None))
    with pytest.raises(InvalidPayload):
        await subscriptions.apply_event(session, event, settings, now=NOW)


async def test_stale_version_raises_conflict(session, settings):
    await subscriptions.apply_event(session, normalize("hotmart", hotmart_payload()), settings, now=NOW)
    await session.commit()
    user = await _user(session, "buyer@example.com")
    sub = await subscriptions.get_subscription(session, user.id)

    # another writer bumps the version after our read
    await session.execute(
        update(Subscription)
        .where(Subscription.id == sub.id)
        .values(version=sub.version + 1)
        .execution_options(synchronize_session=False)
    )
    await session.commit()

    values = subscriptions._values_for(
        subscriptions.LifecycleAction.CANCEL, subscriptions.SubscriptionStatus.CANCELED, sub, NOW, "test"
    )
    with pytest.raises(ConcurrencyConflict):
        await subscriptions._write(session, user, sub, values, NOW)


async def test_username_collision_gets_suffix(session):
    first = await subscriptions.get_or_create_user(session, "ana@example.com")
    second = await subscriptions.get_or_create_user(session, "ana@other.example")
    assert first.username == "ana"
    assert second.username.startswith("ana_")
    again = await subscriptions.get_or_create_user(session, "ANA@example.com")
    assert again.id == first.id


async def test_admin_set_and_cancel(session, settings):
    user = await subscriptions.get_or_create_user(session, "vip@example.com")
    result = await subscriptions.set_subscription(session, user, "premium_lifetime", None, is_lifetime=True, now=NOW)
    await session.commit()
    assert result.status == "active"
    assert result.end_date is None
    sub = await subscriptions.get_subscription(session, user.id)
    assert sub.source == "admin"
    assert sub.is_lifetime is True

    result = await subscriptions.cancel_subscription(session, user, reason="requested", immediate=True, now=NOW)
    await session.commit()
    sub = await subscriptions.get_subscription(session, user.id)
    assert sub.status == "canceled"
    assert sub.cancel_reason == "requested"
    assert sub.is_lifetime is False


async def test_admin_users_keep_access_level(session, settings):
    admin = await subscriptions.get_or_create_user(session, "admin@example.com")
    await session.execute(update(User).where(User.id == admin.id).values(role="admin", access_level="admin"))
    await session.commit()
    await subscriptions.apply_event(session, normalize("hotmart", hotmart_payload(email="admin@example.com")), settings, now=NOW)
    await session.commit()
    refreshed = (
        await session.execute(select(User).where(User.id == admin.id).execution_options(populate_existing=True))
    ).scalar_one()
    assert refreshed.access_level == "admin"


async def test_expire_due_sweeps_lapsed(session, settings):
    await subscriptions.apply_event(session, normalize("hotmart", hotmart_payload(plan_name="Mensal")), settings, now=NOW)
    await subscriptions.apply_event(
        session,
        normalize("hotmart", hotmart_payload(email="life@example.com", transaction="L1", plan_name="Vitalicio")),
        settings,
        now=NOW,
    )
    await session.commit()

    expired = await subscriptions.expire_due(session, now=NOW + dt.timedelta(days=31))
    user = await _user(session, "buyer@example.com")
    assert expired == [user.id]
    sub = await subscriptions.get_subscription(session, user.id)
    assert sub.status == "expired"

    assert await subscriptions.expire_due(session, now=NOW + dt.timedelta(days=31)) == []


async def test_expire_due_continues_after_conflict(session, settings, monkeypatch):
    for email, transaction in (("first@example.com", "E1"), ("second@example.com", "E2")):
        event = normalize("hotmart", hotmart_payload(email=email, transaction=transaction, plan_name="Mensal"))
        await subscriptions.apply_event(session, event, settings, now=NOW)
    await session.commit()

    original = subscriptions._write
    calls = []

    async def conflict_once(session, user, sub, values, now):
        calls.append(sub.id)
        if len(calls) == 1:
            raise ConcurrencyConflict(sub.id, sub.version)
        return await original(session, user, sub, values, now)

    monkeypatch.setattr(subscriptions, "_write", conflict_once)
    expired = await subscriptions.expire_due(session, now=NOW + dt.timedelta(days=31))

    second = await _user(session, "second@example.com")
    assert expired == [second.id]
    assert (await subscriptions.get_subscription(session, second.id)).status == "expired"
    first = await _user(session, "first@example.com")
    assert (await subscriptions.get_subscription(session, first.id)).status == "active"


async def test_stats_and_listing(session, settings):
    await subscriptions.apply_event(session, normalize("hotmart", hotmart_payload(plan_name="Mensal")), settings, now=NOW)
    await subscriptions.apply_event(
        session, normalize("doppus", doppus_payload(item_code="X", expiration_date="2025-06-05T00:00:00Z")), settings, now=NOW
    )
    await session.commit()

    stats = await subscriptions.subscription_stats(session, now=NOW)
    assert stats["total"] == 2
    assert stats["by_status"] == {"active": 2}
    assert stats["by_source"] == {"hotmart": 1, "doppus": 1}
    assert stats["expiring_soon"] == 1

    total, rows = await subscriptions.list_subscriptions(session, source="doppus")
    assert total == 1
    assert rows[0][1].email == "cliente@example.com"


def test_terms_from_name(settings):
    assert terms_from_name("Plano Semestral", settings).duration_days == 180
    lifetime = terms_from_name("Acesso Vitalício", settings)
    assert lifetime.is_lifetime and lifetime.end_date(NOW) is None
    default = terms_from_name("Premium", settings)
    assert (default.plan_type, default.duration_days) == ("premium", 30)
