import datetime as dt
import json

import pytest
from sqlalchemy import select, update

from app.core.errors import InvalidPayload, SignatureError
from app.models.subscription import Subscription
from app.models.user import User
from app.models.webhook import WebhookEvent
from app.services import subscriptions, webhooks
from app.services.normalize import normalize
from app.services.signatures import compute_doppus_signature

from payloads import DOPPUS_SECRET, HOTTOK, doppus_legacy_payload, doppus_payload, hotmart_payload


def _hotmart(payload: dict) -> tuple[bytes, dict]:
    return json.dumps(payload).encode(), {"X-Hotmart-Hottok": HOTTOK}


def _doppus(payload: dict) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode()
    return body, {"X-Doppus-Signature": compute_doppus_signature(DOPPUS_SECRET, body)}


async def _ingest_hotmart(session, settings, payload):
    body, headers = _hotmart(payload)
    return await webhooks.ingest(session, settings, "hotmart", body, headers, source_ip="10.0.0.1")


async def test_ingest_stores_pending_event(session, settings):
    event, duplicate = await _ingest_hotmart(session, settings, hotmart_payload())
    assert duplicate is False
    assert event.status == webhooks.PENDING
    assert event.idempotency_key == "hotmart:HP123456:PURCHASE_APPROVED"
    assert event.email == "buyer@example.com"
    assert event.source_ip == "10.0.0.1"


async def test_duplicate_delivery_returns_existing(session, settings):
    first, _ = await _ingest_hotmart(session, settings, hotmart_payload())
    again, duplicate = await _ingest_hotmart(session, settings, hotmart_payload())
    assert duplicate is True
    assert again.id == first.id
    count = len((await session.execute(select(WebhookEvent))).scalars().all())
    assert count == 1


async def test_hottok_is_not_persisted(session, settings):
    payload = hotmart_payload()
    payload["hottok"] = HOTTOK
    event, _ = await webhooks.ingest(session, settings, "hotmart", json.dumps(payload).encode(), {})
    assert "hottok" not in event.payload


async def test_bad_signature_stores_nothing(session, settings):
    body = json.dumps(hotmart_payload()).encode()
    with pytest.raises(SignatureError):
        await webhooks.ingest(session, settings, "hotmart", body, {"X-Hotmart-Hottok": "wrong"})
    body, _ = _doppus(doppus_payload())
    with pytest.raises(SignatureError):
        await webhooks.ingest(session, settings, "doppus", body, {"X-Doppus-Signature": "00" * 32})
    assert (await session.execute(select(WebhookEvent))).first() is None


async def test_invalid_json_rejected(session, settings):
    with pytest.raises(InvalidPayload):
        await webhooks.ingest(session, settings, "hotmart", b"not json", {"X-Hotmart-Hottok": HOTTOK})
    with pytest.raises(InvalidPayload):
        await webhooks.ingest(session, settings, "hotmart", b"[1, 2]", {"X-Hotmart-Hottok": HOTTOK})


async def test_unreadable_payload_stored_as_terminal_failure(session, settings):
    body, headers = _hotmart({"data": {"nothing": "here"}})
    event, duplicate = await webhooks.ingest(session, settings, "hotmart", body, headers)
    assert duplicate is False
    assert event.status == webhooks.FAILED
    assert event.error_kind == "terminal"
    assert event.idempotency_key.startswith("hotmart:sha256:")


async def test_unknown_event_is_ignored(session, settings):
    event, _ = await _ingest_hotmart(session, settings, hotmart_payload(event="CLUB_FIRST_ACCESS"))
    assert event.status == webhooks.IGNORED


async def test_process_applies_and_caches(session, settings, redis):
    event, _ = await _ingest_hotmart(session, settings, hotmart_payload())
    status = await webhooks.process_event(session, settings, event.id, redis=redis)
    assert status == webhooks.PROCESSED

    stored = await webhooks.get_event(session, event.id)
    assert stored.attempts == 1
    assert stored.result["status"] == "active"
    assert stored.processed_at is not None
    assert await redis.hget(f"sub:{stored.result['user_id']}", "status") == "active"

    # a second run finds nothing to claim
    assert await webhooks.process_event(session, settings, event.id, redis=redis) is None


async def test_terminal_failure_not_retried(session, settings):
    event, _ = await _ingest_hotmart(
        session, settings, hotmart_payload(event="PURCHASE_DELAYED", email="ghost@example.com", transaction="G1")
    )
    event_id = event.id
    status = await webhooks.process_event(session, settings, event_id)
    assert status == webhooks.FAILED
    stored = await webhooks.get_event(session, event_id)
    assert stored.error_kind == "terminal"
    assert "ghost@example.com" in stored.last_error
    assert await webhooks.drain_pending(session, settings) == 0


async def test_conflict_is_retried_until_budget_spent(session, settings, monkeypatch):
    from app.core.errors import ConcurrencyConflict

    async def conflicting(*args, **kwargs):
        raise ConcurrencyConflict(1, 1)

    monkeypatch.setattr(webhooks, "apply_event", conflicting)
    event, _ = await _ingest_hotmart(session, settings, hotmart_payload())
    event_id = event.id

    assert await webhooks.process_event(session, settings, event_id) == webhooks.PENDING
    assert await webhooks.process_event(session, settings, event_id) == webhooks.PENDING
    assert await webhooks.process_event(session, settings, event_id) == webhooks.FAILED
    stored = await webhooks.get_event(session, event_id)
    assert stored.attempts == settings.webhook_max_attempts
    assert stored.error_kind == "retryable"


async def test_requeue_resets_failed_event(session, settings):
    event, _ = await _ingest_hotmart(
        session, settings, hotmart_payload(event="PURCHASE_DELAYED", email="late@example.com", transaction="R1")
    )
    event_id = event.id
    assert await webhooks.process_event(session, settings, event_id) == webhooks.FAILED
    assert await webhooks.requeue(session, 999) is None

    # the buyer shows up later; reprocessing now succeeds
    await subscriptions.apply_event(
        session,
        normalize("hotmart", hotmart_payload(email="late@example.com", transaction="R0")),
        settings,
    )
    await session.commit()
    requeued = await webhooks.requeue(session, event_id)
    assert requeued.status == webhooks.PENDING
    assert requeued.attempts == 0
    assert await webhooks.process_event(session, settings, event_id) == webhooks.PROCESSED

    user = (await session.execute(select(User).where(User.email == "late@example.com"))).scalar_one()
    sub = await subscriptions.get_subscription(session, user.id)
    assert sub.status == "past_due"


async def test_drain_processes_oldest_first(session, settings):
    body, headers = _doppus(doppus_payload(email="a@example.com", transaction="D1"))
    await webhooks.ingest(session, settings, "doppus", body, headers)
    body, headers = _doppus(doppus_payload(email="b@example.com", transaction="D2"))
    await webhooks.ingest(session, settings, "doppus", body, headers)

    assert await webhooks.drain_pending(session, settings, limit=1) == 1
    total, rows = await webhooks.list_events(session, status=webhooks.PENDING)
    assert total == 1
    assert rows[0].email == "b@example.com"
    assert await webhooks.drain_pending(session, settings) == 1

    stats = await webhooks.event_stats(session)
    assert stats["by_status"] == {"processed": 2}
    assert stats["by_provider"] == {"doppus": 2}


async def test_delivery_order_cancel_then_expire(session, settings):
    for payload in (
        hotmart_payload(),
        hotmart_payload(event="SUBSCRIPTION_CANCELLATION"),
        hotmart_payload(event="SUBSCRIPTION_EXPIRED"),
    ):
        event, _ = await _ingest_hotmart(session, settings, payload)
        assert await webhooks.process_event(session, settings, event.id) == webhooks.PROCESSED

    sub = (
        await session.execute(
            select(Subscription).join(User, User.id == Subscription.user_id).where(User.email == "buyer@example.com")
            .execution_options(populate_existing=True)
        )
    ).scalar_one()
    assert sub.status == "expired"
    assert sub.version == 3


async def test_doppus_signature_checked_before_parsing(session, settings):
    with pytest.raises(SignatureError):
        await webhooks.ingest(session, settings, "doppus", b"{garbage", {})

    body = b"{garbage"
    signed = {"X-Doppus-Signature": compute_doppus_signature(DOPPUS_SECRET, body)}
    with pytest.raises(InvalidPayload):
        await webhooks.ingest(session, settings, "doppus", body, signed)
    assert (await session.execute(select(WebhookEvent))).first() is None


async def test_oddly_shaped_payloads_are_stored(session, settings):
    legacy = doppus_legacy_payload()
    legacy["data"] = ["not", "a", "dict"]
    event, _ = await webhooks.ingest(session, settings, "doppus", *_doppus(legacy))
    assert event.status == webhooks.PENDING
    assert event.idempotency_key.startswith("doppus:sha256:")
    event_id = event.id
    # activation without a buyer email can never succeed
    assert await webhooks.process_event(session, settings, event_id) == webhooks.FAILED
    assert (await webhooks.get_event(session, event_id)).error_kind == "terminal"

    current = doppus_payload(transaction="D-ITEMS")
    current["items"] = {"code": "PREMIUM_MENSAL"}
    event, _ = await webhooks.ingest(session, settings, "doppus", *_doppus(current))
    assert event.status == webhooks.PENDING
    assert event.idempotency_key == "doppus:D-ITEMS:APPROVED"

    payload = hotmart_payload(transaction="H-EPOCH")
    payload["creation_date"] = 10**20
    event, _ = await _ingest_hotmart(session, settings, payload)
    assert event.status == webhooks.PENDING


async def test_unexpected_error_is_retried(session, settings, monkeypatch):
    async def broken(*args, **kwargs):
        raise RuntimeError("lost connection to the cache")

    monkeypatch.setattr(webhooks, "apply_event", broken)
    event, _ = await _ingest_hotmart(session, settings, hotmart_payload())
    event_id = event.id
    assert await webhooks.process_event(session, settings, event_id) == webhooks.PENDING
    stored = await webhooks.get_event(session, event_id)
    assert stored.error_kind == "retryable"
    assert "lost connection" in stored.last_error

    monkeypatch.setattr(webhooks, "apply_event", subscriptions.apply_event)
    assert await webhooks.drain_pending(session, settings) == 1
    assert (await webhooks.get_event(session, event_id)).status == webhooks.PROCESSED


async def _abandon_claim(session, event_id, **values):
    # the worker holding the claim died before recording an outcome
    await session.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == event_id)
        .values(claimed_at=dt.datetime.now(dt.timezone.utc) - dt.timedelta(hours=1), **values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def test_stale_claim_is_recovered_by_drain(session, settings):
    event, _ = await _ingest_hotmart(session, settings, hotmart_payload())
    assert await webhooks._claim(session, event.id)

    # a live claim is left alone
    assert await webhooks.drain_pending(session, settings) == 0
    assert (await webhooks.get_event(session, event.id)).status == webhooks.PROCESSING

    await _abandon_claim(session, event.id)
    assert await webhooks.drain_pending(session, settings) == 1
    stored = await webhooks.get_event(session, event.id)
    assert stored.status == webhooks.PROCESSED
    assert stored.attempts == 2


async def test_stale_claim_past_budget_fails(session, settings):
    event, _ = await _ingest_hotmart(session, settings, hotmart_payload())
    assert await webhooks._claim(session, event.id)
    await _abandon_claim(session, event.id, attempts=settings.webhook_max_attempts)

    assert await webhooks.release_stale_claims(session, settings) == 1
    stored = await webhooks.get_event(session, event.id)
    assert stored.status == webhooks.FAILED
    assert stored.error_kind == "retryable"
    assert stored.processed_at is not None
