"""
Provider payload parsing.

Hotmart and Doppus each send several payload shapes for the same facts
(buyer vs subscriber blocks, Doppus' legacy ``{event, data}`` envelope and its
flat 2025 format). Everything downstream works on ``NormalizedEvent`` only.
"""
import datetime as dt
import hashlib
from typing import Any

from pydantic import ValidationError

from app.core.errors import InvalidPayload
from app.schemas.webhook import NormalizedEvent
from app.services.lifecycle import LifecycleAction

EVENT_ACTIONS: dict[str, LifecycleAction] = {
    # Hotmart
    "PURCHASE_APPROVED": LifecycleAction.ACTIVATE,
    "PURCHASE_COMPLETE": LifecycleAction.ACTIVATE,
    "SUBSCRIPTION_REACTIVATION": LifecycleAction.ACTIVATE,
    "SUBSCRIPTION_RENEWED": LifecycleAction.ACTIVATE,
    "SUBSCRIPTION_ACTIVATED": LifecycleAction.ACTIVATE,
    "PURCHASE_DELAYED": LifecycleAction.FLAG_PAST_DUE,
    "PURCHASE_PROTEST": LifecycleAction.FLAG_PAST_DUE,
    "PURCHASE_CANCELED": LifecycleAction.REVOKE,
    "PURCHASE_REFUNDED": LifecycleAction.REVOKE,
    "PURCHASE_CHARGEBACK": LifecycleAction.REVOKE,
    "SUBSCRIPTION_CANCELLATION": LifecycleAction.CANCEL,
    "SUBSCRIPTION_CANCELLED": LifecycleAction.CANCEL,
    "SUBSCRIPTION_EXPIRED": LifecycleAction.EXPIRE,
    # Doppus (legacy events and current status codes)
    "PAYMENT_APPROVED": LifecycleAction.ACTIVATE,
    "PAYMENT_REFUNDED": LifecycleAction.REVOKE,
    "APPROVED": LifecycleAction.ACTIVATE,
    "DELAYED": LifecycleAction.FLAG_PAST_DUE,
    "OVERDUE": LifecycleAction.FLAG_PAST_DUE,
    "REFUNDED": LifecycleAction.REVOKE,
    "CHARGEBACK": LifecycleAction.REVOKE,
    "CANCELED": LifecycleAction.CANCEL,
    "CANCELLED": LifecycleAction.CANCEL,
    "EXPIRED": LifecycleAction.EXPIRE,
}


def action_for(event_type: str) -> LifecycleAction:
    return EVENT_ACTIONS.get(event_type.strip().upper(), LifecycleAction.NOOP)


def _dig(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _first(*values: Any) -> str | None:
    for value in values:
        if value not in (None, ""):
            return str(value)
    return None


def parse_timestamp(value: Any) -> dt.datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Hotmart sends epoch milliseconds
        seconds = value / 1000 if value > 10_000_000_000 else value
        try:
            return dt.datetime.fromtimestamp(seconds, tz=dt.timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=dt.timezone.utc)
        return parsed
    return None


def _normalize_email(value: str | None) -> str | None:
    return value.strip().lower() if value else None


def normalize_hotmart(payload: dict) -> NormalizedEvent:
    data = payload.get("data") or {}
    event_type = _first(payload.get("event"), _dig(data, "purchase", "status"))
    if not event_type:
        raise InvalidPayload("Hotmart payload without event type")

    email = _first(
        _dig(data, "buyer", "email"),
        _dig(data, "subscriber", "email"),
        _dig(data, "subscription", "subscriber", "email"),
        _dig(payload, "buyer", "email"),
        _dig(payload, "subscriber", "email"),
    )
    name = _first(
        _dig(data, "buyer", "name"),
        _dig(data, "subscriber", "name"),
        _dig(data, "subscription", "subscriber", "name"),
        _dig(payload, "buyer", "name"),
    )
    return NormalizedEvent(
        provider="hotmart",
        event_type=event_type.upper(),
        action=action_for(event_type),
        transaction_id=_first(
            _dig(data, "purchase", "transaction"),
            _dig(data, "purchase", "transaction_code"),
            _dig(data, "subscription", "code"),
        ),
        email=_normalize_email(email),
        name=name,
        product_id=_first(_dig(data, "product", "id")),
        offer_id=_first(_dig(data, "purchase", "offer", "code")),
        product_name=_first(_dig(data, "subscription", "plan", "name"), _dig(data, "product", "name")),
        subscriber_code=_first(_dig(data, "subscription", "subscriber", "code"), _dig(data, "subscriber", "code")),
        occurred_at=parse_timestamp(payload.get("creation_date")),
    )


def normalize_doppus(payload: dict) -> NormalizedEvent:
    legacy_event = _first(payload.get("event"), payload.get("evento"))
    if legacy_event:
        data = payload.get("data")
        if not isinstance(data, dict):
            data = {}
        return NormalizedEvent(
            provider="doppus",
            event_type=legacy_event.upper(),
            action=action_for(legacy_event),
            transaction_id=_first(_dig(data, "transaction", "code"), data.get("transaction_code")),
            email=_normalize_email(_first(_dig(data, "customer", "email"))),
            name=_first(_dig(data, "customer", "name")),
            product_id=_first(_dig(data, "product", "code")),
            product_name=_first(_dig(data, "product", "name")),
        )

    status_code = _first(_dig(payload, "status", "code"))
    if not status_code:
        raise InvalidPayload("Doppus payload without event or status code")
    items = payload.get("items")
    item = items[0] if isinstance(items, list) and items and isinstance(items[0], dict) else {}
    return NormalizedEvent(
        provider="doppus",
        event_type=status_code.upper(),
        action=action_for(status_code),
        transaction_id=_first(_dig(payload, "transaction", "code")),
        email=_normalize_email(_first(_dig(payload, "customer", "email"))),
        name=_first(_dig(payload, "customer", "name")),
        product_id=_first(item.get("code")),
        offer_id=_first(item.get("offer")),
        product_name=_first(item.get("offer_name"), item.get("name")),
        subscriber_code=_first(_dig(payload, "recurrence", "code")),
        occurred_at=parse_timestamp(_dig(payload, "status", "date")),
        expires_at=parse_timestamp(_dig(payload, "recurrence", "expiration_date")),
    )


NORMALIZERS = {
    "hotmart": normalize_hotmart,
    "doppus": normalize_doppus,
}


def normalize(provider: str, payload: dict) -> NormalizedEvent:
    try:
        parser = NORMALIZERS[provider]
    except KeyError:
        raise InvalidPayload(f"Unknown provider {provider}") from None
    if not isinstance(payload, dict):
        raise InvalidPayload("Webhook body must be a JSON object")
    try:
        return parser(payload)
    except ValidationError as exc:
        raise InvalidPayload(f"Unreadable {provider} payload: {exc.error_count()} invalid fields") from exc


def idempotency_key(event: NormalizedEvent, raw_body: bytes) -> str:
    if event.transaction_id:
        return f"{event.provider}:{event.transaction_id}:{event.event_type}"
    return f"{event.provider}:sha256:{hashlib.sha256(raw_body).hexdigest()}"
