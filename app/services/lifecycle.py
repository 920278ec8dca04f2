import datetime as dt
from enum import Enum

from app.core.errors import InvalidTransition


class SubscriptionStatus(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


class LifecycleAction(str, Enum):
    ACTIVATE = "activate"
    FLAG_PAST_DUE = "flag_past_due"
    CANCEL = "cancel"  # access kept until end_date
    REVOKE = "revoke"  # refund / chargeback: access ends now
    EXPIRE = "expire"
    NOOP = "noop"


S = SubscriptionStatus
A = LifecycleAction

TRANSITIONS: dict[tuple[SubscriptionStatus, LifecycleAction], SubscriptionStatus] = {
    (S.NONE, A.ACTIVATE): S.ACTIVE,
    (S.ACTIVE, A.ACTIVATE): S.ACTIVE,
    (S.ACTIVE, A.FLAG_PAST_DUE): S.PAST_DUE,
    (S.ACTIVE, A.CANCEL): S.CANCELED,
    (S.ACTIVE, A.REVOKE): S.CANCELED,
    (S.ACTIVE, A.EXPIRE): S.EXPIRED,
    (S.PAST_DUE, A.ACTIVATE): S.ACTIVE,
    (S.PAST_DUE, A.FLAG_PAST_DUE): S.PAST_DUE,
    (S.PAST_DUE, A.CANCEL): S.CANCELED,
    (S.PAST_DUE, A.REVOKE): S.CANCELED,
    (S.PAST_DUE, A.EXPIRE): S.EXPIRED,
    (S.CANCELED, A.ACTIVATE): S.ACTIVE,
    (S.CANCELED, A.CANCEL): S.CANCELED,
    (S.CANCELED, A.REVOKE): S.CANCELED,
    (S.CANCELED, A.EXPIRE): S.EXPIRED,
    (S.EXPIRED, A.ACTIVATE): S.ACTIVE,
    (S.EXPIRED, A.CANCEL): S.EXPIRED,
    (S.EXPIRED, A.REVOKE): S.EXPIRED,
    (S.EXPIRED, A.EXPIRE): S.EXPIRED,
}


def next_status(current: str | SubscriptionStatus, action: str | LifecycleAction) -> SubscriptionStatus:
    """
    Resolve the status a subscription moves to when ``action`` is applied.
    Re-applying an action that already holds (cancel on canceled, expire on
    expired) resolves to the same status so duplicate deliveries are harmless.
    """
    current = SubscriptionStatus(current)
    action = LifecycleAction(action)
    try:
        return TRANSITIONS[(current, action)]
    except KeyError:
        raise InvalidTransition(current.value, action.value) from None


def as_utc(value: dt.datetime | None) -> dt.datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value


def has_access(status: str, end_date: dt.datetime | None, is_lifetime: bool, now: dt.datetime) -> bool:
    status = SubscriptionStatus(status)
    if status in (S.NONE, S.EXPIRED):
        return False
    if is_lifetime and status != S.CANCELED:
        return True
    end_date = as_utc(end_date)
    if end_date is None:
        return status in (S.ACTIVE, S.PAST_DUE)
    return end_date > now
