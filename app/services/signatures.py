import hashlib
import hmac
import logging
from typing import Mapping

from app.core.errors import SignatureError

logger = logging.getLogger(__name__)

HOTTOK_HEADERS = ("X-Hotmart-Hottok", "X-Hotmart-Webhook-Token")
DOPPUS_SIGNATURE_HEADER = "X-Doppus-Signature"


def _header(headers: Mapping[str, str], name: str) -> str | None:
    # Starlette headers are case-insensitive; plain dicts (tests, celery) are not
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value


def _allow_unsigned(provider: str, environment: str) -> None:
    if environment != "development":
        raise SignatureError(f"{provider} webhook secret not configured")
    logger.warning("%s webhook secret not configured; accepting unsigned payload in development", provider)


def verify_hotmart(secret: str | None, headers: Mapping[str, str], payload: dict, environment: str) -> None:
    if not secret:
        _allow_unsigned("hotmart", environment)
        return
    token = None
    for name in HOTTOK_HEADERS:
        token = _header(headers, name)
        if token:
            break
    if not token and isinstance(payload.get("hottok"), str):
        token = payload["hottok"]
    if not token:
        raise SignatureError("Missing hottok")
    if not hmac.compare_digest(token.strip().encode(), secret.encode()):
        raise SignatureError("Invalid hottok")


def compute_doppus_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), msg=body, digestmod=hashlib.sha256).hexdigest()


def verify_doppus(secret: str | None, headers: Mapping[str, str], body: bytes, environment: str) -> None:
    if not secret:
        _allow_unsigned("doppus", environment)
        return
    signature = _header(headers, DOPPUS_SIGNATURE_HEADER)
    if not signature:
        raise SignatureError("Missing signature")
    expected = compute_doppus_signature(secret, body)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise SignatureError("Invalid signature")
