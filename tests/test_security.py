import datetime as dt

import pytest
from fastapi import HTTPException
from jose import jwt

from app.core.security import create_access_token, verify_token


@pytest.mark.asyncio
async def test_access_token_roundtrip(settings):
    token = create_access_token("42", "admin", settings)
    claims = verify_token(token, settings, expected_typ="access")
    assert claims.sub == "42"
    assert claims.role == "admin"
    assert claims.typ == "access"
    assert claims.aud == settings.jwt_audience
    assert claims.iss == settings.jwt_issuer


def test_typ_enforced(settings):
    token = create_access_token("42", "admin", settings)
    with pytest.raises(HTTPException):
        verify_token(token, settings, expected_typ="refresh")


def test_wrong_secret_rejected(settings):
    token = create_access_token("42", "admin", settings)
    other = settings.model_copy(update={"jwt_secret_key": "another-secret"})
    with pytest.raises(HTTPException) as exc:
        verify_token(token, other)
    assert exc.value.status_code == 401


def test_future_iat_rejected(settings):
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": "u",
        "role": "admin",
        "typ": "access",
        "jti": "123",
        "exp": int((now + dt.timedelta(minutes=5)).timestamp()),
        "iat": int((now + dt.timedelta(seconds=settings.jwt_clock_skew_seconds + 10)).timestamp()),
        "nbf": int(now.timestamp()),
        "aud": settings.jwt_audience,
        "iss": settings.jwt_issuer,
    }
    token = jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    with pytest.raises(HTTPException):
        verify_token(token, settings, expected_typ="access")


async def test_admin_routes_require_bearer(client):
    resp = await client.get("/api/subscriptions")
    assert resp.status_code == 401


async def test_admin_routes_require_admin_role(client, settings):
    token = create_access_token("7", "user", settings)
    resp = await client.get("/api/subscriptions", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 403


async def test_security_headers_present(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
