import datetime as dt
import uuid
from typing import Any

from fastapi import HTTPException, status
from jose import jwt, JWTError
from pydantic import BaseModel, ValidationError

from app.core.config import Settings


class TokenClaims(BaseModel):
    sub: str
    role: str = "user"
    exp: int
    typ: str
    jti: str | None = None
    aud: str | list[str] | None = None
    iss: str | None = None
    nbf: int | None = None
    iat: int | None = None


def _verification_key(settings: Settings) -> str:
    if settings.jwt_algorithm.startswith("HS"):
        if settings.jwt_secret_key:
            return settings.jwt_secret_key
    elif settings.jwt_public_key:
        return settings.jwt_public_key
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="No verification key available")


def _get_leeway(settings: Settings) -> int:
    return max(0, settings.jwt_clock_skew_seconds)


def verify_token(token: str, settings: Settings, expected_typ: str = "access") -> TokenClaims:
    """
    Verify a JWT issued by the main site; enforce aud/iss/nbf/iat and typ.
    """
    options = {
        "verify_aud": settings.jwt_audience is not None,
        "verify_iss": settings.jwt_issuer is not None,
        "leeway": _get_leeway(settings),
    }
    key = _verification_key(settings)
    try:
        payload = jwt.decode(
            token,
            key,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options=options,
        )
        claims = TokenClaims(**payload)
    except (JWTError, ValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token verification failed") from exc

    if claims.typ != expected_typ:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unexpected token type")

    now_ts = int(dt.datetime.now(dt.timezone.utc).timestamp())
    leeway = _get_leeway(settings)
    if claims.nbf and claims.nbf - leeway > now_ts:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token not yet valid")
    if claims.iat and claims.iat - leeway > now_ts:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token issued in the future")

    return claims


def _sign_payload(payload: dict[str, Any], settings: Settings) -> str:
    if settings.jwt_private_key:
        return jwt.encode(payload, settings.jwt_private_key, algorithm=settings.jwt_algorithm)
    if settings.jwt_secret_key and settings.jwt_algorithm.startswith("HS"):
        return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    raise RuntimeError("No signing key configured")


def create_access_token(subject: str, role: str, settings: Settings) -> str:
    """Issue an access token; used by local tooling and tests."""
    now = dt.datetime.now(dt.timezone.utc)
    expire = now + dt.timedelta(minutes=settings.jwt_expire_minutes)
    payload = {
        "sub": subject,
        "role": role,
        "exp": int(expire.timestamp()),
        "nbf": int(now.timestamp()),
        "iat": int(now.timestamp()),
        "typ": "access",
        "jti": str(uuid.uuid4()),
    }
    if settings.jwt_audience:
        payload["aud"] = settings.jwt_audience
    if settings.jwt_issuer:
        payload["iss"] = settings.jwt_issuer
    return _sign_payload(payload, settings)
