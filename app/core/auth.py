from fastapi import Header, HTTPException, status, Depends

from app.core.config import Settings
from app.core.deps import get_settings_dep
from app.core.security import verify_token, TokenClaims


async def get_current_claims(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings_dep),
) -> TokenClaims:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    token = authorization.split(" ", 1)[1]
    return verify_token(token, settings, expected_typ="access")


async def require_admin(claims: TokenClaims = Depends(get_current_claims)) -> TokenClaims:
    if claims.role != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return claims
