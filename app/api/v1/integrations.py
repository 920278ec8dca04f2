import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import require_admin
from app.core.config import Settings
from app.core.deps import get_db_session, get_settings_dep
from app.core.errors import InvalidPayload, ProviderAPIError
from app.models.subscription import ProductMapping
from app.schemas.subscription import ProductMappingIn, ProductMappingOut, ProviderSettingsIn, ProviderTestOut
from app.services import integrations
from app.services.provider_api import build_client

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


def _known_provider(provider: str) -> str:
    if provider not in integrations.PROVIDER_KEYS:
        raise HTTPException(status_code=404, detail=f"Unknown provider {provider}")
    return provider


@router.get("/settings")
async def get_settings_view(
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings_dep),
):
    return await integrations.settings_view(session, settings)


@router.put("/settings/{provider}")
async def update_settings(
    provider: str,
    payload: ProviderSettingsIn,
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings_dep),
):
    _known_provider(provider)
    try:
        changed = await integrations.update_provider_settings(session, provider, payload.values)
    except InvalidPayload as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    view = await integrations.settings_view(session, settings)
    return {"updated": changed, "settings": view[provider]}


@router.get("/mappings", response_model=list[ProductMappingOut])
async def list_mappings(provider: str | None = None, session: AsyncSession = Depends(get_db_session)):
    stmt = select(ProductMapping).order_by(ProductMapping.provider, ProductMapping.product_id)
    if provider:
        stmt = stmt.where(ProductMapping.provider == provider)
    return (await session.execute(stmt)).scalars().all()


async def _mapping_or_404(session: AsyncSession, mapping_id: int) -> ProductMapping:
    mapping = await session.get(ProductMapping, mapping_id)
    if mapping is None:
        raise HTTPException(status_code=404, detail="Mapping not found")
    return mapping


@router.post("/mappings", response_model=ProductMappingOut, status_code=201)
async def create_mapping(payload: ProductMappingIn, session: AsyncSession = Depends(get_db_session)):
    mapping = ProductMapping(**payload.model_dump())
    session.add(mapping)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise HTTPException(status_code=409, detail="Mapping already exists for this product/offer") from exc
    await session.refresh(mapping)
    logger.info("Created %s mapping %s -> %s", mapping.provider, mapping.product_id, mapping.plan_type)
    return mapping


@router.get("/mappings/{mapping_id}", response_model=ProductMappingOut)
async def get_mapping(mapping_id: int, session: AsyncSession = Depends(get_db_session)):
    return await _mapping_or_404(session, mapping_id)


@router.put("/mappings/{mapping_id}", response_model=ProductMappingOut)
async def update_mapping(
    mapping_id: int, payload: ProductMappingIn, session: AsyncSession = Depends(get_db_session)
):
    mapping = await _mapping_or_404(session, mapping_id)
    for field, value in payload.model_dump().items():
        setattr(mapping, field, value)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise HTTPException(status_code=409, detail="Mapping already exists for this product/offer") from exc
    await session.refresh(mapping)
    return mapping


@router.delete("/mappings/{mapping_id}", status_code=204)
async def delete_mapping(mapping_id: int, session: AsyncSession = Depends(get_db_session)):
    await _mapping_or_404(session, mapping_id)
    await session.execute(delete(ProductMapping).where(ProductMapping.id == mapping_id))
    await session.commit()
    return Response(status_code=204)


async def get_provider_http():
    """Overridable outbound HTTP client; ``None`` lets each call open its own."""
    return None


@router.post("/{provider}/test", response_model=ProviderTestOut)
async def test_provider(
    provider: str,
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings_dep),
    http=Depends(get_provider_http),
):
    _known_provider(provider)
    credentials = await integrations.get_credentials(session, settings, provider)
    client = build_client(provider, credentials, settings, http=http)
    try:
        result = await client.test_connection()
    except ProviderAPIError as exc:
        logger.warning("Connection test failed: %s", exc)
        return ProviderTestOut(provider=provider, ok=False, detail=str(exc))
    return ProviderTestOut(provider=provider, ok=result["ok"])


@router.get("/{provider}/subscriptions")
async def provider_subscription_status(
    provider: str,
    email: str = Query(..., min_length=3, max_length=255),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings_dep),
    http=Depends(get_provider_http),
):
    """Look a buyer up on the provider side, for support questions the local log can't answer."""
    _known_provider(provider)
    credentials = await integrations.get_credentials(session, settings, provider)
    client = build_client(provider, credentials, settings, http=http)
    try:
        data = await client.subscription_status(email.strip().lower())
    except ProviderAPIError as exc:
        logger.warning("Subscription lookup failed: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {"provider": provider, "email": email.strip().lower(), "data": data}
