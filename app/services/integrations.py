import logging

from sqlalchemy import select, insert, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.errors import InvalidPayload
from app.models.integration import IntegrationSetting

logger = logging.getLogger(__name__)

MASK = "****"

# provider -> key -> is_secret
PROVIDER_KEYS: dict[str, dict[str, bool]] = {
    "hotmart": {"hottok": True, "client_id": False, "client_secret": True},
    "doppus": {"client_id": False, "client_secret": True, "secret_key": True},
}


def mask_secret(value: str | None) -> str | None:
    if not value:
        return value
    if len(value) <= 4:
        return MASK
    return f"{value[:4]}{MASK}"


def _is_masked(value: str) -> bool:
    return value.endswith(MASK)


def _env_value(settings: Settings, provider: str, key: str) -> str | None:
    return getattr(settings, f"{provider}_{key}", None)


async def _rows(session: AsyncSession, provider: str | None = None) -> list[IntegrationSetting]:
    stmt = select(IntegrationSetting)
    if provider:
        stmt = stmt.where(IntegrationSetting.provider == provider)
    return list((await session.execute(stmt)).scalars().all())


async def get_credential(session: AsyncSession, settings: Settings, provider: str, key: str) -> str | None:
    """Database value first, environment second."""
    stmt = select(IntegrationSetting.value).where(
        IntegrationSetting.provider == provider, IntegrationSetting.key == key
    )
    value = (await session.execute(stmt)).scalar_one_or_none()
    return value or _env_value(settings, provider, key)


async def get_credentials(session: AsyncSession, settings: Settings, provider: str) -> dict[str, str | None]:
    stored = {row.key: row.value for row in await _rows(session, provider)}
    return {
        key: stored.get(key) or _env_value(settings, provider, key)
        for key in PROVIDER_KEYS[provider]
    }


async def settings_view(session: AsyncSession, settings: Settings) -> dict[str, dict[str, dict]]:
    stored = {(row.provider, row.key): row.value for row in await _rows(session)}
    view: dict[str, dict[str, dict]] = {}
    for provider, keys in PROVIDER_KEYS.items():
        view[provider] = {}
        for key, is_secret in keys.items():
            db_value = stored.get((provider, key))
            value = db_value or _env_value(settings, provider, key)
            view[provider][key] = {
                "value": mask_secret(value) if is_secret else value,
                "is_secret": is_secret,
                "configured": bool(value),
                "source": "database" if db_value else ("environment" if value else None),
            }
    return view


async def update_provider_settings(session: AsyncSession, provider: str, values: dict[str, str | None]) -> list[str]:
    if provider not in PROVIDER_KEYS:
        raise InvalidPayload(f"Unknown provider {provider}")
    unknown = set(values) - set(PROVIDER_KEYS[provider])
    if unknown:
        raise InvalidPayload(f"Unknown settings for {provider}: {', '.join(sorted(unknown))}")

    existing = {row.key: row for row in await _rows(session, provider)}
    changed: list[str] = []
    for key, value in values.items():
        # The admin form echoes masked secrets back untouched
        if value is not None and _is_masked(value):
            continue
        if key in existing:
            await session.execute(
                update(IntegrationSetting).where(IntegrationSetting.id == existing[key].id).values(value=value)
            )
        else:
            await session.execute(
                insert(IntegrationSetting).values(
                    provider=provider, key=key, value=value, is_secret=PROVIDER_KEYS[provider][key]
                )
            )
        changed.append(key)
    await session.commit()
    if changed:
        logger.info("Updated %s settings: %s", provider, ", ".join(changed))
    return changed
