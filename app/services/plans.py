import datetime as dt
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.models.subscription import ProductMapping
from app.schemas.webhook import NormalizedEvent

NAME_DURATIONS = (
    (("vitalicio", "vitalício", "lifetime"), None),
    (("anual", "annual", "yearly", "365"), 365),
    (("semestral", "180"), 180),
    (("trimestral", "quarterly", "90"), 90),
    (("mensal", "monthly", "30"), 30),
)


@dataclass(frozen=True)
class PlanTerms:
    plan_type: str
    duration_days: int | None
    is_lifetime: bool = False

    def end_date(self, start: dt.datetime) -> dt.datetime | None:
        if self.is_lifetime or self.duration_days is None:
            return None
        return start + dt.timedelta(days=self.duration_days)


async def find_mapping(
    session: AsyncSession, provider: str, product_id: str | None, offer_id: str | None
) -> ProductMapping | None:
    if not product_id:
        return None
    base = select(ProductMapping).where(ProductMapping.provider == provider, ProductMapping.product_id == product_id)
    if offer_id:
        exact = (await session.execute(base.where(ProductMapping.offer_id == offer_id))).scalars().first()
        if exact:
            return exact
    return (await session.execute(base.where(ProductMapping.offer_id.is_(None)))).scalars().first()


def terms_from_name(name: str | None, settings: Settings) -> PlanTerms:
    lowered = (name or "").lower()
    for needles, days in NAME_DURATIONS:
        if any(n in lowered for n in needles):
            if days is None:
                return PlanTerms(plan_type="premium_lifetime", duration_days=None, is_lifetime=True)
            return PlanTerms(plan_type=f"premium_{days}", duration_days=days)
    return PlanTerms(plan_type=settings.default_plan_type, duration_days=settings.default_plan_duration_days)


async def resolve_terms(session: AsyncSession, event: NormalizedEvent, settings: Settings) -> PlanTerms:
    mapping = await find_mapping(session, event.provider, event.product_id, event.offer_id)
    if mapping:
        return PlanTerms(
            plan_type=mapping.plan_type,
            duration_days=None if mapping.is_lifetime else mapping.duration_days,
            is_lifetime=mapping.is_lifetime,
        )
    return terms_from_name(event.product_name, settings)
