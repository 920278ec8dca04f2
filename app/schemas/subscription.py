import datetime as dt

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    email: str | None = None
    plan_type: str
    status: str
    source: str
    transaction_id: str | None
    subscriber_code: str | None
    start_date: dt.datetime | None
    end_date: dt.datetime | None
    is_lifetime: bool
    canceled_at: dt.datetime | None
    cancel_reason: str | None
    version: int
    updated_at: dt.datetime | None


class SubscriptionPage(BaseModel):
    total: int
    items: list[SubscriptionOut]


class SubscriptionUpdateIn(BaseModel):
    plan_type: str = Field(..., min_length=1, max_length=64)
    duration_days: int | None = Field(default=None, gt=0, le=3650)
    is_lifetime: bool = False
    end_date: dt.datetime | None = None

    @model_validator(mode="after")
    def _needs_term(self):
        if not self.is_lifetime and self.duration_days is None and self.end_date is None:
            raise ValueError("duration_days or end_date is required unless is_lifetime is set")
        return self


class CancelIn(BaseModel):
    reason: str | None = Field(default=None, max_length=255)
    immediate: bool = False


class ApplyResultOut(BaseModel):
    user_id: int
    subscription_id: int | None
    action: str
    previous_status: str
    status: str
    end_date: dt.datetime | None
    changed: bool
    note: str | None = None


class AccessOut(BaseModel):
    user_id: int
    has_access: bool
    status: str
    plan_type: str | None
    end_date: dt.datetime | None
    is_lifetime: bool
    cached: bool


class SubscriptionStats(BaseModel):
    total: int
    by_status: dict[str, int]
    by_source: dict[str, int]
    expiring_soon: int
    lifetime: int


class ProductMappingIn(BaseModel):
    provider: str = Field(..., pattern="^(hotmart|doppus)$")
    product_id: str = Field(..., min_length=1, max_length=128)
    offer_id: str | None = Field(default=None, max_length=128)
    product_name: str | None = Field(default=None, max_length=255)
    plan_type: str = Field(..., min_length=1, max_length=64)
    duration_days: int = Field(default=30, gt=0, le=3650)
    is_lifetime: bool = False


class ProductMappingOut(ProductMappingIn):
    model_config = ConfigDict(from_attributes=True)

    id: int
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None


class ProviderSettingsIn(BaseModel):
    values: dict[str, str | None]


class ProviderTestOut(BaseModel):
    provider: str
    ok: bool
    detail: str | None = None
