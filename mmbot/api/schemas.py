# mmbot/api/schemas.py
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from mmbot.storage.models import ActionField, ActionType, ConditionField, ConditionOperator


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConditionCreate(CamelModel):
    name: str
    is_active: bool = True
    condition_field: ConditionField
    condition_operator: ConditionOperator
    condition_value: float
    action_type: ActionType
    action_field: ActionField
    action_value: float
    limit_price: float | None = None


class ConditionUpdate(CamelModel):
    name: str | None = None
    is_active: bool | None = None
    condition_field: ConditionField | None = None
    condition_operator: ConditionOperator | None = None
    condition_value: float | None = None
    action_type: ActionType | None = None
    action_field: ActionField | None = None
    action_value: float | None = None
    limit_price: float | None = None


class StabilizerCreate(CamelModel):
    name: str = "Stabilizer"
    target_price: float
    symbol: str | None = None


class ScheduledCreate(CamelModel):
    name: str = "Scheduled bot"
    total_usdt_budget: float
    duration_hours: int
    bid_offset_percent: float = 0.0
    symbol: str | None = None


class MarketMakerCreate(CamelModel):
    name: str = "Market maker"
    symbol: str | None = None
    target_price: float
    spread_percent: float
    order_size: float
    price_floor: float | None = None
    price_ceil: float | None = None
    increment_step: float = 0.0
    telegram_enabled: bool = False
    telegram_user_id: str | None = None


class CredentialsSave(CamelModel):
    api_key: str
    api_secret: str


class OrderPlace(CamelModel):
    symbol: str | None = None
    side: Literal["BUY", "SELL"]
    type: Literal["LIMIT", "MARKET"]
    volume: float
    price: float | None = None
    request_id: str | None = None  # repeat to retry without a second order

    @field_validator("type", mode="before")
    @classmethod
    def numeric_type(cls, value: Any) -> Any:
        # dashboard sends 1 for LIMIT and 2 for MARKET
        if isinstance(value, int):
            return {1: "LIMIT", 2: "MARKET"}.get(value, value)
        return value


class OrderCancel(CamelModel):
    order_id: str
    symbol: str | None = None
