"""
Shared — 注文イベント定義

イベントは発生した事実を表し、発行後は不変(immutable)として扱う。
ワイヤ上のフィールド名は camelCase (eventType, tenantId, ...)。
イベント固有のフィールドは extra として保持し、そのまま往復させる。
"""

import json
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

ORDER_CREATED = "order_created"
ORDER_STATUS_UPDATED = "order_status_updated"


class EventDecodeError(ValueError):
    """ログから読んだメッセージがイベントとして解釈できない"""


class OrderEvent(BaseModel):
    """全イベント共通のエンベロープ"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        frozen=True,
    )

    event_type: str
    tenant_id: str
    order_id: str
    order_number: str
    timestamp: datetime

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class OrderCreated(OrderEvent):
    """注文が作成された"""

    event_type: Literal["order_created"] = ORDER_CREATED
    restaurant_id: str | None = None
    customer_id: str | None = None
    total: float = 0
    items: int = 0


class OrderStatusUpdated(OrderEvent):
    """注文ステータスが更新された(preparationTime は分単位)"""

    event_type: Literal["order_status_updated"] = ORDER_STATUS_UPDATED
    status: str
    preparation_time: float | None = None


EVENT_TYPES: dict[str, type[OrderEvent]] = {
    ORDER_CREATED: OrderCreated,
    ORDER_STATUS_UPDATED: OrderStatusUpdated,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def decode_event(raw: str | bytes) -> OrderEvent:
    """
    JSON をイベントに変換する。

    既知の eventType は専用モデルで検証し、未知のものは共通エンベロープとして返す
    (未知イベントの扱いは呼び出し側が決める)。
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError, UnicodeDecodeError) as e:
        raise EventDecodeError(f"invalid JSON payload: {e}") from e
    if not isinstance(data, dict):
        raise EventDecodeError("event payload must be a JSON object")

    model = EVENT_TYPES.get(data.get("eventType"), OrderEvent)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise EventDecodeError(str(e)) from e
