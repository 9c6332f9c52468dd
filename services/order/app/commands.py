"""
Order Service — コマンドハンドラ (書き込み側)

注文の書き込みは次の順で行う:
  1. 一次ストア (orders テーブル) を更新してコミット
  2. イベントログに注文イベントを発行 (失敗しても書き込みは成功扱い)
  3. リアルタイム配信でテナントルーム (+ 顧客ルーム) に即時通知

メトリクスの集計はイベントログを購読する Metrics Service が非同期に行う。
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from services.realtime.app.broadcaster import BackplaneEmitter
from services.shared.app.events import OrderCreated, OrderStatusUpdated
from services.shared.app.keys import tenant_room, user_room

from .publisher import EventPublisher

logger = logging.getLogger(__name__)

TAX_RATE = 0.08

ORDER_STATUSES = (
    "pending",
    "confirmed",
    "preparing",
    "ready",
    "out_for_delivery",
    "delivered",
    "cancelled",
)


def generate_order_number(now: datetime) -> str:
    return f"ORD-{int(now.timestamp() * 1000)}-{uuid4().hex[:8].upper()}"


def preparation_minutes(start: datetime | None, end: datetime | None) -> float | None:
    if start is None or end is None:
        return None
    return (end - start).total_seconds() / 60


async def create_order(
    session: AsyncSession,
    publisher: EventPublisher,
    emitter: BackplaneEmitter,
    tenant_id: str,
    restaurant_id: str,
    customer_id: str,
    items: list[dict],
    delivery_fee: float = 0,
) -> dict:
    """
    注文作成コマンド

    items: [{"name", "price", "quantity"}, ...] (価格検証は呼び出し側の責務)
    """
    now = datetime.now(timezone.utc)
    order_id = str(uuid4())
    order_number = generate_order_number(now)

    subtotal = sum(item["price"] * item["quantity"] for item in items)
    tax = subtotal * TAX_RATE
    total = round(subtotal + delivery_fee + tax, 2)

    # 1. 一次ストアに保存
    await session.execute(
        text("""
            INSERT INTO orders
                (id, tenant_id, restaurant_id, customer_id, order_number,
                 item_count, subtotal, delivery_fee, tax, total, status,
                 created_at, updated_at)
            VALUES
                (:id, :tenant_id, :restaurant_id, :customer_id, :order_number,
                 :item_count, :subtotal, :delivery_fee, :tax, :total, 'pending',
                 :now, :now)
        """),
        {
            "id": order_id,
            "tenant_id": tenant_id,
            "restaurant_id": restaurant_id,
            "customer_id": customer_id,
            "order_number": order_number,
            "item_count": len(items),
            "subtotal": subtotal,
            "delivery_fee": delivery_fee,
            "tax": tax,
            "total": total,
            "now": now,
        },
    )
    await session.commit()
    logger.info("Order %s created for tenant %s", order_number, tenant_id)

    # 2. イベントログに発行
    await publisher.publish(
        OrderCreated(
            tenant_id=tenant_id,
            order_id=order_id,
            order_number=order_number,
            restaurant_id=restaurant_id,
            customer_id=customer_id,
            total=total,
            items=len(items),
            timestamp=now,
        )
    )

    # 3. 接続中のダッシュボードに即時通知
    await emitter.emit(
        tenant_room(tenant_id),
        "order:created",
        {
            "orderId": order_id,
            "orderNumber": order_number,
            "tenantId": tenant_id,
            "restaurantId": restaurant_id,
            "status": "pending",
            "total": total,
        },
    )

    return {
        "id": order_id,
        "tenant_id": tenant_id,
        "order_number": order_number,
        "status": "pending",
        "subtotal": subtotal,
        "tax": tax,
        "total": total,
    }


async def update_order_status(
    session: AsyncSession,
    publisher: EventPublisher,
    emitter: BackplaneEmitter,
    order_id: str,
    status: str,
) -> dict | None:
    """
    注文ステータス更新コマンド

    preparing → 調理開始時刻、ready → 調理終了時刻、delivered → 配達時刻を
    初回のみ記録する。調理開始・終了の両方が揃っていれば
    preparationTime (分) をイベントに載せる。
    """
    if status not in ORDER_STATUSES:
        raise ValueError(f"unknown order status: {status}")

    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id"),
        {"id": order_id},
    )
    order = result.fetchone()
    if not order:
        return None

    now = datetime.now(timezone.utc)
    prep_start = order.preparation_start_time
    prep_end = order.preparation_end_time
    delivered_at = order.actual_delivery_time

    if status == "preparing" and prep_start is None:
        prep_start = now
    elif status == "ready" and prep_end is None:
        prep_end = now
    elif status == "delivered" and delivered_at is None:
        delivered_at = now

    await session.execute(
        text("""
            UPDATE orders
            SET status = :status,
                preparation_start_time = :prep_start,
                preparation_end_time = :prep_end,
                actual_delivery_time = :delivered_at,
                updated_at = :now
            WHERE id = :id
        """),
        {
            "id": order_id,
            "status": status,
            "prep_start": prep_start,
            "prep_end": prep_end,
            "delivered_at": delivered_at,
            "now": now,
        },
    )
    await session.commit()
    logger.info("Order %s status changed to %s", order_id, status)

    tenant_id = order.tenant_id
    prep_time = preparation_minutes(prep_start, prep_end)

    await publisher.publish(
        OrderStatusUpdated(
            tenant_id=tenant_id,
            order_id=order_id,
            order_number=order.order_number,
            status=status,
            preparation_time=prep_time,
            timestamp=now,
        )
    )

    await emitter.emit(
        tenant_room(tenant_id),
        "order:updated",
        {
            "orderId": order_id,
            "orderNumber": order.order_number,
            "tenantId": tenant_id,
            "status": status,
        },
    )
    # 顧客本人が接続していれば個人ルームにも届ける
    await emitter.emit(
        user_room(str(order.customer_id)),
        "order:updated",
        {
            "orderId": order_id,
            "orderNumber": order.order_number,
            "status": status,
        },
    )

    return {
        "id": order_id,
        "tenant_id": tenant_id,
        "order_number": order.order_number,
        "status": status,
        "preparation_time": prep_time,
    }
