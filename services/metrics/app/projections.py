"""
Metrics Service — イベント投影 (Projection)

イベントログから受け取った注文イベントをテナント別メトリクスに畳み込む。

    order_created          → 注文総数 +1、現在の分バケット +1
    order_status_updated   → preparationTime があれば平均調理時間に加算
    その他                 → ログに残して無視 (エラーではない)

同じイベントを再処理すると二重にカウントされる (冪等ではない)。
"""

import logging

from services.shared.app.events import (
    ORDER_CREATED,
    ORDER_STATUS_UPDATED,
    OrderEvent,
)

from .aggregator import MetricsAggregator

logger = logging.getLogger(__name__)


async def handle_event(aggregator: MetricsAggregator, event: OrderEvent) -> bool:
    """イベントタイプに応じた投影ハンドラを呼び出す。メトリクスを更新したら True。"""
    handler = {
        ORDER_CREATED: _project_order_created,
        ORDER_STATUS_UPDATED: _project_status_updated,
    }.get(event.event_type)
    if handler is None:
        logger.info("Unknown event type: %s", event.event_type)
        return False

    logger.debug("Processing %s for tenant %s", event.event_type, event.tenant_id)
    return await handler(aggregator, event)


async def _project_order_created(aggregator: MetricsAggregator, event: OrderEvent) -> bool:
    return await aggregator.increment_order_count(event.tenant_id)


async def _project_status_updated(aggregator: MetricsAggregator, event: OrderEvent) -> bool:
    prep_time = getattr(event, "preparation_time", None)
    if prep_time is None:
        return False
    return await aggregator.record_preparation_time(event.tenant_id, prep_time)
