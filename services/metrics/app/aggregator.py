"""
Metrics Service — テナント別メトリクス集計

キャッシュと同じ Redis に以下のキーで保持する:

    metrics:<t>:total_orders                        注文総数 (INCR)
    metrics:<t>:prep_time_sum                       調理時間の合計 (INCRBYFLOAT)
    metrics:<t>:prep_time_count                     調理時間のサンプル数 (INCR)
    metrics:<t>:avg_prep_time                       平均 (sum / count を丸めたもの)
    metrics:<t>:orders_per_minute:<Y-M-D-H-M>       分単位バケット (TTL 3600s, 書き込み毎に延長)

平均は (sum, count) を 1 つの MULTI で更新し、読み取り時に計算する。
read-modify-write をしないので、同じテナントを複数の consumer が
同時に処理しても平均が壊れない。

分バケットはスライディングウィンドウとして保守しない。
クエリ時に直近 N 分ぶんのキーを組み立てて読み、無いものは 0 とみなす。
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from numbers import Real

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from services.shared.app.config import METRICS_BUCKET_TTL
from services.shared.app.events import utcnow
from services.shared.app.keys import metrics_key

logger = logging.getLogger(__name__)


def minute_key(moment: datetime) -> str:
    """year-month-day-hour-minute (ゼロ埋めなし)"""
    return f"{moment.year}-{moment.month}-{moment.day}-{moment.hour}-{moment.minute}"


class MetricsAggregator:
    def __init__(
        self,
        redis: aioredis.Redis,
        clock: Callable[[], datetime] = utcnow,
        bucket_ttl: int = METRICS_BUCKET_TTL,
    ):
        self.redis = redis
        self.clock = clock
        self.bucket_ttl = bucket_ttl

    def bucket_key(self, tenant_id: str, moment: datetime) -> str:
        return metrics_key(tenant_id, f"orders_per_minute:{minute_key(moment)}")

    # ── 書き込み (consumer からのみ呼ばれる) ──────────

    async def increment_order_count(self, tenant_id: str) -> bool:
        """注文総数と現在の分バケットを 1 増やす。"""
        bucket = self.bucket_key(tenant_id, self.clock())
        try:
            async with self.redis.pipeline(transaction=False) as pipe:
                pipe.incr(bucket)
                pipe.expire(bucket, self.bucket_ttl)
                pipe.incr(metrics_key(tenant_id, "total_orders"))
                await pipe.execute()
        except (RedisError, OSError):
            logger.exception("Error incrementing order count for %s", tenant_id)
            return False
        return True

    async def record_preparation_time(self, tenant_id: str, prep_time) -> bool:
        """調理時間 (分) のサンプルを追加する。正の数値以外は何もしない。"""
        if isinstance(prep_time, bool) or not isinstance(prep_time, Real):
            return False
        if prep_time <= 0:
            return False

        sum_key = metrics_key(tenant_id, "prep_time_sum")
        count_key = metrics_key(tenant_id, "prep_time_count")
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incrbyfloat(sum_key, float(prep_time))
                pipe.incr(count_key)
                total, count = await pipe.execute()
            average = round(float(total) / int(count), 2)
            await self.redis.set(metrics_key(tenant_id, "avg_prep_time"), f"{average:.2f}")
        except (RedisError, OSError):
            logger.exception("Error updating preparation time for %s", tenant_id)
            return False
        return True

    # ── 読み取り ───────────────────────────────────

    async def get_orders_per_minute(self, tenant_id: str, minutes: int = 5) -> list[dict]:
        """直近 minutes 分ぶんの件数を古い順に返す。エラー時は空リスト。"""
        if minutes <= 0:
            return []
        now = self.clock().replace(second=0, microsecond=0)
        moments = [now - timedelta(minutes=i) for i in range(minutes - 1, -1, -1)]
        try:
            counts = await self.redis.mget(
                [self.bucket_key(tenant_id, m) for m in moments]
            )
        except (RedisError, OSError):
            logger.exception("Error getting orders per minute for %s", tenant_id)
            return []
        return [
            {"minute": m.isoformat(), "count": int(c or 0)}
            for m, c in zip(moments, counts)
        ]

    async def get_average_prep_time(self, tenant_id: str) -> float:
        total, count = await self.redis.mget(
            metrics_key(tenant_id, "prep_time_sum"),
            metrics_key(tenant_id, "prep_time_count"),
        )
        if not count or int(count) == 0:
            return 0.0
        return round(float(total or 0) / int(count), 2)

    async def get_tenant_metrics(self, tenant_id: str) -> dict | None:
        """テナントのスナップショット。ストレージエラー時は None。"""
        try:
            total_orders = int(
                await self.redis.get(metrics_key(tenant_id, "total_orders")) or 0
            )
            avg_prep_time = await self.get_average_prep_time(tenant_id)
        except (RedisError, OSError, ValueError):
            logger.exception("Error getting tenant metrics for %s", tenant_id)
            return None

        return {
            "tenantId": tenant_id,
            "totalOrders": total_orders,
            "avgPrepTime": avg_prep_time,
            "ordersPerMinute": await self.get_orders_per_minute(tenant_id, 10),
            "lastUpdated": self.clock().isoformat(),
        }
