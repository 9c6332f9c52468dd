"""
Metrics Service — FastAPI エントリーポイント

イベントログ (Redis Streams) をバックグラウンドで購読してメトリクスに投影し、
テナント別メトリクスの Query API を提供する。

┌───────────────┐  order-events:<n>  ┌─────────────────┐   metrics:update   ┌──────────┐
│ Order Service │ ── Redis Streams ─▶ │ Metrics Service │ ── Redis PubSub ──▶ │ Realtime │
│ (Write 側)    │                     │ (集計 + Query)  │                     │ Service  │
└───────────────┘                     └─────────────────┘                     └──────────┘
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Query, Request

from services.realtime.app.broadcaster import BackplaneEmitter
from services.shared.app.events import utcnow
from services.shared.app.logging_setup import configure_logging
from services.shared.app.rate_limit import general_limiter
from services.shared.app.redis_client import connect_redis

from .aggregator import MetricsAggregator
from .subscriber import run_subscriber


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時にイベントログの購読をバックグラウンドタスクとして開始する。"""
    configure_logging()
    redis = await connect_redis()
    app.state.redis = redis
    aggregator = MetricsAggregator(redis)
    app.state.aggregator = aggregator

    shutdown_event = asyncio.Event()
    subscriber_task = asyncio.create_task(
        run_subscriber(
            redis, aggregator, shutdown_event, emitter=BackplaneEmitter(redis)
        )
    )
    yield
    shutdown_event.set()
    subscriber_task.cancel()
    try:
        await subscriber_task
    except asyncio.CancelledError:
        pass
    await redis.aclose()


app = FastAPI(title="Metrics Service", lifespan=lifespan)


def get_aggregator(request: Request) -> MetricsAggregator:
    return request.app.state.aggregator


# ── Query Endpoints ──────────────────────────────


@app.get("/queries/metrics/{tenant_id}", dependencies=[Depends(general_limiter)])
async def query_tenant_metrics(
    tenant_id: str, aggregator: MetricsAggregator = Depends(get_aggregator)
):
    """テナントのメトリクス。まだデータがなければ空のスナップショットを返す。"""
    metrics = await aggregator.get_tenant_metrics(tenant_id)
    if metrics is None:
        metrics = {
            "tenantId": tenant_id,
            "totalOrders": 0,
            "avgPrepTime": 0,
            "ordersPerMinute": [],
            "lastUpdated": utcnow().isoformat(),
        }
    return {"success": True, "data": metrics}


@app.get(
    "/queries/metrics/{tenant_id}/orders-per-minute",
    dependencies=[Depends(general_limiter)],
)
async def query_orders_per_minute(
    tenant_id: str,
    minutes: int = Query(10, ge=1, le=60),
    aggregator: MetricsAggregator = Depends(get_aggregator),
):
    """直近 N 分の分別注文数(古い順)"""
    data = await aggregator.get_orders_per_minute(tenant_id, minutes)
    return {"success": True, "data": data}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "metrics-service"}
