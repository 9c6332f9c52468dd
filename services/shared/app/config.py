"""
Shared — 環境変数による設定

各サービスはここで定義された定数を参照する。
値はプロセス起動時に一度だけ読み込まれる。
"""

import os

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
DATABASE_URL = os.environ.get(
    "DATABASE_URL", "postgresql+asyncpg://localhost/orders"
)

# ── イベントログ (Redis Streams) ─────────────────

EVENT_TOPIC = os.environ.get("EVENT_TOPIC", "order-events")
EVENT_PARTITIONS = int(os.environ.get("EVENT_PARTITIONS", "8"))
EVENT_STREAM_MAXLEN = int(os.environ.get("EVENT_STREAM_MAXLEN", "100000"))
EVENT_CONSUMER_GROUP = os.environ.get("EVENT_CONSUMER_GROUP", "metrics-aggregator")
CONSUMER_NAME = os.environ.get("CONSUMER_NAME", f"consumer-{os.getpid()}")


def parse_partitions(raw: str | None, total: int = EVENT_PARTITIONS) -> list[int]:
    """"0,2,5" 形式の文字列を担当パーティション番号のリストに変換する。"""
    if not raw:
        return list(range(total))
    partitions = sorted({int(p) for p in raw.split(",") if p.strip()})
    for p in partitions:
        if not 0 <= p < total:
            raise ValueError(f"partition {p} out of range 0..{total - 1}")
    return partitions


CONSUMER_PARTITIONS = parse_partitions(os.environ.get("CONSUMER_PARTITIONS"))

# ── キャッシュ / メトリクス ──────────────────────

CACHE_DEFAULT_TTL = int(os.environ.get("CACHE_DEFAULT_TTL", "3600"))
CATALOG_CACHE_TTL = int(os.environ.get("CATALOG_CACHE_TTL", "1800"))
METRICS_BUCKET_TTL = 3600

# ── リアルタイム配信 ─────────────────────────────

FANOUT_CHANNEL = os.environ.get("FANOUT_CHANNEL", "fanout")
JWT_SECRET = os.environ.get("JWT_SECRET", "change-me")
JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")
FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:3000")

# ── レート制限 (固定ウィンドウ) ──────────────────

GENERAL_RATE_LIMIT = int(os.environ.get("GENERAL_RATE_LIMIT", "1000"))
GENERAL_RATE_WINDOW = int(os.environ.get("GENERAL_RATE_WINDOW", "300"))
TENANT_RATE_LIMIT = int(os.environ.get("TENANT_RATE_LIMIT", "1000"))
TENANT_RATE_WINDOW = int(os.environ.get("TENANT_RATE_WINDOW", "900"))
ORDER_RATE_LIMIT = int(os.environ.get("ORDER_RATE_LIMIT", "200"))
ORDER_RATE_WINDOW = int(os.environ.get("ORDER_RATE_WINDOW", "3600"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
