"""
Shared — Redis 接続

キャッシュ・メトリクス・イベントログ・配信バックプレーンは
すべて同じ Redis を使う。起動時に接続できなければプロセスを止める
(起動時の接続失敗だけが致命的エラーとして扱われる)。
"""

import logging

import redis.asyncio as aioredis

from .config import REDIS_URL

logger = logging.getLogger(__name__)


async def connect_redis(url: str = REDIS_URL) -> aioredis.Redis:
    """接続を作成し PING で疎通を確認する。失敗時は例外をそのまま送出する。"""
    client = aioredis.from_url(url, decode_responses=True)
    try:
        await client.ping()
    except Exception:
        await client.aclose()
        logger.exception("Cannot connect to Redis at %s", url)
        raise
    logger.info("Connected to Redis at %s", url)
    return client
