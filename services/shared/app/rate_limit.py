"""
Shared — Redis によるレート制限

FastAPI の依存関係として使う固定ウィンドウ方式のカウンタ。
カウンタは Redis に置くので、複数プロセスで起動しても上限は共有される。

    <prefix><key>   INCR、ウィンドウ開始時に EXPIRE

キーは呼び出し元 IP (general / order) またはテナント ID (tenant)。
Redis に届かない場合は制限せずに通す(キャッシュと同じくベストエフォート)。
"""

import logging
from collections.abc import Callable

from fastapi import HTTPException, Request
from redis.exceptions import RedisError

from .config import (
    GENERAL_RATE_LIMIT,
    GENERAL_RATE_WINDOW,
    ORDER_RATE_LIMIT,
    ORDER_RATE_WINDOW,
    TENANT_RATE_LIMIT,
    TENANT_RATE_WINDOW,
)

logger = logging.getLogger(__name__)


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def tenant_or_ip(request: Request) -> str:
    """パスパラメータ → クエリ → X-Tenant-Id ヘッダの順にテナント ID を探す。"""
    return (
        request.path_params.get("tenant_id")
        or request.query_params.get("tenant_id")
        or request.headers.get("x-tenant-id")
        or client_ip(request)
    )


class RateLimiter:
    def __init__(
        self,
        prefix: str,
        max_requests: int,
        window_seconds: int,
        key_func: Callable[[Request], str] = client_ip,
        message: str = "Too many requests, please wait a moment and try again.",
    ):
        self.prefix = prefix
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.key_func = key_func
        self.message = message

    async def __call__(self, request: Request) -> None:
        redis = request.app.state.redis
        key = f"{self.prefix}{self.key_func(request)}"
        try:
            count = await redis.incr(key)
            ttl = await redis.ttl(key)
            if count == 1 or ttl < 0:
                await redis.expire(key, self.window_seconds)
                ttl = self.window_seconds
        except (RedisError, OSError):
            logger.exception("Rate limit check failed for %s", key)
            return

        if count > self.max_requests:
            logger.warning("Rate limit exceeded for %s", key)
            raise HTTPException(
                429,
                {"success": False, "message": self.message},
                headers={"Retry-After": str(ttl)},
            )


general_limiter = RateLimiter("general_limit:", GENERAL_RATE_LIMIT, GENERAL_RATE_WINDOW)

tenant_limiter = RateLimiter(
    "tenant_limit:",
    TENANT_RATE_LIMIT,
    TENANT_RATE_WINDOW,
    key_func=tenant_or_ip,
    message="Tenant rate limit exceeded, please try again later.",
)

order_limiter = RateLimiter(
    "order_limit:",
    ORDER_RATE_LIMIT,
    ORDER_RATE_WINDOW,
    message="Too many orders placed, please wait a moment.",
)
