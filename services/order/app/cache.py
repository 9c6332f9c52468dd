"""
Order Service — テナント単位のキャッシュ

Read-through キャッシュ:
  1. get_tenant_cache で探す
  2. ミスなら一次ストアから計算する
  3. set_tenant_cache で TTL 付きで保存する

キーは必ず tenant:<tenantId>:<key> に名前空間化され、
clear_tenant_cache はそのテナント配下だけを消す。
すべてのエントリに TTL を付けるので、古い値が無期限に返ることはない。

Redis のエラーやデシリアライズ失敗はキャッシュミスとして扱い、
呼び出し側には絶対に例外を返さない。
"""

import json
import logging
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from services.shared.app.config import CACHE_DEFAULT_TTL, CATALOG_CACHE_TTL
from services.shared.app.keys import tenant_cache_key, tenant_cache_pattern

logger = logging.getLogger(__name__)

CACHE_ERRORS = (RedisError, OSError, TypeError, ValueError)


class TenantCache:
    def __init__(self, redis: aioredis.Redis, default_ttl: int = CACHE_DEFAULT_TTL):
        self.redis = redis
        self.default_ttl = default_ttl

    # ── テナントスコープ ─────────────────────────────

    async def set_tenant_cache(
        self, tenant_id: str, key: str, value: Any, ttl: int | None = None
    ) -> bool:
        return await self.set(tenant_cache_key(tenant_id, key), value, ttl)

    async def get_tenant_cache(self, tenant_id: str, key: str) -> Any | None:
        return await self.get(tenant_cache_key(tenant_id, key))

    async def delete_tenant_cache(self, tenant_id: str, key: str) -> bool:
        return await self.delete(tenant_cache_key(tenant_id, key))

    async def clear_tenant_cache(self, tenant_id: str) -> bool:
        """tenant:<tenantId>:* に一致するキーをすべて削除する。"""
        pattern = tenant_cache_pattern(tenant_id)
        try:
            keys = [key async for key in self.redis.scan_iter(match=pattern, count=500)]
            if keys:
                await self.redis.delete(*keys)
        except CACHE_ERRORS:
            logger.exception("Cache clear error for tenant %s", tenant_id)
            return False
        logger.info("Cleared %d cache entries for tenant %s", len(keys), tenant_id)
        return True

    # ── カタログ用ヘルパー ───────────────────────────

    async def cache_restaurants(
        self, tenant_id: str, key: str, payload: Any, ttl: int = CATALOG_CACHE_TTL
    ) -> bool:
        return await self.set_tenant_cache(tenant_id, key, payload, ttl)

    async def get_cached_restaurants(self, tenant_id: str, key: str) -> Any | None:
        return await self.get_tenant_cache(tenant_id, key)

    async def cache_menu(
        self, tenant_id: str, restaurant_id: str, items: list, ttl: int = CATALOG_CACHE_TTL
    ) -> bool:
        return await self.set_tenant_cache(tenant_id, menu_key(restaurant_id), items, ttl)

    async def get_cached_menu(self, tenant_id: str, restaurant_id: str) -> list | None:
        return await self.get_tenant_cache(tenant_id, menu_key(restaurant_id))

    async def invalidate_menu_cache(self, tenant_id: str, restaurant_id: str) -> bool:
        return await self.delete_tenant_cache(tenant_id, menu_key(restaurant_id))

    # ── プロセス共通 (テナント非依存) ─────────────────

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        try:
            serialized = json.dumps(value, default=str)
            await self.redis.set(key, serialized, ex=ttl or self.default_ttl)
        except CACHE_ERRORS:
            logger.exception("Cache set error for %s", key)
            return False
        return True

    async def get(self, key: str) -> Any | None:
        try:
            cached = await self.redis.get(key)
            if cached is None:
                return None
            return json.loads(cached)
        except CACHE_ERRORS:
            logger.exception("Cache get error for %s", key)
            return None

    async def delete(self, key: str) -> bool:
        try:
            await self.redis.delete(key)
        except CACHE_ERRORS:
            logger.exception("Cache delete error for %s", key)
            return False
        return True


def menu_key(restaurant_id: str) -> str:
    return f"menu:{restaurant_id}"
