"""
Order Service — レストラン / メニュー (Read-through キャッシュ + 無効化)

読み取りはキャッシュを先に見て、ミスしたときだけ一次ストアに問い合わせる。
書き込み時の無効化ルール:
  - メニュー項目の変更 → そのレストランのメニューキャッシュだけを消す
  - レストランの変更   → そのテナント配下のキャッシュをすべて消す(粗いが確実)
"""

import hashlib
import json
import logging
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .cache import TenantCache

logger = logging.getLogger(__name__)

RESTAURANT_COLUMNS = ("name", "cuisine", "description", "is_active", "delivery_fee")
MENU_ITEM_COLUMNS = ("name", "description", "category", "price", "is_available")


def restaurants_cache_key(filters: dict, page: int, limit: int) -> str:
    """restaurants:<queryHash>:<page>:<limit>"""
    digest = hashlib.sha1(
        json.dumps(filters, sort_keys=True, default=str).encode("utf-8")
    ).hexdigest()[:16]
    return f"restaurants:{digest}:{page}:{limit}"


def _restaurant_row(row) -> dict:
    return {
        "id": str(row.id),
        "tenant_id": row.tenant_id,
        "name": row.name,
        "cuisine": row.cuisine,
        "description": row.description,
        "is_active": row.is_active,
        "delivery_fee": float(row.delivery_fee or 0),
    }


def _menu_item_row(row) -> dict:
    return {
        "id": str(row.id),
        "restaurant_id": str(row.restaurant_id),
        "name": row.name,
        "description": row.description,
        "category": row.category,
        "price": float(row.price),
        "is_available": row.is_available,
    }


# ── Read 側 ─────────────────────────────────────


async def list_restaurants(
    session: AsyncSession,
    cache: TenantCache,
    tenant_id: str | None,
    filters: dict | None = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    """
    レストラン一覧。テナントが指定されたときだけキャッシュを使う
    (テナント横断の一覧はキャッシュしない)。
    """
    filters = {k: v for k, v in (filters or {}).items() if v is not None}
    cache_key = restaurants_cache_key(filters, page, limit)

    if tenant_id:
        cached = await cache.get_cached_restaurants(tenant_id, cache_key)
        if cached is not None:
            return {**cached, "cached": True}

    clauses = ["is_active = true"]
    params: dict = {"limit": limit, "offset": (page - 1) * limit}
    if tenant_id:
        clauses.append("tenant_id = :tenant_id")
        params["tenant_id"] = tenant_id
    if "cuisine" in filters:
        clauses.append("cuisine = :cuisine")
        params["cuisine"] = filters["cuisine"]
    where = " AND ".join(clauses)

    result = await session.execute(
        text(f"""
            SELECT * FROM restaurants
            WHERE {where}
            ORDER BY name ASC
            LIMIT :limit OFFSET :offset
        """),
        params,
    )
    payload = {
        "data": [_restaurant_row(row) for row in result.fetchall()],
        "page": page,
        "limit": limit,
    }

    if tenant_id:
        await cache.cache_restaurants(tenant_id, cache_key, payload)
    return {**payload, "cached": False}


async def get_restaurant(session: AsyncSession, restaurant_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM restaurants WHERE id = :id"),
        {"id": restaurant_id},
    )
    row = result.fetchone()
    return _restaurant_row(row) if row else None


async def get_restaurant_by_tenant(session: AsyncSession, tenant_id: str) -> dict | None:
    """テナントに属するレストラン(最初の 1 件)"""
    result = await session.execute(
        text("""
            SELECT * FROM restaurants
            WHERE tenant_id = :tenant_id
            ORDER BY created_at ASC
            LIMIT 1
        """),
        {"tenant_id": tenant_id},
    )
    row = result.fetchone()
    return _restaurant_row(row) if row else None


async def get_menu(
    session: AsyncSession,
    cache: TenantCache,
    tenant_id: str,
    restaurant_id: str,
) -> dict:
    """レストランのメニュー(提供中の項目のみ)"""
    cached = await cache.get_cached_menu(tenant_id, restaurant_id)
    if cached is not None:
        return {"data": cached, "count": len(cached), "cached": True}

    result = await session.execute(
        text("""
            SELECT * FROM menu_items
            WHERE tenant_id = :tenant_id
              AND restaurant_id = :restaurant_id
              AND is_available = true
            ORDER BY category ASC, name ASC
        """),
        {"tenant_id": tenant_id, "restaurant_id": restaurant_id},
    )
    items = [_menu_item_row(row) for row in result.fetchall()]
    await cache.cache_menu(tenant_id, restaurant_id, items)
    return {"data": items, "count": len(items), "cached": False}


# ── Write 側 ────────────────────────────────────


def _assignments(changes: dict, allowed: tuple[str, ...]) -> tuple[str, dict]:
    fields = {k: v for k, v in changes.items() if k in allowed}
    if not fields:
        raise ValueError("no updatable fields given")
    return ", ".join(f"{k} = :{k}" for k in fields), fields


async def update_restaurant(
    session: AsyncSession,
    cache: TenantCache,
    tenant_id: str,
    restaurant_id: str,
    changes: dict,
) -> bool:
    """レストランを更新し、テナント配下のキャッシュを全消去する。"""
    assignments, params = _assignments(changes, RESTAURANT_COLUMNS)
    result = await session.execute(
        text(f"""
            UPDATE restaurants
            SET {assignments}, updated_at = :now
            WHERE id = :id AND tenant_id = :tenant_id
        """),
        {
            **params,
            "id": restaurant_id,
            "tenant_id": tenant_id,
            "now": datetime.now(timezone.utc),
        },
    )
    await session.commit()
    if result.rowcount == 0:
        return False

    logger.info("Restaurant %s updated; cleared cache for tenant %s", restaurant_id, tenant_id)
    await cache.clear_tenant_cache(tenant_id)
    return True


async def create_menu_item(
    session: AsyncSession,
    cache: TenantCache,
    tenant_id: str,
    restaurant_id: str,
    item_id: str,
    item: dict,
) -> dict:
    now = datetime.now(timezone.utc)
    await session.execute(
        text("""
            INSERT INTO menu_items
                (id, tenant_id, restaurant_id, name, description, category,
                 price, is_available, created_at, updated_at)
            VALUES
                (:id, :tenant_id, :restaurant_id, :name, :description, :category,
                 :price, :is_available, :now, :now)
        """),
        {
            "id": item_id,
            "tenant_id": tenant_id,
            "restaurant_id": restaurant_id,
            "name": item["name"],
            "description": item.get("description"),
            "category": item.get("category"),
            "price": item["price"],
            "is_available": item.get("is_available", True),
            "now": now,
        },
    )
    await session.commit()

    await cache.invalidate_menu_cache(tenant_id, restaurant_id)
    return {"id": item_id, "restaurant_id": restaurant_id, **item}


async def update_menu_item(
    session: AsyncSession,
    cache: TenantCache,
    tenant_id: str,
    item_id: str,
    changes: dict,
) -> bool:
    """メニュー項目を更新し、所属レストランのメニューキャッシュだけを消す。"""
    assignments, params = _assignments(changes, MENU_ITEM_COLUMNS)
    result = await session.execute(
        text(f"""
            UPDATE menu_items
            SET {assignments}, updated_at = :now
            WHERE id = :id AND tenant_id = :tenant_id
            RETURNING restaurant_id
        """),
        {
            **params,
            "id": item_id,
            "tenant_id": tenant_id,
            "now": datetime.now(timezone.utc),
        },
    )
    row = result.fetchone()
    await session.commit()
    if not row:
        return False

    await cache.invalidate_menu_cache(tenant_id, str(row.restaurant_id))
    return True


async def delete_menu_item(
    session: AsyncSession,
    cache: TenantCache,
    tenant_id: str,
    item_id: str,
) -> bool:
    result = await session.execute(
        text("""
            DELETE FROM menu_items
            WHERE id = :id AND tenant_id = :tenant_id
            RETURNING restaurant_id
        """),
        {"id": item_id, "tenant_id": tenant_id},
    )
    row = result.fetchone()
    await session.commit()
    if not row:
        return False

    await cache.invalidate_menu_cache(tenant_id, str(row.restaurant_id))
    return True
