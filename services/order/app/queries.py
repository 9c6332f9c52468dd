"""
Order Service — クエリハンドラ (Read 側)

注文は一次ストアの orders テーブルから直接読む。
注文はステータス更新のたびに変わるのでキャッシュしない。
"""

import math

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _order_row(row) -> dict:
    return {
        "id": str(row.id),
        "tenant_id": row.tenant_id,
        "restaurant_id": str(row.restaurant_id),
        "customer_id": str(row.customer_id),
        "order_number": row.order_number,
        "item_count": row.item_count,
        "subtotal": float(row.subtotal),
        "delivery_fee": float(row.delivery_fee or 0),
        "tax": float(row.tax),
        "total": float(row.total),
        "status": row.status,
        "preparation_start_time": _iso(row.preparation_start_time),
        "preparation_end_time": _iso(row.preparation_end_time),
        "actual_delivery_time": _iso(row.actual_delivery_time),
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id"),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return _order_row(row)


async def list_orders(
    session: AsyncSession,
    tenant_id: str | None = None,
    customer_id: str | None = None,
    status: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    """注文一覧 (新しい順)。tenant / customer / status で絞り込める。"""
    clauses = []
    params: dict = {}
    for column, value in (
        ("tenant_id", tenant_id),
        ("customer_id", customer_id),
        ("status", status),
    ):
        if value is not None:
            clauses.append(f"{column} = :{column}")
            params[column] = value
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    result = await session.execute(
        text(f"""
            SELECT * FROM orders
            {where}
            ORDER BY created_at DESC
            LIMIT :limit OFFSET :offset
        """),
        {**params, "limit": limit, "offset": (page - 1) * limit},
    )
    orders = [_order_row(row) for row in result.fetchall()]

    count = await session.execute(
        text(f"SELECT COUNT(*) FROM orders {where}"),
        params,
    )
    total = count.scalar_one()

    return {
        "data": orders,
        "count": len(orders),
        "total": total,
        "page": page,
        "pages": math.ceil(total / limit),
    }
