"""
Order Service — FastAPI エントリーポイント

書き込み (Command) と読み取り (Query) のエンドポイントを分離する。
注文の書き込みはイベントログへの発行とリアルタイム通知を伴い、
レストラン / メニューの読み取りはテナント単位の Read-through キャッシュを通る。
"""

from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.realtime.app.broadcaster import BackplaneEmitter
from services.shared.app.config import DATABASE_URL
from services.shared.app.logging_setup import configure_logging
from services.shared.app.rate_limit import general_limiter, order_limiter, tenant_limiter
from services.shared.app.redis_client import connect_redis

from . import catalog, commands, queries
from .cache import TenantCache
from .publisher import EventPublisher


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    redis = await connect_redis()
    engine = create_async_engine(DATABASE_URL, echo=False)

    app.state.redis = redis
    app.state.session_factory = sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    app.state.publisher = EventPublisher(redis)
    app.state.cache = TenantCache(redis)
    app.state.emitter = BackplaneEmitter(redis)
    yield
    await engine.dispose()
    await redis.aclose()


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── Dependencies ─────────────────────────────────


async def get_session(request: Request):
    async with request.app.state.session_factory() as session:
        yield session


def get_publisher(request: Request) -> EventPublisher:
    return request.app.state.publisher


def get_cache(request: Request) -> TenantCache:
    return request.app.state.cache


def get_emitter(request: Request) -> BackplaneEmitter:
    return request.app.state.emitter


# ── Request Models ───────────────────────────────


class OrderItem(BaseModel):
    name: str
    price: float = Field(ge=0)
    quantity: int = Field(ge=1)


class CreateOrderRequest(BaseModel):
    tenant_id: str
    restaurant_id: str
    customer_id: str
    items: list[OrderItem] = Field(min_length=1)
    delivery_fee: float = 0


class UpdateStatusRequest(BaseModel):
    status: str


class RestaurantUpdate(BaseModel):
    tenant_id: str
    changes: dict


class MenuItemCreate(BaseModel):
    tenant_id: str
    restaurant_id: str
    name: str
    price: float = Field(ge=0)
    description: str | None = None
    category: str | None = None
    is_available: bool = True


class MenuItemUpdate(BaseModel):
    tenant_id: str
    changes: dict


# ── Command Endpoints (Write 側) ─────────────────


@app.post(
    "/commands/orders", status_code=201, dependencies=[Depends(order_limiter)]
)
async def cmd_create_order(
    req: CreateOrderRequest,
    session: AsyncSession = Depends(get_session),
    publisher: EventPublisher = Depends(get_publisher),
    emitter: BackplaneEmitter = Depends(get_emitter),
):
    """注文作成コマンド"""
    return await commands.create_order(
        session, publisher, emitter,
        req.tenant_id, req.restaurant_id, req.customer_id,
        [item.model_dump() for item in req.items],
        req.delivery_fee,
    )


@app.put(
    "/commands/orders/{order_id}/status", dependencies=[Depends(tenant_limiter)]
)
async def cmd_update_order_status(
    order_id: str,
    req: UpdateStatusRequest,
    session: AsyncSession = Depends(get_session),
    publisher: EventPublisher = Depends(get_publisher),
    emitter: BackplaneEmitter = Depends(get_emitter),
):
    """注文ステータス更新コマンド"""
    try:
        order = await commands.update_order_status(
            session, publisher, emitter, order_id, req.status
        )
    except ValueError as e:
        raise HTTPException(400, str(e))
    if order is None:
        raise HTTPException(404, "Order not found")
    return order


@app.put(
    "/commands/restaurants/{restaurant_id}", dependencies=[Depends(tenant_limiter)]
)
async def cmd_update_restaurant(
    restaurant_id: str,
    req: RestaurantUpdate,
    session: AsyncSession = Depends(get_session),
    cache: TenantCache = Depends(get_cache),
):
    try:
        updated = await catalog.update_restaurant(
            session, cache, req.tenant_id, restaurant_id, req.changes
        )
    except ValueError as e:
        raise HTTPException(400, str(e))
    if not updated:
        raise HTTPException(404, "Restaurant not found")
    return {"id": restaurant_id, "updated": True}


@app.post("/commands/menu", status_code=201, dependencies=[Depends(tenant_limiter)])
async def cmd_create_menu_item(
    req: MenuItemCreate,
    session: AsyncSession = Depends(get_session),
    cache: TenantCache = Depends(get_cache),
):
    item = req.model_dump(exclude={"tenant_id", "restaurant_id"})
    return await catalog.create_menu_item(
        session, cache, req.tenant_id, req.restaurant_id, str(uuid4()), item
    )


@app.put("/commands/menu/{item_id}", dependencies=[Depends(tenant_limiter)])
async def cmd_update_menu_item(
    item_id: str,
    req: MenuItemUpdate,
    session: AsyncSession = Depends(get_session),
    cache: TenantCache = Depends(get_cache),
):
    try:
        updated = await catalog.update_menu_item(
            session, cache, req.tenant_id, item_id, req.changes
        )
    except ValueError as e:
        raise HTTPException(400, str(e))
    if not updated:
        raise HTTPException(404, "Menu item not found")
    return {"id": item_id, "updated": True}


@app.delete("/commands/menu/{item_id}", dependencies=[Depends(tenant_limiter)])
async def cmd_delete_menu_item(
    item_id: str,
    tenant_id: str,
    session: AsyncSession = Depends(get_session),
    cache: TenantCache = Depends(get_cache),
):
    if not await catalog.delete_menu_item(session, cache, tenant_id, item_id):
        raise HTTPException(404, "Menu item not found")
    return {"id": item_id, "deleted": True}


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/restaurants", dependencies=[Depends(general_limiter)])
async def query_restaurants(
    tenant_id: str | None = None,
    cuisine: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
    cache: TenantCache = Depends(get_cache),
):
    """レストラン一覧(テナント指定時はキャッシュ経由)"""
    return await catalog.list_restaurants(
        session, cache, tenant_id, {"cuisine": cuisine}, page, limit
    )


@app.get("/queries/restaurants/tenant/{tenant_id}", dependencies=[Depends(general_limiter)])
async def query_restaurant_by_tenant(
    tenant_id: str, session: AsyncSession = Depends(get_session)
):
    restaurant = await catalog.get_restaurant_by_tenant(session, tenant_id)
    if restaurant is None:
        raise HTTPException(404, "Restaurant not found")
    return restaurant


@app.get("/queries/restaurants/{restaurant_id}", dependencies=[Depends(general_limiter)])
async def query_restaurant(
    restaurant_id: str, session: AsyncSession = Depends(get_session)
):
    restaurant = await catalog.get_restaurant(session, restaurant_id)
    if restaurant is None:
        raise HTTPException(404, "Restaurant not found")
    return restaurant


@app.get(
    "/queries/restaurants/{restaurant_id}/menu", dependencies=[Depends(general_limiter)]
)
async def query_menu(
    restaurant_id: str,
    tenant_id: str,
    session: AsyncSession = Depends(get_session),
    cache: TenantCache = Depends(get_cache),
):
    """メニュー(キャッシュ経由)"""
    return await catalog.get_menu(session, cache, tenant_id, restaurant_id)


@app.get("/queries/orders", dependencies=[Depends(tenant_limiter)])
async def query_orders(
    tenant_id: str | None = None,
    customer_id: str | None = None,
    status: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
):
    """注文一覧(新しい順)"""
    return await queries.list_orders(
        session, tenant_id, customer_id, status, page, limit
    )


@app.get("/queries/orders/{order_id}")
async def query_order(order_id: str, session: AsyncSession = Depends(get_session)):
    order = await queries.get_order(session, order_id)
    if order is None:
        raise HTTPException(404, "Order not found")
    return order


@app.get("/health")
async def health(publisher: EventPublisher = Depends(get_publisher)):
    return {
        "status": "ok",
        "service": "order-service",
        "publish_failures": publisher.failures,
    }
