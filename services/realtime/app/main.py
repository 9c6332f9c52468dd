"""
Realtime Service — FastAPI エントリーポイント

ダッシュボード向けの WebSocket エンドポイントを提供する。
複数プロセスで起動しても、Redis バックプレーン経由で
全プロセスのクライアントに同じ通知が届く。

クライアント → サーバー: {"event": "join:tenant" | "join:user" | "leave:tenant", "data": "<id>"}
サーバー → クライアント: joined / order:created / order:updated / metrics:update
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from services.shared.app.config import FRONTEND_URL
from services.shared.app.logging_setup import configure_logging
from services.shared.app.redis_client import connect_redis

from .auth import extract_token, verify_token
from .broadcaster import Broadcaster, Connection


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時にバックプレーン購読をバックグラウンドタスクとして開始する。"""
    configure_logging()
    redis = await connect_redis()
    broadcaster = Broadcaster(redis)
    app.state.broadcaster = broadcaster

    shutdown_event = asyncio.Event()
    backplane_task = asyncio.create_task(broadcaster.run_backplane(shutdown_event))
    yield
    shutdown_event.set()
    backplane_task.cancel()
    try:
        await backplane_task
    except asyncio.CancelledError:
        pass
    await redis.aclose()


app = FastAPI(title="Realtime Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.websocket("/ws")
async def dashboard_socket(websocket: WebSocket):
    broadcaster: Broadcaster = websocket.app.state.broadcaster
    token = extract_token(
        websocket.query_params.get("token"),
        websocket.headers.get("authorization"),
    )
    await websocket.accept()

    conn = Connection(websocket.send_json, user_id=verify_token(token))
    broadcaster.connect(conn)
    try:
        while True:
            raw = await websocket.receive_text()
            await broadcaster.handle_frame(conn, raw)
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(conn)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "realtime-service"}
