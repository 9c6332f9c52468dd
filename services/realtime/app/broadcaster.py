"""
Realtime Service — ルームベースのブロードキャスター

各プロセスは自分に接続しているクライアントとルーム所属だけを知っている。
emit() は Redis Pub/Sub (バックプレーン) に流し、全プロセスの
run_backplane() がそれを受け取って自プロセス内のルームメンバーに配る。
どのプロセスに接続していても同じメッセージが届く(スティッキーセッション不要)。

┌───────────┐  emit   ┌──────────────┐  message  ┌───────────┐
│ process A │ ──────▶ │ Redis PubSub │ ────────▶ │ process B │ ──▶ clients
└───────────┘         │  (fanout)    │ ────────▶ │ process A │ ──▶ clients
                      └──────────────┘           └───────────┘

配信はベストエフォート。ACK や再送はなく、切断中のメッセージは失われる。
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from services.shared.app.config import FANOUT_CHANNEL
from services.shared.app.keys import tenant_room, user_room

logger = logging.getLogger(__name__)


class Connection:
    """1 本のクライアント接続。ルーム所属は接続が開いている間だけ存在する。"""

    def __init__(
        self,
        send: Callable[[dict], Awaitable[None]],
        user_id: str | None = None,
        connection_id: str | None = None,
    ):
        self.id = connection_id or uuid4().hex
        self.user_id = user_id
        self.rooms: set[str] = set()
        self._send = send

    async def send(self, event: str, data) -> None:
        await self._send({"event": event, "data": data})


class BackplaneEmitter:
    """
    送信専用のハンドル。

    ソケットを持たないプロセス (Order Service / Metrics consumer) は
    これを受け取って emit するだけ。
    """

    def __init__(self, redis: aioredis.Redis, channel: str = FANOUT_CHANNEL):
        self.redis = redis
        self.channel = channel

    async def emit(self, room: str, event: str, data) -> bool:
        message = json.dumps({"room": room, "event": event, "data": data}, default=str)
        try:
            await self.redis.publish(self.channel, message)
        except (RedisError, OSError):
            logger.exception("Failed to emit %s to %s", event, room)
            return False
        return True


class Broadcaster(BackplaneEmitter):
    """ソケットを持つプロセス用。ローカル接続の管理とバックプレーン購読を行う。"""

    def __init__(self, redis: aioredis.Redis, channel: str = FANOUT_CHANNEL):
        super().__init__(redis, channel)
        self.connections: dict[str, Connection] = {}
        self.rooms: dict[str, set[str]] = {}

    # ── 接続とルーム ────────────────────────────────

    def connect(self, conn: Connection) -> None:
        self.connections[conn.id] = conn
        logger.info("Client connected: %s (user=%s)", conn.id, conn.user_id)

    def disconnect(self, conn: Connection) -> None:
        """切断時はすべてのルームから暗黙的に抜ける。"""
        for room in list(conn.rooms):
            self.leave(conn, room)
        self.connections.pop(conn.id, None)
        logger.info("Client disconnected: %s", conn.id)

    def join(self, conn: Connection, room: str) -> None:
        self.rooms.setdefault(room, set()).add(conn.id)
        conn.rooms.add(room)

    def leave(self, conn: Connection, room: str) -> None:
        members = self.rooms.get(room)
        if members is not None:
            members.discard(conn.id)
            if not members:
                del self.rooms[room]
        conn.rooms.discard(room)

    def members(self, room: str) -> list[Connection]:
        return [
            self.connections[cid]
            for cid in self.rooms.get(room, ())
            if cid in self.connections
        ]

    # ── クライアントからのイベント ─────────────────

    async def handle_client_event(self, conn: Connection, event: str, data) -> None:
        if not isinstance(event, str):
            logger.warning("Malformed event name from %s", conn.id)
            return
        handler = {
            "join:tenant": self._on_join_tenant,
            "join:user": self._on_join_user,
            "leave:tenant": self._on_leave_tenant,
        }.get(event)
        if handler is None:
            logger.debug("Ignoring unknown client event %r from %s", event, conn.id)
            return
        if not isinstance(data, str) or not data:
            return
        await handler(conn, data)

    async def handle_frame(self, conn: Connection, raw: str) -> None:
        """{"event": ..., "data": ...} 形式のテキストフレームを処理する。"""
        try:
            frame = json.loads(raw)
            event = frame["event"]
        except (json.JSONDecodeError, TypeError, KeyError):
            logger.warning("Malformed frame from %s", conn.id)
            return
        await self.handle_client_event(conn, event, frame.get("data"))

    async def _on_join_tenant(self, conn: Connection, tenant_id: str) -> None:
        # テナントルームは公開ダッシュボード用なので認可チェックなし
        room = tenant_room(tenant_id)
        self.join(conn, room)
        logger.info("Socket %s joined tenant room: %s", conn.id, tenant_id)
        await conn.send(
            "joined", {"room": room, "message": "Successfully joined tenant room"}
        )

    async def _on_join_user(self, conn: Connection, user_id: str) -> None:
        if conn.user_id is None or conn.user_id != user_id:
            logger.debug("Socket %s denied user room %s", conn.id, user_id)
            return
        room = user_room(user_id)
        self.join(conn, room)
        logger.info("Socket %s joined user room: %s", conn.id, user_id)
        await conn.send(
            "joined", {"room": room, "message": "Successfully joined user room"}
        )

    async def _on_leave_tenant(self, conn: Connection, tenant_id: str) -> None:
        self.leave(conn, tenant_room(tenant_id))
        logger.info("Socket %s left tenant room: %s", conn.id, tenant_id)

    # ── 配信 ───────────────────────────────────────

    async def deliver_local(self, room: str, event: str, data) -> int:
        """自プロセス内のルームメンバーに送る。送れなかった接続は切り離す。"""
        delivered = 0
        for conn in self.members(room):
            try:
                await conn.send(event, data)
                delivered += 1
            except Exception:
                logger.warning("Dropping connection %s after send failure", conn.id)
                self.disconnect(conn)
        return delivered

    async def dispatch(self, raw: str) -> None:
        """バックプレーンから受け取ったメッセージを処理する。"""
        try:
            message = json.loads(raw)
            room, event = message["room"], message["event"]
        except (json.JSONDecodeError, TypeError, KeyError):
            logger.warning("Ignoring malformed backplane message")
            return
        await self.deliver_local(room, event, message.get("data"))

    async def run_backplane(
        self, shutdown_event: asyncio.Event, retry_delay: float = 1.0
    ) -> None:
        """
        shutdown_event がセットされるまでバックプレーンを購読する。

        Redis との接続が切れた場合は retry_delay 秒待って購読し直す。
        切断中に emit されたメッセージは届かない。
        """
        while not shutdown_event.is_set():
            pubsub = self.redis.pubsub()
            try:
                await pubsub.subscribe(self.channel)
                logger.info("Subscribed to %s backplane channel", self.channel)

                while not shutdown_event.is_set():
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=1.0
                    )
                    if message and message["type"] == "message":
                        await self.dispatch(message["data"])
                    else:
                        await asyncio.sleep(0.01)
            except (RedisError, OSError):
                logger.exception("Backplane subscription lost; resubscribing")
                await asyncio.sleep(retry_delay)
            finally:
                await self._close_pubsub(pubsub)

    async def _close_pubsub(self, pubsub) -> None:
        try:
            await pubsub.unsubscribe(self.channel)
        except (RedisError, OSError):
            logger.warning("Could not unsubscribe from %s", self.channel)
        await pubsub.aclose()
