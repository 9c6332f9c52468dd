"""
Order Service — イベントパブリッシャー

注文ライフサイクルイベントを Redis Streams に追記する。
トピックはパーティション数ぶんのストリームに分割され、
パーティションキー = テナント ID。同じテナントのイベントは
常に同じストリームに入るので、テナント内の順序が保たれる。

    order-events:0  ──▶  tenant A, tenant D ...
    order-events:1  ──▶  tenant B ...
    order-events:N  ──▶  ...

publish() は fire-and-forget。ブローカーに届かなかった場合は
ログに残して正常に戻る(主書き込みのレスポンスを失敗させないため)。
つまり発行側は at-most-once: 一時的な障害中のイベントは失われる。
失敗は logs と `failures` カウンタでのみ観測できる。
"""

import logging

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from services.shared.app.config import (
    EVENT_PARTITIONS,
    EVENT_STREAM_MAXLEN,
    EVENT_TOPIC,
)
from services.shared.app.events import EVENT_TYPES, OrderEvent
from services.shared.app.keys import partition_for, stream_key

logger = logging.getLogger(__name__)


class EventPublisher:
    """パーティション分割されたイベントログへの書き込み口"""

    def __init__(
        self,
        redis: aioredis.Redis,
        topic: str = EVENT_TOPIC,
        partitions: int = EVENT_PARTITIONS,
        maxlen: int = EVENT_STREAM_MAXLEN,
    ):
        self.redis = redis
        self.topic = topic
        self.partitions = partitions
        self.maxlen = maxlen
        self.failures = 0

    def stream_for(self, tenant_id: str) -> str:
        return stream_key(self.topic, partition_for(tenant_id, self.partitions))

    async def send(self, event: OrderEvent) -> str:
        """
        イベントを 1 件追記してエントリ ID を返す。失敗時は例外を送出する。

        ルーティング用メタデータ (key / event-type / tenant-id) は
        ペイロード本体 (value) とは別フィールドに持たせる。
        """
        fields = {
            "key": event.tenant_id,
            "event-type": event.event_type,
            "tenant-id": event.tenant_id,
            "value": event.to_json(),
        }
        return await self.redis.xadd(
            self.stream_for(event.tenant_id),
            fields,
            maxlen=self.maxlen,
            approximate=True,
        )

    async def publish(self, event: OrderEvent | dict) -> None:
        """イベントを発行する。例外は呼び出し側に伝播しない。"""
        try:
            if isinstance(event, dict):
                model = EVENT_TYPES.get(event.get("eventType"), OrderEvent)
                event = model.model_validate(event)
        except ValidationError:
            self.failures += 1
            logger.exception("Dropping invalid order event")
            return

        if not event.tenant_id or not event.event_type:
            self.failures += 1
            logger.error("Dropping order event without tenantId/eventType")
            return

        try:
            entry_id = await self.send(event)
        except (RedisError, OSError):
            self.failures += 1
            logger.exception(
                "Error publishing %s event for tenant %s",
                event.event_type,
                event.tenant_id,
            )
            return

        logger.info(
            "Published %s event for tenant %s (%s)",
            event.event_type,
            event.tenant_id,
            entry_id,
        )
