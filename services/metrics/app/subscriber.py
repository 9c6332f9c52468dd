"""
Metrics Service — イベントログのコンシューマー

担当パーティションのストリーム (order-events:<n>) をコンシューマーグループで購読し、
受信したイベントを 1 件ずつストリーム順に処理してメトリクスに投影する。

- 処理が終わったエントリは XACK する (at-least-once)。
  ACK 前にプロセスが落ちた場合、再起動時に自分の保留中エントリを先に再処理する。
- 1 件のデコード / 処理エラーでは購読を止めない。ログに残して次に進む。
- 同じテナントのパーティションを同時に処理する consumer は 1 つだけ、
  という前提はデプロイ構成 (CONSUMER_PARTITIONS) で守る。プロセス内ロックは使わない。
"""

import asyncio
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from services.realtime.app.broadcaster import BackplaneEmitter
from services.shared.app.config import (
    CONSUMER_NAME,
    CONSUMER_PARTITIONS,
    EVENT_CONSUMER_GROUP,
    EVENT_TOPIC,
)
from services.shared.app.events import decode_event
from services.shared.app.keys import stream_key, tenant_room

from . import projections
from .aggregator import MetricsAggregator

logger = logging.getLogger(__name__)


class EventConsumer:
    def __init__(
        self,
        redis: aioredis.Redis,
        aggregator: MetricsAggregator,
        partitions: list[int] = CONSUMER_PARTITIONS,
        emitter: BackplaneEmitter | None = None,
        topic: str = EVENT_TOPIC,
        group: str = EVENT_CONSUMER_GROUP,
        consumer: str = CONSUMER_NAME,
        batch_size: int = 100,
    ):
        self.redis = redis
        self.aggregator = aggregator
        self.emitter = emitter
        self.group = group
        self.consumer = consumer
        self.batch_size = batch_size
        self.streams = [stream_key(topic, p) for p in partitions]
        self.draining_pending = True

    async def ensure_groups(self) -> None:
        """コンシューマーグループを作成する(既存ならそのまま)。新しいイベントから読む。"""
        for stream in self.streams:
            try:
                await self.redis.xgroup_create(stream, self.group, id="$", mkstream=True)
                logger.info("Created consumer group %s on %s", self.group, stream)
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    async def poll_once(self, block_ms: int | None = 1000) -> int:
        """
        1 バッチ読み込んで処理し、処理したエントリ数を返す。

        起動直後は自分宛ての保留中エントリ (ID "0") を読み、
        それが尽きたら新着 (ID ">") に切り替える。
        Redis エラーで中断した場合も保留中の読み直しに戻る。
        """
        draining = self.draining_pending
        processed = 0
        try:
            response = await self.redis.xreadgroup(
                self.group,
                self.consumer,
                {stream: "0" if draining else ">" for stream in self.streams},
                count=self.batch_size,
                block=None if draining else block_ms,
            )
            for stream, entries in response or []:
                for entry_id, fields in entries:
                    await self.process_entry(stream, entry_id, fields)
                    processed += 1
        except (RedisError, OSError):
            # 読み込み済みで未 ACK のエントリは保留中に残る。次回は保留中から読み直す
            self.draining_pending = True
            raise

        if draining and processed == 0:
            self.draining_pending = False
            logger.info("Pending entries drained; consuming new events")
        return processed

    async def process_entry(self, stream: str, entry_id: str, fields: dict | None) -> None:
        try:
            if not fields:
                # 保留中のまま MAXLEN で切り詰められたエントリ
                logger.warning("Entry %s on %s no longer exists", entry_id, stream)
            else:
                event = decode_event(fields.get("value"))
                applied = await projections.handle_event(self.aggregator, event)
                if applied:
                    await self._emit_metrics(event.tenant_id)
        except Exception:
            logger.exception("Failed to process entry %s from %s", entry_id, stream)
        await self.redis.xack(stream, self.group, entry_id)

    async def _emit_metrics(self, tenant_id: str) -> None:
        if self.emitter is None:
            return
        snapshot = await self.aggregator.get_tenant_metrics(tenant_id)
        if snapshot is not None:
            await self.emitter.emit(tenant_room(tenant_id), "metrics:update", snapshot)

    async def run(
        self,
        shutdown_event: asyncio.Event,
        block_ms: int = 1000,
        retry_delay: float = 1.0,
    ) -> None:
        """shutdown_event がセットされるまで購読を続ける。"""
        await self.ensure_groups()
        logger.info("Consuming %s as %s/%s", self.streams, self.group, self.consumer)

        while not shutdown_event.is_set():
            try:
                await self.poll_once(block_ms)
            except (RedisError, OSError):
                logger.exception("Event log read failed; retrying")
                await asyncio.sleep(retry_delay)


async def run_subscriber(
    redis: aioredis.Redis,
    aggregator: MetricsAggregator,
    shutdown_event: asyncio.Event,
    partitions: list[int] = CONSUMER_PARTITIONS,
    emitter: BackplaneEmitter | None = None,
) -> None:
    """担当パーティションを購読し、イベントをメトリクスに投影する。"""
    consumer = EventConsumer(redis, aggregator, partitions, emitter=emitter)
    await consumer.run(shutdown_event)
