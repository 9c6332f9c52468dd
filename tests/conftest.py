from datetime import datetime, timedelta, timezone

import fakeredis
import pytest

from services.metrics.app.aggregator import MetricsAggregator


class FrozenClock:
    """テスト用の操作可能な時計"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingEmitter:
    """BackplaneEmitter の代わりに emit を記録する"""

    def __init__(self):
        self.emitted: list[tuple[str, str, object]] = []

    async def emit(self, room: str, event: str, data) -> bool:
        self.emitted.append((room, event, data))
        return True

    def to(self, room: str) -> list[tuple[str, object]]:
        return [(event, data) for r, event, data in self.emitted if r == room]


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
async def redis(redis_server):
    client = fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 1, 1, 10, 15, 30, tzinfo=timezone.utc))


@pytest.fixture
def aggregator(redis, clock):
    return MetricsAggregator(redis, clock=clock)


@pytest.fixture
def emitter():
    return RecordingEmitter()
