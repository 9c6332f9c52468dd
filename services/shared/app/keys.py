"""
Shared — キー命名規則

テナント間でデータが混ざらないよう、キーは必ずテナント ID で名前空間化する。

    tenant:<tenantId>:<logical-key>                 キャッシュ
    metrics:<tenantId>:<metric>                     メトリクス
    tenant:<tenantId> / user:<userId>               配信ルーム
"""

import re
import zlib

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def tenant_cache_key(tenant_id: str, key: str) -> str:
    return f"tenant:{tenant_id}:{key}"


def tenant_cache_pattern(tenant_id: str) -> str:
    """SCAN MATCH 用。テナント ID 中のグロブ文字はエスケープする。"""
    escaped = _GLOB_SPECIAL.sub(r"\\\1", tenant_id)
    return f"tenant:{escaped}:*"


def metrics_key(tenant_id: str, metric: str) -> str:
    return f"metrics:{tenant_id}:{metric}"


def tenant_room(tenant_id: str) -> str:
    return f"tenant:{tenant_id}"


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def partition_for(tenant_id: str, partitions: int) -> int:
    """テナント ID からパーティション番号を決める(プロセス間で安定)。"""
    return zlib.crc32(tenant_id.encode("utf-8")) % partitions


def stream_key(topic: str, partition: int) -> str:
    return f"{topic}:{partition}"
