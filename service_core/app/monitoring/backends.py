"""
Storage backends for the metric store.

The in-memory backend is process-local. The Redis backend lets several
core instances share one metric history.
"""

import json
from collections import deque
from typing import Any, Deque, Dict, List, Protocol, Tuple

from shared.logging import get_logger

from service_core.app.monitoring.models import MetricPoint

SeriesKey = Tuple[str, str]


class MetricBackend(Protocol):
    """Arrival-ordered, capped point lists keyed by (tenant, metric)."""

    async def append(self, point: MetricPoint, max_points: int) -> None:
        ...

    async def points(self, tenant_id: str, name: str) -> List[MetricPoint]:
        ...

    async def prune_before(self, cutoff: float) -> int:
        ...

    async def series(self) -> List[SeriesKey]:
        ...


class InMemoryMetricBackend:
    """Process-local backend built on bounded deques."""

    def __init__(self):
        self._series: Dict[SeriesKey, Deque[MetricPoint]] = {}

    async def append(self, point: MetricPoint, max_points: int) -> None:
        key = (point.tenant_id, point.name)
        points = self._series.get(key)
        if points is None or points.maxlen != max_points:
            points = deque(points or (), maxlen=max_points)
            self._series[key] = points
        points.append(point)

    async def points(self, tenant_id: str, name: str) -> List[MetricPoint]:
        return list(self._series.get((tenant_id, name), ()))

    async def prune_before(self, cutoff: float) -> int:
        removed = 0
        # Iterate over a snapshot; appends may land while we rebuild
        for key, points in list(self._series.items()):
            kept = deque((p for p in points if p.timestamp >= cutoff), maxlen=points.maxlen)
            dropped = len(points) - len(kept)
            if not dropped:
                continue
            removed += dropped
            if kept:
                self._series[key] = kept
            else:
                self._series.pop(key, None)
        return removed

    async def series(self) -> List[SeriesKey]:
        return list(self._series.keys())


_PRUNE_SCRIPT = """
local items = redis.call('LRANGE', KEYS[1], 0, -1)
local cutoff = tonumber(ARGV[1])
local stale = 0
for i, item in ipairs(items) do
    local ok, point = pcall(cjson.decode, item)
    if ok and tonumber(point['timestamp']) < cutoff then
        stale = i
    else
        break
    end
end
if stale > 0 then
    redis.call('LTRIM', KEYS[1], stale, -1)
end
return stale
"""


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class RedisMetricBackend:
    """Redis backend: one list per series plus a set indexing the series.

    Pruning trims the stale head of each list atomically. Points are kept
    in arrival order, so an out-of-order stale point behind a fresh one
    survives until the fresh one ages out.
    """

    def __init__(self, redis_client, key_prefix: str = "metrics"):
        self.redis = redis_client
        self.key_prefix = key_prefix
        self.index_key = f"{key_prefix}:series"
        self.logger = get_logger("core.metrics.redis")
        self._prune = redis_client.register_script(_PRUNE_SCRIPT)

    def _key(self, tenant_id: str, name: str) -> str:
        return f"{self.key_prefix}:{tenant_id}:{name}"

    async def append(self, point: MetricPoint, max_points: int) -> None:
        key = self._key(point.tenant_id, point.name)
        pipe = self.redis.pipeline(transaction=True)
        pipe.rpush(key, json.dumps(point.to_dict()))
        pipe.ltrim(key, -max_points, -1)
        pipe.sadd(self.index_key, f"{point.tenant_id}:{point.name}")
        await pipe.execute()

    async def points(self, tenant_id: str, name: str) -> List[MetricPoint]:
        raw_points = await self.redis.lrange(self._key(tenant_id, name), 0, -1)
        points = []
        for raw in raw_points:
            try:
                points.append(MetricPoint.from_dict(json.loads(_text(raw))))
            except (ValueError, KeyError, TypeError) as e:
                self.logger.warning("Skipping undecodable metric point", tenant_id=tenant_id, metric=name, error=str(e))
        return points

    async def prune_before(self, cutoff: float) -> int:
        removed = 0
        for tenant_id, name in await self.series():
            key = self._key(tenant_id, name)
            removed += int(await self._prune(keys=[key], args=[cutoff]))
            if not await self.redis.exists(key):
                await self.redis.srem(self.index_key, f"{tenant_id}:{name}")
        return removed

    async def series(self) -> List[SeriesKey]:
        members = await self.redis.smembers(self.index_key)
        result = []
        for member in members:
            tenant_id, _, name = _text(member).partition(":")
            if tenant_id and name:
                result.append((tenant_id, name))
        return sorted(result)
