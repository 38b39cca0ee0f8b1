"""
Redis Lease Store
Scheduler leases as Redis hashes guarded by Lua scripts

Each operation runs as one script so the check and the write happen
atomically on the server. Time comes from the Redis server clock, which
keeps lease expiry consistent across worker hosts.
"""
import logging
from datetime import datetime
from typing import Optional

import pytz
import redis.asyncio as redis

from carecall.domain.interfaces.lease_store import LeaseStore
from carecall.domain.models.lease import SchedulerLease

logger = logging.getLogger(__name__)


# KEYS[1] = lease hash, ARGV[1] = worker id, ARGV[2] = ttl ms
ACQUIRE_LEASE_SCRIPT = """
local t = redis.call('TIME')
local now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)
local holder = redis.call('HGET', KEYS[1], 'held_by')
local expires = tonumber(redis.call('HGET', KEYS[1], 'expires_at') or '0')

if holder and holder ~= '' and holder ~= ARGV[1] and expires > now then
    return 0
end

if holder ~= ARGV[1] or expires <= now then
    redis.call('HSET', KEYS[1], 'acquired_at', now)
end

redis.call('HSET', KEYS[1],
    'held_by', ARGV[1],
    'expires_at', now + tonumber(ARGV[2]),
    'heartbeat_at', now)
return 1
"""

# KEYS[1] = lease hash, ARGV[1] = worker id, ARGV[2] = ttl ms
HEARTBEAT_LEASE_SCRIPT = """
local t = redis.call('TIME')
local now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)
local holder = redis.call('HGET', KEYS[1], 'held_by')
local expires = tonumber(redis.call('HGET', KEYS[1], 'expires_at') or '0')

if holder ~= ARGV[1] or expires <= now then
    return 0
end

redis.call('HSET', KEYS[1],
    'expires_at', now + tonumber(ARGV[2]),
    'heartbeat_at', now)
return 1
"""

# KEYS[1] = lease hash, ARGV[1] = worker id
RELEASE_LEASE_SCRIPT = """
local holder = redis.call('HGET', KEYS[1], 'held_by')
if holder ~= ARGV[1] then
    return 0
end
redis.call('HSET', KEYS[1], 'held_by', '', 'expires_at', 0)
return 1
"""


def _from_millis(value: Optional[str]) -> Optional[datetime]:
    if not value or value == "0":
        return None
    return datetime.fromtimestamp(int(value) / 1000.0, tz=pytz.UTC)


class RedisLeaseStore(LeaseStore):
    """LeaseStore backed by Redis hashes and Lua scripts."""

    def __init__(self, client: redis.Redis, key_prefix: str = "carecall:lease"):
        self._redis = client
        self._key_prefix = key_prefix
        self._acquire = client.register_script(ACQUIRE_LEASE_SCRIPT)
        self._heartbeat = client.register_script(HEARTBEAT_LEASE_SCRIPT)
        self._release = client.register_script(RELEASE_LEASE_SCRIPT)

    @classmethod
    async def from_url(cls, redis_url: str, key_prefix: str = "carecall:lease") -> "RedisLeaseStore":
        client = await redis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True
        )
        await client.ping()
        logger.info(f"RedisLeaseStore connected: {redis_url}")
        return cls(client, key_prefix=key_prefix)

    def _key(self, role: str) -> str:
        return f"{self._key_prefix}:{role}"

    async def try_acquire(self, role: str, worker_id: str, ttl_seconds: int) -> bool:
        result = await self._acquire(
            keys=[self._key(role)],
            args=[worker_id, int(ttl_seconds * 1000)]
        )
        return int(result) == 1

    async def heartbeat(self, role: str, worker_id: str, ttl_seconds: int) -> bool:
        result = await self._heartbeat(
            keys=[self._key(role)],
            args=[worker_id, int(ttl_seconds * 1000)]
        )
        return int(result) == 1

    async def release(self, role: str, worker_id: str) -> bool:
        result = await self._release(keys=[self._key(role)], args=[worker_id])
        return int(result) == 1

    async def get(self, role: str) -> Optional[SchedulerLease]:
        data = await self._redis.hgetall(self._key(role))
        if not data:
            return None
        return SchedulerLease(
            role=role,
            held_by=data.get("held_by") or None,
            acquired_at=_from_millis(data.get("acquired_at")),
            expires_at=_from_millis(data.get("expires_at")),
            heartbeat_at=_from_millis(data.get("heartbeat_at")),
        )

    async def close(self) -> None:
        await self._redis.close()
