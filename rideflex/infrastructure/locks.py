"""
Redis lease lock.

The checkout expiry sweep runs in every API process; the lease makes sure
only one of them sweeps per interval.  ``SET NX EX`` takes the lease and a
Lua script releases it only if the stored token is still ours, so a process
whose lease already timed out cannot drop a newer holder's lease.
"""

from __future__ import annotations

import uuid

import redis.asyncio as aioredis

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class LockUnavailable(RuntimeError):
    pass


class RedisLease:
    def __init__(self, client: aioredis.Redis, name: str, ttl_seconds: int = 30):
        self.client = client
        self.key = f"rideflex:lease:{name}"
        self.ttl_seconds = ttl_seconds
        self.token = uuid.uuid4().hex
        self.held = False

    async def acquire(self) -> bool:
        self.held = bool(
            await self.client.set(self.key, self.token, nx=True, ex=self.ttl_seconds)
        )
        return self.held

    async def release(self) -> bool:
        if not self.held:
            return False
        self.held = False
        return bool(await self.client.eval(_RELEASE_SCRIPT, 1, self.key, self.token))

    async def __aenter__(self) -> "RedisLease":
        if not await self.acquire():
            raise LockUnavailable(f"Lease {self.key} is held elsewhere")
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.release()
