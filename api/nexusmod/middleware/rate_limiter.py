"""Per-admin-key token buckets in Redis.

Each admin key gets a read bucket and a write bucket, refilled continuously
so that a full bucket is restored in 60 seconds. The refill and the take run
as one Lua script, so concurrent requests on the same key cannot both spend
the last token.

Key format: rl:{key_digest}:{bucket}
"""
import math
import time
from typing import Annotated

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Response

from nexusmod.config import Settings, settings
from nexusmod.dependencies import CurrentAdmin, RedisClient

REFILL_WINDOW_SECONDS = 60.0

# KEYS[1] = bucket key
# ARGV[1] = capacity, ARGV[2] = refill per second, ARGV[3] = now (unix seconds)
#
# Returns {allowed (0|1), tokens left after the take, as a string}
TAKE_TOKEN_LUA = """
local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])

local tokens = tonumber(state[1]) or capacity
local ts = tonumber(state[2]) or now
tokens = math.min(capacity, tokens + math.max(0, now - ts) * rate)

local allowed = 0
if tokens >= 1 then
    tokens = tokens - 1
    allowed = 1
end

redis.call('HSET', KEYS[1], 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', KEYS[1], math.ceil(capacity / rate) * 2)
return {allowed, tostring(tokens)}
"""


def bucket_capacity(bucket: str, app_settings: Settings) -> int:
    if bucket == "read":
        return app_settings.rate_limit_read_per_minute
    return app_settings.rate_limit_write_per_minute


async def take_token(
    key_digest: str,
    redis_client: aioredis.Redis,
    bucket: str,
    app_settings: Settings,
) -> float:
    """Spend one token from the caller's bucket.

    Returns:
        Tokens left after this request.

    Raises:
        HTTPException: 429 with a Retry-After of the seconds until one token refills.
    """
    capacity = bucket_capacity(bucket, app_settings)
    rate = capacity / REFILL_WINDOW_SECONDS
    allowed, remaining = await redis_client.eval(
        TAKE_TOKEN_LUA,
        1,
        f"rl:{key_digest}:{bucket}",
        capacity,
        rate,
        time.time(),
    )
    remaining = float(remaining)
    if not int(allowed):
        retry_after = max(1, math.ceil((1 - remaining) / rate))
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded for {bucket} requests",
            headers={"Retry-After": str(retry_after)},
        )
    return remaining


async def enforce_read_limit(
    admin: CurrentAdmin, redis_client: RedisClient, response: Response
) -> None:
    remaining = await take_token(admin, redis_client, "read", settings)
    response.headers["X-RateLimit-Remaining"] = str(math.floor(remaining))


async def enforce_write_limit(
    admin: CurrentAdmin, redis_client: RedisClient, response: Response
) -> None:
    remaining = await take_token(admin, redis_client, "write", settings)
    response.headers["X-RateLimit-Remaining"] = str(math.floor(remaining))


ReadRateLimit = Annotated[None, Depends(enforce_read_limit)]
WriteRateLimit = Annotated[None, Depends(enforce_write_limit)]
