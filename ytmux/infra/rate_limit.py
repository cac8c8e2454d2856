from fastapi import HTTPException, Request
from ytmux.infra.redis import get_redis
from ytmux.config.settings import config
from ytmux.core.logging import log_warning

class RedisRateLimiter:
    """Redis-based fixed window rate limiter with Lua script"""

    def __init__(self):
        self.lua_script = """
        local key = KEYS[1]
        local limit = tonumber(ARGV[1])
        local window = tonumber(ARGV[2])

        local current = redis.call('INCR', key)
        if current == 1 then
            redis.call('EXPIRE', key, window)
        end

        if current > limit then
            local ttl = redis.call('TTL', key)
            return {0, ttl}
        end

        return {1, 0}
        """

    async def __call__(self, request: Request):
        if not config.rate_limit.enabled:
            return True

        redis = get_redis()
        if not redis:
            return True

        client_ip = request.client.host if request.client else "unknown"
        key = f"rate:{client_ip}:{request.url.path}"

        try:
            allowed, ttl = await redis.eval(
                self.lua_script,
                1,
                key,
                config.rate_limit.max_requests,
                config.rate_limit.window_seconds
            )
        except Exception as e:
            # Redis hiccups never block downloads
            log_warning(request, f"Rate limiter unavailable: {e}")
            return True

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Too many requests, retry in {ttl} seconds",
                headers={"Retry-After": str(ttl)}
            )

        return True

rate_limiter = RedisRateLimiter()
