from fastapi import HTTPException, Request
import uuid
from ytmux.infra.redis import get_redis, ACTIVE_COUNTER_KEY
from ytmux.config.settings import config
from ytmux.core.logging import log_warning

class ConcurrencyLimiter:
    """Global concurrent download cap with atomic slot acquisition"""

    def __init__(self):
        self.lua_script = """
        local counter_key = KEYS[1]
        local slot_key = KEYS[2]
        local limit = tonumber(ARGV[1])
        local slot_ttl = tonumber(ARGV[2])
        local counter_ttl = tonumber(ARGV[3])

        local current = tonumber(redis.call('GET', counter_key) or "0")
        if current >= limit then
            return 0
        end

        redis.call('INCR', counter_key)
        redis.call('EXPIRE', counter_key, counter_ttl)
        redis.call('SETEX', slot_key, slot_ttl, "1")

        return 1
        """

    async def __call__(self, request: Request):
        redis = get_redis()
        if not redis:
            return True

        slot_key = f"active_download:{uuid.uuid4()}"
        slot_ttl = int(config.download.timeout_seconds) + 60
        counter_ttl = slot_ttl * 2

        try:
            allowed = await redis.eval(
                self.lua_script,
                2,
                ACTIVE_COUNTER_KEY,
                slot_key,
                config.download.max_concurrent,
                slot_ttl,
                counter_ttl
            )
        except Exception as e:
            log_warning(request, f"Concurrency limiter unavailable: {e}")
            return True

        if not allowed:
            raise HTTPException(
                status_code=503,
                detail=f"Server busy: {config.download.max_concurrent} downloads already running"
            )

        request.state.download_slot_key = slot_key
        request.state.download_slot_acquired = True
        return True

async def release_download_slot(request: Request):
    """Release download slot; safe to call more than once"""
    if not getattr(request.state, "download_slot_acquired", False):
        return
    request.state.download_slot_acquired = False

    redis = get_redis()
    if redis:
        try:
            await redis.delete(request.state.download_slot_key)
            await redis.decr(ACTIVE_COUNTER_KEY)
        except Exception as e:
            log_warning(request, f"Failed to release download slot: {e}")

concurrency_limiter = ConcurrencyLimiter()
