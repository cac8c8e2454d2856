from typing import Optional
import redis.asyncio as aioredis
from rich.console import Console
from ytmux.config.settings import RedisConfig
from ytmux.core.state import state

console = Console()

ACTIVE_COUNTER_KEY = "active_downloads_count"
ACTIVE_SLOT_PATTERN = "active_download:*"

async def init_redis(settings: RedisConfig) -> Optional[aioredis.Redis]:
    """Connect to Redis; the service keeps working without it (no cache, no limits)"""
    try:
        redis_client = aioredis.from_url(
            settings.url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=settings.socket_timeout
        )
        await redis_client.ping()

        # Recover active downloads counter from slots that survived a restart
        keys = []
        cursor = 0
        while True:
            cursor, partial_keys = await redis_client.scan(
                cursor,
                match=ACTIVE_SLOT_PATTERN,
                count=100
            )
            keys.extend(partial_keys)
            if cursor == 0:
                break

        await redis_client.set(ACTIVE_COUNTER_KEY, len(keys))

        if keys:
            console.print(f"[yellow]✓ Redis connected (recovered {len(keys)} active downloads)[/yellow]")
        else:
            console.print("[green]✓ Redis connected[/green]")
        return redis_client

    except Exception as e:
        console.print(f"[yellow]⚠ Redis unavailable, running without cache and limits: {str(e)}[/yellow]")
        return None

def get_redis() -> Optional[aioredis.Redis]:
    """Get Redis client from state"""
    return state.redis

async def close_redis() -> None:
    """Close Redis connection"""
    if state.redis:
        await state.redis.aclose()
        state.redis = None
        console.print("[dim]✓ Redis connection closed[/dim]")
