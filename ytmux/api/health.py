from fastapi import APIRouter, Depends

from ytmux.api.deps import get_config
from ytmux.config.settings import Config
from ytmux.core.state import state
from ytmux.infra.redis import ACTIVE_COUNTER_KEY, get_redis

router = APIRouter()


@router.get("/")
async def root(settings: Config = Depends(get_config)):
    """Root endpoint"""
    return {
        "status": "running",
        "service": settings.api.title,
        "version": settings.api.version,
        "ytdlp_version": state.ytdlp_version,
        "ffmpeg_version": state.ffmpeg_version,
    }


@router.get("/health")
async def health_check():
    """Lightweight health check"""
    return {"status": "ok"}


@router.get("/health/full")
async def health_check_full(settings: Config = Depends(get_config)):
    """Detailed health check"""
    redis_status = "disabled"
    active_downloads = 0

    redis = get_redis()
    if redis:
        try:
            await redis.ping()
            redis_status = "connected"
            active_downloads = int(await redis.get(ACTIVE_COUNTER_KEY) or 0)
        except Exception:
            redis_status = "disconnected"

    return {
        "status": "ok",
        "ytdlp_version": state.ytdlp_version,
        "ffmpeg_version": state.ffmpeg_version,
        "delivery": settings.download.delivery,
        "redis_status": redis_status,
        "active_downloads": active_downloads,
    }
