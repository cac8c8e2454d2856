import asyncio
import os
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ytmux.api import download, health, info
from ytmux.config.settings import config
from ytmux.core.logging import logger, request_id_ctx, setup_logging
from ytmux.core.state import state
from ytmux.infra.redis import close_redis, init_redis
from ytmux.services.ffmpeg import FFmpegCommandBuilder
from ytmux.services.ytdlp import SubprocessExecutor, YTDLPCommandBuilder

setup_logging(config.logging)

app = FastAPI(
    title=config.api.title,
    description=config.api.description,
    version=config.api.version,
    docs_url="/docs" if config.api.debug else None,
    redoc_url=None
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.api.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "X-Request-ID"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
    request.state.request_id = request_id
    token = request_id_ctx.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx.reset(token)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    return JSONResponse(status_code=400, content={"error": first.get("msg", "Invalid request")})


# Routes
app.include_router(health.router, tags=["Health"])
app.include_router(info.router, tags=["Info"])
app.include_router(download.router, tags=["Download"])


async def _tool_version(cmd) -> str:
    try:
        result = await SubprocessExecutor.run(cmd, timeout=10.0)
    except (OSError, asyncio.TimeoutError):
        return "unavailable"
    if result.returncode != 0:
        return "unavailable"
    first_line = result.stdout.decode(errors="replace").strip().splitlines()[:1]
    return first_line[0] if first_line else "unknown"


@app.on_event("startup")
async def startup_event():
    os.makedirs(config.download.temp_dir, exist_ok=True)

    state.redis = await init_redis(config.redis)

    state.ytdlp_version = await _tool_version(YTDLPCommandBuilder(config.source).build_version_command())
    ffmpeg_banner = await _tool_version(FFmpegCommandBuilder(config.media.ffmpeg_path).build_version_command())
    # "ffmpeg version 6.1.1 Copyright ..." -> "6.1.1"
    parts = ffmpeg_banner.split()
    state.ffmpeg_version = parts[2] if len(parts) > 2 and parts[1] == "version" else ffmpeg_banner

    logger.info(
        f"Ready: delivery={config.download.delivery} yt-dlp={state.ytdlp_version} ffmpeg={state.ffmpeg_version}"
    )


@app.on_event("shutdown")
async def shutdown_event():
    await close_redis()
