import json
import logging
import os
import tempfile
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

CONFIG_PATH = os.getenv("CONFIG_PATH", "config.json")


class RedisConfig(BaseModel):
    url: str = Field(default="redis://redis:6379", description="Redis connection URL")
    socket_timeout: int = Field(default=5, description="Redis socket timeout in seconds")
    info_cache_ttl: int = Field(default=300, ge=0, description="Seconds to cache extracted video metadata")


class RateLimitConfig(BaseModel):
    enabled: bool = Field(default=True, description="Enable rate limiting")
    max_requests: int = Field(default=10, ge=1, description="Max requests per window")
    window_seconds: int = Field(default=60, ge=1, description="Rate limit window in seconds")


class DownloadConfig(BaseModel):
    delivery: Literal["buffered", "streaming"] = Field(
        default="buffered",
        description="buffered: finish into a temp file then serve; streaming: pipe output straight to the client",
    )
    temp_dir: str = Field(
        default_factory=lambda: os.path.join(tempfile.gettempdir(), "ytmux"),
        description="Directory for per-request temporary artifacts",
    )
    max_concurrent: int = Field(default=10, ge=1, le=100, description="Max concurrent downloads")
    timeout_seconds: float = Field(default=3600, gt=0, description="Deadline for a whole download")
    info_timeout: float = Field(default=30, gt=0, description="Timeout for metadata extraction")
    mp3_bitrate_kbps: int = Field(default=128, ge=32, le=320, description="MP3 transcode bitrate")
    chunk_size: int = Field(default=256 * 1024, ge=1024, description="Read size for media streams")


class SourceConfig(BaseModel):
    ytdlp_path: str = Field(default="yt-dlp", description="yt-dlp executable")
    cookie: Optional[str] = Field(default=None, description="Cookie header forwarded to YouTube")
    socket_timeout: int = Field(default=10, ge=1, description="Socket timeout for yt-dlp")
    retries: int = Field(default=3, ge=0, description="yt-dlp internal retries")
    max_height: int = Field(default=720, ge=144, description="Highest video quality offered in the menu")
    audio_bitrate_tier: int = Field(default=128, description="Audio bitrate tier offered in the menu")
    enable_live_streams: bool = Field(default=False, description="Allow live stream downloads")
    js_runtime: Optional[str] = Field(default=None, description="JS runtime passed to yt-dlp")


class MediaConfig(BaseModel):
    ffmpeg_path: str = Field(default="ffmpeg", description="ffmpeg executable")
    stderr_max_lines: int = Field(default=50, ge=1, description="ffmpeg stderr lines kept for error reports")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    format: str = Field(default="%(message)s", description="Log format")
    enable_rich: bool = Field(default=True, description="Enable rich console logging")

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0", description="Listen address")
    port: int = Field(default=8000, ge=1, le=65535, description="Listen port")


class ApiConfig(BaseModel):
    title: str = Field(default="ytmux", description="API title")
    description: str = Field(default="YouTube stream download and remux API", description="API description")
    version: str = Field(default="1.0.0", description="API version")
    cors_origins: list = Field(default=["*"], description="CORS allowed origins")
    debug: bool = Field(default=False, description="Enable debug mode")


class Config(BaseSettings):
    """Main configuration model"""
    model_config = SettingsConfigDict(env_prefix="YTMUX_", env_nested_delimiter="__")

    redis: RedisConfig = Field(default_factory=RedisConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    download: DownloadConfig = Field(default_factory=DownloadConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @classmethod
    def load_from_file(cls, config_path: str = CONFIG_PATH) -> "Config":
        """Load configuration from JSON file"""
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                config_data = json.load(f)
            logger.info(f"Configuration loaded from {config_path}")
            return cls(**config_data)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load config from {config_path}: {str(e)}")
            logger.info("Using default configuration")
            return cls()

    @classmethod
    def load_from_env(cls) -> "Config":
        """Load configuration from the deployment's plain environment variables"""
        config_data: Dict[str, Dict[str, Any]] = {}

        def put(section: str, key: str, value: Any) -> None:
            config_data.setdefault(section, {})[key] = value

        if os.getenv("REDIS_URL"):
            put("redis", "url", os.getenv("REDIS_URL"))

        if os.getenv("RATE_LIMIT_REQUESTS"):
            put("rate_limit", "max_requests", int(os.getenv("RATE_LIMIT_REQUESTS")))
        if os.getenv("RATE_LIMIT_WINDOW"):
            put("rate_limit", "window_seconds", int(os.getenv("RATE_LIMIT_WINDOW")))

        if os.getenv("DELIVERY_MODE"):
            put("download", "delivery", os.getenv("DELIVERY_MODE").lower())
        if os.getenv("TEMP_DIR"):
            put("download", "temp_dir", os.getenv("TEMP_DIR"))
        if os.getenv("MAX_CONCURRENT_DOWNLOADS"):
            put("download", "max_concurrent", int(os.getenv("MAX_CONCURRENT_DOWNLOADS")))
        if os.getenv("DOWNLOAD_TIMEOUT"):
            put("download", "timeout_seconds", float(os.getenv("DOWNLOAD_TIMEOUT")))

        if os.getenv("YOUTUBE_COOKIE"):
            put("source", "cookie", os.getenv("YOUTUBE_COOKIE"))
        if os.getenv("YT_DLP_PATH"):
            put("source", "ytdlp_path", os.getenv("YT_DLP_PATH"))
        if os.getenv("YT_DLP_JS_RUNTIME"):
            put("source", "js_runtime", os.getenv("YT_DLP_JS_RUNTIME"))

        if os.getenv("FFMPEG_PATH"):
            put("media", "ffmpeg_path", os.getenv("FFMPEG_PATH"))

        if os.getenv("LOG_LEVEL"):
            put("logging", "level", os.getenv("LOG_LEVEL"))

        if os.getenv("HOST"):
            put("server", "host", os.getenv("HOST"))
        if os.getenv("PORT"):
            put("server", "port", int(os.getenv("PORT")))

        if os.getenv("CORS_ORIGIN"):
            origins = [o.strip() for o in os.getenv("CORS_ORIGIN").split(",") if o.strip()]
            put("api", "cors_origins", origins)

        return cls(**config_data)


def load_config() -> Config:
    """Load configuration with priority: config.json > env vars > defaults"""
    if os.path.exists(CONFIG_PATH):
        return Config.load_from_file(CONFIG_PATH)

    logger.info(f"Config file not found at {CONFIG_PATH}, checking environment variables")
    return Config.load_from_env()


config = load_config()
