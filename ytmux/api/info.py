from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import ValidationError

from ytmux.api.deps import get_info_service, validation_detail
from ytmux.core.errors import DownloadError, InvalidRequest
from ytmux.core.logging import log_error, log_info
from ytmux.infra.rate_limit import rate_limiter
from ytmux.models.request import InfoRequest
from ytmux.models.response import ErrorResponse, VideoInfo
from ytmux.services.info import VideoInfoService

router = APIRouter()


@router.get(
    "/video-info",
    response_model=VideoInfo,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}, 504: {"model": ErrorResponse}},
    dependencies=[Depends(rate_limiter)],
)
async def get_video_info(
    request: Request,
    url: Optional[str] = Query(None, description="YouTube video URL"),
    service: VideoInfoService = Depends(get_info_service),
):
    """Title, thumbnail and the video/audio download menu of one video"""
    try:
        info_request = InfoRequest(url=url)
    except ValidationError as e:
        raise HTTPException(status_code=InvalidRequest.status_code, detail=validation_detail(e))

    log_info(request, f"Fetching info for {info_request.url}")

    try:
        video_info = await service.fetch(info_request)
    except DownloadError as e:
        log_error(request, f"Video info error: {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        log_error(request, f"Video info error: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

    log_info(
        request,
        f"Info retrieved: {video_info.title} "
        f"({len(video_info.video_formats)} video, {len(video_info.audio_formats)} audio)"
    )
    return video_info
