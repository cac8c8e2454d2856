from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask

from ytmux.api.deps import get_orchestrator, validation_detail
from ytmux.core.errors import DownloadError, InvalidRequest
from ytmux.core.logging import log_error, log_info
from ytmux.infra.concurrency import concurrency_limiter, release_download_slot
from ytmux.infra.rate_limit import rate_limiter
from ytmux.models.request import DownloadRequest
from ytmux.models.response import ErrorResponse
from ytmux.services.orchestrator import DownloadOrchestrator

router = APIRouter()


@router.get(
    "/download",
    responses={
        200: {"content": {"video/mp4": {}, "audio/mpeg": {}}},
        400: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
    dependencies=[Depends(rate_limiter), Depends(concurrency_limiter)],
)
async def download_media(
    request: Request,
    url: Optional[str] = Query(None, description="YouTube video URL"),
    title: Optional[str] = Query(None, description="Title used for the attachment filename"),
    format: Optional[str] = Query(None, description="mp4 or mp3"),
    videoItag: Optional[str] = Query(None, description="Video stream (audio stream for mp3)"),
    audioItag: Optional[str] = Query(None, description="Audio stream merged into mp4"),
    orchestrator: DownloadOrchestrator = Depends(get_orchestrator),
):
    """Download one stream, a merged video+audio mp4, or an mp3"""
    try:
        download = DownloadRequest(
            url=url,
            title=title,
            format=format,
            videoItag=videoItag,
            audioItag=audioItag,
        )
    except ValidationError as e:
        await release_download_slot(request)
        raise HTTPException(status_code=InvalidRequest.status_code, detail=validation_detail(e))

    log_info(
        request,
        f"Download {download.format.value} itag={download.video_itag}"
        f"{'+' + download.audio_itag if download.audio_itag else ''} for {download.url}"
    )

    try:
        prepared = await orchestrator.prepare(
            download, request_id=getattr(request.state, "request_id", "-")
        )
    except DownloadError as e:
        await release_download_slot(request)
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        await release_download_slot(request)
        log_error(request, f"Download error: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

    async def finalize():
        await prepared.close()
        await release_download_slot(request)

    async def wrapped_body():
        # Background tasks only run after a clean finish; a mid-stream abort lands here
        try:
            async for chunk in prepared.body:
                yield chunk
        finally:
            await finalize()

    return StreamingResponse(
        wrapped_body(),
        media_type=prepared.media_type,
        headers=prepared.headers,
        background=BackgroundTask(finalize),
    )
